"""
Client provisioning for Hysteria 2 users - config JSON, share link and QR code.
"""
import base64
import io
import json

import qrcode

DEFAULT_UP_MBPS = 100
DEFAULT_DOWN_MBPS = 100


def build_client_config(user):
    """
    Build the Hysteria 2 client config for a user.

    Args:
        user: User dict with domain, port, obfs and password fields

    Returns:
        dict: Client configuration
    """
    return {
        "server": f"{user['domain']}:{user['port']}",
        "protocol": "hysteria2",
        "up_mbps": DEFAULT_UP_MBPS,
        "down_mbps": DEFAULT_DOWN_MBPS,
        "ipv6": True,
        "obfs": {
            "type": user['obfs'],
            "password": user['password']
        },
        "auth": {
            "type": "password",
            "password": user['password']
        }
    }


def build_share_link(user):
    config = json.dumps(build_client_config(user), indent=2)
    encoded = base64.b64encode(config.encode('utf-8')).decode('ascii')
    return f"hysteria2://{encoded}@{user['domain']}:{user['port']}"


def render_qr_png(data):
    """Render data as a QR code PNG and return the image bytes."""
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    bio = io.BytesIO()
    img.save(bio)
    return bio.getvalue()
