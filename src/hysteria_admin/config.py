import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Database
DB_PATH = os.getenv("DB_PATH", "hysteria.db")
DB_TIMEOUT = float(os.getenv("DB_TIMEOUT", "10"))  # Seconds per store call

# Log Sources
HYSTERIA_LOG_PATH = os.getenv("HYSTERIA_LOG_PATH", "/var/log/hysteria.log")
HYSTERIA_SERVICE = os.getenv("HYSTERIA_SERVICE", "hysteria-server")
FALLBACK_DELAY = float(os.getenv("FALLBACK_DELAY", "5"))
SOURCE_RETRY_INTERVAL = float(os.getenv("SOURCE_RETRY_INTERVAL", "60"))  # 0 disables
FILE_POLL_INTERVAL = float(os.getenv("FILE_POLL_INTERVAL", "1"))

# Maintenance
LIMIT_REFRESH_INTERVAL = float(os.getenv("LIMIT_REFRESH_INTERVAL", "300"))  # 5 minutes
CLEANUP_INTERVAL = float(os.getenv("CLEANUP_INTERVAL", "3600"))  # 1 hour
RETENTION_DAYS = int(os.getenv("RETENTION_DAYS", "30"))
SHUTDOWN_GRACE = float(os.getenv("SHUTDOWN_GRACE", "10"))

# Management API
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "3100"))
API_TOKEN = os.getenv("API_TOKEN", "change-me")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
