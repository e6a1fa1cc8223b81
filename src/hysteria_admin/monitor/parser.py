"""
Turns raw Hysteria server log lines into typed connection events.

Each recognised line format is one matcher: a plain function from a line to
an event or None. Matchers are grouped by category (open, close, bandwidth);
within a category the first match wins, and categories are tried
independently. Support for a new log format is added by appending a matcher.
"""
import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionOpened:
    ip: str
    port: int
    user_id: int


@dataclass(frozen=True)
class ConnectionOpenedByDomain:
    ip: str
    port: int
    domain: str


@dataclass(frozen=True)
class ConnectionClosed:
    ip: str
    port: int
    user_id: int


@dataclass(frozen=True)
class ConnectionClosedByDomain:
    ip: str
    port: int
    domain: str


@dataclass(frozen=True)
class BandwidthUpdate:
    user_id: int
    sent: int
    received: int


# Example: "2024-01-01 12:00:00 [INFO] New connection from 192.168.1.100:12345 for user_id: 1"
CONNECT_BY_ID = re.compile(r'New connection from (?P<ip>[\d.]+):(?P<port>\d+) for user_id: (?P<user>\d+)')
# Example: "2024-01-01 12:00:00 [INFO] Client connected: 192.168.1.100:12345 (user: example.com)"
CONNECT_BY_DOMAIN = re.compile(r'Client connected: (?P<ip>[\d.]+):(?P<port>\d+) \(user: (?P<domain>[^)]+)\)')
# Example: "2024-01-01 12:05:00 [INFO] Connection closed from 192.168.1.100:12345 for user_id: 1"
DISCONNECT_BY_ID = re.compile(r'Connection closed from (?P<ip>[\d.]+):(?P<port>\d+) for user_id: (?P<user>\d+)')
# Example: "2024-01-01 12:05:00 [INFO] Client disconnected: 192.168.1.100:12345 (user: example.com)"
DISCONNECT_BY_DOMAIN = re.compile(r'Client disconnected: (?P<ip>[\d.]+):(?P<port>\d+) \(user: (?P<domain>[^)]+)\)')
# Example: "2024-01-01 12:03:00 [INFO] Bandwidth update for user_id: 1, sent: 1024, received: 2048"
BANDWIDTH_BY_ID = re.compile(r'Bandwidth update for user_id: (?P<user>\d+), sent: (?P<sent>\d+), received: (?P<received>\d+)')


def match_connect_by_id(line):
    m = CONNECT_BY_ID.search(line)
    if m:
        return ConnectionOpened(m['ip'], int(m['port']), int(m['user']))


def match_connect_by_domain(line):
    m = CONNECT_BY_DOMAIN.search(line)
    if m:
        return ConnectionOpenedByDomain(m['ip'], int(m['port']), m['domain'].strip())


def match_disconnect_by_id(line):
    m = DISCONNECT_BY_ID.search(line)
    if m:
        return ConnectionClosed(m['ip'], int(m['port']), int(m['user']))


def match_disconnect_by_domain(line):
    m = DISCONNECT_BY_DOMAIN.search(line)
    if m:
        return ConnectionClosedByDomain(m['ip'], int(m['port']), m['domain'].strip())


def match_bandwidth_by_id(line):
    m = BANDWIDTH_BY_ID.search(line)
    if m:
        return BandwidthUpdate(int(m['user']), int(m['sent']), int(m['received']))


# Ordered by priority within each category
OPEN_MATCHERS = [match_connect_by_id, match_connect_by_domain]
CLOSE_MATCHERS = [match_disconnect_by_id, match_disconnect_by_domain]
BANDWIDTH_MATCHERS = [match_bandwidth_by_id]

CATEGORIES = (OPEN_MATCHERS, CLOSE_MATCHERS, BANDWIDTH_MATCHERS)


def _first_match(matchers, line):
    for matcher in matchers:
        try:
            event = matcher(line)
        except (ValueError, TypeError) as e:
            # Matched the shape but a field would not convert; skip this format
            logger.debug(f"Malformed fields for {matcher.__name__}: {e} in {line!r}")
            continue
        if event is not None:
            return event
    return None


def parse_line(line, categories=CATEGORIES):
    """
    Extract connection events from one log line.

    Args:
        line: Raw log line, with or without its trailing newline
        categories: Sequence of ordered matcher lists

    Returns:
        list: Events found, normally zero or one. Never raises on bad input.
    """
    if not line:
        return []
    line = line.rstrip('\r\n')
    if not line.strip():
        return []

    events = []
    for matchers in categories:
        event = _first_match(matchers, line)
        if event is not None:
            events.append(event)
    return events
