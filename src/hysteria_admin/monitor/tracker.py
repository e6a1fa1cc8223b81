import logging
from dataclasses import dataclass, field

from hysteria_admin.db.database import StoreError
from hysteria_admin.monitor.parser import (
    BandwidthUpdate, ConnectionClosed, ConnectionClosedByDomain,
    ConnectionOpened, ConnectionOpenedByDomain
)

logger = logging.getLogger(__name__)


@dataclass
class TrackerState:
    """
    In-memory view owned by a single ConnectionTracker.

    active_connections: (user_id, ip, port) -> connection record id, one entry
        per connection believed to be open right now
    user_limits: user_id -> connection limit for active users; a user missing
        here has no enforced limit
    """
    active_connections: dict = field(default_factory=dict)
    user_limits: dict = field(default_factory=dict)

    def keys_for_user(self, user_id):
        return [key for key in self.active_connections if key[0] == user_id]


class ConnectionTracker:
    """
    Applies connection events to the tracker state and the store.

    Events must be fed from one task, in log order. Store failures never
    propagate out of the handlers: the event is logged and dropped.
    """

    def __init__(self, db, state=None):
        self.db = db
        self.state = state or TrackerState()
        self._handlers = {
            ConnectionOpened: lambda e: self.handle_connection(e.user_id, e.ip, e.port),
            ConnectionOpenedByDomain: lambda e: self.handle_connection_by_domain(e.domain, e.ip, e.port),
            ConnectionClosed: lambda e: self.handle_disconnection(e.user_id, e.ip, e.port),
            ConnectionClosedByDomain: lambda e: self.handle_disconnection_by_domain(e.domain, e.ip, e.port),
            BandwidthUpdate: lambda e: self.update_bandwidth(e.user_id, e.sent, e.received),
        }

    async def handle_event(self, event):
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.debug(f"No handler for event {event!r}")
            return None
        return await handler(event)

    async def load_user_limits(self):
        """Replace the limit cache with a fresh load. Raises StoreError on failure."""
        limits = await self.db.get_active_user_limits()
        self.state.user_limits = limits
        logger.info(f"Loaded {len(limits)} user limits")
        return limits

    async def refresh_user_limits(self):
        """Like load_user_limits, but a failure keeps the previous cache."""
        try:
            await self.load_user_limits()
            return True
        except StoreError as e:
            logger.error(f"Error loading user limits, keeping previous cache: {e}")
            return False

    def get_active_connection_count(self, user_id):
        return len(self.state.keys_for_user(user_id))

    async def handle_connection(self, user_id, ip, port):
        """
        Admit and record a new connection.

        Returns:
            int: the new connection record id, or None if the connection was
            rejected by the limit or could not be recorded
        """
        key = (user_id, ip, port)
        if key in self.state.active_connections:
            # Repeated open for a connection we already track
            logger.debug(f"Connection {ip}:{port} for user {user_id} already tracked")
            return self.state.active_connections[key]

        limit = self.state.user_limits.get(user_id)
        if limit is not None:
            active_count = self.get_active_connection_count(user_id)
            if active_count >= limit:
                logger.info(f"User {user_id} has reached connection limit ({limit})")
                return None

        try:
            connection_id = await self.db.create_connection(user_id, ip)
        except StoreError as e:
            logger.error(f"Error recording connection for user {user_id} from {ip}:{port}: {e}")
            return None

        self.state.active_connections[key] = connection_id
        logger.info(f"Connection recorded: User {user_id} from {ip}:{port}")
        return connection_id

    async def handle_disconnection(self, user_id, ip, port):
        key = (user_id, ip, port)
        connection_id = self.state.active_connections.get(key)
        if connection_id is None:
            logger.debug(f"No open connection for user {user_id} from {ip}:{port}")
            return False

        try:
            found = await self.db.close_connection(connection_id)
        except StoreError as e:
            logger.error(f"Error recording disconnection for user {user_id} from {ip}:{port}: {e}")
            return False

        if not found:
            logger.debug(f"Connection record {connection_id} no longer exists")
        self.state.active_connections.pop(key, None)
        logger.info(f"Disconnection recorded: User {user_id} from {ip}:{port}")
        return True

    async def update_bandwidth(self, user_id, sent, received):
        # Bandwidth lines carry no peer, so bytes go to the user's oldest open entry
        keys = self.state.keys_for_user(user_id)
        if not keys:
            return False

        connection_id = self.state.active_connections[keys[0]]
        try:
            await self.db.add_bandwidth(connection_id, sent, received)
        except StoreError as e:
            logger.error(f"Error updating bandwidth for user {user_id}: {e}")
            return False
        return True

    async def _resolve_domain(self, domain):
        try:
            user_id = await self.db.get_user_id_by_domain(domain)
        except StoreError as e:
            logger.error(f"Error resolving domain {domain}: {e}")
            return None
        if user_id is None:
            logger.debug(f"No user for domain {domain}")
        return user_id

    async def handle_connection_by_domain(self, domain, ip, port):
        user_id = await self._resolve_domain(domain)
        if user_id is None:
            return None
        return await self.handle_connection(user_id, ip, port)

    async def handle_disconnection_by_domain(self, domain, ip, port):
        user_id = await self._resolve_domain(domain)
        if user_id is None:
            return False
        return await self.handle_disconnection(user_id, ip, port)
