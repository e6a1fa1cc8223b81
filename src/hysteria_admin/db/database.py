import asyncio
import datetime
import logging
import sqlite3

import aiosqlite

from hysteria_admin.config import DB_PATH, DB_TIMEOUT

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'

USER_COLUMNS = ('domain', 'port', 'password', 'obfs', 'package_name', 'expired_at', 'limit_conn', 'is_active')

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        domain TEXT NOT NULL,
        port INTEGER NOT NULL DEFAULT 443,
        password TEXT NOT NULL,
        obfs TEXT NOT NULL DEFAULT 'salamander',
        package_name TEXT NOT NULL DEFAULT 'basic',
        expired_at TIMESTAMP,
        limit_conn INTEGER NOT NULL DEFAULT 1,
        is_active BOOLEAN NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_users_domain ON users(domain);

    CREATE TABLE IF NOT EXISTS connections (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
        ip_address TEXT,
        connected_at TIMESTAMP,
        disconnected_at TIMESTAMP,
        bytes_sent INTEGER DEFAULT 0,
        bytes_received INTEGER DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_connections_user ON connections(user_id);
    CREATE INDEX IF NOT EXISTS idx_connections_connected_at ON connections(connected_at);
'''


class StoreError(Exception):
    """Raised when a store operation fails or does not finish in time."""


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def format_timestamp(value):
    """Render a datetime the way timestamps are stored (UTC, second precision)."""
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


class Database:
    """
    Async gateway over the SQLite file shared by the API and the log monitor.

    Every call is bounded by ``timeout`` seconds. SQLite errors and timeouts
    surface as StoreError so callers only have one failure type to handle.
    """

    def __init__(self, path=DB_PATH, timeout=DB_TIMEOUT):
        self.path = path
        self.timeout = timeout
        self.conn = None

    async def connect(self):
        async def open_connection():
            return await aiosqlite.connect(self.path, isolation_level=None)

        try:
            self.conn = await asyncio.wait_for(open_connection(), timeout=self.timeout)
        except (sqlite3.Error, OSError, asyncio.TimeoutError) as e:
            raise StoreError(f"Could not open database at {self.path}: {e}") from e
        self.conn.row_factory = aiosqlite.Row
        await self._execute('PRAGMA foreign_keys = ON')
        return self

    async def close(self):
        if self.conn is not None:
            await self.conn.close()
            self.conn = None

    async def __aenter__(self):
        return await self.connect()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _guard(self, coro, what):
        if self.conn is None:
            coro.close()
            raise StoreError(f"Database not connected ({what})")
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise StoreError(f"{what} timed out after {self.timeout}s") from e
        except sqlite3.Error as e:
            raise StoreError(f"{what} failed: {e}") from e

    async def _execute(self, sql, params=()):
        """Run a write statement, returning (lastrowid, rowcount)."""
        async def run():
            async with self.conn.execute(sql, params) as cursor:
                return cursor.lastrowid, cursor.rowcount
        return await self._guard(run(), sql.split()[0])

    async def _fetchone(self, sql, params=()):
        async def run():
            async with self.conn.execute(sql, params) as cursor:
                return await cursor.fetchone()
        return await self._guard(run(), sql.split()[0])

    async def _fetchall(self, sql, params=()):
        async def run():
            async with self.conn.execute(sql, params) as cursor:
                return await cursor.fetchall()
        return await self._guard(run(), sql.split()[0])

    async def ping(self):
        await self._fetchone('SELECT 1')

    async def init_db(self):
        async def run():
            await self.conn.executescript(SCHEMA)
        await self._guard(run(), "init_db")
        logger.info(f"Database schema ready at {self.path}")

    # Log monitor operations

    async def get_active_user_limits(self):
        """Map of user id -> connection limit for active users with an enforceable limit."""
        rows = await self._fetchall(
            'SELECT id, limit_conn FROM users WHERE is_active = 1 AND limit_conn >= 1'
        )
        return {row['id']: row['limit_conn'] for row in rows}

    async def get_user_id_by_domain(self, domain):
        row = await self._fetchone('SELECT id FROM users WHERE domain = ? ORDER BY id LIMIT 1', (domain,))
        return row['id'] if row else None

    async def create_connection(self, user_id, ip_address, connected_at=None):
        """
        Record a newly opened connection.

        Args:
            user_id: Owning user's id
            ip_address: Peer address
            connected_at: Connection time, defaults to now

        Returns:
            int: id of the new connection record
        """
        connected_at = format_timestamp(connected_at or utcnow())
        row_id, _ = await self._execute(
            'INSERT INTO connections (user_id, ip_address, connected_at) VALUES (?, ?, ?)',
            (user_id, ip_address, connected_at)
        )
        return row_id

    async def close_connection(self, connection_id, disconnected_at=None):
        """
        Set the disconnect time on a connection record.

        Returns:
            bool: False when the record no longer exists (e.g. already swept)
        """
        disconnected_at = format_timestamp(disconnected_at or utcnow())
        _, rowcount = await self._execute(
            'UPDATE connections SET disconnected_at = ? WHERE id = ?',
            (disconnected_at, connection_id)
        )
        return rowcount > 0

    async def add_bandwidth(self, connection_id, sent, received):
        _, rowcount = await self._execute(
            'UPDATE connections SET bytes_sent = bytes_sent + ?, bytes_received = bytes_received + ? WHERE id = ?',
            (sent, received, connection_id)
        )
        return rowcount > 0

    async def delete_connections_before(self, cutoff):
        """Delete connection records (open or closed) connected strictly before cutoff."""
        _, rowcount = await self._execute(
            'DELETE FROM connections WHERE connected_at < ?', (format_timestamp(cutoff),)
        )
        return rowcount

    async def get_connection(self, connection_id):
        row = await self._fetchone('SELECT * FROM connections WHERE id = ?', (connection_id,))
        return dict(row) if row else None

    # Management operations

    async def list_users(self):
        rows = await self._fetchall('SELECT * FROM users ORDER BY created_at DESC, id DESC')
        return [dict(row) for row in rows]

    async def get_user(self, user_id):
        row = await self._fetchone('SELECT * FROM users WHERE id = ?', (user_id,))
        return dict(row) if row else None

    async def create_user(self, domain, password, port=443, obfs='salamander', package_name='basic',
                          expired_at=None, limit_conn=1, is_active=True):
        user_id, _ = await self._execute('''
            INSERT INTO users (domain, port, password, obfs, package_name, expired_at, limit_conn, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (domain, port, password, obfs, package_name, expired_at, limit_conn, is_active))
        return await self.get_user(user_id)

    async def update_user(self, user_id, fields):
        """
        Update only the supplied user columns.

        Args:
            user_id: User's id
            fields: dict of column -> new value; unknown columns are ignored

        Returns:
            dict: the updated user, or None if it does not exist
        """
        updates = {k: v for k, v in fields.items() if k in USER_COLUMNS}
        if updates:
            assignments = ', '.join(f"{column} = ?" for column in updates)
            _, rowcount = await self._execute(
                f'UPDATE users SET {assignments} WHERE id = ?',
                (*updates.values(), user_id)
            )
            if rowcount == 0:
                return None
        return await self.get_user(user_id)

    async def delete_user(self, user_id):
        """Delete a user; their connection records go with them."""
        _, rowcount = await self._execute('DELETE FROM users WHERE id = ?', (user_id,))
        return rowcount > 0

    async def list_connections(self, user_id=None, open_only=False, limit=100):
        clauses = []
        params = []
        if user_id is not None:
            clauses.append('user_id = ?')
            params.append(user_id)
        if open_only:
            clauses.append('disconnected_at IS NULL')
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ''
        rows = await self._fetchall(
            f'SELECT * FROM connections {where} ORDER BY connected_at DESC, id DESC LIMIT ?',
            (*params, limit)
        )
        return [dict(row) for row in rows]

    async def get_user_stats(self, user_id):
        """Aggregate connection statistics plus the 10 most recent connections."""
        row = await self._fetchone('''
            SELECT
                COUNT(*) AS total_connections,
                COALESCE(SUM(bytes_sent), 0) AS total_bytes_sent,
                COALESCE(SUM(bytes_received), 0) AS total_bytes_received,
                MAX(connected_at) AS last_connected
            FROM connections
            WHERE user_id = ?
        ''', (user_id,))
        stats = dict(row)
        stats['recent_connections'] = await self.list_connections(user_id=user_id, limit=10)
        return stats
