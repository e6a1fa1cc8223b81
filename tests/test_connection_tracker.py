import os
import sys
import unittest
from unittest.mock import AsyncMock, MagicMock

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src'))

from hysteria_admin.db.database import StoreError
from hysteria_admin.monitor.parser import (
    BandwidthUpdate, ConnectionClosed, ConnectionClosedByDomain,
    ConnectionOpened, ConnectionOpenedByDomain
)
from hysteria_admin.monitor.tracker import ConnectionTracker, TrackerState


def make_db():
    db = MagicMock()
    db.create_connection = AsyncMock(side_effect=[101, 102, 103, 104])
    db.close_connection = AsyncMock(return_value=True)
    db.add_bandwidth = AsyncMock(return_value=True)
    db.get_user_id_by_domain = AsyncMock(return_value=None)
    db.get_active_user_limits = AsyncMock(return_value={})
    return db


class TestAdmission(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = make_db()
        self.tracker = ConnectionTracker(self.db)

    async def test_open_records_connection(self):
        connection_id = await self.tracker.handle_connection(1, "1.2.3.4", 5000)
        self.assertEqual(connection_id, 101)
        self.db.create_connection.assert_awaited_once_with(1, "1.2.3.4")
        self.assertEqual(self.tracker.state.active_connections, {(1, "1.2.3.4", 5000): 101})

    async def test_user_without_cached_limit_is_unlimited(self):
        for port in range(4):
            await self.tracker.handle_connection(7, "1.2.3.4", port)
        self.assertEqual(self.tracker.get_active_connection_count(7), 4)

    async def test_limit_one_admits_only_first_open(self):
        self.tracker.state.user_limits = {1: 1}
        await self.tracker.handle_event(ConnectionOpened("10.0.0.1", 1111, 1))
        result = await self.tracker.handle_event(ConnectionOpened("10.0.0.2", 2222, 1))

        self.assertIsNone(result)
        self.assertEqual(self.db.create_connection.await_count, 1)
        self.assertEqual(list(self.tracker.state.active_connections), [(1, "10.0.0.1", 1111)])

    async def test_admission_allows_again_after_close(self):
        self.tracker.state.user_limits = {1: 1}
        await self.tracker.handle_connection(1, "10.0.0.1", 1111)
        await self.tracker.handle_disconnection(1, "10.0.0.1", 1111)
        self.assertEqual(await self.tracker.handle_connection(1, "10.0.0.2", 2222), 102)

    async def test_lowered_limit_does_not_close_existing_connections(self):
        self.tracker.state.user_limits = {1: 3}
        for port in (1, 2, 3):
            await self.tracker.handle_connection(1, "10.0.0.1", port)
        self.tracker.state.user_limits = {1: 1}
        self.assertIsNone(await self.tracker.handle_connection(1, "10.0.0.1", 4))
        self.assertEqual(self.tracker.get_active_connection_count(1), 3)

    async def test_repeated_open_for_same_peer_creates_one_record(self):
        await self.tracker.handle_connection(1, "10.0.0.1", 1111)
        self.assertEqual(await self.tracker.handle_connection(1, "10.0.0.1", 1111), 101)
        self.db.create_connection.assert_awaited_once()

    async def test_create_failure_drops_event(self):
        self.db.create_connection.side_effect = StoreError("disk I/O error")
        self.assertIsNone(await self.tracker.handle_connection(1, "10.0.0.1", 1111))
        self.assertEqual(self.tracker.state.active_connections, {})


class TestDisconnection(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = make_db()
        self.tracker = ConnectionTracker(self.db)

    async def test_close_without_open_is_noop(self):
        self.assertFalse(await self.tracker.handle_disconnection(1, "10.0.0.1", 1111))
        self.db.close_connection.assert_not_awaited()

    async def test_double_close_updates_store_once(self):
        await self.tracker.handle_connection(1, "10.0.0.1", 1111)
        await self.tracker.handle_event(ConnectionClosed("10.0.0.1", 1111, 1))
        await self.tracker.handle_event(ConnectionClosed("10.0.0.1", 1111, 1))

        self.db.close_connection.assert_awaited_once_with(101)
        self.assertEqual(self.tracker.state.active_connections, {})

    async def test_close_matches_exact_peer(self):
        await self.tracker.handle_connection(1, "10.0.0.1", 1111)
        self.assertFalse(await self.tracker.handle_disconnection(1, "10.0.0.1", 2222))
        self.assertEqual(self.tracker.get_active_connection_count(1), 1)

    async def test_close_failure_keeps_entry(self):
        await self.tracker.handle_connection(1, "10.0.0.1", 1111)
        self.db.close_connection.side_effect = StoreError("database is locked")
        self.assertFalse(await self.tracker.handle_disconnection(1, "10.0.0.1", 1111))
        self.assertIn((1, "10.0.0.1", 1111), self.tracker.state.active_connections)

        # A later close retries
        self.db.close_connection.side_effect = None
        self.assertTrue(await self.tracker.handle_disconnection(1, "10.0.0.1", 1111))
        self.assertEqual(self.tracker.state.active_connections, {})

    async def test_close_of_swept_record_is_tolerated(self):
        await self.tracker.handle_connection(1, "10.0.0.1", 1111)
        self.db.close_connection.return_value = False
        self.assertTrue(await self.tracker.handle_disconnection(1, "10.0.0.1", 1111))
        self.assertEqual(self.tracker.state.active_connections, {})


class TestBandwidth(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = make_db()
        self.tracker = ConnectionTracker(self.db)

    async def test_bandwidth_without_open_connection_is_dropped(self):
        self.assertFalse(await self.tracker.handle_event(BandwidthUpdate(1, 100, 200)))
        self.db.add_bandwidth.assert_not_awaited()

    async def test_bandwidth_goes_to_first_open_connection(self):
        await self.tracker.handle_connection(2, "10.0.0.9", 1)
        await self.tracker.handle_connection(1, "10.0.0.1", 1111)
        await self.tracker.handle_connection(1, "10.0.0.2", 2222)
        await self.tracker.handle_event(BandwidthUpdate(1, 100, 200))
        await self.tracker.handle_event(BandwidthUpdate(1, 50, 10))

        self.assertEqual(
            [c.args for c in self.db.add_bandwidth.await_args_list],
            [(102, 100, 200), (102, 50, 10)]
        )

    async def test_bandwidth_failure_is_not_raised(self):
        await self.tracker.handle_connection(1, "10.0.0.1", 1111)
        self.db.add_bandwidth.side_effect = StoreError("timed out")
        self.assertFalse(await self.tracker.update_bandwidth(1, 1, 1))


class TestDomainEvents(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = make_db()
        self.tracker = ConnectionTracker(self.db)

    async def test_domain_open_and_close_resolve_to_user(self):
        self.db.get_user_id_by_domain.return_value = 5
        await self.tracker.handle_event(ConnectionOpenedByDomain("10.0.0.1", 1111, "example.com"))
        self.assertEqual(self.tracker.state.active_connections, {(5, "10.0.0.1", 1111): 101})

        await self.tracker.handle_event(ConnectionClosedByDomain("10.0.0.1", 1111, "example.com"))
        self.db.close_connection.assert_awaited_once_with(101)
        self.db.get_user_id_by_domain.assert_awaited_with("example.com")

    async def test_unknown_domain_is_dropped(self):
        await self.tracker.handle_event(ConnectionOpenedByDomain("10.0.0.1", 1111, "nobody.example"))
        self.db.create_connection.assert_not_awaited()

    async def test_lookup_failure_is_dropped(self):
        self.db.get_user_id_by_domain.side_effect = StoreError("no such table: users")
        self.assertIsNone(await self.tracker.handle_connection_by_domain("example.com", "10.0.0.1", 1))
        self.assertFalse(await self.tracker.handle_disconnection_by_domain("example.com", "10.0.0.1", 1))


class TestUserLimits(unittest.IsolatedAsyncioTestCase):
    async def test_load_replaces_cache(self):
        db = make_db()
        db.get_active_user_limits.return_value = {1: 2, 3: 1}
        state = TrackerState(user_limits={9: 9})
        tracker = ConnectionTracker(db, state)
        await tracker.load_user_limits()
        self.assertEqual(state.user_limits, {1: 2, 3: 1})

    async def test_failed_refresh_keeps_previous_cache(self):
        db = make_db()
        db.get_active_user_limits.side_effect = StoreError("unable to open database file")
        tracker = ConnectionTracker(db, TrackerState(user_limits={1: 2}))
        self.assertFalse(await tracker.refresh_user_limits())
        self.assertEqual(tracker.state.user_limits, {1: 2})

    async def test_initial_load_failure_raises(self):
        db = make_db()
        db.get_active_user_limits.side_effect = StoreError("unable to open database file")
        with self.assertRaises(StoreError):
            await ConnectionTracker(db).load_user_limits()


if __name__ == '__main__':
    unittest.main()
