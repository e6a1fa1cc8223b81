import asyncio
import datetime
import logging

from hysteria_admin.config import CLEANUP_INTERVAL, LIMIT_REFRESH_INTERVAL, RETENTION_DAYS
from hysteria_admin.db.database import StoreError, utcnow

logger = logging.getLogger(__name__)


async def cleanup_old_connections(db, retention_days=RETENTION_DAYS, now=None):
    """
    Remove connection records older than the retention window.

    Open and closed records are treated alike. Tracked open connections are
    left in the tracker; their eventual close simply finds no row.

    Returns:
        int: number of deleted records, or None if the store call failed
    """
    cutoff = (now or utcnow()) - datetime.timedelta(days=retention_days)
    try:
        deleted = await db.delete_connections_before(cutoff)
    except StoreError as e:
        logger.error(f"Error cleaning up old connections: {e}")
        return None
    if deleted > 0:
        logger.info(f"Cleaned up {deleted} old connections")
    return deleted


async def run_periodically(name, interval, job):
    """Await job() every interval seconds until cancelled. Failures never end the loop."""
    while True:
        await asyncio.sleep(interval)
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{name} error: {e}", exc_info=True)


def start_maintenance(tracker, db, refresh_interval=LIMIT_REFRESH_INTERVAL,
                      cleanup_interval=CLEANUP_INTERVAL, retention_days=RETENTION_DAYS):
    """Start the limit refresh and retention sweep timers; returns their tasks."""
    return [
        asyncio.create_task(
            run_periodically("Limit refresh", refresh_interval, tracker.refresh_user_limits),
            name="limit-refresh"
        ),
        asyncio.create_task(
            run_periodically(
                "Connection cleanup", cleanup_interval,
                lambda: cleanup_old_connections(db, retention_days)
            ),
            name="connection-cleanup"
        ),
    ]
