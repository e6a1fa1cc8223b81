"""
Hysteria Log Monitor

Tails the Hysteria server log (journalctl or the log file), records
connections and bandwidth per user and enforces per-user connection limits.
"""
import asyncio
import logging
import signal
import sys

from hysteria_admin.config import (
    CLEANUP_INTERVAL, LIMIT_REFRESH_INTERVAL, LOG_FORMAT, LOG_LEVEL,
    RETENTION_DAYS, SHUTDOWN_GRACE
)
from hysteria_admin.db.database import Database, StoreError
from hysteria_admin.monitor.maintenance import start_maintenance
from hysteria_admin.monitor.parser import parse_line
from hysteria_admin.monitor.sources import LogSourceManager
from hysteria_admin.monitor.tracker import ConnectionTracker

logger = logging.getLogger("LogMonitor")

QUEUE_SIZE = 10000  # Lines buffered between the reader and the worker


class LogMonitor:
    def __init__(self, db=None, sources=None, tracker=None, shutdown_grace=SHUTDOWN_GRACE,
                 refresh_interval=LIMIT_REFRESH_INTERVAL, cleanup_interval=CLEANUP_INTERVAL,
                 retention_days=RETENTION_DAYS):
        self.db = db or Database()
        self.sources = sources or LogSourceManager()
        self.tracker = tracker or ConnectionTracker(self.db)
        self.shutdown_grace = shutdown_grace
        self.refresh_interval = refresh_interval
        self.cleanup_interval = cleanup_interval
        self.retention_days = retention_days
        self.queue = None
        self._stop_event = None
        self._reader_task = None
        self._worker_task = None
        self._maintenance_tasks = []

    async def init(self):
        """Connect to the store and load limits. Any StoreError here is fatal."""
        logger.info("Initializing Hysteria Log Monitor...")
        await self.db.connect()
        await self.db.ping()
        logger.info("Database connection established")
        await self.db.init_db()
        await self.tracker.load_user_limits()

    async def process_line(self, line):
        for event in parse_line(line):
            await self.tracker.handle_event(event)

    async def _read_lines(self):
        try:
            async for line in self.sources.lines():
                await self.queue.put(line)
        except Exception as e:
            logger.error(f"Log reader failed: {e}", exc_info=True)
            return
        logger.info(f"Log source stream ended (state: {self.sources.state.value})")

    async def _process_queue(self):
        # Single consumer: events reach the tracker strictly in log order
        while True:
            line = await self.queue.get()
            try:
                await self.process_line(line)
            except Exception as e:
                logger.error(f"Unexpected error processing line {line!r}: {e}", exc_info=True)
            finally:
                self.queue.task_done()

    def start(self):
        self.queue = asyncio.Queue(maxsize=QUEUE_SIZE)
        self._stop_event = asyncio.Event()
        self._worker_task = asyncio.create_task(self._process_queue(), name="event-worker")
        self._reader_task = asyncio.create_task(self._read_lines(), name="log-reader")
        self._maintenance_tasks = start_maintenance(
            self.tracker, self.db,
            refresh_interval=self.refresh_interval,
            cleanup_interval=self.cleanup_interval,
            retention_days=self.retention_days
        )

    def request_stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot install handler for {sig.name}")

    async def run(self):
        try:
            await self.init()
        except BaseException:
            await self.db.close()
            raise

        self.start()
        self._install_signal_handlers()
        logger.info("Hysteria Log Monitor is running...")
        await self._stop_event.wait()
        await self.shutdown()

    async def shutdown(self):
        logger.info("Shutting down log monitor...")
        await self.sources.stop()
        await _cancel(self._reader_task)

        if self.queue is not None:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=self.shutdown_grace)
            except asyncio.TimeoutError:
                logger.warning(f"Shutdown grace period expired with {self.queue.qsize()} lines unprocessed")

        for task in [self._worker_task, *self._maintenance_tasks]:
            await _cancel(task)
        self._maintenance_tasks = []
        await self.db.close()
        logger.info("Log monitor stopped")


async def _cancel(task):
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


def main():
    logging.basicConfig(format=LOG_FORMAT, level=LOG_LEVEL)
    monitor = LogMonitor()
    try:
        asyncio.run(monitor.run())
    except StoreError as e:
        logger.critical(f"Failed to initialize log monitor: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
