"""
Log line sources for the monitor.

Lines come either from ``journalctl -f`` for the Hysteria unit or, when that
is not possible, from polling the server's log file. LogSourceManager picks
between them and only ever feeds lines from one source at a time.
"""
import asyncio
import enum
import logging
import os

from hysteria_admin.config import (
    FALLBACK_DELAY, FILE_POLL_INTERVAL, HYSTERIA_LOG_PATH,
    HYSTERIA_SERVICE, SOURCE_RETRY_INTERVAL
)

logger = logging.getLogger(__name__)

STREAM_LIMIT = 1024 * 1024  # Longest journal line we accept, in bytes
STOP_TIMEOUT = 5  # Seconds to wait for journalctl to exit after SIGTERM
READ_CHUNK = 64 * 1024
MAX_POLL_BYTES = 1024 * 1024  # Per poll, so a large backlog is fed in batches


class SourceState(enum.Enum):
    DISABLED = "disabled"
    USING_PROCESS = "process"
    USING_FILE = "file"


class JournalSource:
    """Follows a systemd unit's output through a journalctl subprocess."""

    def __init__(self, unit=HYSTERIA_SERVICE, command=None):
        self.unit = unit
        # -n 0: follow new entries only, a restart must not replay the journal tail
        self.command = command or ['journalctl', '-u', unit, '-f', '-n', '0', '--no-pager', '-o', 'cat']
        self.process = None
        self._stderr_task = None

    async def start(self):
        """Spawn the process. Returns False if this host cannot run it."""
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT
            )
        except OSError as e:
            logger.warning(f"{self.command[0]} not available: {e}")
            self.process = None
            return False

        self._stderr_task = asyncio.create_task(self._drain_stderr(self.process))
        logger.info(f"Monitoring via {' '.join(self.command)} (pid {self.process.pid})")
        return True

    async def _drain_stderr(self, process):
        while True:
            try:
                raw = await process.stderr.readline()
            except ValueError:
                continue
            if not raw:
                break
            logger.warning(f"{self.command[0]} error: {raw.decode('utf-8', errors='replace').rstrip()}")

    async def lines(self):
        """Yield stdout lines until the process exits."""
        process = self.process
        if process is None:
            return
        while True:
            try:
                raw = await process.stdout.readline()
            except ValueError as e:
                # Line longer than STREAM_LIMIT; the reader has already discarded it
                logger.debug(f"Skipping oversized journal line: {e}")
                continue
            if not raw:
                break
            yield raw.decode('utf-8', errors='replace')
        code = await process.wait()
        logger.warning(f"{self.command[0]} process exited with code {code}")

    async def stop(self):
        process, self.process = self.process, None
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
            self._stderr_task = None


class LogFileSource:
    """
    Polled tail of a log file, addressed by path.

    Tracks the inode and read offset of the open handle:
        - appended bytes are read from the last offset
        - a file that shrank was truncated; reading restarts at 0
        - a different inode at the path means rotation; the old handle is
          drained, then the new file is opened and read from its start
    Bytes after the last newline stay buffered until the line is completed.
    """

    def __init__(self, path=HYSTERIA_LOG_PATH, start_at_end=True):
        self.path = path
        self.start_at_end = start_at_end
        self.handle = None
        self.identity = None
        self.position = 0
        self.buffer = b''
        self.backlog = False
        self._opened_before = False
        self._resume = None

    def open(self):
        """Open the file by path. Returns False if it cannot be read."""
        try:
            handle = open(self.path, 'rb')
        except OSError as e:
            logger.warning(f"Failed to open log file {self.path}: {e}")
            return False
        try:
            stat = os.fstat(handle.fileno())
        except OSError as e:
            handle.close()
            logger.warning(f"Failed to stat log file {self.path}: {e}")
            return False

        identity = (stat.st_dev, stat.st_ino)
        resume, self._resume = self._resume, None
        self.handle = handle
        self.identity = identity
        if resume is not None and resume[0] == identity and resume[1] <= stat.st_size:
            # Same file as before a read error: carry on where we stopped
            self.position = resume[1]
        else:
            # Only the very first open may skip history; a rotated-in file is new data
            if self.start_at_end and not self._opened_before:
                self.position = stat.st_size
            else:
                self.position = 0
            self.buffer = b''
        self.backlog = False
        self._opened_before = True
        logger.info(f"Monitoring log file {self.path} from offset {self.position}")
        return True

    def close(self):
        if self.handle is not None:
            self.handle.close()
        self.handle = None
        self.identity = None
        self.backlog = False

    def _suspend(self):
        """Drop the handle after an I/O error, remembering where reading stopped."""
        if self.handle is not None:
            self._resume = (self.identity, self.position)
        self.close()

    def poll(self):
        """
        Return the complete lines that appeared since the previous poll.

        At most MAX_POLL_BYTES are consumed per call; ``backlog`` is True when
        more data was left unread. I/O errors are logged and the file is
        reopened by path on the next poll.
        """
        lines = []
        if self.handle is None:
            if not os.path.exists(self.path) or not self.open():
                return lines
        try:
            self._poll_into(lines)
        except OSError as e:
            logger.warning(f"Error reading log file {self.path}, reopening on next poll: {e}")
            self._suspend()
        return lines

    def _poll_into(self, lines):
        try:
            stat = os.stat(self.path)
        except FileNotFoundError:
            logger.warning(f"Log file {self.path} disappeared, waiting for it to come back")
            self._read_available(lines, final=True)
            self.close()
            return

        if (stat.st_dev, stat.st_ino) != self.identity:
            logger.info(f"Log rotation detected for {self.path}, reopening")
            self._read_available(lines, final=True)
            self.close()
            if not self.open():
                return
        elif stat.st_size < self.position:
            logger.info(f"Log truncation detected for {self.path}, reading from start")
            self.position = 0
            self.buffer = b''

        self._read_available(lines)

    def _read_available(self, lines, final=False):
        """Append complete lines to ``lines``, reading in READ_CHUNK pieces."""
        self.handle.seek(self.position)
        consumed = 0
        self.backlog = False
        while True:
            if not final and consumed >= MAX_POLL_BYTES:
                self.backlog = True
                break
            chunk = self.handle.read(READ_CHUNK)
            if not chunk:
                break
            consumed += len(chunk)
            self.position += len(chunk)
            parts = (self.buffer + chunk).split(b'\n')
            self.buffer = parts.pop()
            lines.extend(part.decode('utf-8', errors='replace') for part in parts)

        if final and self.buffer:
            # Nothing more will be appended to this handle
            lines.append(self.buffer.decode('utf-8', errors='replace'))
            self.buffer = b''


class LogSourceManager:
    """
    State machine over the two sources.

    DISABLED -> USING_PROCESS when journalctl starts
    DISABLED -> USING_FILE when journalctl cannot start but the file opens
    USING_PROCESS -> USING_FILE (or DISABLED) after the process exits and
        ``fallback_delay`` has passed
    USING_FILE -> USING_PROCESS when a periodic retry starts journalctl
    USING_FILE -> DISABLED when polling the file raises
    DISABLED -> retry both every ``retry_interval``; with retries off the
        line stream simply ends
    """

    def __init__(self, process_source=None, file_source=None, fallback_delay=FALLBACK_DELAY,
                 retry_interval=SOURCE_RETRY_INTERVAL, poll_interval=FILE_POLL_INTERVAL):
        self.process_source = process_source or JournalSource()
        self.file_source = file_source or LogFileSource()
        self.fallback_delay = fallback_delay
        self.retry_interval = retry_interval
        self.poll_interval = poll_interval
        self.state = SourceState.DISABLED
        self._stopped = asyncio.Event()

    def _enter(self, state):
        if state != self.state:
            logger.info(f"Log source: {self.state.value} -> {state.value}")
        self.state = state
        if state == SourceState.DISABLED:
            logger.warning(
                "Log monitoring disabled. Configure journalctl access or HYSTERIA_LOG_PATH."
            )

    async def _wait(self, delay):
        """Sleep for delay seconds; True if stop() was called meanwhile."""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _activate(self):
        if await self.process_source.start():
            return SourceState.USING_PROCESS
        logger.info("journalctl not available, falling back to file monitoring")
        if self.file_source.open():
            return SourceState.USING_FILE
        return SourceState.DISABLED

    async def lines(self):
        """Yield raw log lines, in order, from whichever source is active."""
        loop = asyncio.get_running_loop()
        self._enter(await self._activate())
        try:
            while not self._stopped.is_set():
                if self.state == SourceState.USING_PROCESS:
                    try:
                        async for line in self.process_source.lines():
                            yield line
                            if self._stopped.is_set():
                                break
                    except Exception as e:
                        logger.error(f"Process source failed: {e}", exc_info=True)
                    await self.process_source.stop()
                    if self._stopped.is_set():
                        break
                    logger.warning(f"Process source ended, falling back to file in {self.fallback_delay}s")
                    if await self._wait(self.fallback_delay):
                        break
                    self._enter(SourceState.USING_FILE if self.file_source.open() else SourceState.DISABLED)

                elif self.state == SourceState.USING_FILE:
                    next_retry = loop.time() + self.retry_interval if self.retry_interval > 0 else None
                    while not self._stopped.is_set():
                        try:
                            batch = self.file_source.poll()
                        except Exception as e:
                            logger.error(f"File source failed: {e}", exc_info=True)
                            self.file_source.close()
                            self._enter(SourceState.DISABLED)
                            break
                        for line in batch:
                            yield line
                            if self._stopped.is_set():
                                break
                        if next_retry is not None and loop.time() >= next_retry:
                            next_retry = loop.time() + self.retry_interval
                            if await self.process_source.start():
                                self.file_source.close()
                                self._enter(SourceState.USING_PROCESS)
                                break
                        delay = 0 if self.file_source.backlog else self.poll_interval
                        if await self._wait(delay):
                            break

                else:
                    if self.retry_interval <= 0:
                        break
                    if await self._wait(self.retry_interval):
                        break
                    self._enter(await self._activate())
        finally:
            await self._release()

    async def _release(self):
        await self.process_source.stop()
        self.file_source.close()

    async def stop(self):
        """Stop producing lines and release whichever source is open."""
        self._stopped.set()
        await self._release()
