"""Asyncio daemon server for veb.

One daemon process serves one named session.  It owns a
:class:`~veb.browser.BrowserManager`, listens on the session's Unix domain
socket and answers one newline-delimited JSON command per connection.

Lifecycle::

    STARTING -> LISTENING <-> BUSY -> SHUTTING_DOWN -> STOPPED

Commands are decoded and validated as soon as they arrive, but they execute
one at a time behind a FIFO lock, so every client sees a single total order
of browser operations.  The ``close`` action releases the browser,
unregisters the session and unbinds the socket before its response is
written; the process then exits.

The daemon is started as a background process by ``start_daemon`` (spawned
from ``client.py``).
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import os
import signal
import sys
import time
from typing import IO, Any

from veb.actions import execute_command
from veb.browser import BrowserManager
from veb.config import VebConfig
from veb.protocol import (
    CloseCommand,
    CommandValidationError,
    ProtocolError,
    Response,
    decode_command,
    encode_response,
    error_response,
)
from veb.session import (
    RegistryError,
    acquire_session_lock,
    get_log_path,
    get_socket_path,
    read_record,
    register_session,
    release_session_lock,
    resolve_session,
    unregister_session,
)

logger = logging.getLogger("veb.server")

_READ_LIMIT = 16 * 1024 * 1024
_READ_TIMEOUT = 30.0
_DRAIN_TIMEOUT = 5.0
_LOCK_ATTEMPTS = 5
_LOCK_RETRY_INTERVAL = 0.1


class DaemonState(enum.Enum):
    STARTING = "starting"
    LISTENING = "listening"
    BUSY = "busy"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class SessionActiveError(Exception):
    """Another live daemon already serves this session name."""


class Daemon:
    """A single session's daemon: browser, socket endpoint and command gate."""

    def __init__(
        self,
        session_name: str,
        config: VebConfig,
        browser: BrowserManager | None = None,
    ) -> None:
        self.session_name = session_name
        self.config = config
        self.browser = browser or BrowserManager(config)
        self.browser.on_lost = self._on_browser_lost
        self.socket_path = get_socket_path(session_name)
        self.state = DaemonState.STARTING
        self.server: asyncio.AbstractServer | None = None
        self._lock: IO[str] | None = None
        self.last_command_time = time.monotonic()

        self._gate = asyncio.Lock()
        self._stopped = asyncio.Event()
        self._background: set[asyncio.Task] = set()

    @property
    def is_stopped(self) -> bool:
        return self.state is DaemonState.STOPPED

    # -- Startup -------------------------------------------------------------

    async def start(self) -> None:
        """Claim the session, launch the browser, bind, register, then serve.

        The ownership lock is taken before the check for a live predecessor
        and held until :meth:`shutdown` finishes.  The socket does not accept
        connections until the registry record is written; any startup
        failure tears everything down again.
        """
        self._lock = await self._claim_session()
        browser_opened = False
        try:
            if resolve_session(self.session_name) is not None:
                raise SessionActiveError(
                    f"Session {self.session_name!r} is already served by another daemon"
                )

            browser_opened = True
            await self.browser.open()

            # Remove stale socket
            self._unlink_socket()
            self.server = await asyncio.start_unix_server(
                self._handle_client,
                path=str(self.socket_path),
                limit=_READ_LIMIT,
                start_serving=False,
            )
            os.chmod(self.socket_path, 0o600)

            register_session(self.session_name, str(self.socket_path), os.getpid())
        except BaseException as e:
            if isinstance(e, RegistryError):
                logger.exception("Cannot register session, aborting startup")
            await self._abort_startup(browser_opened)
            raise

        await self.server.start_serving()
        self.state = DaemonState.LISTENING
        logger.info(f"Daemon for {self.session_name!r} listening on {self.socket_path}")

    async def _claim_session(self) -> IO[str]:
        for _ in range(_LOCK_ATTEMPTS):
            lock_file = acquire_session_lock(self.session_name)
            if lock_file is not None:
                return lock_file
            await asyncio.sleep(_LOCK_RETRY_INTERVAL)
        self.state = DaemonState.STOPPED
        self._stopped.set()
        raise SessionActiveError(
            f"Session {self.session_name!r} is owned by another daemon"
        )

    async def _abort_startup(self, browser_opened: bool) -> None:
        if self.server is not None:
            self.server.close()
            self._unlink_socket()
        if browser_opened:
            await self._release_browser()
        self._release_lock()
        self.state = DaemonState.STOPPED
        self._stopped.set()

    async def serve(self) -> None:
        """Serve until the daemon stops, then wait for open connections to finish."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, f"signal {sig.name}")
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug(f"Cannot install handler for {sig.name}")

        if self.config.timeouts.idle > 0:
            self._spawn(self._idle_watcher())

        try:
            await self._stopped.wait()
            if self.server is not None:
                try:
                    await asyncio.wait_for(self.server.wait_closed(), _DRAIN_TIMEOUT)
                except asyncio.TimeoutError:
                    logger.warning("Open connections did not finish in time")
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError, ValueError):
                    pass
            for task in list(self._background):
                task.cancel()
        logger.info("Daemon stopped")

    # -- Connections ---------------------------------------------------------

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            try:
                data = await asyncio.wait_for(reader.readline(), _READ_TIMEOUT)
            except ValueError as e:
                # StreamReader.readline raises ValueError past the read limit
                await self._reply(writer, error_response(None, f"Command too large: {e}"))
                return
            if not data.strip():
                # Readiness probe or client gave up before sending
                return

            self.last_command_time = time.monotonic()
            response = await self.process(data)
            await self._reply(writer, response)
        except asyncio.TimeoutError:
            logger.warning("Client connection timed out before sending a command")
        except ConnectionError:
            logger.warning("Client disconnected before the response was written")
        except Exception:
            logger.exception("Unhandled error in handle_client")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def _reply(self, writer: asyncio.StreamWriter, response: Response) -> None:
        writer.write(encode_response(response))
        await writer.drain()

    async def process(self, data: bytes) -> Response:
        """Decode one command line, run it behind the gate and return the response."""
        try:
            command = decode_command(data)
        except ProtocolError as e:
            logger.warning(f"Protocol error: {e}")
            return error_response(None, str(e))
        except CommandValidationError as e:
            logger.warning(f"Rejected command {e.command_id}: {e}")
            return error_response(e.command_id, str(e))

        logger.debug(f"Received command: {command.action} ({command.id})")
        async with self._gate:
            if self.state in (DaemonState.SHUTTING_DOWN, DaemonState.STOPPED):
                return error_response(command.id, "Daemon is shutting down")

            self.state = DaemonState.BUSY
            try:
                response = await execute_command(command, self.browser)
            finally:
                if self.state is DaemonState.BUSY:
                    self.state = DaemonState.LISTENING

            if isinstance(command, CloseCommand):
                logger.info("Close command received, shutting down")
                await self.shutdown("close command")
            elif not self.browser.is_usable:
                await self.shutdown("browser is no longer usable")
            return response

    # -- Shutdown ------------------------------------------------------------

    async def shutdown(self, reason: str) -> None:
        """Release the browser, unregister and unbind.  Idempotent.

        Does not take the command gate; callers outside a command use
        :meth:`request_shutdown`.
        """
        if self.state in (DaemonState.SHUTTING_DOWN, DaemonState.STOPPED):
            await self._stopped.wait()
            return
        self.state = DaemonState.SHUTTING_DOWN
        logger.info(f"Shutting down session {self.session_name!r}: {reason}")
        try:
            await self._release_browser()
        finally:
            record = read_record(self.session_name)
            owns_address = record is None or record["pid"] == os.getpid()
            try:
                unregister_session(self.session_name, pid=os.getpid())
            except RegistryError:
                logger.exception("Failed to unregister session")
            if self.server is not None:
                self.server.close()
            if owns_address:
                self._unlink_socket()
            else:
                logger.warning(
                    f"Session {self.session_name!r} was taken over by pid {record['pid']}, "
                    "leaving its socket in place"
                )
            self._release_lock()
            self.state = DaemonState.STOPPED
            self._stopped.set()

    def request_shutdown(self, reason: str, wait_for_gate: bool = True) -> None:
        """Schedule a shutdown from outside a command (signal, idle, browser loss).

        With *wait_for_gate* the running command and everything queued
        before the request finish first.
        """
        if self.state in (DaemonState.SHUTTING_DOWN, DaemonState.STOPPED):
            return

        async def _run() -> None:
            if wait_for_gate:
                async with self._gate:
                    await self.shutdown(reason)
            else:
                await self.shutdown(reason)

        self._spawn(_run())

    def _on_browser_lost(self) -> None:
        # The browser is gone; a command holding the gate would fail anyway.
        self.request_shutdown("browser lost", wait_for_gate=False)

    async def _release_browser(self) -> None:
        if self.browser.playwright is None:
            return
        try:
            await self.browser.close()
        except Exception:
            logger.exception("Error while closing browser")

    def _release_lock(self) -> None:
        if self._lock is not None:
            release_session_lock(self._lock)
            self._lock = None

    def _unlink_socket(self) -> None:
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass

    async def _idle_watcher(self) -> None:
        """Shut down after ``timeouts.idle`` seconds without a command."""
        idle_timeout = self.config.timeouts.idle
        interval = min(idle_timeout, 30.0)
        while self.state not in (DaemonState.SHUTTING_DOWN, DaemonState.STOPPED):
            await asyncio.sleep(interval)
            idle_time = time.monotonic() - self.last_command_time
            if idle_time > idle_timeout and not self._gate.locked():
                logger.info(
                    f"Idle timeout reached ({idle_time:.0f}s > {idle_timeout:.0f}s)"
                )
                self.request_shutdown("idle timeout")
                return

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------


async def run_server(
    session_name: str,
    config: VebConfig,
    browser: BrowserManager | None = None,
) -> None:
    """Main daemon entry point. Creates the Daemon and serves until it stops."""
    daemon = Daemon(session_name, config, browser)
    logger.info(f"Daemon created for {session_name!r}")
    await daemon.start()
    await daemon.serve()


def _setup_logging(session_name: str, level: str = "INFO") -> None:
    """Configure logging for the daemon process.

    Writes to ``<runtime dir>/veb-<name>.log``.  Also redirects
    *stdout*/*stderr* so that any stray ``print()`` calls or unhandled
    tracebacks land in the same file.
    """
    log_path = get_log_path(session_name)
    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    # Redirect stdout/stderr so print() and unhandled exceptions also appear
    sys.stdout = open(log_path, "a", encoding="utf-8")  # noqa: SIM115
    sys.stderr = sys.stdout


def start_daemon(session_name: str, config_dict: dict[str, Any] | str) -> None:
    """Entry point for the daemon subprocess. Called by client.py."""
    parsed: dict[str, Any] = (
        json.loads(config_dict) if isinstance(config_dict, str) else config_dict
    )
    config = VebConfig(**parsed)
    _setup_logging(session_name, config.log_level)
    logger.info(f"Daemon starting for session {session_name!r} (pid={os.getpid()})")
    try:
        asyncio.run(run_server(session_name, config))
    except (RegistryError, SessionActiveError) as e:
        logger.error(f"Daemon startup aborted: {e}")
        sys.exit(1)
    except Exception:
        logger.exception("Daemon crashed")
        raise
