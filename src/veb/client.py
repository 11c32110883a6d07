"""Synchronous client for veb.

Connects to daemon servers via Unix domain sockets to send commands
and receive responses, spawning the daemon for a session on first use.
"""

from __future__ import annotations

import logging
import socket
import subprocess
import sys
import time
from typing import Any

from veb.config import VebConfig, load_config
from veb.protocol import (
    BaseCommand,
    ProtocolError,
    Response,
    build_command,
    decode_response,
    encode_command,
    error_response,
)
from veb.session import (
    get_log_path,
    is_session_locked,
    list_sessions,
    read_record,
    resolve_session,
    unregister_session,
    validate_session_name,
)

logger = logging.getLogger(__name__)

_PROBE_TIMEOUT = 1.0
_POLL_INTERVAL = 0.1
_TERMINATE_TIMEOUT = 5.0


class TransportError(Exception):
    """The command could not be exchanged with the daemon."""


class ConnectError(TransportError):
    """No connection could be opened to the daemon's address."""


class DaemonStartError(TransportError):
    """A daemon was spawned but never became ready."""


def _receive_all(sock: socket.socket, buffer_size: int = 65536) -> bytes:
    """Read all data from socket until the connection closes or a newline is found.

    The daemon protocol uses newline-delimited JSON, so we stop reading
    as soon as a complete line has arrived.
    """
    data = b""
    while True:
        chunk = sock.recv(buffer_size)
        if not chunk:
            break
        data += chunk
        if b"\n" in data:
            break
    return data.strip()


def _connect(address: str, timeout: float) -> socket.socket:
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    s.settimeout(timeout)
    try:
        s.connect(address)
    except OSError as e:
        s.close()
        raise ConnectError(f"Cannot connect to {address}: {e}") from e
    return s


def _probe(address: str) -> bool:
    """Return ``True`` if the daemon at *address* accepts connections."""
    try:
        s = _connect(address, _PROBE_TIMEOUT)
    except ConnectError:
        return False
    s.close()
    return True


def _exchange(address: str, command: BaseCommand, timeout: float) -> Response:
    """Send one command over a fresh connection and read its response.

    Raises :class:`ConnectError` if the connection cannot be opened, and
    :class:`TransportError` if it breaks after the command was sent.
    """
    s = _connect(address, timeout)
    try:
        s.sendall(encode_command(command))
        # Read response (may be large for snapshots and screenshots)
        data = _receive_all(s)
    except socket.timeout as e:
        raise TransportError(f"Command timed out after {timeout}s") from e
    except OSError as e:
        raise TransportError(f"Connection to daemon lost: {e}") from e
    finally:
        s.close()

    if not data:
        raise TransportError("Daemon closed the connection without responding")
    try:
        return decode_response(data)
    except ProtocolError as e:
        raise TransportError(f"Malformed response from daemon: {e}") from e


def spawn_daemon(session_name: str, config: VebConfig, timeout: float) -> str:
    """Start the daemon server as a detached subprocess and return its address.

    The daemon is launched by running::

        python -c "from veb.server import start_daemon; ..."

    and is ready once its registry record exists and a probe connection is
    accepted.  Raises :class:`DaemonStartError` if that does not happen
    within *timeout* seconds or the process exits first.
    """
    config_json = config.model_dump_json()

    # stdout/stderr are set to DEVNULL for the subprocess itself because
    # the daemon configures logging to veb-<name>.log internally.
    try:
        proc = subprocess.Popen(
            [
                sys.executable,
                "-c",
                (
                    "from veb.server import start_daemon; "
                    f"start_daemon({session_name!r}, {config_json!r})"
                ),
            ],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as e:
        raise DaemonStartError(f"Cannot spawn daemon for {session_name!r}: {e}") from e

    log_path = get_log_path(session_name)
    start_time = time.monotonic()
    while time.monotonic() - start_time < timeout:
        address = resolve_session(session_name)
        if address is not None and _probe(address):
            return address
        if proc.poll() is not None and not is_session_locked(session_name):
            # A concurrent client may have started the daemon for this name.
            address = resolve_session(session_name)
            if address is not None and _probe(address):
                return address
            raise DaemonStartError(
                f"Daemon for {session_name!r} exited with code {proc.returncode}. "
                f"See {log_path}"
            )
        time.sleep(_POLL_INTERVAL)

    _stop_process(proc)
    raise DaemonStartError(
        f"Daemon for {session_name!r} did not become ready within {timeout}s. "
        f"See {log_path}"
    )


def _stop_process(proc: subprocess.Popen) -> None:
    """Terminate *proc* and reap it, killing it if it ignores SIGTERM."""
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=_TERMINATE_TIMEOUT)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def send(
    session_name: str,
    command: BaseCommand,
    config: VebConfig | None = None,
    timeout: float | None = None,
) -> Response:
    """Deliver *command* to the daemon for *session_name* and return its response.

    The daemon is spawned if the session is not running, or if its recorded
    address refuses connections and no process owns the session any more;
    at most one spawn happens per call.  A refusal from a daemon that still
    owns the session raises :class:`TransportError` instead.
    """
    validate_session_name(session_name)
    if config is None:
        config = load_config()
    if timeout is None:
        timeout = config.timeouts.command

    address = resolve_session(session_name)
    if address is not None:
        try:
            return _exchange(address, command, timeout)
        except ConnectError as e:
            record = read_record(session_name)
            if is_session_locked(session_name):
                # The owning daemon is alive; it is only refusing connections.
                raise TransportError(
                    f"Session {session_name!r} is running but refused the connection: {e}"
                ) from e
            logger.info(f"Session {session_name!r} is not responding ({e}), respawning")
            if record is not None:
                unregister_session(session_name, pid=record["pid"])

    address = spawn_daemon(session_name, config, config.timeouts.startup)
    try:
        return _exchange(address, command, timeout)
    except ConnectError as e:
        return error_response(
            command.id,
            f"Session {session_name!r} started but is not accepting connections: {e}",
        )


def send_command(session_name: str, action: str, /, **fields: Any) -> Response:
    """Build a command for *action* from keyword fields and send it.

    Raises :class:`~veb.protocol.CommandValidationError` before anything is
    sent if the fields are invalid.
    """
    return send(session_name, build_command(action, **fields))


def close_all_sessions(timeout: float | None = None) -> dict[str, Response]:
    """Send ``close`` to every live session and collect the responses.

    Sessions that vanish between listing and closing are skipped; stale
    records are pruned by the listing itself.
    """
    if timeout is None:
        timeout = load_config().timeouts.command
    results: dict[str, Response] = {}
    for name in sorted(list_sessions()):
        address = resolve_session(name)
        if address is None:
            continue
        command = build_command("close")
        try:
            results[name] = _exchange(address, command, timeout)
        except TransportError as e:
            results[name] = error_response(command.id, str(e))
    return results
