"""Session registry for veb.

Every running daemon is recorded on disk so that short-lived clients can
find it.  All files live in one shared runtime directory (``$VEB_RUNTIME_DIR``
or the system temp dir):

    /tmp/
      veb-default.json      # {"name": ..., "pid": ..., "address": ...}
      veb-default.sock      # Unix domain socket the daemon listens on
      veb-default.log       # daemon log
      veb-default.lock      # held by the owning daemon for its whole life
      veb-work.json
      veb-work.sock
      veb-work.log

A record is written atomically (temp file + ``os.replace``), so a resolver
never sees half of one.  A record whose pid is gone is stale: resolving or
listing it deletes it together with the leftover socket file.

A daemon holds an exclusive ``flock`` on its ``.lock`` file from before it
checks for a live predecessor until after it has unregistered, so at most
one daemon owns a name at any time.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------

_FILE_PREFIX = "veb-"
_RECORD_SUFFIX = ".json"
_SOCKET_SUFFIX = ".sock"
_LOG_SUFFIX = ".log"
_LOCK_SUFFIX = ".lock"
_ENV_RUNTIME_DIR = "VEB_RUNTIME_DIR"
_ENV_SESSION_VAR = "VEB_SESSION"
_DEFAULT_SESSION = "default"
_SESSION_NAME_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


class RegistryError(Exception):
    """The registry record could not be written or removed."""


def validate_session_name(name: str) -> str:
    """Return *name* unchanged, or raise ``ValueError`` if it is unusable.

    Names become part of file names, so only letters, digits, ``.``, ``_``
    and ``-`` are accepted.
    """
    if not _SESSION_NAME_RE.match(name) or name in (".", ".."):
        raise ValueError(
            f"Invalid session name {name!r}: use 1-64 letters, digits, '.', '_' or '-'"
        )
    return name


def get_runtime_dir() -> Path:
    """Return the directory holding records, sockets and logs, creating it if needed."""
    override = os.environ.get(_ENV_RUNTIME_DIR, "").strip()
    runtime_dir = Path(override) if override else Path(tempfile.gettempdir())
    runtime_dir.mkdir(parents=True, exist_ok=True)
    return runtime_dir


def get_record_path(name: str) -> Path:
    """Return the registry record path for session *name*."""
    return get_runtime_dir() / f"{_FILE_PREFIX}{validate_session_name(name)}{_RECORD_SUFFIX}"


def get_socket_path(name: str) -> Path:
    """Return the Unix domain socket path for session *name*."""
    return get_runtime_dir() / f"{_FILE_PREFIX}{validate_session_name(name)}{_SOCKET_SUFFIX}"


def get_log_path(name: str) -> Path:
    """Return the daemon log path for session *name*."""
    return get_runtime_dir() / f"{_FILE_PREFIX}{validate_session_name(name)}{_LOG_SUFFIX}"


def get_lock_path(name: str) -> Path:
    """Return the ownership lock file path for session *name*."""
    return get_runtime_dir() / f"{_FILE_PREFIX}{validate_session_name(name)}{_LOCK_SUFFIX}"


# ---------------------------------------------------------------------------
# Ownership lock
# ---------------------------------------------------------------------------


def acquire_session_lock(name: str) -> IO[str] | None:
    """Take the exclusive ownership lock for *name* without blocking.

    Returns the open lock file, which must stay open for as long as the
    caller owns the session, or ``None`` if another process holds it.  The
    kernel drops the lock when the holder exits, however it exits.  The lock
    file itself is never deleted.
    """
    lock_file = open(get_lock_path(name), "a", encoding="utf-8")  # noqa: SIM115
    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        lock_file.close()
        return None
    except OSError:
        lock_file.close()
        raise
    return lock_file


def release_session_lock(lock_file: IO[str]) -> None:
    """Release a lock taken by :func:`acquire_session_lock`."""
    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
    finally:
        lock_file.close()


def is_session_locked(name: str) -> bool:
    """Return ``True`` if some process currently owns session *name*."""
    if not get_lock_path(name).exists():
        return False
    lock_file = acquire_session_lock(name)
    if lock_file is None:
        return True
    release_session_lock(lock_file)
    return False


# ---------------------------------------------------------------------------
# PID liveness
# ---------------------------------------------------------------------------


def is_pid_alive(pid: int) -> bool:
    """Return ``True`` if a process with *pid* exists.

    Uses ``os.kill(pid, 0)`` which checks for process existence without
    sending a signal.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Process exists but belongs to another user
        return True
    return True


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def read_record(name: str) -> dict | None:
    """Read the raw record for *name*.

    Returns ``None`` if the file is missing or does not hold a valid record.
    """
    path = get_record_path(name)
    try:
        record = json.loads(path.read_text(encoding="utf-8"))
    except (FileNotFoundError, ValueError):
        return None
    if not isinstance(record, dict):
        return None
    if not isinstance(record.get("pid"), int) or not isinstance(record.get("address"), str):
        return None
    return record


def register_session(name: str, address: str, pid: int) -> None:
    """Persist the ``(name, address, pid)`` triple, replacing any older record.

    The record is written to a temp file in the runtime dir and renamed into
    place, so concurrent readers see either the old record or the new one.
    Raises :class:`RegistryError` if the record cannot be written.
    """
    path = get_record_path(name)
    payload = json.dumps({"name": name, "pid": pid, "address": address})
    try:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise RegistryError(f"Cannot register session {name!r} at {path}: {e}") from e
    logger.debug(f"Registered session {name!r} pid={pid} address={address}")


def unregister_session(name: str, pid: int | None = None) -> None:
    """Remove the record for *name*.  Idempotent.

    When *pid* is given the record is only removed if it still belongs to
    that process, so an exiting daemon never deletes a successor's record.
    """
    path = get_record_path(name)
    if pid is not None:
        record = read_record(name)
        if record is not None and record["pid"] != pid:
            logger.debug(
                f"Not unregistering {name!r}: record belongs to pid {record['pid']}"
            )
            return
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        raise RegistryError(f"Cannot unregister session {name!r}: {e}") from e


def _prune(name: str) -> None:
    """Delete a stale record and its leftover socket file."""
    logger.debug(f"Pruning stale session {name!r}")
    for path in (get_record_path(name), get_socket_path(name)):
        try:
            path.unlink()
        except FileNotFoundError:
            pass


def resolve_session(name: str) -> str | None:
    """Return the transport address of the live daemon for *name*.

    Returns ``None`` when no record exists or the recorded process is dead;
    in the latter case the stale record is removed.
    """
    path = get_record_path(name)
    if not path.exists():
        return None
    record = read_record(name)
    if record is None or not is_pid_alive(record["pid"]):
        _prune(name)
        return None
    return record["address"]


def list_sessions() -> set[str]:
    """Return the names of all sessions whose daemon is alive.

    Stale records found along the way are removed.
    """
    names: set[str] = set()
    for entry in get_runtime_dir().glob(f"{_FILE_PREFIX}*{_RECORD_SUFFIX}"):
        name = entry.name[len(_FILE_PREFIX) : -len(_RECORD_SUFFIX)]
        try:
            validate_session_name(name)
        except ValueError:
            continue
        if resolve_session(name) is not None:
            names.add(name)
    return names


# ---------------------------------------------------------------------------
# Session name resolution
# ---------------------------------------------------------------------------


def resolve_session_name(explicit: str | None = None) -> str:
    """Determine which session name to use.

    Priority (highest to lowest):

    1. Explicit *explicit* argument (if not ``None`` and not empty).
    2. The ``VEB_SESSION`` environment variable.
    3. ``"default"``.
    """
    if explicit:
        return validate_session_name(explicit)
    env_value = os.environ.get(_ENV_SESSION_VAR, "").strip()
    if env_value:
        return validate_session_name(env_value)
    return _DEFAULT_SESSION
