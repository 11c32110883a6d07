"""Integration tests for the daemon lifecycle via the client module.

These tests exercise the real subprocess daemon path: send() spawns
``veb.server.start_daemon`` in the background and talks to it over its
Unix domain socket.

All tests are synchronous because the client functions are synchronous.
"""

from __future__ import annotations

import os
import signal
import time

import pytest

from veb.client import close_all_sessions, send, send_command
from veb.config import BrowserConfig, VebConfig
from veb.protocol import build_command
from veb.session import get_log_path, list_sessions, read_record, resolve_session


def _make_config() -> VebConfig:
    """Return a VebConfig suitable for headless container use."""
    return VebConfig(
        browser=BrowserConfig(
            headless=True,
            launch_options={"chromium_sandbox": False},
            context_options={},
        ),
    )


def _cleanup_daemon(session_name: str) -> None:
    """Best-effort cleanup: SIGTERM whatever daemon is still registered."""
    record = read_record(session_name)
    if record:
        try:
            os.kill(record["pid"], signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            pass


@pytest.fixture
def session_name(runtime_dir):
    name = "it"
    yield name
    _cleanup_daemon(name)


@pytest.mark.integration
def test_first_command_spawns_daemon(session_name):
    config = _make_config()

    resp = send(session_name, build_command("navigate", url="about:blank"), config)

    assert resp.success is True
    assert resolve_session(session_name) is not None
    assert get_log_path(session_name).exists()

    closed = send(session_name, build_command("close"), config)
    assert closed.data == {"closed": True}
    assert resolve_session(session_name) is None


@pytest.mark.integration
def test_state_persists_between_clients(session_name):
    config = _make_config()

    send(session_name, build_command("tab_new"), config)
    listed = send(session_name, build_command("tab_list"), config)

    assert len(listed.data["tabs"]) == 2
    assert listed.data["active"] == 1
    send(session_name, build_command("close"), config)


@pytest.mark.integration
def test_dead_daemon_is_replaced(session_name):
    config = _make_config()
    send(session_name, build_command("tab_new"), config)
    old_pid = read_record(session_name)["pid"]

    os.kill(old_pid, signal.SIGKILL)
    time.sleep(0.5)

    listed = send(session_name, build_command("tab_list"), config)
    assert listed.success is True
    assert len(listed.data["tabs"]) == 1
    assert read_record(session_name)["pid"] != old_pid
    send(session_name, build_command("close"), config)


@pytest.mark.integration
def test_sigterm_unregisters(session_name):
    config = _make_config()
    send(session_name, build_command("navigate", url="about:blank"), config)
    pid = read_record(session_name)["pid"]

    os.kill(pid, signal.SIGTERM)
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline and resolve_session(session_name) is not None:
        time.sleep(0.1)

    assert resolve_session(session_name) is None


@pytest.mark.integration
def test_close_all_sessions(runtime_dir, monkeypatch):
    monkeypatch.chdir(runtime_dir)
    config = _make_config()
    for name in ("one", "two"):
        send(name, build_command("navigate", url="about:blank"), config)

    assert list_sessions() == {"one", "two"}
    results = close_all_sessions(timeout=30)

    assert sorted(results) == ["one", "two"]
    assert all(r.success for r in results.values())
    assert list_sessions() == set()


@pytest.mark.integration
def test_send_command_with_loaded_config(runtime_dir, monkeypatch):
    monkeypatch.chdir(runtime_dir)
    monkeypatch.setenv("VEB_NO_SANDBOX", "1")
    try:
        resp = send_command("env-session", "navigate", url="about:blank")
        assert resp.success is True
    finally:
        send_command("env-session", "close")
