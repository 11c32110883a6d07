"""Shared fixtures for veb tests."""

from __future__ import annotations

import json
import shutil
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from veb.browser import BrowserManager
from veb.config import VebConfig


@pytest.fixture
def runtime_dir(monkeypatch):
    """Point VEB_RUNTIME_DIR at a fresh short temp dir.

    Unix socket paths are limited to ~104 bytes, so pytest's tmp_path can
    be too long for the socket files.
    """
    path = tempfile.mkdtemp(prefix="veb-")
    monkeypatch.setenv("VEB_RUNTIME_DIR", path)
    monkeypatch.delenv("VEB_SESSION", raising=False)
    yield Path(path)
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def default_config():
    """Return a default VebConfig instance."""
    return VebConfig()


@pytest.fixture
def config_file(tmp_path):
    """Write a config JSON file and return its path."""
    config = {
        "browser": {
            "browser_name": "firefox",
            "headless": False,
        },
        "timeouts": {"startup": 5},
        "log_level": "debug",
    }
    path = tmp_path / "test-config.json"
    path.write_text(json.dumps(config), encoding="utf-8")
    return path


def make_page(url: str = "https://example.com", title: str = "Example") -> MagicMock:
    """A MagicMock standing in for a Playwright Page."""
    page = MagicMock()
    page.url = url
    page.title = AsyncMock(return_value=title)
    page.goto = AsyncMock()
    page.evaluate = AsyncMock(return_value=None)
    page.screenshot = AsyncMock(return_value=b"\x89PNG")
    page.content = AsyncMock(return_value="<html></html>")
    page.close = AsyncMock()
    page.bring_to_front = AsyncMock()
    page.set_viewport_size = AsyncMock()
    page.wait_for_selector = AsyncMock()
    page.wait_for_timeout = AsyncMock()
    page.wait_for_load_state = AsyncMock()
    page.select_option = AsyncMock(return_value=["red"])
    page.hover = AsyncMock()

    # Keyboard
    page.keyboard = MagicMock()
    page.keyboard.press = AsyncMock()

    # Locator
    locator = MagicMock()
    locator.click = AsyncMock()
    locator.fill = AsyncMock()
    locator.press = AsyncMock()
    locator.press_sequentially = AsyncMock()
    locator.screenshot = AsyncMock(return_value=b"\x89PNG")
    locator.evaluate = AsyncMock()
    locator.scroll_into_view_if_needed = AsyncMock()
    locator.inner_html = AsyncMock(return_value="<b>hi</b>")
    locator.aria_snapshot = AsyncMock(return_value='- heading "Example Domain" [level=1]')
    page.locator = MagicMock(return_value=locator)

    return page


@pytest.fixture
def page_factory():
    return make_page


@pytest.fixture
def mock_page():
    return make_page()


@pytest.fixture
def mock_context(mock_page):
    """A MagicMock standing in for a Playwright BrowserContext.

    ``new_page`` returns a distinct page on every call.
    """
    ctx = MagicMock()
    ctx.pages = [mock_page]
    ctx.new_page = AsyncMock(
        side_effect=lambda: make_page("about:blank", "")
    )
    ctx.close = AsyncMock()
    ctx.set_default_timeout = MagicMock()
    ctx.set_default_navigation_timeout = MagicMock()
    ctx.on = MagicMock()
    return ctx


@pytest.fixture
def mock_browser(mock_context):
    """A MagicMock standing in for a Playwright Browser."""
    browser = MagicMock()
    browser.new_context = AsyncMock(return_value=mock_context)
    browser.close = AsyncMock()
    browser.on = MagicMock()
    browser.contexts = [mock_context]
    return browser


@pytest.fixture
def mock_playwright(mock_browser):
    """A MagicMock standing in for the started Playwright driver."""
    pw = MagicMock()
    pw.chromium.launch = AsyncMock(return_value=mock_browser)
    pw.firefox.launch = AsyncMock(return_value=mock_browser)
    pw.webkit.launch = AsyncMock(return_value=mock_browser)
    pw.stop = AsyncMock()
    return pw


@pytest.fixture
def browser_manager(default_config, mock_page, mock_context, mock_browser):
    """A BrowserManager with mocked Playwright objects pre-wired."""
    manager = BrowserManager(default_config)
    manager.playwright = MagicMock()
    manager.playwright.stop = AsyncMock()
    manager.browser = mock_browser
    manager.context = mock_context
    manager.pages = [mock_page]
    manager.active_page_index = 0
    manager._usable = True
    return manager
