"""Shared fixtures for veb integration tests.

These fixtures launch a real headless Chromium browser via Patchright.
Every test gets a fresh browser instance (function-scoped) for isolation.
"""

from __future__ import annotations

import urllib.parse

import pytest

from veb.browser import BrowserManager
from veb.config import BrowserConfig, VebConfig

# ---------------------------------------------------------------------------
# Test HTML page served via data: URL (no external HTTP server needed)
# ---------------------------------------------------------------------------

TEST_HTML = "data:text/html," + urllib.parse.quote(
    """<html><head><title>Test Page</title></head><body>
<h1>Test Page</h1>
<p id="status">waiting</p>
<input type="text" id="name" placeholder="Enter name">
<button id="go" onclick="document.getElementById('status').textContent='clicked'">Go</button>
<select id="color"><option value="red">Red</option><option value="blue">Blue</option></select>
<div style="height: 3000px"></div>
</body></html>"""
)


@pytest.fixture
def integration_config() -> VebConfig:
    """VebConfig for headless Chromium without the sandbox (container friendly)."""
    return VebConfig(
        browser=BrowserConfig(
            headless=True,
            launch_options={"chromium_sandbox": False},
            context_options={},
        ),
    )


@pytest.fixture
async def real_browser(integration_config: VebConfig):
    """Launch a real browser, yield the BrowserManager, close it afterwards."""
    manager = BrowserManager(integration_config)
    await manager.open()
    try:
        yield manager
    finally:
        if manager.playwright is not None:
            await manager.close()


@pytest.fixture
async def test_page(real_browser: BrowserManager) -> BrowserManager:
    """The real browser with its active page showing TEST_HTML."""
    await real_browser.navigate(TEST_HTML)
    return real_browser
