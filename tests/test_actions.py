"""Tests for veb.actions module (command dispatch against a mocked browser)."""

from __future__ import annotations

import base64
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from veb.actions import HANDLERS, execute_command, normalize_url
from veb.protocol import ACTIONS, build_command


async def run(browser_manager, action, **fields):
    return await execute_command(build_command(action, **fields), browser_manager)


class TestNormalizeUrl:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("example.com", "https://example.com"),
            ("localhost:8080/path", "https://localhost:8080/path"),
            ("http://example.com", "http://example.com"),
            ("https://example.com", "https://example.com"),
            ("file:///tmp/a.html", "file:///tmp/a.html"),
            ("about:blank", "about:blank"),
            ("data:text/html,<p>x</p>", "data:text/html,<p>x</p>"),
            ("javascript:void(0)", "javascript:void(0)"),
        ],
    )
    def test_normalize(self, url, expected):
        assert normalize_url(url) == expected


class TestHandlerTable:
    def test_one_handler_per_action(self):
        assert set(HANDLERS) == set(ACTIONS)


# ---------------------------------------------------------------------------
# Page actions
# ---------------------------------------------------------------------------


class TestPageActions:
    async def test_navigate_adds_scheme(self, browser_manager, mock_page):
        resp = await run(browser_manager, "navigate", command_id="n1", url="example.com")

        mock_page.goto.assert_awaited_once_with("https://example.com", wait_until="load")
        assert resp.id == "n1"
        assert resp.success is True
        assert resp.data == {"url": "https://example.com", "title": "Example"}

    async def test_navigate_wait_until(self, browser_manager, mock_page):
        await run(browser_manager, "navigate", url="https://a.test", wait_until="networkidle")
        mock_page.goto.assert_awaited_once_with("https://a.test", wait_until="networkidle")

    async def test_click(self, browser_manager, mock_page):
        resp = await run(browser_manager, "click", selector="#go", button="right")

        mock_page.locator.return_value.click.assert_awaited_once_with(button="right")
        assert resp.data == {"clicked": True}

    async def test_type(self, browser_manager, mock_page):
        resp = await run(browser_manager, "type", selector="#q", text="veb", delay=10)

        mock_page.locator.return_value.press_sequentially.assert_awaited_once_with(
            "veb", delay=10
        )
        mock_page.locator.return_value.fill.assert_not_awaited()
        assert resp.data == {"typed": True}

    async def test_press(self, browser_manager, mock_page):
        resp = await run(browser_manager, "press", key="Escape")

        mock_page.keyboard.press.assert_awaited_once_with("Escape")
        assert resp.data == {"pressed": True}

    async def test_screenshot_inline(self, browser_manager):
        resp = await run(browser_manager, "screenshot")

        assert base64.b64decode(resp.data["base64"]) == b"\x89PNG"

    async def test_screenshot_to_path(self, browser_manager, tmp_path):
        target = str(tmp_path / "out.png")
        resp = await run(browser_manager, "screenshot", path=target, full_page=True)

        assert resp.data == {"path": target}

    async def test_snapshot(self, browser_manager):
        resp = await run(browser_manager, "snapshot")
        assert resp.data == {"snapshot": '- heading "Example Domain" [level=1]'}

    async def test_evaluate_null_result(self, browser_manager):
        resp = await run(browser_manager, "evaluate", script="undefined")

        assert resp.success is True
        assert resp.data == {"result": None}

    async def test_wait_duration(self, browser_manager, mock_page):
        resp = await run(browser_manager, "wait", timeout=2000)

        mock_page.wait_for_timeout.assert_awaited_once_with(2000)
        mock_page.wait_for_selector.assert_not_awaited()
        assert resp.data == {"waited": True}

    async def test_wait_selector_state(self, browser_manager, mock_page):
        await run(browser_manager, "wait", selector="#spinner", state="hidden")
        mock_page.wait_for_selector.assert_awaited_once_with(
            "#spinner", state="hidden", timeout=None
        )

    async def test_wait_text(self, browser_manager, mock_page):
        await run(browser_manager, "wait", text="Done")
        assert mock_page.wait_for_selector.call_args.args[0] == "text=Done"

    @pytest.mark.parametrize(
        "direction, expected",
        [("down", [0, 100]), ("up", [0, -100]), ("right", [100, 0]), ("left", [-100, 0])],
    )
    async def test_scroll_direction(self, browser_manager, mock_page, direction, expected):
        resp = await run(browser_manager, "scroll", direction=direction)

        assert mock_page.evaluate.call_args.args[1] == expected
        assert resp.data == {"scrolled": True}

    async def test_scroll_amount_and_offsets(self, browser_manager, mock_page):
        await run(browser_manager, "scroll", x=10, direction="down", amount=500)
        assert mock_page.evaluate.call_args.args[1] == [10, 500]

    async def test_select(self, browser_manager, mock_page):
        resp = await run(browser_manager, "select", selector="#color", values="red")

        mock_page.select_option.assert_awaited_once_with("#color", ["red"])
        assert resp.data == {"selected": ["red"]}

    async def test_hover(self, browser_manager, mock_page):
        resp = await run(browser_manager, "hover", selector="a")

        mock_page.hover.assert_awaited_once_with("a")
        assert resp.data == {"hovered": True}

    async def test_content(self, browser_manager):
        resp = await run(browser_manager, "content", selector="#box")
        assert resp.data == {"html": "<b>hi</b>"}


# ---------------------------------------------------------------------------
# Tabs, windows, lifecycle
# ---------------------------------------------------------------------------


class TestTabActions:
    async def test_tab_new_then_list(self, browser_manager):
        new = await run(browser_manager, "tab_new")
        listed = await run(browser_manager, "tab_list")

        assert new.data == {"index": 1, "total": 2}
        assert len(listed.data["tabs"]) == 2
        assert listed.data["active"] == 1
        assert listed.data["tabs"][1]["active"] is True

    async def test_tab_switch(self, browser_manager):
        await run(browser_manager, "tab_new")
        resp = await run(browser_manager, "tab_switch", index=0)

        assert resp.data["index"] == 0
        assert browser_manager.active_index == 0

    async def test_tab_switch_out_of_range(self, browser_manager):
        resp = await run(browser_manager, "tab_switch", command_id="s9", index=5)

        assert resp.success is False
        assert resp.id == "s9"
        assert "Invalid tab index: 5" in resp.error

    async def test_tab_close_defaults_to_active(self, browser_manager):
        await run(browser_manager, "tab_new")
        await run(browser_manager, "tab_new")
        resp = await run(browser_manager, "tab_close")

        assert resp.data == {"closed": 2, "remaining": 2}
        assert browser_manager.active_index == 1

    async def test_tab_close_explicit_index(self, browser_manager):
        await run(browser_manager, "tab_new")
        resp = await run(browser_manager, "tab_close", index=0)

        assert resp.data == {"closed": 0, "remaining": 1}

    async def test_tab_close_last_tab_is_error(self, browser_manager):
        resp = await run(browser_manager, "tab_close")

        assert resp.success is False
        assert "last tab" in resp.error
        assert browser_manager.page_count == 1

    async def test_window_new(self, browser_manager, mock_browser, mock_context):
        resp = await run(browser_manager, "window_new", viewport={"width": 800, "height": 600})

        assert resp.data == {"index": 1, "total": 2}
        mock_browser.new_context.assert_awaited_once_with(
            viewport={"width": 800, "height": 600}
        )

    async def test_close(self, browser_manager, mock_browser):
        resp = await run(browser_manager, "close")

        mock_browser.close.assert_awaited_once()
        assert resp.data == {"closed": True}
        assert not browser_manager.is_usable


# ---------------------------------------------------------------------------
# Error conversion
# ---------------------------------------------------------------------------


class TestErrors:
    async def test_engine_error_becomes_response(self, browser_manager, mock_page):
        mock_page.locator.return_value.click.side_effect = TimeoutError(
            "Timeout 5000ms exceeded."
        )
        resp = await run(browser_manager, "click", command_id="e1", selector="#missing")

        assert resp.id == "e1"
        assert resp.success is False
        assert resp.error == "Timeout 5000ms exceeded."
        assert resp.data is None

    async def test_empty_message_uses_exception_name(self, browser_manager, mock_page):
        mock_page.hover.side_effect = RuntimeError()
        resp = await run(browser_manager, "hover", selector="a")
        assert resp.error == "RuntimeError"

    async def test_unusable_browser(self, browser_manager):
        await browser_manager.close()
        resp = await run(browser_manager, "snapshot")

        assert resp.success is False
        assert "not running" in resp.error


class TestLaunchAction:
    async def test_launch_replaces_browser(self, browser_manager, mock_playwright):
        old_playwright = browser_manager.playwright
        starter = MagicMock()
        starter.start = AsyncMock(return_value=mock_playwright)

        with patch("veb.browser.async_playwright", return_value=starter):
            resp = await run(
                browser_manager,
                "launch",
                headless=False,
                viewport={"width": 800, "height": 600},
                browser="firefox",
            )

        assert resp.data == {"launched": True}
        old_playwright.stop.assert_awaited_once()
        assert mock_playwright.firefox.launch.call_args.kwargs["headless"] is False
        assert browser_manager.is_usable
