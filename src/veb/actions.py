"""Command dispatcher for veb.

``execute_command`` routes a validated command to its handler, runs it
against the session's :class:`~veb.browser.BrowserManager` and shapes the
result into a :class:`~veb.protocol.Response`.  Any exception raised while
handling a command becomes an error response carrying the command's id.

There is exactly one handler per action tag; the table is checked against
the protocol's action set when this module is imported.
"""

from __future__ import annotations

import base64
import logging
import re
from typing import Any, Awaitable, Callable

from veb.browser import BrowserManager
from veb.protocol import (
    ACTIONS,
    BaseCommand,
    ClickCommand,
    CloseCommand,
    ContentCommand,
    EvaluateCommand,
    HoverCommand,
    LaunchCommand,
    NavigateCommand,
    PressCommand,
    Response,
    ScreenshotCommand,
    ScrollCommand,
    SelectCommand,
    SnapshotCommand,
    TabCloseCommand,
    TabListCommand,
    TabNewCommand,
    TabSwitchCommand,
    TypeCommand,
    WaitCommand,
    WindowNewCommand,
    error_response,
    success_response,
)

logger = logging.getLogger(__name__)

DEFAULT_SCROLL_AMOUNT = 100

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_OPAQUE_SCHEMES = ("about:", "data:", "javascript:", "blob:")


def normalize_url(url: str) -> str:
    """Prefix ``https://`` to URLs given without a scheme."""
    if _SCHEME_RE.match(url) or url.lower().startswith(_OPAQUE_SCHEMES):
        return url
    return f"https://{url}"


def _require_tab(browser: BrowserManager, index: int) -> None:
    if index >= browser.page_count:
        raise IndexError(f"Invalid tab index: {index} ({browser.page_count} tabs open)")


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def handle_launch(command: LaunchCommand, browser: BrowserManager) -> dict[str, Any]:
    await browser.relaunch(
        headless=command.headless,
        viewport=command.viewport.model_dump() if command.viewport else None,
        browser_name=command.browser,
    )
    return {"launched": True}


async def handle_navigate(command: NavigateCommand, browser: BrowserManager) -> dict[str, Any]:
    return await browser.navigate(
        normalize_url(command.url), wait_until=command.wait_until or "load"
    )


async def handle_click(command: ClickCommand, browser: BrowserManager) -> dict[str, Any]:
    await browser.click(
        command.selector,
        button=command.button,
        click_count=command.click_count,
        delay=command.delay,
    )
    return {"clicked": True}


async def handle_type(command: TypeCommand, browser: BrowserManager) -> dict[str, Any]:
    await browser.type_text(
        command.selector,
        command.text,
        delay=command.delay,
        clear_first=bool(command.clear),
    )
    return {"typed": True}


async def handle_press(command: PressCommand, browser: BrowserManager) -> dict[str, Any]:
    await browser.press_key(command.key, command.selector)
    return {"pressed": True}


async def handle_screenshot(
    command: ScreenshotCommand, browser: BrowserManager
) -> dict[str, Any]:
    result = await browser.capture_image(
        full_page=bool(command.full_page),
        selector=command.selector,
        format=command.format or "png",
        quality=command.quality,
        path=command.path,
    )
    if "path" in result:
        return {"path": result["path"]}
    return {"base64": base64.b64encode(result["bytes"]).decode("ascii")}


async def handle_snapshot(command: SnapshotCommand, browser: BrowserManager) -> dict[str, Any]:
    return {"snapshot": await browser.accessibility_tree()}


async def handle_evaluate(command: EvaluateCommand, browser: BrowserManager) -> dict[str, Any]:
    return {"result": await browser.evaluate_script(command.script, command.args)}


async def handle_wait(command: WaitCommand, browser: BrowserManager) -> dict[str, Any]:
    selector = command.selector
    if command.text is not None:
        selector = f"text={command.text}"
    await browser.wait_for(selector=selector, state=command.state, timeout_ms=command.timeout)
    return {"waited": True}


async def handle_scroll(command: ScrollCommand, browser: BrowserManager) -> dict[str, Any]:
    dx = command.x or 0
    dy = command.y or 0
    if command.direction is not None:
        amount = command.amount or DEFAULT_SCROLL_AMOUNT
        if command.direction == "up":
            dy = -amount
        elif command.direction == "down":
            dy = amount
        elif command.direction == "left":
            dx = -amount
        else:
            dx = amount
    await browser.scroll(selector=command.selector, dx=dx, dy=dy)
    return {"scrolled": True}


async def handle_select(command: SelectCommand, browser: BrowserManager) -> dict[str, Any]:
    values = list(command.values)
    await browser.select_option(command.selector, values)
    return {"selected": values}


async def handle_hover(command: HoverCommand, browser: BrowserManager) -> dict[str, Any]:
    await browser.hover(command.selector)
    return {"hovered": True}


async def handle_content(command: ContentCommand, browser: BrowserManager) -> dict[str, Any]:
    return {"html": await browser.read_html(command.selector)}


async def handle_close(command: CloseCommand, browser: BrowserManager) -> dict[str, Any]:
    await browser.close()
    return {"closed": True}


async def handle_tab_new(command: TabNewCommand, browser: BrowserManager) -> dict[str, Any]:
    index = await browser.open_page()
    return {"index": index, "total": browser.page_count}


async def handle_tab_list(command: TabListCommand, browser: BrowserManager) -> dict[str, Any]:
    return {"tabs": await browser.list_pages(), "active": browser.active_index}


async def handle_tab_switch(
    command: TabSwitchCommand, browser: BrowserManager
) -> dict[str, Any]:
    _require_tab(browser, command.index)
    return await browser.switch_page(command.index)


async def handle_tab_close(command: TabCloseCommand, browser: BrowserManager) -> dict[str, Any]:
    index = browser.active_index if command.index is None else command.index
    _require_tab(browser, index)
    return await browser.close_page(index)


async def handle_window_new(
    command: WindowNewCommand, browser: BrowserManager
) -> dict[str, Any]:
    viewport = command.viewport.model_dump() if command.viewport else None
    index = await browser.open_window(viewport)
    return {"index": index, "total": browser.page_count}


Handler = Callable[[Any, BrowserManager], Awaitable[dict[str, Any]]]

HANDLERS: dict[str, Handler] = {
    "launch": handle_launch,
    "navigate": handle_navigate,
    "click": handle_click,
    "type": handle_type,
    "press": handle_press,
    "screenshot": handle_screenshot,
    "snapshot": handle_snapshot,
    "evaluate": handle_evaluate,
    "wait": handle_wait,
    "scroll": handle_scroll,
    "select": handle_select,
    "hover": handle_hover,
    "content": handle_content,
    "close": handle_close,
    "tab_new": handle_tab_new,
    "tab_list": handle_tab_list,
    "tab_switch": handle_tab_switch,
    "tab_close": handle_tab_close,
    "window_new": handle_window_new,
}

if HANDLERS.keys() != ACTIONS:
    raise RuntimeError(
        "Dispatcher out of sync with protocol: "
        f"unhandled={sorted(ACTIONS - HANDLERS.keys())} "
        f"unknown={sorted(HANDLERS.keys() - ACTIONS)}"
    )


def _describe(exc: Exception) -> str:
    message = str(exc).strip()
    return message or type(exc).__name__


async def execute_command(command: BaseCommand, browser: BrowserManager) -> Response:
    """Run *command* against *browser* and return its response.

    Never raises for failures inside the handler; they come back as
    ``success=False`` responses with the command's id.
    """
    handler = HANDLERS[command.action]
    try:
        data = await handler(command, browser)
    except Exception as exc:
        logger.warning(f"Command {command.action!r} ({command.id}) failed: {exc}")
        return error_response(command.id, _describe(exc))
    logger.debug(f"Command {command.action!r} ({command.id}) succeeded")
    return success_response(command.id, data)
