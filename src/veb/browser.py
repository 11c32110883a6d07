"""Patchright browser wrapper for the veb daemon.

``BrowserManager`` owns one browser, its isolation context and the ordered
list of open pages with an active index.  It is the only code in veb that
talks to Patchright; the command dispatcher calls its methods and shapes
their results into responses.

The page list is never empty while the manager is usable.  If the browser
process dies, or the last page is closed from inside the page (e.g.
``window.close()``), the manager marks itself unusable and calls
``on_lost`` so the daemon can shut down.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from patchright.async_api import async_playwright

from veb.config import VebConfig

logger = logging.getLogger(__name__)

_CHROMIUM_ONLY_LAUNCH_OPTIONS = ("chromium_sandbox", "executable_path")


class BrowserUnusableError(Exception):
    """The browser is gone and the session can no longer serve commands."""


class BrowserManager:
    """Holds the Patchright objects for a single daemon-managed session."""

    def __init__(
        self,
        config: VebConfig,
        on_lost: Callable[[], None] | None = None,
    ) -> None:
        self.config: VebConfig = config
        self.on_lost = on_lost

        # Playwright objects
        self.playwright: Any = None
        self.browser: Any = None
        self.context: Any = None
        self.window_contexts: list[Any] = []
        self.pages: list[Any] = []
        self.active_page_index: int = 0

        self._usable: bool = False
        self._closing: bool = False

    # -- Properties ----------------------------------------------------------

    @property
    def is_usable(self) -> bool:
        return self._usable and bool(self.pages)

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def active_index(self) -> int:
        return self.active_page_index

    @property
    def active_page(self) -> Any:
        """Return the active page, raising if the browser is not running."""
        if not self.is_usable:
            raise BrowserUnusableError("Browser is not running")
        return self.pages[self.active_page_index]

    # -- Lifecycle -----------------------------------------------------------

    async def open(
        self,
        headless: bool | None = None,
        viewport: dict[str, int] | None = None,
        browser_name: str | None = None,
    ) -> None:
        """Launch the browser, create the context and open one page."""
        bcfg = self.config.browser
        name = browser_name or bcfg.browser_name

        launch_opts = dict(bcfg.launch_options)
        launch_opts["headless"] = bcfg.headless if headless is None else headless
        if name != "chromium":
            for key in _CHROMIUM_ONLY_LAUNCH_OPTIONS:
                launch_opts.pop(key, None)

        context_opts = dict(bcfg.context_options)
        if viewport is not None:
            context_opts["viewport"] = dict(viewport)
        elif bcfg.viewport is not None:
            context_opts["viewport"] = bcfg.viewport.model_dump()

        logger.info(
            f"Launching {name} (headless={launch_opts['headless']}, "
            f"persistent={bcfg.user_data_dir is not None})"
        )
        self._closing = False
        self.playwright = await async_playwright().start()
        browser_type = getattr(self.playwright, name)

        if bcfg.user_data_dir:
            # Persistent context IS the browser
            self.context = await browser_type.launch_persistent_context(
                bcfg.user_data_dir,
                **launch_opts,
                **context_opts,
            )
            self.browser = None
            self.context.on("close", self._on_disconnected)
        else:
            self.browser = await browser_type.launch(**launch_opts)
            self.browser.on("disconnected", self._on_disconnected)
            self.context = await self.browser.new_context(**context_opts)

        self._configure_context(self.context)

        if self.context.pages:
            page = self.context.pages[0]
        else:
            page = await self.context.new_page()
        self._track_page(page)
        self.pages = [page]
        self.active_page_index = 0
        self._usable = True

    async def close(self) -> None:
        """Close the browser and stop Patchright.

        Patchright is stopped even if closing the browser raises; the
        original error is then re-raised.
        """
        self._closing = True
        self._usable = False
        self.pages = []
        self.active_page_index = 0
        try:
            if self.browser is not None:
                await self.browser.close()
            elif self.context is not None:
                await self.context.close()
        finally:
            self.browser = None
            self.context = None
            self.window_contexts = []
            if self.playwright is not None:
                playwright, self.playwright = self.playwright, None
                await playwright.stop()
        logger.info("Browser closed")

    async def relaunch(
        self,
        headless: bool | None = None,
        viewport: dict[str, int] | None = None,
        browser_name: str | None = None,
    ) -> None:
        """Replace the running browser with a fresh one using the given overrides."""
        if self.playwright is not None:
            await self.close()
        await self.open(headless=headless, viewport=viewport, browser_name=browser_name)

    # -- Event handlers ------------------------------------------------------

    def _configure_context(self, context: Any) -> None:
        timeouts = self.config.timeouts
        context.set_default_timeout(timeouts.action)
        context.set_default_navigation_timeout(timeouts.navigation)
        context.on("page", self._on_new_page)

    def _track_page(self, page: Any) -> None:
        page.on("close", self._on_page_closed)

    def _on_new_page(self, page: Any) -> None:
        """Synchronous callback for the context 'page' event.

        Pages created via ``context.new_page()`` fire this event *before*
        ``new_page`` returns, so callers that create pages explicitly check
        before appending again.  Popups opened by the page land here too.
        """
        if self._closing or page in self.pages:
            return
        self._track_page(page)
        self.pages.append(page)

    def _on_page_closed(self, page: Any) -> None:
        if self._closing or page not in self.pages:
            return
        logger.info(f"Page closed from within the browser: {page.url}")
        self._remove_page(self.pages.index(page))
        if not self.pages:
            self._lost("last page closed")

    def _on_disconnected(self, *_: Any) -> None:
        if self._closing:
            return
        self._lost("browser disconnected")

    def _lost(self, reason: str) -> None:
        logger.error(f"Browser unusable: {reason}")
        self._usable = False
        if self.on_lost is not None:
            self.on_lost()

    def _remove_page(self, index: int) -> Any:
        """Drop the page at *index* and keep the active index valid.

        When the active page goes, the next-lowest remaining page becomes
        active; otherwise the same page stays active.
        """
        page = self.pages.pop(index)
        if index == self.active_page_index:
            self.active_page_index = max(index - 1, 0)
        elif index < self.active_page_index:
            self.active_page_index -= 1
        if self.pages:
            self.active_page_index = min(self.active_page_index, len(self.pages) - 1)
        else:
            self.active_page_index = 0
        return page

    def _check_index(self, index: int) -> None:
        if index < 0 or index >= len(self.pages):
            raise IndexError(
                f"Invalid tab index: {index} ({len(self.pages)} tabs open)"
            )

    @staticmethod
    async def _title(page: Any) -> str:
        try:
            return await page.title()
        except Exception:
            return ""

    # -- Page operations -----------------------------------------------------

    async def navigate(self, url: str, wait_until: str = "load") -> dict[str, str]:
        page = self.active_page
        await page.goto(url, wait_until=wait_until)
        return {"url": page.url, "title": await page.title()}

    async def click(
        self,
        selector: str,
        button: str | None = None,
        click_count: int | None = None,
        delay: float | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {}
        if button is not None:
            kwargs["button"] = button
        if click_count is not None:
            kwargs["click_count"] = click_count
        if delay is not None:
            kwargs["delay"] = delay
        await self.active_page.locator(selector).click(**kwargs)

    async def type_text(
        self,
        selector: str,
        text: str,
        delay: float | None = None,
        clear_first: bool = False,
    ) -> None:
        locator = self.active_page.locator(selector)
        if clear_first:
            await locator.fill("")
        if delay is not None:
            await locator.press_sequentially(text, delay=delay)
        else:
            await locator.press_sequentially(text)

    async def press_key(self, key: str, selector: str | None = None) -> None:
        page = self.active_page
        if selector:
            await page.locator(selector).press(key)
        else:
            await page.keyboard.press(key)

    async def capture_image(
        self,
        full_page: bool = False,
        selector: str | None = None,
        format: str = "png",
        quality: int | None = None,
        path: str | None = None,
    ) -> dict[str, Any]:
        """Take a screenshot of the page or a single element.

        With *path* the engine writes the file and ``{"path": path}`` is
        returned; otherwise ``{"bytes": <image bytes>}``.
        """
        page = self.active_page
        opts: dict[str, Any] = {"type": format}
        if format == "jpeg" and quality is not None:
            opts["quality"] = quality
        if selector:
            target = page.locator(selector)
        else:
            target = page
            opts["full_page"] = full_page
        if path:
            await target.screenshot(path=path, **opts)
            return {"path": path}
        return {"bytes": await target.screenshot(**opts)}

    async def accessibility_tree(self, root_selector: str = ":root") -> str:
        snapshot = await self.active_page.locator(root_selector).aria_snapshot()
        return snapshot or "Empty page"

    async def evaluate_script(self, source: str, args: list[Any] | None = None) -> Any:
        page = self.active_page
        if args is None:
            return await page.evaluate(source)
        return await page.evaluate(source, args)

    async def wait_for(
        self,
        selector: str | None = None,
        state: str | None = None,
        timeout_ms: float | None = None,
    ) -> None:
        page = self.active_page
        if selector:
            await page.wait_for_selector(
                selector, state=state or "visible", timeout=timeout_ms
            )
        elif timeout_ms:
            await page.wait_for_timeout(timeout_ms)
        else:
            await page.wait_for_load_state("load")

    async def scroll(
        self, selector: str | None = None, dx: float = 0, dy: float = 0
    ) -> None:
        page = self.active_page
        if selector:
            element = page.locator(selector)
            await element.scroll_into_view_if_needed()
            if dx or dy:
                await element.evaluate("(el, [x, y]) => el.scrollBy(x, y)", [dx, dy])
        else:
            await page.evaluate("([x, y]) => window.scrollBy(x, y)", [dx, dy])

    async def select_option(self, selector: str, values: list[str]) -> list[str]:
        return await self.active_page.select_option(selector, values)

    async def hover(self, selector: str) -> None:
        await self.active_page.hover(selector)

    async def read_html(self, selector: str | None = None) -> str:
        page = self.active_page
        if selector:
            return await page.locator(selector).inner_html()
        return await page.content()

    # -- Tabs & windows ------------------------------------------------------

    async def list_pages(self) -> list[dict[str, Any]]:
        """Return ``{index, url, title, active}`` for every open page, in order."""
        tabs: list[dict[str, Any]] = []
        for i, page in enumerate(self.pages):
            tabs.append(
                {
                    "index": i,
                    "url": page.url,
                    "title": await self._title(page),
                    "active": i == self.active_page_index,
                }
            )
        return tabs

    async def open_page(self) -> int:
        """Open a new tab in the main context and make it active."""
        if not self.is_usable:
            raise BrowserUnusableError("Browser is not running")
        page = await self.context.new_page()
        # _on_new_page may have added it already
        if page not in self.pages:
            self._track_page(page)
            self.pages.append(page)
        self.active_page_index = self.pages.index(page)
        return self.active_page_index

    async def switch_page(self, index: int) -> dict[str, Any]:
        self._check_index(index)
        self.active_page_index = index
        page = self.pages[index]
        await page.bring_to_front()
        return {"index": index, "url": page.url, "title": await self._title(page)}

    async def close_page(self, index: int | None = None) -> dict[str, int]:
        """Close the tab at *index* (default: active tab).

        The last remaining tab cannot be closed; ending the session is the
        job of :meth:`close`.
        """
        if index is None:
            index = self.active_page_index
        self._check_index(index)
        if len(self.pages) == 1:
            raise ValueError(
                "Cannot close the last tab. Use the close action to end the session."
            )
        page = self._remove_page(index)
        await page.close()
        return {"closed": index, "remaining": len(self.pages)}

    async def open_window(self, viewport: dict[str, int] | None = None) -> int:
        """Open a page in a new window and make it active.

        A window is a fresh browser context sharing the browser process.  A
        persistent context has a single window, so the page opens in it.
        """
        if not self.is_usable:
            raise BrowserUnusableError("Browser is not running")
        if self.browser is None:
            page = await self.context.new_page()
            if viewport is not None:
                await page.set_viewport_size(dict(viewport))
        else:
            context_opts = dict(self.config.browser.context_options)
            if viewport is not None:
                context_opts["viewport"] = dict(viewport)
            context = await self.browser.new_context(**context_opts)
            self._configure_context(context)
            self.window_contexts.append(context)
            page = await context.new_page()
        if page not in self.pages:
            self._track_page(page)
            self.pages.append(page)
        self.active_page_index = self.pages.index(page)
        return self.active_page_index
