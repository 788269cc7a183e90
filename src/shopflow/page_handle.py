"""Handle over one browsing context (tab).

All driver calls made by the flow go through :class:`PageHandle`, so the rest of
the package depends on a handful of capabilities rather than on the whole
Playwright ``Page`` surface.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from shopflow.Exceptions import UnexpectedDriverError

logger = logging.getLogger(__name__)


class PageHandle:
    def __init__(self, page: Any, label: str = "main"):
        self._page = page
        self.label = label

    def __repr__(self) -> str:
        return f"PageHandle({self.label!r}, url={self.url!r})"

    @property
    def url(self) -> str:
        return getattr(self._page, "url", "") or ""

    @property
    def raw(self) -> Any:
        """The underlying driver page, for launch/teardown code only."""
        return self._page

    def is_closed(self) -> bool:
        try:
            return bool(self._page.is_closed())
        except Exception:
            return True

    async def _call(self, op: str, awaitable):
        try:
            return await awaitable
        except PlaywrightTimeoutError:
            raise
        except PlaywrightError as exc:
            raise UnexpectedDriverError(type(exc).__name__, str(exc), context=f"{self.label}:{op}") from exc

    async def goto(self, url: str, wait_until: str = "domcontentloaded", timeout_ms: int = 30000):
        return await self._call("goto", self._page.goto(url, wait_until=wait_until, timeout=timeout_ms))

    async def wait_for_selector(self, selector: str, timeout_ms: int, state: str = "attached"):
        return await self._call(
            "wait_for_selector", self._page.wait_for_selector(selector, state=state, timeout=timeout_ms)
        )

    async def wait_for_load_state(self, state: str, timeout_ms: int) -> None:
        await self._call("wait_for_load_state", self._page.wait_for_load_state(state, timeout=timeout_ms))

    async def query(self, selector: str):
        return await self._call("query", self._page.query_selector(selector))

    async def query_all(self, selector: str) -> List[Any]:
        return list(await self._call("query_all", self._page.query_selector_all(selector)) or [])

    async def is_present(self, selector: str) -> bool:
        element = await self.query(selector)
        if element is None:
            return False
        try:
            return bool(await element.is_visible())
        except PlaywrightError:
            return False

    async def click_element(self, element: Any, timeout_ms: int = 10000) -> None:
        await self._call("click_element", element.click(timeout=timeout_ms))

    async def fill(self, selector: str, value: str, timeout_ms: int = 10000) -> None:
        await self._call("fill", self._page.fill(selector, value, timeout=timeout_ms))

    async def press(self, selector: str, key: str, timeout_ms: int = 10000) -> None:
        await self._call("press", self._page.press(selector, key, timeout=timeout_ms))

    async def text_of(self, selector: str) -> Optional[str]:
        element = await self.query(selector)
        if element is None:
            return None
        text = await self._call("text_of", element.inner_text())
        return (text or "").strip()

    async def settle(self, ms: int) -> None:
        await self._call("settle", self._page.wait_for_timeout(ms))

    async def arm_new_context_listener(self, timeout_ms: int) -> "asyncio.Task[PageHandle]":
        """Start listening for a tab opened from this page and return the pending task.

        The listener is registered before this coroutine returns, so a click issued
        afterwards cannot race ahead of it. ``timeout_ms=0`` disables the driver timeout.
        """
        async def _wait_for_popup() -> PageHandle:
            popup = await self._call("wait_for_popup", self._page.wait_for_event("popup", timeout=timeout_ms))
            return PageHandle(popup, label="popup")

        task = asyncio.ensure_future(_wait_for_popup())
        # let the task run up to its first suspension so the driver listener is in place
        await asyncio.sleep(0)
        return task

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._page.on(event, handler)

    def remove_listener(self, event: str, handler: Callable[..., Any]) -> None:
        try:
            self._page.remove_listener(event, handler)
        except Exception:
            logger.debug("Listener for %s already detached from %s", event, self.label)

    async def screenshot(self, path: str, full_page: bool = False) -> None:
        await self._call("screenshot", self._page.screenshot(path=path, full_page=full_page))

    async def close(self) -> None:
        await self._call("close", self._page.close())
