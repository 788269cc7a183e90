"""Search-result selection with brand preference and new-tab hand-off."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Sequence

from shopflow.Exceptions import DeadlineExceededError
from shopflow.page_handle import PageHandle
from shopflow.readiness import Deadline, LoadStateReached, ReadinessWaiter

logger = logging.getLogger(__name__)


class SelectionOutcome(str, Enum):
    PREFERRED = "selected via preferred match"
    FALLBACK = "selected via fallback"
    NO_CANDIDATE = "no candidate found"


class SelectorState(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    MATCHED_PREFERRED = "matched_preferred"
    MATCHED_FALLBACK = "matched_fallback"
    NO_CANDIDATE = "no_candidate"
    AWAITING_NEW_CONTEXT = "awaiting_new_context"
    CONTEXT_READY = "context_ready"
    CONTEXT_TIMEOUT = "context_timeout"


@dataclass
class SelectionResult:
    page: PageHandle
    outcome: SelectionOutcome
    state: SelectorState
    index: Optional[int] = None
    text: str = ""
    error: Optional[str] = None

    @property
    def handed_off(self) -> bool:
        return self.state is SelectorState.CONTEXT_READY


class ResultSelector:
    """Pick one search result and follow it into the tab it opens.

    Preference goes to the first result whose text mentions one of the brand
    tokens; otherwise the first result is taken. Selection is best effort: it
    never raises, and on any problem it hands back the page it was given.
    """

    def __init__(
        self,
        container_selector: str,
        link_selectors: Sequence[str],
        brand_tokens: Sequence[str],
        new_context_timeout_ms: int = 30000,
        ready_state: str = "domcontentloaded",
        ready_timeout_ms: int = 30000,
    ):
        self.container_selector = container_selector
        self.link_selectors = tuple(link_selectors)
        self.brand_tokens = tuple(t.lower() for t in brand_tokens if t)
        self.new_context_timeout_ms = new_context_timeout_ms
        self.ready_state = ready_state
        self.ready_timeout_ms = ready_timeout_ms
        self._waiter = ReadinessWaiter()

    async def select(self, page: PageHandle, deadline: Optional[Deadline] = None) -> SelectionResult:
        deadline = deadline or Deadline()
        result = SelectionResult(page=page, outcome=SelectionOutcome.NO_CANDIDATE, state=SelectorState.IDLE)
        listener: Optional[asyncio.Task] = None
        try:
            deadline.clamp(self.new_context_timeout_ms, "search result selection")
            # no driver timeout here; the bound applies once the click has happened
            listener = await page.arm_new_context_listener(0)

            result.state = SelectorState.SEARCHING
            containers = await deadline.guard(page.query_all(self.container_selector), "search results")
            index, text = await self._brand_match(containers)
            if index is not None:
                result.outcome, result.state = SelectionOutcome.PREFERRED, SelectorState.MATCHED_PREFERRED
                logger.info(f"Found brand product using title match (result #{index + 1})")
            elif containers:
                index, text = 0, await self._text(containers[0])
                result.outcome, result.state = SelectionOutcome.FALLBACK, SelectorState.MATCHED_FALLBACK
                logger.info("Fallback: no brand match, clicking first product")
            else:
                result.state = SelectorState.NO_CANDIDATE
                logger.info("No search result containers found")
                return result
            result.index, result.text = index, text

            link = await self._primary_link(containers[index])
            if link is None:
                result.state = SelectorState.CONTEXT_TIMEOUT
                result.error = "no link inside selected result"
                logger.warning(f"Selected result #{index + 1} has no product link")
                return result
            await deadline.guard(page.click_element(link), "search result click")

            result.state = SelectorState.AWAITING_NEW_CONTEXT
            new_page = await self._await_new_context(listener, deadline)
            if new_page is None:
                result.state = SelectorState.CONTEXT_TIMEOUT
                logger.warning("No new tab opened for the selected product, staying on current page")
                return result

            try:
                await self._waiter.wait_until(
                    new_page, LoadStateReached(self.ready_state), self.ready_timeout_ms, deadline
                )
            except Exception:
                await self._discard(new_page)
                raise
            result.page, result.state = new_page, SelectorState.CONTEXT_READY
            logger.info("Switched context to new product tab!")
            return result
        except Exception as exc:
            result.page = page
            result.state = (
                SelectorState.NO_CANDIDATE
                if result.outcome is SelectionOutcome.NO_CANDIDATE
                else SelectorState.CONTEXT_TIMEOUT
            )
            result.error = f"{type(exc).__name__}: {exc}"
            logger.warning(f"Error selecting product: {exc}")
            return result
        finally:
            if listener is not None and not listener.done():
                listener.cancel()
                await asyncio.gather(listener, return_exceptions=True)

    async def _await_new_context(self, listener: asyncio.Task, deadline: Deadline) -> Optional[PageHandle]:
        timeout_ms = deadline.clamp(self.new_context_timeout_ms, "new browsing context")
        try:
            return await deadline.guard(
                asyncio.wait_for(asyncio.shield(listener), timeout_ms / 1000), "new browsing context"
            )
        except DeadlineExceededError:
            raise
        except asyncio.TimeoutError:
            return None
        except Exception as exc:
            logger.debug(f"New context listener ended: {type(exc).__name__}: {exc}")
            return None

    @staticmethod
    async def _discard(new_page: PageHandle) -> None:
        try:
            await new_page.close()
        except Exception as exc:
            logger.debug(f"Could not close abandoned tab: {exc}")

    async def _brand_match(self, containers: List[Any]):
        if not self.brand_tokens:
            return None, ""
        for index, container in enumerate(containers):
            text = await self._text(container)
            lowered = text.lower()
            if any(token in lowered for token in self.brand_tokens):
                return index, text
        return None, ""

    @staticmethod
    async def _text(container: Any) -> str:
        return ((await container.inner_text()) or "").strip()

    async def _primary_link(self, container: Any):
        for selector in self.link_selectors:
            link = await container.query_selector(selector)
            if link is not None:
                return link
        return None
