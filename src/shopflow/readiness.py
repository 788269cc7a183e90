"""Readiness conditions and the waiter that blocks a flow until one holds.

Every wait is event driven: selector and load-state waits are delegated to the
driver, network quiet periods are tracked from request events. Each wait is
bounded by its own timeout and by the run's :class:`Deadline`.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Iterable, Optional, Sequence, Tuple, TypeVar, Union

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from shopflow.Exceptions import ConditionTimeoutError, DeadlineExceededError
from shopflow.page_handle import PageHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class SelectorPresent:
    selector: str
    label: str = ""
    state: str = "attached"

    def describe(self) -> str:
        return self.label or f"element {self.selector!r} present"


@dataclass(frozen=True)
class AnySelectorPresent:
    selectors: Tuple[str, ...]
    # per-alternative names reported back when that alternative matched
    alternatives: Tuple[str, ...] = ()
    label: str = ""
    state: str = "attached"

    def describe(self) -> str:
        return self.label or "any of " + ", ".join(repr(s) for s in self.selectors)

    def alternative_name(self, index: int) -> str:
        if index < len(self.alternatives) and self.alternatives[index]:
            return self.alternatives[index]
        return self.selectors[index]


@dataclass(frozen=True)
class LoadStateReached:
    state: str = "domcontentloaded"
    label: str = ""

    def describe(self) -> str:
        return self.label or f"document reached {self.state}"


@dataclass(frozen=True)
class NetworkQuiet:
    quiet_ms: int = 500
    label: str = ""

    def describe(self) -> str:
        return self.label or f"network idle for {self.quiet_ms}ms"


@dataclass(frozen=True)
class AllOf:
    conditions: Tuple["Condition", ...]
    label: str = ""

    def describe(self) -> str:
        return self.label or " then ".join(c.describe() for c in self.conditions)


Condition = Union[SelectorPresent, AnySelectorPresent, LoadStateReached, NetworkQuiet, AllOf]


@dataclass(frozen=True)
class WaitOutcome:
    condition: str
    matched: str
    elapsed_ms: int


class Deadline:
    """Overall time budget for a run plus an external cancellation signal."""

    def __init__(self, budget_sec: Optional[float] = None, clock=time.monotonic):
        self._clock = clock
        self._started = clock()
        self._expires_at = self._started + budget_sec if budget_sec else None
        self._cancel_event: Optional[asyncio.Event] = None
        self.reason = "deadline exceeded"

    def _event(self) -> asyncio.Event:
        if self._cancel_event is None:
            self._cancel_event = asyncio.Event()
        return self._cancel_event

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event().set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def remaining_ms(self) -> Optional[int]:
        if self._expires_at is None:
            return None
        return max(0, int((self._expires_at - self._clock()) * 1000))

    @property
    def expired(self) -> bool:
        remaining = self.remaining_ms()
        return self.cancelled or (remaining is not None and remaining <= 0)

    def elapsed_ms(self) -> int:
        return int((self._clock() - self._started) * 1000)

    def clamp(self, timeout_ms: int, condition: str) -> int:
        """Return ``timeout_ms`` shortened to the remaining budget, or raise if none is left."""
        if self.expired:
            raise DeadlineExceededError(condition, 0, self.reason)
        remaining = self.remaining_ms()
        if remaining is None:
            return timeout_ms
        return min(timeout_ms, remaining)

    async def wait_cancelled(self) -> None:
        await self._event().wait()

    async def guard(self, awaitable: Awaitable[T], label: str) -> T:
        """Await a driver call, abandoning it as soon as the run is cancelled."""
        if self.expired:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise DeadlineExceededError(label, self.elapsed_ms(), self.reason)
        work = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self.wait_cancelled())
        try:
            done, _ = await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await _cancel_all((work, cancelled))
        if work in done:
            return work.result()
        raise DeadlineExceededError(label, self.elapsed_ms(), self.reason)


async def _cancel_all(tasks: Iterable[asyncio.Future]) -> None:
    pending = [t for t in tasks if not t.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


class _NetworkQuietTracker:
    """Counts in-flight requests on a page and wakes waiters on every change."""

    _EVENTS = ("request", "requestfinished", "requestfailed")

    def __init__(self, page: PageHandle):
        self._page = page
        self._loop = asyncio.get_running_loop()
        self._inflight = 0
        self._last_activity = self._loop.time()
        self._changed = asyncio.Event()

    def _on_request(self, _request) -> None:
        self._inflight += 1
        self._touch()

    def _on_done(self, _request) -> None:
        self._inflight = max(0, self._inflight - 1)
        self._touch()

    def _touch(self) -> None:
        self._last_activity = self._loop.time()
        self._changed.set()

    def __enter__(self) -> "_NetworkQuietTracker":
        self._page.on("request", self._on_request)
        self._page.on("requestfinished", self._on_done)
        self._page.on("requestfailed", self._on_done)
        return self

    def __exit__(self, *exc) -> None:
        self._page.remove_listener("request", self._on_request)
        self._page.remove_listener("requestfinished", self._on_done)
        self._page.remove_listener("requestfailed", self._on_done)

    async def wait_quiet(self, quiet_sec: float) -> None:
        while True:
            wait_for: Optional[float] = None
            if self._inflight == 0:
                idle_for = self._loop.time() - self._last_activity
                if idle_for >= quiet_sec:
                    return
                wait_for = quiet_sec - idle_for
            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), wait_for)
            except asyncio.TimeoutError:
                pass


class ReadinessWaiter:
    """Suspends the calling flow until a condition holds on a page."""

    async def wait_until(
        self,
        page: PageHandle,
        condition: Condition,
        timeout_ms: int,
        deadline: Optional[Deadline] = None,
    ) -> WaitOutcome:
        deadline = deadline or Deadline()
        label = condition.describe()
        loop = asyncio.get_running_loop()
        started = loop.time()
        effective_ms = deadline.clamp(timeout_ms, label)

        work = asyncio.ensure_future(self._satisfy(page, condition, effective_ms, loop.time() + effective_ms / 1000))
        cancelled = asyncio.ensure_future(deadline.wait_cancelled())
        try:
            done, _ = await asyncio.wait(
                {work, cancelled}, timeout=effective_ms / 1000, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            await _cancel_all((work, cancelled))

        elapsed_ms = int((loop.time() - started) * 1000)
        if work in done:
            try:
                matched = work.result()
            except (PlaywrightTimeoutError, asyncio.TimeoutError):
                raise self._timeout(label, elapsed_ms, timeout_ms, effective_ms, deadline) from None
            logger.debug("Condition met: %s (%s) after %dms", label, matched, elapsed_ms)
            return WaitOutcome(condition=label, matched=matched, elapsed_ms=elapsed_ms)
        if cancelled in done:
            raise DeadlineExceededError(label, elapsed_ms, deadline.reason)
        raise self._timeout(label, elapsed_ms, timeout_ms, effective_ms, deadline)

    @staticmethod
    def _timeout(label: str, elapsed_ms: int, timeout_ms: int, effective_ms: int, deadline: Deadline):
        if effective_ms < timeout_ms and deadline.expired:
            return DeadlineExceededError(label, elapsed_ms, deadline.reason)
        return ConditionTimeoutError(label, elapsed_ms, timeout_ms)

    async def _satisfy(self, page: PageHandle, condition: Condition, timeout_ms: int, ends_at: float) -> str:
        if isinstance(condition, SelectorPresent):
            await page.wait_for_selector(condition.selector, timeout_ms, state=condition.state)
            return condition.describe()
        if isinstance(condition, AnySelectorPresent):
            return await self._first_of(page, condition, timeout_ms)
        if isinstance(condition, LoadStateReached):
            await page.wait_for_load_state(condition.state, timeout_ms)
            return condition.state
        if isinstance(condition, NetworkQuiet):
            with _NetworkQuietTracker(page) as tracker:
                await page.wait_for_load_state("networkidle", timeout_ms)
                await tracker.wait_quiet(condition.quiet_ms / 1000)
            return condition.describe()
        if isinstance(condition, AllOf):
            loop = asyncio.get_running_loop()
            matched = []
            for sub in condition.conditions:
                remaining_ms = max(1, int((ends_at - loop.time()) * 1000))
                matched.append(await self._satisfy(page, sub, remaining_ms, ends_at))
            return ", ".join(matched)
        raise TypeError(f"Unsupported readiness condition: {condition!r}")

    @staticmethod
    async def _first_of(page: PageHandle, condition: AnySelectorPresent, timeout_ms: int) -> str:
        tasks = [
            asyncio.ensure_future(page.wait_for_selector(selector, timeout_ms, state=condition.state))
            for selector in condition.selectors
        ]
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                # earlier alternatives win when several appear in the same round
                for index, task in enumerate(tasks):
                    if task in done and task.exception() is None:
                        return condition.alternative_name(index)
                for task in done:
                    exc = task.exception()
                    if not isinstance(exc, PlaywrightTimeoutError):
                        raise exc
            raise PlaywrightTimeoutError(f"Timeout {timeout_ms}ms exceeded waiting for {condition.describe()}")
        finally:
            await _cancel_all(tasks)


def selector_alternatives(selectors: Sequence[str], names: Sequence[str] = (), label: str = "") -> AnySelectorPresent:
    return AnySelectorPresent(selectors=tuple(selectors), alternatives=tuple(names), label=label)
