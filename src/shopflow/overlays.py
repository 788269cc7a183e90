from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from shopflow.page_handle import PageHandle
from shopflow.readiness import Condition, Deadline, LoadStateReached, NetworkQuiet, ReadinessWaiter

logger = logging.getLogger(__name__)

DismissAction = Callable[[PageHandle, Deadline], Awaitable[None]]


@dataclass(frozen=True)
class OverlayRule:
    name: str
    detector: str
    dismiss: DismissAction

    @classmethod
    def click_chain(
        cls,
        name: str,
        detector: str,
        clicks: Sequence[str],
        settle_ms: int = 500,
        wait_for: Optional[str] = None,
        wait_timeout_ms: int = 10000,
        quiet_ms: int = 500,
    ) -> "OverlayRule":
        """Rule that clicks each selector in turn, skipping the ones not on the page.

        ``wait_for`` names a load state to wait for afterwards; ``"networkidle"``
        additionally requires ``quiet_ms`` without network traffic.
        """
        clicks = tuple(clicks)
        after: Optional[Condition] = None
        if wait_for == "networkidle":
            after = NetworkQuiet(quiet_ms=quiet_ms, label=f"network quiet after {name} popup")
        elif wait_for:
            after = LoadStateReached(wait_for)

        async def _dismiss(page: PageHandle, deadline: Deadline) -> None:
            for index, selector in enumerate(clicks):
                element = await deadline.guard(page.query(selector), f"{name} popup")
                if element is None:
                    logger.debug("Overlay %s: %s not present, skipping", name, selector)
                    continue
                await deadline.guard(page.click_element(element), f"{name} popup")
                if index < len(clicks) - 1:
                    await deadline.guard(page.settle(settle_ms), f"{name} popup")
            if after is not None:
                await ReadinessWaiter().wait_until(page, after, wait_timeout_ms, deadline)

        return cls(name=name, detector=detector, dismiss=_dismiss)

    @classmethod
    def from_manifest(cls, entry: Dict[str, Any], settle_ms: int = 500, quiet_ms: int = 500) -> "OverlayRule":
        clicks = entry.get("clicks") or [entry["detector"]]
        return cls.click_chain(
            name=str(entry.get("name") or entry["detector"]),
            detector=entry["detector"],
            clicks=clicks,
            settle_ms=int(entry.get("settle_ms", settle_ms)),
            wait_for=entry.get("wait_for"),
            wait_timeout_ms=int(entry.get("wait_timeout_ms", 10000)),
            quiet_ms=int(entry.get("quiet_ms", quiet_ms)),
        )


@dataclass
class OverlayReport:
    name: str
    present: bool = False
    dismissed: bool = False
    error: Optional[str] = None


class OverlayDismisser:
    """Dismisses known transient overlays, one rule at a time, in priority order.

    A missing overlay is the common case and is not reported as a problem. A
    failure while handling one overlay is logged and the next rule still runs.
    """

    def __init__(self, rules: Sequence[OverlayRule], settle_ms: int = 500):
        self.rules = tuple(rules)
        self.settle_ms = settle_ms

    async def dismiss(self, page: PageHandle, deadline: Optional[Deadline] = None) -> List[OverlayReport]:
        deadline = deadline or Deadline()
        reports: List[OverlayReport] = []
        for rule in self.rules:
            if deadline.expired:
                logger.info("Deadline reached, skipping remaining overlay checks")
                break
            report = OverlayReport(name=rule.name)
            reports.append(report)
            try:
                report.present = await deadline.guard(page.is_present(rule.detector), f"{rule.name} popup")
                if not report.present:
                    logger.info(f"No {rule.name} popup present")
                    continue
                logger.info(f"Handling {rule.name} popup...")
                await rule.dismiss(page, deadline)
                await deadline.guard(page.settle(self.settle_ms), f"{rule.name} popup")
                report.dismissed = True
            except Exception as exc:
                report.error = f"{type(exc).__name__}: {exc}"
                logger.warning(f"Non-critical popup error ({rule.name}): {exc}")
        return reports
