"""Fixed, declarative step sequence executed against one current page."""
from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from shopflow.Exceptions import ConditionTimeoutError, DeadlineExceededError, FlowError
from shopflow.page_handle import PageHandle
from shopflow.readiness import Condition, Deadline, ReadinessWaiter, WaitOutcome

logger = logging.getLogger(__name__)


class StepPolicy(str, Enum):
    MANDATORY = "mandatory"
    BEST_EFFORT = "best_effort"


class FlowStatus(str, Enum):
    BOUNDARY_REACHED = "boundary_reached"
    NO_PRODUCT = "no_product"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ActionResult:
    # a new page to hand off to; the sequencer discards the previous one
    page: Optional[PageHandle] = None
    note: str = ""
    degraded: bool = False
    halt: Optional[FlowStatus] = None
    details: Dict[str, Any] = field(default_factory=dict)
    # structured records forwarded to the event sink after the action
    events: List[Dict[str, Any]] = field(default_factory=list)


StepAction = Callable[["FlowContext"], Awaitable[Optional[ActionResult]]]


@dataclass(frozen=True)
class Step:
    name: str
    action: Optional[StepAction] = None
    precondition: Optional[Condition] = None
    postcondition: Optional[Condition] = None
    policy: StepPolicy = StepPolicy.MANDATORY
    timeout_ms: int = 30000
    description: str = ""


class FlowContext:
    """What a step action sees: the current page (read-only) and shared run data."""

    def __init__(self, page: PageHandle, deadline: Deadline, waiter: ReadinessWaiter):
        self._page = page
        self.deadline = deadline
        self.waiter = waiter
        self.data: Dict[str, Any] = {}
        # which alternative satisfied the current step's precondition
        self.precondition_match: Optional[str] = None

    @property
    def page(self) -> PageHandle:
        return self._page

    def _hand_off(self, page: PageHandle) -> None:
        self._page = page


@dataclass
class StepReport:
    index: int
    name: str
    status: str  # passed | degraded | failed | error
    matched: Dict[str, str] = field(default_factory=dict)
    note: str = ""
    error: Optional[str] = None
    duration_ms: int = 0
    ts: float = field(default_factory=time.time)


@dataclass
class FlowReport:
    status: FlowStatus
    steps: List[StepReport]
    elapsed_ms: int
    failing_step: Optional[str] = None
    failed_condition: Optional[str] = None
    failed_after_ms: Optional[int] = None
    error_kind: Optional[str] = None
    message: str = ""
    final_url: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    # page current when the run ended, for evidence capture
    page: Optional[PageHandle] = field(default=None, repr=False, compare=False)

    @property
    def success(self) -> bool:
        return self.status is FlowStatus.BOUNDARY_REACHED

    def terminal_message(self) -> str:
        if self.success:
            return "Automation complete! Stopped at sign-in."
        if self.status is FlowStatus.NO_PRODUCT:
            return f"Stopped: no product to proceed with ({self.message})"
        where = f"step '{self.failing_step}'" if self.failing_step else "run"
        cond = f", condition '{self.failed_condition}' not met after {self.failed_after_ms}ms" if self.failed_condition else ""
        kind = f" [{self.error_kind}]" if self.error_kind else ""
        return f"{self.status.value.upper()} at {where}{cond}{kind}: {self.message}"


EventCallback = Callable[[Dict[str, Any]], Any]


class StepSequencer:
    """Runs a fixed tuple of steps in order against a single current page.

    Each step waits on its precondition, runs its action, then waits on its
    postcondition. Mandatory steps abort the run on failure; best-effort steps
    are marked degraded and the run continues.
    """

    def __init__(
        self,
        steps: Sequence[Step],
        waiter: Optional[ReadinessWaiter] = None,
        on_event: Optional[EventCallback] = None,
    ):
        self.steps: Tuple[Step, ...] = tuple(steps)
        self.waiter = waiter or ReadinessWaiter()
        self._on_event = on_event

    async def _emit(self, record: Dict[str, Any]) -> None:
        if self._on_event is None:
            return
        record.setdefault("ts", time.time())
        try:
            result = self._on_event(record)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning(f"Event sink error ({record.get('event')}): {exc}")

    async def run(self, page: PageHandle, deadline: Optional[Deadline] = None) -> FlowReport:
        deadline = deadline or Deadline()
        ctx = FlowContext(page, deadline, self.waiter)
        reports: List[StepReport] = []
        t0 = time.time()

        def _finish(status: FlowStatus, **kwargs) -> FlowReport:
            return FlowReport(
                status=status,
                steps=reports,
                page=ctx.page,
                elapsed_ms=int((time.time() - t0) * 1000),
                final_url=ctx.page.url,
                details=dict(ctx.data),
                **kwargs,
            )

        for i, step in enumerate(self.steps, start=1):
            if deadline.expired:
                return await self._abort(_finish, FlowStatus.CANCELLED, step, deadline.reason, error_kind="DeadlineExceededError")

            logger.info(f"Step {i}: {step.description or step.name}")
            await self._emit({"event": "step_start", "index": i, "step": step.name, "url": ctx.page.url})
            report = StepReport(index=i, name=step.name, status="passed")
            step_t0 = time.time()
            ctx.precondition_match = None

            try:
                if step.precondition is not None:
                    outcome = await self._wait(ctx, step.precondition, step, deadline)
                    report.matched["precondition"] = outcome.matched
                    ctx.precondition_match = outcome.matched

                result = await step.action(ctx) if step.action is not None else None
                result = result or ActionResult()
                for record in result.events:
                    await self._emit(dict(record, step=step.name))
                if result.page is not None and result.page is not ctx.page:
                    previous = ctx.page
                    ctx._hand_off(result.page)
                    logger.info(f"Hand-off: {previous.label} -> {result.page.label} ({result.page.url})")
                    await self._emit({"event": "handoff", "step": step.name, "url": result.page.url})
                ctx.data.update(result.details)
                report.note = result.note
                if result.degraded:
                    report.status = "degraded"

                if step.postcondition is not None and result.halt is None:
                    outcome = await self._wait(ctx, step.postcondition, step, deadline)
                    report.matched["postcondition"] = outcome.matched

                if deadline.expired:
                    raise DeadlineExceededError(step.name, deadline.elapsed_ms(), deadline.reason)

            except DeadlineExceededError as exc:
                self._close(report, step_t0, "failed", exc)
                reports.append(report)
                return await self._abort(
                    _finish, FlowStatus.CANCELLED, step, str(exc),
                    condition=exc.condition, elapsed_ms=exc.elapsed_ms, error_kind=type(exc).__name__,
                )
            except ConditionTimeoutError as exc:
                if step.policy is StepPolicy.BEST_EFFORT:
                    self._close(report, step_t0, "degraded", exc)
                    reports.append(report)
                    logger.warning(f"Step {step.name}: {exc} (continuing)")
                    await self._emit({"event": "step_complete", "step": step.name, "status": "degraded", "error": str(exc)})
                    continue
                self._close(report, step_t0, "failed", exc)
                reports.append(report)
                return await self._abort(
                    _finish, FlowStatus.FAILED, step, str(exc),
                    condition=exc.condition, elapsed_ms=exc.elapsed_ms, error_kind=type(exc).__name__,
                )
            except Exception as exc:
                if step.policy is StepPolicy.BEST_EFFORT:
                    self._close(report, step_t0, "degraded", exc)
                    reports.append(report)
                    logger.warning(f"Step {step.name}: non-critical error {type(exc).__name__}: {exc}")
                    await self._emit({"event": "step_complete", "step": step.name, "status": "degraded", "error": str(exc)})
                    continue
                status = "failed" if isinstance(exc, FlowError) else "error"
                self._close(report, step_t0, status, exc)
                reports.append(report)
                return await self._abort(
                    _finish, FlowStatus.FAILED, step, str(exc),
                    error_kind=getattr(exc, "kind", None) or type(exc).__name__,
                )

            report.duration_ms = int((time.time() - step_t0) * 1000)
            reports.append(report)
            await self._emit({
                "event": "step_complete", "step": step.name, "status": report.status,
                "matched": report.matched, "note": report.note, "duration_ms": report.duration_ms,
            })
            if report.note:
                logger.info(report.note)

            if result.halt is not None:
                flow = _finish(result.halt, failing_step=step.name, message=report.note)
                logger.info(flow.terminal_message())
                await self._emit({"event": "run_complete", "status": flow.status.value, "step": step.name})
                return flow

        flow = _finish(FlowStatus.BOUNDARY_REACHED, message="authentication boundary reached")
        logger.info(flow.terminal_message())
        await self._emit({"event": "run_complete", "status": flow.status.value, "elapsed_ms": flow.elapsed_ms})
        return flow

    async def _wait(self, ctx: FlowContext, condition: Condition, step: Step, deadline: Deadline) -> WaitOutcome:
        return await self.waiter.wait_until(ctx.page, condition, step.timeout_ms, deadline)

    @staticmethod
    def _close(report: StepReport, step_t0: float, status: str, exc: BaseException) -> None:
        report.status = status
        report.error = f"{type(exc).__name__}: {exc}"
        report.duration_ms = int((time.time() - step_t0) * 1000)

    async def _abort(
        self,
        finish,
        status: FlowStatus,
        step: Step,
        message: str,
        condition: Optional[str] = None,
        elapsed_ms: Optional[int] = None,
        error_kind: Optional[str] = None,
    ) -> FlowReport:
        flow = finish(
            status,
            failing_step=step.name,
            failed_condition=condition,
            failed_after_ms=elapsed_ms,
            error_kind=error_kind,
            message=message,
        )
        logger.error(flow.terminal_message())
        await self._emit({
            "event": "step_failed", "step": step.name, "status": status.value,
            "condition": condition, "elapsed_ms": elapsed_ms, "error": error_kind, "message": message,
        })
        await self._emit({"event": "run_complete", "status": status.value, "step": step.name})
        return flow
