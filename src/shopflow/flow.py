"""The storefront checkout walk expressed as a fixed tuple of steps.

home page -> overlays -> search -> pick a result -> product page -> purchase
entry -> identifier -> authentication prompt. The walk never goes past the
authentication prompt.
"""
from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from shopflow.Exceptions import ElementNotFoundError, FlowError
from shopflow.overlays import OverlayDismisser, OverlayRule
from shopflow.readiness import AllOf, LoadStateReached, SelectorPresent, selector_alternatives
from shopflow.selection import ResultSelector, SelectionOutcome
from shopflow.sequencer import (
    ActionResult,
    EventCallback,
    FlowContext,
    FlowStatus,
    Step,
    StepPolicy,
    StepSequencer,
)
from shopflow.settings import FlowConfig
from shopflow.site_profile import SiteProfile

logger = logging.getLogger(__name__)

ENTRY_POINT_UNAVAILABLE = "entry point unavailable"

T = TypeVar("T")


def build_overlay_dismisser(profile: SiteProfile, config: FlowConfig) -> OverlayDismisser:
    rules = [
        OverlayRule.from_manifest(entry, settle_ms=config.overlay_settle_ms, quiet_ms=config.network_quiet_ms)
        for entry in profile.overlays
    ]
    return OverlayDismisser(rules, settle_ms=config.overlay_settle_ms)


def build_result_selector(profile: SiteProfile, config: FlowConfig) -> ResultSelector:
    return ResultSelector(
        container_selector=profile.search_results,
        link_selectors=profile.result_links,
        brand_tokens=config.brand_tokens,
        new_context_timeout_ms=config.new_context_timeout_ms,
        ready_timeout_ms=config.step_timeout_ms,
    )


def build_checkout_steps(
    profile: SiteProfile,
    config: FlowConfig,
    overlays: Optional[OverlayDismisser] = None,
    selector: Optional[ResultSelector] = None,
) -> Tuple[Step, ...]:
    overlays = overlays or build_overlay_dismisser(profile, config)
    selector = selector or build_result_selector(profile, config)

    async def _driver(ctx: FlowContext, label: str, call: Callable[[int], Awaitable[T]]) -> T:
        """Run ``call(timeout_ms)`` bounded by the step timeout and the run's deadline."""
        timeout_ms = ctx.deadline.clamp(config.step_timeout_ms, label)
        return await ctx.deadline.guard(call(timeout_ms), label)

    async def navigate(ctx: FlowContext) -> ActionResult:
        await _driver(ctx, "navigate", lambda t: ctx.page.goto(config.website, timeout_ms=t))
        return ActionResult(note=f"Opened {config.website}")

    async def dismiss_overlays(ctx: FlowContext) -> ActionResult:
        reports = await overlays.dismiss(ctx.page, ctx.deadline)
        handled = [r.name for r in reports if r.dismissed]
        failed = [r.name for r in reports if r.error]
        note = f"Dismissed overlays: {', '.join(handled)}" if handled else ""
        return ActionResult(note=note, degraded=bool(failed), details={"overlays": [asdict(r) for r in reports]})

    async def search(ctx: FlowContext) -> ActionResult:
        await _driver(ctx, "search", lambda t: ctx.page.fill(profile.search_box, config.search_query, timeout_ms=t))
        await _driver(ctx, "search", lambda t: ctx.page.press(profile.search_box, "Enter", timeout_ms=t))
        logger.info(f"Searching for '{config.search_query}'...")
        return ActionResult()

    async def select_result(ctx: FlowContext) -> ActionResult:
        selection = await selector.select(ctx.page, ctx.deadline)
        summary = {
            "outcome": selection.outcome.value,
            "state": selection.state.value,
            "index": selection.index,
            "text": selection.text[:200],
            "error": selection.error,
        }
        events = [dict(summary, event="selection")]
        details = {"selection": summary}
        if selection.outcome is SelectionOutcome.NO_CANDIDATE:
            return ActionResult(
                note=selection.outcome.value, halt=FlowStatus.NO_PRODUCT, details=details, events=events
            )
        return ActionResult(
            page=selection.page if selection.handed_off else None,
            note=selection.outcome.value,
            degraded=not selection.handed_off,
            details=details,
            events=events,
        )

    async def confirm_product(ctx: FlowContext) -> ActionResult:
        title = await _driver(ctx, "confirm_product", lambda _t: ctx.page.text_of(profile.product_title))
        logger.info(f"Product Title: {title}")
        return ActionResult(details={"product_title": title or ""})

    async def purchase_entry(ctx: FlowContext) -> ActionResult:
        button = await _driver(ctx, "purchase_entry", lambda _t: ctx.page.query(profile.purchase_entry))
        if button is None:
            logger.info("Buy Now button not found...")
            return ActionResult(note=ENTRY_POINT_UNAVAILABLE, degraded=True)
        await _driver(ctx, "purchase_entry", lambda t: ctx.page.click_element(button, timeout_ms=t))
        logger.info("Clicked Buy Now")
        return ActionResult(note="purchase entry clicked")

    async def enter_identifier(ctx: FlowContext) -> ActionResult:
        if not config.identifier:
            raise FlowError("No identifier configured for sign-in")
        field = ctx.precondition_match
        if field is None or await _driver(ctx, "enter_identifier", lambda _t: ctx.page.query(field)) is None:
            raise ElementNotFoundError(" | ".join(profile.identifier_fields), context="enter_identifier")
        await _driver(ctx, "enter_identifier", lambda t: ctx.page.fill(field, config.identifier, timeout_ms=t))
        await _driver(ctx, "enter_identifier", lambda t: ctx.page.press(field, "Enter", timeout_ms=t))
        logger.info("Entered identifier")
        return ActionResult(details={"identifier_field": field})

    async def reach_auth_boundary(ctx: FlowContext) -> ActionResult:
        prompt = ctx.precondition_match or ""
        return ActionResult(note=f"Authentication prompt reached ({prompt})", details={"auth_prompt": prompt})

    timeout = config.step_timeout_ms
    return (
        Step(
            "navigate",
            action=navigate,
            postcondition=SelectorPresent(profile.home_ready, label="home page loaded"),
            timeout_ms=timeout,
            description="Navigating to home page...",
        ),
        Step(
            "dismiss_overlays",
            action=dismiss_overlays,
            policy=StepPolicy.BEST_EFFORT,
            timeout_ms=timeout,
            description="Checking for popups...",
        ),
        Step(
            "search",
            action=search,
            precondition=SelectorPresent(profile.search_box, label="search box ready"),
            postcondition=SelectorPresent(profile.search_results, label="search results rendered"),
            timeout_ms=timeout,
            description="Searching for product...",
        ),
        Step(
            "select_result",
            action=select_result,
            policy=StepPolicy.BEST_EFFORT,
            timeout_ms=config.new_context_timeout_ms,
            description="Selecting product...",
        ),
        Step(
            "confirm_product",
            precondition=AllOf(
                (LoadStateReached("domcontentloaded"), SelectorPresent(profile.product_title)),
                label="product page loaded",
            ),
            action=confirm_product,
            timeout_ms=config.product_timeout_ms,
            description="Waiting for product page...",
        ),
        Step(
            "purchase_entry",
            action=purchase_entry,
            policy=StepPolicy.BEST_EFFORT,
            timeout_ms=timeout,
            description="Looking for Buy Now...",
        ),
        Step(
            "enter_identifier",
            precondition=selector_alternatives(profile.identifier_fields, label="sign-in identifier field shown"),
            action=enter_identifier,
            timeout_ms=timeout,
            description="Entering mobile number...",
        ),
        Step(
            "reach_auth_boundary",
            precondition=selector_alternatives(
                (profile.password_prompt, profile.verification_prompt),
                names=("password", "verification_code"),
                label="password or verification prompt shown",
            ),
            action=reach_auth_boundary,
            timeout_ms=timeout,
            description="Waiting for password or OTP prompt...",
        ),
    )


def build_sequencer(
    profile: SiteProfile,
    config: FlowConfig,
    on_event: Optional[EventCallback] = None,
) -> StepSequencer:
    return StepSequencer(build_checkout_steps(profile, config), on_event=on_event)
