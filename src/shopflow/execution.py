from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from playwright.async_api import async_playwright

from shopflow.browser_utils.browser_helper import (
    close_context_async,
    normal_launch_async,
    normal_new_context_async,
    save_failure_screenshot,
)
from shopflow.events import JsonlEventSink
from shopflow.flow import build_sequencer
from shopflow.page_handle import PageHandle
from shopflow.readiness import Deadline
from shopflow.sequencer import FlowReport
from shopflow.settings import BrowserConfig, FlowConfig
from shopflow.site_profile import SiteProfile

logger = logging.getLogger(__name__)


@dataclass
class TaskResult:
    task_id: str
    status: str
    success: bool
    steps: int
    duration_ms: int
    message: str = ""
    failing_step: Optional[str] = None
    final_url: str = ""
    details: Optional[Dict[str, Any]] = None
    step_reports: Optional[List[Dict[str, Any]]] = None
    screenshot: Optional[str] = None


def task_flow_config(config: FlowConfig, task: Dict[str, Any]) -> FlowConfig:
    """Apply per-task overrides (website, query, brand tokens, identifier) to ``config``."""
    overrides: Dict[str, Any] = {}
    website = task.get("website") or task.get("url")
    if website:
        overrides["website"] = website
    query = task.get("query") or task.get("confirmed_task")
    if query:
        overrides["search_query"] = query
    brands = task.get("brand_tokens") or task.get("brands")
    if brands:
        overrides["brand_tokens"] = [brands] if isinstance(brands, str) else list(brands)
    if task.get("identifier"):
        overrides["identifier"] = str(task["identifier"])
    return dataclasses.replace(config, **overrides) if overrides else config


def _result_from_report(task_id: str, report: FlowReport, duration_ms: int) -> TaskResult:
    return TaskResult(
        task_id=task_id,
        status=report.status.value,
        success=report.success,
        steps=len(report.steps),
        duration_ms=duration_ms,
        message=report.terminal_message(),
        failing_step=None if report.success else report.failing_step,
        final_url=report.final_url,
        details=report.details,
        step_reports=[dataclasses.asdict(s) for s in report.steps],
    )


async def execute_task(
    task: Dict[str, Any],
    flow_config: FlowConfig,
    browser_config: BrowserConfig,
    profile: SiteProfile,
    save_dir: Path,
    sink: Optional[JsonlEventSink] = None,
    playwright_factory: Optional[Callable[[], Any]] = None,
    deadline: Optional[Deadline] = None,
    hold: bool = False,
) -> TaskResult:
    t0 = time.time()
    task_id = task.get("task_id") or "manual"
    config = task_flow_config(flow_config, task)
    task_dir = Path(save_dir) / task_id
    emit = sink.bind(task_id=task_id) if sink is not None else None
    if emit is not None:
        await emit({"event": "run_start", "website": config.website, "query": config.search_query})

    report: Optional[FlowReport] = None
    result: Optional[TaskResult] = None
    factory = playwright_factory or async_playwright
    try:
        async with factory() as playwright:
            browser = await normal_launch_async(
                playwright,
                headless=browser_config.headless,
                args=browser_config.args or None,
                slow_mo=browser_config.slow_mo,
            )
            context = None
            try:
                context = await normal_new_context_async(
                    browser,
                    tracing=browser_config.tracing,
                    trace_screenshots=True,
                    trace_snapshots=True,
                    locale=browser_config.locale,
                    viewport=browser_config.viewport,
                )
                page = PageHandle(await context.new_page())
                sequencer = build_sequencer(profile, config, on_event=emit)
                report = await sequencer.run(page, deadline or Deadline(config.deadline_sec))
                result = _result_from_report(task_id, report, int((time.time() - t0) * 1000))
                if not report.success and report.page is not None and not report.page.is_closed():
                    shot = await save_failure_screenshot(
                        report.page, task_dir, name=f"failed_{report.failing_step or 'run'}"
                    )
                    result.screenshot = str(shot) if shot else None
                if hold:
                    await asyncio.to_thread(input, "Press Enter to exit...")
            finally:
                trace_path = task_dir / "trace.zip" if browser_config.tracing else None
                await close_context_async(context, trace_path)
                await browser.close()
    except Exception as exc:
        if result is not None:
            logger.warning(f"Browser teardown failed for {task_id}: {exc}")
        else:
            result = TaskResult(
                task_id=task_id,
                status="error",
                success=False,
                steps=len(report.steps) if report is not None else 0,
                duration_ms=int((time.time() - t0) * 1000),
                message=f"ERROR outside the walk [{type(exc).__name__}]: {exc}",
            )
            logger.error(result.message)
            if emit is not None:
                await emit({"event": "run_complete", "status": "error", "error": type(exc).__name__, "message": str(exc)})
    result.duration_ms = int((time.time() - t0) * 1000)
    return result
