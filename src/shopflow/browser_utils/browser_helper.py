import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


async def normal_launch_async(playwright, headless=False, args=None, slow_mo=None):
    browser = await playwright.chromium.launch(
        traces_dir=None,
        headless=headless,
        args=args,
        slow_mo=slow_mo,
    )
    return browser


async def normal_new_context_async(
        browser,
        storage_state=None,
        har_path=None,
        video_path=None,
        tracing=False,
        trace_screenshots=False,
        trace_snapshots=False,
        trace_sources=False,
        locale=None,
        geolocation=None,
        user_agent: Optional[str] = None,
        viewport: Optional[dict] = None,
):
    context = await browser.new_context(
        storage_state=storage_state,
        user_agent=user_agent,
        viewport=viewport or {"width": 1366, "height": 768},
        locale=locale,
        record_har_path=har_path,
        record_video_dir=video_path,
        geolocation=geolocation,
    )

    if tracing:
        await context.tracing.start(screenshots=trace_screenshots, snapshots=trace_snapshots, sources=trace_sources)
    return context


async def save_failure_screenshot(page, save_dir, name="failure"):
    """Capture the current page into ``save_dir``; returns the path or None."""
    path = Path(save_dir) / f"{name}.png"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        await page.screenshot(str(path), full_page=True)
    except Exception as e:
        logger.warning(f"Failed to take screenshot: {e}")
        return None
    return path


async def close_context_async(context, trace_path=None):
    if context is None:
        return
    if trace_path is not None:
        try:
            Path(trace_path).parent.mkdir(parents=True, exist_ok=True)
            await context.tracing.stop(path=str(trace_path))
        except Exception as e:
            logger.warning(f"Failed to save trace: {e}")
    await context.close()
