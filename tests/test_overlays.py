import asyncio

import pytest

from fake_browser import LANGUAGE_OVERLAY, LOCATION_OVERLAY, FakeElement, FakePage, FakeStore

from shopflow.overlays import OverlayDismisser, OverlayRule
from shopflow.page_handle import PageHandle
from shopflow.readiness import Deadline


def _dismisser():
    rules = [OverlayRule.from_manifest(entry, settle_ms=0, quiet_ms=5) for entry in (LANGUAGE_OVERLAY, LOCATION_OVERLAY)]
    return OverlayDismisser(rules, settle_ms=0)


async def _loaded_home(overlays):
    store = FakeStore(overlays=overlays)
    await store.home.goto("https://www.amazon.in/")
    return store


@pytest.mark.asyncio
async def test_dismisses_present_overlays_in_order():
    store = await _loaded_home(("language", "location"))

    reports = await _dismisser().dismiss(PageHandle(store.home))

    assert [r.name for r in reports] == ["language", "location"]
    assert all(r.present and r.dismissed and r.error is None for r in reports)
    assert "#icp-nav-flyout" not in store.home.elements
    assert "#nav-global-location-popover-link" not in store.home.elements


@pytest.mark.asyncio
async def test_absent_overlays_are_not_errors():
    store = await _loaded_home(())

    reports = await _dismisser().dismiss(PageHandle(store.home))

    assert [r.present for r in reports] == [False, False]
    assert not any(r.dismissed or r.error for r in reports)


@pytest.mark.asyncio
async def test_dismiss_is_idempotent():
    store = await _loaded_home(("language", "location"))
    dismisser = _dismisser()
    page = PageHandle(store.home)

    await dismisser.dismiss(page)
    clicks_before = sum(e.clicks for elems in store.home.elements.values() for e in elems)
    second = await dismisser.dismiss(page)

    assert not any(r.present or r.dismissed or r.error for r in second)
    assert sum(e.clicks for elems in store.home.elements.values() for e in elems) == clicks_before


@pytest.mark.asyncio
async def test_missing_follow_up_click_is_skipped():
    page = FakePage()
    flyout = page.add("#icp-nav-flyout", FakeElement())

    reports = await _dismisser().dismiss(PageHandle(page))

    assert flyout.clicks == 1
    assert reports[0].dismissed is True


@pytest.mark.asyncio
async def test_failure_in_one_rule_does_not_stop_the_next():
    page = FakePage()

    async def _boom(_page, _deadline):
        raise RuntimeError("overlay moved")

    page.add("#first")
    page.add("#second")
    second_clicked = []

    async def _ok(_page, _deadline):
        second_clicked.append(True)

    dismisser = OverlayDismisser(
        [OverlayRule("first", "#first", _boom), OverlayRule("second", "#second", _ok)], settle_ms=0
    )
    reports = await dismisser.dismiss(PageHandle(page))

    assert reports[0].error == "RuntimeError: overlay moved"
    assert reports[0].dismissed is False
    assert reports[1].dismissed is True
    assert second_clicked == [True]


@pytest.mark.asyncio
async def test_hidden_overlay_counts_as_absent():
    page = FakePage()
    page.add("#icp-nav-flyout", FakeElement(visible=False))

    reports = await _dismisser().dismiss(PageHandle(page))

    assert reports[0].present is False


@pytest.mark.asyncio
async def test_expired_deadline_skips_remaining_rules():
    store = await _loaded_home(("language", "location"))
    deadline = Deadline()
    deadline.cancel("shutting down")

    reports = await _dismisser().dismiss(PageHandle(store.home), deadline)

    assert reports == []
    assert "#icp-nav-flyout" in store.home.elements


@pytest.mark.asyncio
async def test_cancel_interrupts_network_quiet_wait():
    store = await _loaded_home(("language",))
    store.home.stalled_load_states.add("networkidle")
    rule = OverlayRule.from_manifest(dict(LANGUAGE_OVERLAY, wait_timeout_ms=5000), settle_ms=0, quiet_ms=5)
    deadline = Deadline()
    loop = asyncio.get_running_loop()
    loop.call_later(0.05, deadline.cancel, "stop requested")

    started = loop.time()
    reports = await OverlayDismisser([rule], settle_ms=0).dismiss(PageHandle(store.home), deadline)

    assert loop.time() - started < 1
    assert reports[0].present is True
    assert reports[0].dismissed is False
    assert reports[0].error.startswith("DeadlineExceededError")
