import asyncio

import pytest

from fake_browser import FakeElement, FakePage

from shopflow.Exceptions import ConditionTimeoutError, DeadlineExceededError
from shopflow.page_handle import PageHandle
from shopflow.readiness import (
    AllOf,
    Deadline,
    LoadStateReached,
    NetworkQuiet,
    ReadinessWaiter,
    SelectorPresent,
    selector_alternatives,
)


@pytest.mark.asyncio
async def test_wait_until_resolves_when_element_appears():
    page = FakePage()
    loop = asyncio.get_running_loop()
    loop.call_later(0.02, page.add, "#ready", FakeElement())

    outcome = await ReadinessWaiter().wait_until(PageHandle(page), SelectorPresent("#ready", label="ready"), 1000)

    assert outcome.condition == "ready"
    assert outcome.matched == "ready"
    assert outcome.elapsed_ms < 1000


@pytest.mark.asyncio
async def test_wait_until_times_out_with_condition_label():
    page = FakePage()

    with pytest.raises(ConditionTimeoutError) as info:
        await ReadinessWaiter().wait_until(PageHandle(page), SelectorPresent("#never", label="never shown"), 50)

    assert not isinstance(info.value, DeadlineExceededError)
    assert info.value.condition == "never shown"
    assert info.value.timeout_ms == 50


@pytest.mark.asyncio
async def test_any_selector_reports_matched_alternative():
    page = FakePage()
    page.add("#auth-pv-enter-code")
    condition = selector_alternatives(
        ("#ap_password", "#auth-pv-enter-code"), names=("password", "verification_code")
    )

    outcome = await ReadinessWaiter().wait_until(PageHandle(page), condition, 500)

    assert outcome.matched == "verification_code"


@pytest.mark.asyncio
async def test_any_selector_prefers_earlier_alternative_when_both_present():
    page = FakePage()
    page.add("#ap_email")
    page.add("#ap_email_login")
    condition = selector_alternatives(("#ap_email_login", "#ap_email"))

    outcome = await ReadinessWaiter().wait_until(PageHandle(page), condition, 500)

    assert outcome.matched == "#ap_email_login"


@pytest.mark.asyncio
async def test_any_selector_times_out_when_none_appear():
    page = FakePage()
    condition = selector_alternatives(("#a", "#b"), label="a or b")

    with pytest.raises(ConditionTimeoutError) as info:
        await ReadinessWaiter().wait_until(PageHandle(page), condition, 50)

    assert info.value.condition == "a or b"


@pytest.mark.asyncio
async def test_all_of_waits_for_each_condition():
    page = FakePage()
    loop = asyncio.get_running_loop()
    loop.call_later(0.02, page.add, "#productTitle", FakeElement(text="Title"))
    condition = AllOf((LoadStateReached("domcontentloaded"), SelectorPresent("#productTitle")), label="product page")

    outcome = await ReadinessWaiter().wait_until(PageHandle(page), condition, 1000)

    assert outcome.condition == "product page"
    assert "domcontentloaded" in outcome.matched


@pytest.mark.asyncio
async def test_stalled_load_state_times_out():
    page = FakePage()
    page.stalled_load_states.add("domcontentloaded")

    with pytest.raises(ConditionTimeoutError):
        await ReadinessWaiter().wait_until(PageHandle(page), LoadStateReached("domcontentloaded"), 50)


@pytest.mark.asyncio
async def test_network_quiet_resolves_without_traffic():
    page = FakePage()

    outcome = await ReadinessWaiter().wait_until(PageHandle(page), NetworkQuiet(quiet_ms=10), 1000)

    assert outcome.matched == "network idle for 10ms"
    assert page._listeners["request"] == []


@pytest.mark.asyncio
async def test_network_quiet_waits_for_inflight_request():
    page = FakePage()
    loop = asyncio.get_running_loop()
    loop.call_later(0.005, page.emit, "request", object())

    with pytest.raises(ConditionTimeoutError):
        await ReadinessWaiter().wait_until(PageHandle(page), NetworkQuiet(quiet_ms=20), 100)

    loop.call_later(0.005, page.emit, "request", object())
    loop.call_later(0.02, page.emit, "requestfinished", object())
    outcome = await ReadinessWaiter().wait_until(PageHandle(page), NetworkQuiet(quiet_ms=10), 1000)
    assert outcome.elapsed_ms >= 15


@pytest.mark.asyncio
async def test_cancelled_deadline_aborts_wait():
    page = FakePage()
    deadline = Deadline()
    loop = asyncio.get_running_loop()
    loop.call_later(0.02, deadline.cancel, "stop requested")

    with pytest.raises(DeadlineExceededError) as info:
        await ReadinessWaiter().wait_until(PageHandle(page), SelectorPresent("#never"), 5000, deadline)

    assert info.value.reason == "stop requested"
    assert info.value.elapsed_ms < 5000


@pytest.mark.asyncio
async def test_deadline_budget_clamps_timeout():
    page = FakePage()
    deadline = Deadline(budget_sec=0.05)

    with pytest.raises(DeadlineExceededError):
        await ReadinessWaiter().wait_until(PageHandle(page), SelectorPresent("#never"), 5000, deadline)


def test_deadline_clamp_and_remaining():
    now = [100.0]
    deadline = Deadline(budget_sec=2, clock=lambda: now[0])

    assert deadline.clamp(5000, "x") == 2000
    assert deadline.clamp(500, "x") == 500
    now[0] = 102.5
    assert deadline.expired
    with pytest.raises(DeadlineExceededError):
        deadline.clamp(500, "x")


def test_deadline_without_budget_never_expires():
    deadline = Deadline()
    assert deadline.remaining_ms() is None
    assert not deadline.expired
    assert deadline.clamp(1234, "x") == 1234


@pytest.mark.asyncio
async def test_guard_abandons_driver_call_on_cancel():
    deadline = Deadline()
    loop = asyncio.get_running_loop()
    loop.call_later(0.02, deadline.cancel, "stop requested")
    slow = asyncio.ensure_future(asyncio.sleep(5))

    with pytest.raises(DeadlineExceededError) as info:
        await deadline.guard(slow, "navigate")

    assert info.value.reason == "stop requested"
    assert slow.cancelled()
    assert await Deadline().guard(asyncio.sleep(0, result="ok"), "x") == "ok"
