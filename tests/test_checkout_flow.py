import asyncio

import pytest

from fake_browser import FakeStore, amazon_profile, fast_config

from shopflow.flow import ENTRY_POINT_UNAVAILABLE, build_checkout_steps, build_sequencer
from shopflow.page_handle import PageHandle
from shopflow.readiness import Deadline
from shopflow.sequencer import FlowStatus


async def _run(store, config=None, events=None):
    sequencer = build_sequencer(amazon_profile(), config or fast_config(), on_event=events.append if events is not None else None)
    return await sequencer.run(PageHandle(store.home))


def test_step_list_is_fixed_and_ordered():
    steps = build_checkout_steps(amazon_profile(), fast_config())
    assert [s.name for s in steps] == [
        "navigate",
        "dismiss_overlays",
        "search",
        "select_result",
        "confirm_product",
        "purchase_entry",
        "enter_identifier",
        "reach_auth_boundary",
    ]
    assert steps[2].postcondition.describe() == "search results rendered"


@pytest.mark.smoke
@pytest.mark.asyncio
async def test_full_walk_reaches_password_prompt():
    store = FakeStore(overlays=("language", "location"))
    events = []

    report = await _run(store, events=events)

    assert report.status is FlowStatus.BOUNDARY_REACHED, report.terminal_message()
    assert report.details["auth_prompt"] == "password"
    assert report.details["product_title"] == "boAt Rockerz 450"
    assert report.details["selection"]["outcome"] == "selected via preferred match"
    assert report.page.raw is store.product
    assert store.home.gotos == ["https://www.amazon.in/"]
    assert store.home.fills == [("#twotabsearchtextbox", "boat headphones")]
    assert store.product.fills == [("#ap_email_login", "9876543210")]
    assert "#icp-nav-flyout" not in store.home.elements
    names = [e["event"] for e in events]
    assert names.index("selection") < names.index("handoff")
    assert names[-1] == "run_complete"


@pytest.mark.asyncio
async def test_verification_code_branch_is_reported():
    store = FakeStore(auth_prompt="otp")

    report = await _run(store)

    assert report.success
    assert report.details["auth_prompt"] == "verification_code"


@pytest.mark.asyncio
async def test_alternate_identifier_field_is_used():
    store = FakeStore(identifier_field="#ap_email")

    report = await _run(store)

    assert report.success
    assert store.product.fills == [("#ap_email", "9876543210")]


@pytest.mark.asyncio
async def test_fallback_selection_without_brand_match():
    store = FakeStore(results=("Sony WH-1000XM5", "JBL Tune 510BT"))

    report = await _run(store)

    assert report.success
    assert store.clicked == [0]
    assert report.details["selection"]["outcome"] == "selected via fallback"


@pytest.mark.asyncio
async def test_search_results_timeout_aborts_remaining_steps():
    store = FakeStore(results_render=False)

    report = await _run(store)

    assert report.status is FlowStatus.FAILED
    assert report.failing_step == "search"
    assert report.failed_condition == "search results rendered"
    assert [s.name for s in report.steps] == ["navigate", "dismiss_overlays", "search"]
    assert store.clicked == []


@pytest.mark.asyncio
async def test_missing_purchase_entry_degrades_and_proceeds():
    store = FakeStore(buy_now=False)

    report = await _run(store)

    assert report.success
    purchase = next(s for s in report.steps if s.name == "purchase_entry")
    assert purchase.status == "degraded"
    assert purchase.note == ENTRY_POINT_UNAVAILABLE


@pytest.mark.asyncio
async def test_no_new_tab_fails_on_product_page_wait():
    store = FakeStore(opens_tab=False)

    report = await _run(store)

    assert report.status is FlowStatus.FAILED
    assert report.failing_step == "confirm_product"
    assert report.failed_condition == "product page loaded"
    select = next(s for s in report.steps if s.name == "select_result")
    assert select.status == "degraded"
    assert report.details["selection"]["state"] == "context_timeout"


@pytest.mark.asyncio
async def test_missing_identifier_stops_before_sign_in():
    store = FakeStore()

    report = await _run(store, fast_config(identifier=""))

    assert report.status is FlowStatus.FAILED
    assert report.failing_step == "enter_identifier"
    assert store.product.fills == []


@pytest.mark.asyncio
async def test_cancel_interrupts_slow_navigation():
    store = FakeStore()
    store.home.on_goto = lambda page: asyncio.sleep(5)
    deadline = Deadline()
    loop = asyncio.get_running_loop()
    loop.call_later(0.05, deadline.cancel, "operator abort")
    sequencer = build_sequencer(amazon_profile(), fast_config(step_timeout_ms=5000))

    started = loop.time()
    report = await sequencer.run(PageHandle(store.home), deadline)

    assert loop.time() - started < 1
    assert report.status is FlowStatus.CANCELLED
    assert report.failing_step == "navigate"
    assert report.error_kind == "DeadlineExceededError"
    assert "operator abort" in report.message
