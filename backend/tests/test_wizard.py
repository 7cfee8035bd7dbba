"""
Wizard session: transitions, guards, fallback confirmation, lead gate
"""
import asyncio

import httpx
import pytest

from schemas import ContactIn
from wizard import WizardSession, WizardStep, WizardError, EMPTY_SELECTION_NOTICE


@pytest.fixture
def contact(contact_payload):
    return ContactIn(**contact_payload)


def _to_gated(session, profile, *concerns):
    for c in concerns:
        session.toggle(c)
    assert session.next()
    session.submit(profile)
    assert session.state == WizardStep.viewing_gated_results


def test_initial_state():
    session = WizardSession()
    assert session.state == WizardStep.selecting_concerns
    assert session.concerns == set()
    assert session.result is None


def test_toggle_adds_and_removes():
    session = WizardSession()
    session.toggle("inventory")
    session.toggle("spend")
    session.toggle("inventory")
    assert session.concerns == {"spend"}


def test_toggle_rejects_unknown_concern():
    with pytest.raises(WizardError):
        WizardSession().toggle("pricing")


def test_next_with_empty_selection_sets_notice():
    session = WizardSession()
    assert session.next() is False
    assert session.state == WizardStep.selecting_concerns
    assert session.notice == EMPTY_SELECTION_NOTICE


def test_back_from_profile_keeps_selection():
    session = WizardSession()
    session.toggle("downtime")
    session.next()
    session.back()
    assert session.state == WizardStep.selecting_concerns
    assert session.concerns == {"downtime"}


def test_submit_blocked_stays_and_focuses_first_error(inventory_profile):
    session = WizardSession()
    session.toggle("inventory")
    session.next()
    bad = inventory_profile.model_copy(update={"site_count": None, "total_inventory_value": 10})

    outcome = session.submit(bad)

    assert outcome.errors
    assert session.state == WizardStep.entering_profile
    assert session.focus_field == "site_count"
    assert session.result is None


def test_submit_valid_runs_estimate(inventory_profile):
    session = WizardSession()
    _to_gated(session, inventory_profile, "inventory")
    assert session.result["grand_total"] == pytest.approx(189_900)
    assert session.errors == {}


def test_gated_snapshot_hides_breakdown(inventory_profile):
    session = WizardSession()
    _to_gated(session, inventory_profile, "inventory")
    snap = session.snapshot()
    assert snap["result"]["grand_total"] == pytest.approx(189_900)
    assert "inventory" not in snap["result"]


def test_mix_confirmation_then_accept(inventory_profile):
    session = WizardSession()
    session.toggle("inventory")
    session.next()
    edited = inventory_profile.model_copy(update={"active_percent": 80, "mix_edited": True})

    session.submit(edited)
    assert session.state == WizardStep.entering_profile
    assert session.proposed_fallback is not None

    session.confirm_fallback()
    assert session.state == WizardStep.viewing_gated_results
    assert session.profile.active_percent == 67
    assert session.result["grand_total"] == pytest.approx(189_900)


def test_confirm_fallback_without_pending_mix_fails(inventory_profile):
    session = WizardSession()
    session.toggle("inventory")
    session.next()
    with pytest.raises(WizardError):
        session.confirm_fallback()


def test_adjust_inputs_returns_to_profile(inventory_profile):
    session = WizardSession()
    _to_gated(session, inventory_profile, "inventory")
    session.adjust_inputs()
    assert session.state == WizardStep.entering_profile

    session.submit(inventory_profile.model_copy(update={"site_count": 3}))
    assert session.result["inventory"]["pooling"] > 0


def test_lead_submitted_unlocks_full_results(inventory_profile, contact):
    session = WizardSession()
    _to_gated(session, inventory_profile, "inventory", "spend")
    seen = {}

    async def capture(c, calculation):
        seen["email"] = c.email
        seen["calculation"] = calculation

    ok = asyncio.run(session.submit_lead(contact, capture))

    assert ok is True
    assert session.state == WizardStep.viewing_full_results
    assert seen["calculation"]["concerns"] == ["inventory", "spend"]
    assert seen["calculation"]["result"]["spend"]["total_spend"] == pytest.approx(308_158)
    assert session.snapshot()["result"]["inventory"] is not None


def test_failed_capture_still_unlocks(inventory_profile, contact):
    session = WizardSession()
    _to_gated(session, inventory_profile, "inventory")

    async def capture(c, calculation):
        raise httpx.ConnectError("CRM unreachable")

    ok = asyncio.run(session.submit_lead(contact, capture))

    assert ok is False
    assert session.state == WizardStep.viewing_full_results
    assert session.lead_captured is False


def test_lead_not_accepted_before_results(contact):
    session = WizardSession()

    async def capture(c, calculation):
        pass

    with pytest.raises(WizardError):
        asyncio.run(session.submit_lead(contact, capture))


def test_reset_clears_everything(inventory_profile):
    session = WizardSession()
    _to_gated(session, inventory_profile, "inventory")
    session.reset()
    assert session.state == WizardStep.selecting_concerns
    assert session.concerns == set()
    assert session.profile is None
    assert session.result is None


def test_toggle_only_while_selecting(inventory_profile):
    session = WizardSession()
    _to_gated(session, inventory_profile, "inventory")
    with pytest.raises(WizardError):
        session.toggle("spend")


def test_rejected_resubmit_drops_previous_result(inventory_profile):
    session = WizardSession()
    _to_gated(session, inventory_profile, "inventory")
    session.adjust_inputs()

    session.submit(inventory_profile.model_copy(update={"total_inventory_value": 10}))

    assert session.state == WizardStep.entering_profile
    assert session.result is None
    assert session.snapshot()["result"] is None
    assert session.focus_field == "total_inventory_value"


def test_mix_confirmation_on_resubmit_drops_previous_result(inventory_profile):
    session = WizardSession()
    _to_gated(session, inventory_profile, "inventory")
    session.adjust_inputs()

    session.submit(inventory_profile.model_copy(update={"active_percent": 80, "mix_edited": True}))

    assert session.proposed_fallback is not None
    assert session.result is None
    assert session.lead_captured is False
