"""
HTTP API: estimation, lead submission/lookup, wizard sessions, export
"""
import asyncio
import time

import pytest
from sqlalchemy.exc import OperationalError

import crm
import main
from models import SessionLocal, Lead

PROFILE = {
    "site_count": 1,
    "total_inventory_value": 1_000_000,
    "sku_count": 5_000,
    "annual_spend": 2_500_000,
    "industry": "Chemicals",
}


def _submission(contact, concerns=("inventory",), **profile_overrides):
    return {
        "lead": contact,
        "calculation": {
            "schema_version": 1,
            "concerns": list(concerns),
            "profile": {**PROFILE, **profile_overrides},
        },
    }


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


# ---------------------------------------------------------------------------
# ESTIMATE / VALIDATE
# ---------------------------------------------------------------------------
def test_estimate_spend(client):
    resp = client.post("/api/estimate", json={"concerns": ["spend"], "profile": PROFILE})
    assert resp.status_code == 200
    body = resp.json()
    assert body["inventory"] is None
    assert body["spend"]["total_spend"] == pytest.approx(308_158)
    assert body["grand_total"] == pytest.approx(308_158)


def test_estimate_blocked_profile_is_400(client):
    resp = client.post("/api/estimate", json={"concerns": ["spend"], "profile": {"site_count": 1}})
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Validation failed"
    assert "annual_spend" in body["details"]


def test_estimate_requires_a_concern(client):
    resp = client.post("/api/estimate", json={"concerns": [], "profile": PROFILE})
    assert resp.status_code == 400


def test_validate_returns_outcome_not_error(client):
    profile = {**PROFILE, "active_percent": 90, "mix_edited": True}
    resp = client.post("/api/validate", json={"concerns": ["inventory"], "profile": profile})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "needs_confirmation"
    assert body["proposed_fallback"]["active_percent"] == 67


def test_malformed_body_is_400(client):
    resp = client.post("/api/estimate", json={"concerns": ["pricing"], "profile": PROFILE})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Validation failed"


# ---------------------------------------------------------------------------
# LEADS
# ---------------------------------------------------------------------------
def test_submit_lead_stores_lead_and_calculation(client, contact_payload):
    resp = client.post("/api/leads", json=_submission(contact_payload))
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True

    detail = client.get(f"/api/leads/{body['lead_id']}").json()
    assert detail["lead"]["email"] == contact_payload["email"]
    # CRM not configured in tests; background sync records that
    assert detail["lead"]["crm_sync_status"] == "skipped"
    assert len(detail["calculations"]) == 1
    calc = detail["calculations"][0]
    assert calc["id"] == body["calculation_id"]
    assert calc["grand_total"] == pytest.approx(189_900)
    assert calc["result"]["inventory"]["total_inv_reduction"] == pytest.approx(189_900)
    assert (calc["active_percent"], calc["obsolete_percent"], calc["special_percent"]) == (67, 23, 10)


def test_client_result_figures_are_ignored(client, contact_payload):
    payload = _submission(contact_payload)
    payload["calculation"]["result"] = {"grand_total": 99_999_999}
    lead_id = client.post("/api/leads", json=payload).json()["lead_id"]

    calc = client.get(f"/api/leads/{lead_id}").json()["calculations"][0]
    assert calc["grand_total"] == pytest.approx(189_900)


def test_repeat_email_reuses_lead(client, contact_payload):
    first = client.post("/api/leads", json=_submission(contact_payload)).json()
    again_contact = {**contact_payload, "email": contact_payload["email"].upper(), "company": "Acme Holdings"}
    second = client.post("/api/leads", json=_submission(again_contact, concerns=("spend",))).json()

    assert second["lead_id"] == first["lead_id"]
    assert second["calculation_id"] != first["calculation_id"]

    detail = client.get(f"/api/leads/{first['lead_id']}").json()
    assert detail["lead"]["company"] == "Acme Holdings"
    assert [c["concerns"] for c in detail["calculations"]] == [["inventory"], ["spend"]]


def test_free_mail_is_rejected(client, contact_payload):
    contact = {**contact_payload, "email": "dana@gmail.com"}
    resp = client.post("/api/leads", json=_submission(contact))
    assert resp.status_code == 400
    assert resp.json()["details"]["email"] == "Please use your business email address"


def test_short_name_is_rejected(client, contact_payload):
    contact = {**contact_payload, "first_name": "D"}
    resp = client.post("/api/leads", json=_submission(contact))
    assert resp.status_code == 400
    assert resp.json()["error"] == "Validation failed"


def test_invalid_profile_is_rejected_server_side(client, contact_payload):
    resp = client.post("/api/leads", json=_submission(contact_payload, total_inventory_value=10))
    assert resp.status_code == 400
    assert "total_inventory_value" in resp.json()["details"]


def test_unknown_schema_version_is_rejected(client, contact_payload):
    payload = _submission(contact_payload)
    payload["calculation"]["schema_version"] = 2
    assert client.post("/api/leads", json=payload).status_code == 400


def test_unknown_lead_is_404(client):
    resp = client.get("/api/leads/4242")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Lead not found"}


def _broken_store(*args, **kwargs):
    raise OperationalError("INSERT", {}, Exception("database is locked"))


def test_storage_failure_with_crm_success_still_succeeds(client, contact_payload, monkeypatch):
    async def fake_sync(contact, profile, result, *args, **kwargs):
        return crm.CrmSyncOutcome("synced", contact_id="1")

    monkeypatch.setattr(main, "_store_lead", _broken_store)
    monkeypatch.setattr(crm, "sync_lead_to_crm", fake_sync)

    resp = client.post("/api/leads", json=_submission(contact_payload))
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "lead_id": None, "calculation_id": None}


def test_storage_and_crm_failure_is_500(client, contact_payload, monkeypatch):
    async def fake_sync(contact, profile, result, *args, **kwargs):
        return crm.CrmSyncOutcome("failed", error="boom")

    monkeypatch.setattr(main, "_store_lead", _broken_store)
    monkeypatch.setattr(crm, "sync_lead_to_crm", fake_sync)

    resp = client.post("/api/leads", json=_submission(contact_payload))
    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to save lead"}


def test_crm_failure_marks_lead_failed(client, contact_payload, monkeypatch):
    async def fake_sync(contact, profile, result, *args, **kwargs):
        return crm.CrmSyncOutcome("failed", error="503")

    monkeypatch.setattr(crm, "sync_lead_to_crm", fake_sync)

    body = client.post("/api/leads", json=_submission(contact_payload)).json()
    assert body["success"] is True

    db = SessionLocal()
    try:
        lead = db.query(Lead).filter(Lead.id == body["lead_id"]).first()
        assert lead.crm_sync_status.value == "failed"
    finally:
        db.close()


# ---------------------------------------------------------------------------
# WIZARD
# ---------------------------------------------------------------------------
def _gated_session(client, concerns=("inventory",)):
    sid = client.post("/api/wizard").json()["session_id"]
    for c in concerns:
        client.post(f"/api/wizard/{sid}/concerns/{c}")
    client.post(f"/api/wizard/{sid}/next")
    snap = client.post(f"/api/wizard/{sid}/profile", json=PROFILE).json()
    assert snap["state"] == "viewing_gated_results"
    return sid


def test_wizard_happy_path(client, contact_payload):
    sid = _gated_session(client, ("inventory", "spend"))

    gated = client.get(f"/api/wizard/{sid}").json()
    assert gated["result"]["grand_total"] == pytest.approx(189_900 + 308_158)
    assert "spend" not in gated["result"]

    snap = client.post(f"/api/wizard/{sid}/lead", json=contact_payload).json()
    assert snap["state"] == "viewing_full_results"
    assert snap["lead_captured"] is True
    assert snap["result"]["spend"]["total_spend"] == pytest.approx(308_158)

    db = SessionLocal()
    try:
        assert db.query(Lead).filter(Lead.email == contact_payload["email"]).count() == 1
    finally:
        db.close()


def test_wizard_next_without_concerns_shows_notice(client):
    sid = client.post("/api/wizard").json()["session_id"]
    snap = client.post(f"/api/wizard/{sid}/next").json()
    assert snap["state"] == "selecting_concerns"
    assert snap["notice"]


def test_wizard_blocked_profile_reports_errors(client):
    sid = client.post("/api/wizard").json()["session_id"]
    client.post(f"/api/wizard/{sid}/concerns/downtime")
    client.post(f"/api/wizard/{sid}/next")
    snap = client.post(f"/api/wizard/{sid}/profile", json={"industry": "Other"}).json()

    assert snap["state"] == "entering_profile"
    assert snap["focus_field"] == "site_count"
    assert "downtime_cost_per_hour" in snap["errors"]


def test_wizard_lead_unlocks_when_storage_and_crm_fail(client, contact_payload, monkeypatch):
    async def fake_sync(contact, profile, result, *args, **kwargs):
        return crm.CrmSyncOutcome("failed", error="network down")

    monkeypatch.setattr(main, "_store_lead", _broken_store)
    monkeypatch.setattr(crm, "sync_lead_to_crm", fake_sync)
    sid = _gated_session(client)

    resp = client.post(f"/api/wizard/{sid}/lead", json=contact_payload)
    assert resp.status_code == 200
    snap = resp.json()
    assert snap["state"] == "viewing_full_results"
    assert snap["lead_captured"] is False


def test_wizard_bad_email_keeps_gate_closed(client, contact_payload):
    sid = _gated_session(client)
    resp = client.post(f"/api/wizard/{sid}/lead", json={**contact_payload, "email": "x@hotmail.com"})
    assert resp.status_code == 400
    assert client.get(f"/api/wizard/{sid}").json()["state"] == "viewing_gated_results"


def test_wizard_illegal_transition_is_409(client):
    sid = client.post("/api/wizard").json()["session_id"]
    resp = client.post(f"/api/wizard/{sid}/adjust")
    assert resp.status_code == 409
    assert "error" in resp.json()


def test_wizard_unknown_session_is_404(client):
    assert client.get("/api/wizard/nope").status_code == 404


def test_wizard_reset(client):
    sid = _gated_session(client)
    snap = client.post(f"/api/wizard/{sid}/reset").json()
    assert snap["state"] == "selecting_concerns"
    assert snap["concerns"] == []
    assert snap["result"] is None


def test_export_only_after_unlock(client, contact_payload):
    sid = _gated_session(client)
    assert client.get(f"/api/wizard/{sid}/export").status_code == 409

    client.post(f"/api/wizard/{sid}/lead", json=contact_payload)
    resp = client.get(f"/api/wizard/{sid}/export")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    lines = resp.text.splitlines()
    assert lines[0] == "section,field,value"
    assert "result,inventory_total_inv_reduction,189900.0" in lines
    assert "result,grand_total,189900.0" in lines


# ---------------------------------------------------------------------------
# NON-FINITE INPUT
# ---------------------------------------------------------------------------
@pytest.mark.parametrize("route", ["/api/validate", "/api/estimate"])
@pytest.mark.parametrize("value", ["NaN", "inf", "-inf"])
def test_non_finite_numbers_are_400(client, route, value):
    profile = {**PROFILE, "total_inventory_value": value}
    resp = client.post(route, json={"concerns": ["inventory"], "profile": profile})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Validation failed"


def test_non_finite_mix_is_400(client):
    profile = {**PROFILE, "active_percent": "NaN", "mix_edited": True}
    resp = client.post("/api/estimate", json={"concerns": ["inventory"], "profile": profile})
    assert resp.status_code == 400


# ---------------------------------------------------------------------------
# SESSION EVICTION
# ---------------------------------------------------------------------------
def test_idle_session_expires(client):
    sid = client.post("/api/wizard").json()["session_id"]
    main.SESSIONS[sid].last_seen -= main.WIZARD_SESSION_TTL_SECONDS + 1

    assert client.get(f"/api/wizard/{sid}").status_code == 404
    assert sid not in main.SESSIONS


def test_new_session_sweeps_expired_ones(client):
    old = client.post("/api/wizard").json()["session_id"]
    main.SESSIONS[old].last_seen -= main.WIZARD_SESSION_TTL_SECONDS + 1

    new = client.post("/api/wizard").json()["session_id"]

    assert old not in main.SESSIONS
    assert new in main.SESSIONS


def test_session_cap_drops_least_recently_used(client, monkeypatch):
    monkeypatch.setattr(main, "WIZARD_MAX_SESSIONS", 2)
    first = client.post("/api/wizard").json()["session_id"]
    second = client.post("/api/wizard").json()["session_id"]
    now = time.monotonic()
    main.SESSIONS[first].last_seen = now
    main.SESSIONS[second].last_seen = now - 10

    third = client.post("/api/wizard").json()["session_id"]

    assert set(main.SESSIONS) == {first, third}


def test_session_use_keeps_it_alive(client):
    sid = client.post("/api/wizard").json()["session_id"]
    main.SESSIONS[sid].last_seen -= main.WIZARD_SESSION_TTL_SECONDS - 5

    assert client.get(f"/api/wizard/{sid}").status_code == 200
    assert main.SESSIONS[sid].last_seen > time.monotonic() - 5


def test_lead_storage_runs_off_the_event_loop(client, contact_payload, monkeypatch):
    seen = {}
    real_store = main._store_lead

    def store(*args):
        try:
            asyncio.get_running_loop()
            seen["on_loop"] = True
        except RuntimeError:
            seen["on_loop"] = False
        return real_store(*args)

    monkeypatch.setattr(main, "_store_lead", store)

    assert client.post("/api/leads", json=_submission(contact_payload)).status_code == 200
    assert seen["on_loop"] is False
