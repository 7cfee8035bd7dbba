# backend/main.py — FastAPI App + All Routes

import logging
import time
import uuid
from typing import Any, Dict, List, Tuple

from fastapi import FastAPI, Depends, HTTPException, BackgroundTasks, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from models import (
    init_db, get_db, SessionLocal, ALLOWED_ORIGINS, LOG_LEVEL, EXTRA_COMPETITOR_DOMAINS,
    WIZARD_SESSION_TTL_SECONDS, WIZARD_MAX_SESSIONS,
    Lead, Calculation, CrmSyncStatus,
)
from schemas import (
    ConcernEnum, ProfileIn, EstimateRequest, ValidationOutcomeOut, ValidationStatusEnum,
    EstimateResultOut, ContactIn, LeadSubmission, LeadSubmitResponse,
    LeadOut, CalculationOut, LeadDetailOut, WizardSnapshotOut, CALCULATION_SCHEMA_VERSION,
)
from wizard import WizardSession, WizardStep, WizardError
import engine
import validator
import crm
import export

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# APP INIT
# ---------------------------------------------------------------------------
app = FastAPI(title="MRO Inventory Optimization Calculator", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# In-memory wizard sessions, one WizardSession per browser session.
# Idle ones expire; past the cap the least recently used is dropped.
SESSIONS: Dict[str, WizardSession] = {}


@app.on_event("startup")
def startup():
    init_db()


# ---------------------------------------------------------------------------
# ERROR SHAPES: {error, details?}
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Validation failed", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(WizardError)
async def wizard_error_handler(request: Request, exc: WizardError):
    return JSONResponse(status_code=409, content={"error": str(exc)})


# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------
@app.get("/api/health")
def health():
    return {"status": "ok", "app": "mro-calculator", "version": "1.0.0"}


# ---------------------------------------------------------------------------
# HELPER: validate + estimate, or 400
# ---------------------------------------------------------------------------
def _estimate_or_400(profile: ProfileIn, concerns: List[ConcernEnum]) -> Tuple[ProfileIn, Dict[str, Any]]:
    if not concerns:
        raise HTTPException(400, {"error": "Validation failed", "details": {"concerns": "Select at least one area"}})

    outcome = validator.validate(profile, concerns)
    if outcome.status == ValidationStatusEnum.blocked:
        raise HTTPException(400, {"error": "Validation failed", "details": outcome.errors})
    if outcome.status == ValidationStatusEnum.needs_confirmation:
        raise HTTPException(400, {
            "error": "Inventory mix must add up to 100%",
            "details": {"proposed_fallback": outcome.proposed_fallback.model_dump()},
        })

    profile = validator.effective_profile(profile)
    return profile, engine.estimate(profile, concerns)


# ---------------------------------------------------------------------------
# ESTIMATION ROUTES
# ---------------------------------------------------------------------------
@app.post("/api/validate", response_model=ValidationOutcomeOut)
def validate_profile(payload: EstimateRequest):
    """Rule failures come back as data; only a malformed body is a 400."""
    return validator.validate(payload.profile, payload.concerns)


@app.post("/api/estimate", response_model=EstimateResultOut)
def estimate(payload: EstimateRequest):
    _, result = _estimate_or_400(payload.profile, payload.concerns)
    return result


# ---------------------------------------------------------------------------
# LEAD PERSISTENCE + CRM
# ---------------------------------------------------------------------------
def _store_lead(
    db: Session,
    contact: ContactIn,
    profile: ProfileIn,
    result: Dict[str, Any],
) -> Tuple[Lead, Calculation]:
    """Reuse the lead for this email (refreshing contact details) and add one calculation."""
    email = contact.email.lower()
    lead = db.query(Lead).filter(Lead.email == email).first()
    if lead:
        lead.first_name = contact.first_name
        lead.last_name = contact.last_name
        lead.company = contact.company
        lead.job_function = contact.job_function.value
    else:
        lead = Lead(
            email=email,
            first_name=contact.first_name,
            last_name=contact.last_name,
            company=contact.company,
            job_function=contact.job_function.value,
            crm_sync_status=CrmSyncStatus.pending,
        )
        db.add(lead)
        db.flush()

    calc = Calculation(
        lead_id=lead.id,
        schema_version=CALCULATION_SCHEMA_VERSION,
        concerns=result["concerns"],
        industry=profile.industry,
        site_count=profile.site_count,
        total_inventory_value=profile.total_inventory_value,
        sku_count=profile.sku_count,
        active_percent=profile.active_percent,
        obsolete_percent=profile.obsolete_percent,
        special_percent=profile.special_percent,
        annual_spend=profile.annual_spend,
        holding_cost_rate=profile.holding_cost_rate,
        wacc_rate=profile.wacc_rate,
        downtime_hours_per_site=profile.downtime_hours_per_site,
        downtime_cost_per_hour=profile.downtime_cost_per_hour,
        current_service_level=profile.current_service_level,
        target_service_level=profile.target_service_level,
        stockout_percent=profile.stockout_percent,
        result=result,
        grand_total=result["grand_total"],
    )
    db.add(calc)
    db.commit()
    db.refresh(lead)
    db.refresh(calc)
    return lead, calc


async def _sync_lead_in_background(lead_id: int, contact: ContactIn, profile: ProfileIn, result: Dict[str, Any]):
    """Runs after the response went out; records the CRM outcome on the lead."""
    outcome = await crm.sync_lead_to_crm(contact, profile, result)
    await run_in_threadpool(_record_crm_outcome, lead_id, outcome)


def _record_crm_outcome(lead_id: int, outcome: crm.CrmSyncOutcome):
    db = SessionLocal()
    try:
        lead = db.query(Lead).filter(Lead.id == lead_id).first()
        if lead:
            lead.crm_sync_status = CrmSyncStatus(outcome.status)
            if outcome.contact_id:
                lead.crm_contact_id = outcome.contact_id
            db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not record CRM sync status for lead %s", lead_id)
    finally:
        db.close()


async def _record_lead(
    db: Session,
    background_tasks: BackgroundTasks,
    contact: ContactIn,
    profile: ProfileIn,
    result: Dict[str, Any],
) -> LeadSubmitResponse:
    """
    Storage and CRM are independent. Stored leads sync in the background;
    if storage fails the CRM sync runs inline and decides the response.
    """
    try:
        lead, calc = await run_in_threadpool(_store_lead, db, contact, profile, result)
    except SQLAlchemyError:
        await run_in_threadpool(db.rollback)
        logger.exception("Lead persistence failed for %s", contact.email)
        outcome = await crm.sync_lead_to_crm(contact, profile, result)
        if outcome.success:
            return LeadSubmitResponse(success=True)
        raise HTTPException(500, "Failed to save lead")

    background_tasks.add_task(_sync_lead_in_background, lead.id, contact, profile, result)
    return LeadSubmitResponse(success=True, lead_id=lead.id, calculation_id=calc.id)


def _check_contact(contact: ContactIn):
    errors = validator.validate_contact(contact, EXTRA_COMPETITOR_DOMAINS)
    if errors:
        raise HTTPException(400, {"error": "Validation failed", "details": errors})


# ---------------------------------------------------------------------------
# LEAD ROUTES
# ---------------------------------------------------------------------------
@app.post("/api/leads", response_model=LeadSubmitResponse)
async def submit_lead(
    payload: LeadSubmission,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    _check_contact(payload.lead)
    profile, result = _estimate_or_400(payload.calculation.profile, payload.calculation.concerns)
    return await _record_lead(db, background_tasks, payload.lead, profile, result)


@app.get("/api/leads/{lead_id}", response_model=LeadDetailOut)
def get_lead(lead_id: int, db: Session = Depends(get_db)):
    lead = db.query(Lead).filter(Lead.id == lead_id).first()
    if not lead:
        raise HTTPException(404, "Lead not found")

    calculations = db.query(Calculation).filter(
        Calculation.lead_id == lead.id,
    ).order_by(Calculation.created_at.asc(), Calculation.id.asc()).all()

    return LeadDetailOut(
        lead=LeadOut.model_validate(lead),
        calculations=[CalculationOut.model_validate(c) for c in calculations],
    )


# ---------------------------------------------------------------------------
# WIZARD ROUTES
# ---------------------------------------------------------------------------
def _evict_sessions(now: float):
    cutoff = now - WIZARD_SESSION_TTL_SECONDS
    for sid in [sid for sid, s in SESSIONS.items() if s.last_seen < cutoff]:
        del SESSIONS[sid]

    while SESSIONS and len(SESSIONS) >= WIZARD_MAX_SESSIONS:
        oldest = min(SESSIONS, key=lambda sid: SESSIONS[sid].last_seen)
        del SESSIONS[oldest]


def _get_session_or_404(session_id: str) -> WizardSession:
    now = time.monotonic()
    session = SESSIONS.get(session_id)
    if session is not None and session.last_seen < now - WIZARD_SESSION_TTL_SECONDS:
        del SESSIONS[session_id]
        session = None
    if session is None:
        raise HTTPException(404, "Session not found")
    session.touch(now)
    return session


def _snapshot(session_id: str, session: WizardSession) -> WizardSnapshotOut:
    return WizardSnapshotOut(session_id=session_id, **session.snapshot())


@app.post("/api/wizard", response_model=WizardSnapshotOut)
def create_session():
    now = time.monotonic()
    _evict_sessions(now)
    session_id = uuid.uuid4().hex
    SESSIONS[session_id] = WizardSession(now)
    return _snapshot(session_id, SESSIONS[session_id])


@app.get("/api/wizard/{session_id}", response_model=WizardSnapshotOut)
def get_session(session_id: str):
    return _snapshot(session_id, _get_session_or_404(session_id))


@app.post("/api/wizard/{session_id}/concerns/{concern}", response_model=WizardSnapshotOut)
def toggle_concern(session_id: str, concern: ConcernEnum):
    session = _get_session_or_404(session_id)
    session.toggle(concern)
    return _snapshot(session_id, session)


@app.post("/api/wizard/{session_id}/next", response_model=WizardSnapshotOut)
def next_step(session_id: str):
    session = _get_session_or_404(session_id)
    session.next()
    return _snapshot(session_id, session)


@app.post("/api/wizard/{session_id}/back", response_model=WizardSnapshotOut)
def previous_step(session_id: str):
    session = _get_session_or_404(session_id)
    session.back()
    return _snapshot(session_id, session)


@app.post("/api/wizard/{session_id}/profile", response_model=WizardSnapshotOut)
def submit_profile(session_id: str, profile: ProfileIn):
    """Blocked input stays on the profile step; errors/focus_field are in the snapshot."""
    session = _get_session_or_404(session_id)
    session.submit(profile)
    return _snapshot(session_id, session)


@app.post("/api/wizard/{session_id}/confirm-fallback", response_model=WizardSnapshotOut)
def confirm_fallback(session_id: str):
    session = _get_session_or_404(session_id)
    session.confirm_fallback()
    return _snapshot(session_id, session)


@app.post("/api/wizard/{session_id}/adjust", response_model=WizardSnapshotOut)
def adjust_inputs(session_id: str):
    session = _get_session_or_404(session_id)
    session.adjust_inputs()
    return _snapshot(session_id, session)


@app.post("/api/wizard/{session_id}/lead", response_model=WizardSnapshotOut)
async def wizard_submit_lead(
    session_id: str,
    contact: ContactIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Full results unlock even when storage and CRM both fail."""
    session = _get_session_or_404(session_id)
    _check_contact(contact)

    async def capture(c: ContactIn, calculation: Dict[str, Any]):
        await _record_lead(db, background_tasks, c, session.profile, calculation["result"])

    await session.submit_lead(contact, capture)
    return _snapshot(session_id, session)


@app.post("/api/wizard/{session_id}/reset", response_model=WizardSnapshotOut)
def reset_session(session_id: str):
    session = _get_session_or_404(session_id)
    session.reset()
    return _snapshot(session_id, session)


@app.get("/api/wizard/{session_id}/export")
def export_report(session_id: str):
    session = _get_session_or_404(session_id)
    if session.state != WizardStep.viewing_full_results:
        raise HTTPException(409, "Unlock the full report before downloading it.")

    body = export.render_csv(session.profile, session.result)
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="mro-savings-estimate.csv"'},
    )
