# backend/models.py — Config + Database + All Models

import os
from datetime import datetime
from sqlalchemy import (
    create_engine, Column, Integer, String, Float, DateTime, ForeignKey, JSON,
    Enum as SAEnum
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
import enum

# ---------------------------------------------------------------------------
# CONFIG
# ---------------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./dev.db")

# Render Postgres URLs start with postgres:// but SQLAlchemy needs postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

ALLOWED_ORIGINS = [
    o.strip() for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",") if o.strip()
]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# CRM (HubSpot)
HUBSPOT_API_URL = os.getenv("HUBSPOT_API_URL", "https://api.hubapi.com")
HUBSPOT_FORMS_URL = os.getenv("HUBSPOT_FORMS_URL", "https://api.hsforms.com")
HUBSPOT_ACCESS_TOKEN = os.getenv("HUBSPOT_ACCESS_TOKEN", "")
HUBSPOT_CONNECTOR_URL = os.getenv("HUBSPOT_CONNECTOR_URL", "")
HUBSPOT_CONNECTOR_TOKEN = os.getenv("HUBSPOT_CONNECTOR_TOKEN", "")
HUBSPOT_PORTAL_ID = os.getenv("HUBSPOT_PORTAL_ID", "")
HUBSPOT_FORM_GUID = os.getenv("HUBSPOT_FORM_GUID", "")
HUBSPOT_PAGE_URI = os.getenv("HUBSPOT_PAGE_URI", "http://localhost:5173/")
HUBSPOT_PAGE_NAME = os.getenv("HUBSPOT_PAGE_NAME", "MRO Inventory Optimization Calculator")
CRM_TIMEOUT_SECONDS = float(os.getenv("CRM_TIMEOUT_SECONDS", "10"))

EXTRA_COMPETITOR_DOMAINS = [
    d.strip().lower() for d in os.getenv("COMPETITOR_EMAIL_DOMAINS", "").split(",") if d.strip()
]

# Wizard sessions live in process memory; idle ones are dropped
WIZARD_SESSION_TTL_SECONDS = float(os.getenv("WIZARD_SESSION_TTL_SECONDS", "3600"))
WIZARD_MAX_SESSIONS = int(os.getenv("WIZARD_MAX_SESSIONS", "10000"))

# ---------------------------------------------------------------------------
# DATABASE ENGINE + SESSION
# ---------------------------------------------------------------------------
connect_args = {}
if "sqlite" in DATABASE_URL:
    connect_args = {"check_same_thread": False}

engine = create_engine(DATABASE_URL, connect_args=connect_args, echo=False)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """FastAPI dependency, yields a DB session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ---------------------------------------------------------------------------
# ENUMS
# ---------------------------------------------------------------------------
class CrmSyncStatus(str, enum.Enum):
    pending = "pending"
    synced = "synced"
    failed = "failed"
    skipped = "skipped"


# ---------------------------------------------------------------------------
# MODELS
# ---------------------------------------------------------------------------

class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)  # stored lower-case
    company = Column(String(255), nullable=False)
    job_function = Column(String(100), nullable=False)
    crm_sync_status = Column(SAEnum(CrmSyncStatus), default=CrmSyncStatus.pending)
    crm_contact_id = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    calculations = relationship("Calculation", back_populates="lead")


class Calculation(Base):
    __tablename__ = "calculations"

    id = Column(Integer, primary_key=True, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=False)
    schema_version = Column(Integer, nullable=False)
    concerns = Column(JSON, nullable=False)  # ["inventory", "spend", ...]
    industry = Column(String(100), nullable=False, default="Other")

    # Profile
    site_count = Column(Integer, nullable=False)
    total_inventory_value = Column(Float, nullable=True)
    sku_count = Column(Integer, nullable=True)
    active_percent = Column(Float, nullable=False)
    obsolete_percent = Column(Float, nullable=False)
    special_percent = Column(Float, nullable=False)
    annual_spend = Column(Float, nullable=True)
    holding_cost_rate = Column(Float, nullable=False)
    wacc_rate = Column(Float, nullable=False)
    downtime_hours_per_site = Column(Float, nullable=True)
    downtime_cost_per_hour = Column(Float, nullable=True)
    current_service_level = Column(Float, nullable=False)
    target_service_level = Column(Float, nullable=False)
    stockout_percent = Column(Float, nullable=False)

    # Result: nested tree as returned by engine.estimate
    result = Column(JSON, nullable=False)
    grand_total = Column(Float, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    lead = relationship("Lead", back_populates="calculations")


# ---------------------------------------------------------------------------
# CREATE ALL TABLES
# ---------------------------------------------------------------------------
def init_db():
    Base.metadata.create_all(bind=engine)
