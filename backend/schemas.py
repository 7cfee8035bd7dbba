# backend/schemas.py — All Pydantic Schemas

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
from enum import Enum


# ---------------------------------------------------------------------------
# DEFAULTS
# ---------------------------------------------------------------------------
DEFAULT_ACTIVE_PERCENT = 67.0
DEFAULT_OBSOLETE_PERCENT = 23.0
DEFAULT_SPECIAL_PERCENT = 10.0
DEFAULT_HOLDING_COST_RATE = 15.0
DEFAULT_WACC_RATE = 7.0
DEFAULT_CURRENT_SERVICE_LEVEL = 88.0
DEFAULT_TARGET_SERVICE_LEVEL = 95.0
DEFAULT_STOCKOUT_PERCENT = 50.0

# Bumped whenever the shape of the result tree / calculation payload changes.
CALCULATION_SCHEMA_VERSION = 1


# ---------------------------------------------------------------------------
# ENUMS (mirror SQLAlchemy enums for Pydantic where both exist)
# ---------------------------------------------------------------------------
class ConcernEnum(str, Enum):
    inventory = "inventory"
    spend = "spend"
    downtime = "downtime"


class JobFunctionEnum(str, Enum):
    procurement = "Procurement"
    innovation = "Innovation"
    it = "IT / IS"
    finance = "Finance"
    sourcing = "Sourcing"
    maintenance = "Maintenance"
    manufacturing = "Manufacturing"
    supply_chain = "Supply Chain"
    operations = "Operations"
    other = "Other"


class CrmSyncStatusEnum(str, Enum):
    pending = "pending"
    synced = "synced"
    failed = "failed"
    skipped = "skipped"


class ValidationStatusEnum(str, Enum):
    valid = "valid"
    blocked = "blocked"
    needs_confirmation = "needs_confirmation"


INDUSTRIES = [
    "Oil & Gas",
    "Chemicals",
    "Mining & Metals",
    "Power & Utilities",
    "Pharmaceuticals & Life Sciences",
    "Food & Beverage",
    "Pulp & Paper",
    "Automotive",
    "Aerospace & Defense",
    "Discrete Manufacturing",
    "Other",
]


# ---------------------------------------------------------------------------
# PROFILE
# ---------------------------------------------------------------------------
class ProfileIn(BaseModel):
    """
    Facility / inventory / spend / downtime characterization.
    Only types are enforced here; admissibility (required-ness, ranges) is
    decided by validator.validate, because it depends on the selected concerns.
    """
    site_count: Optional[int] = None
    total_inventory_value: Optional[float] = None
    sku_count: Optional[int] = None

    active_percent: float = DEFAULT_ACTIVE_PERCENT
    obsolete_percent: float = DEFAULT_OBSOLETE_PERCENT
    special_percent: float = DEFAULT_SPECIAL_PERCENT
    mix_edited: bool = False  # True once the user touched any of the three sliders

    annual_spend: Optional[float] = None
    holding_cost_rate: float = DEFAULT_HOLDING_COST_RATE
    wacc_rate: float = DEFAULT_WACC_RATE

    downtime_hours_per_site: Optional[float] = None
    downtime_cost_per_hour: Optional[float] = None
    current_service_level: float = DEFAULT_CURRENT_SERVICE_LEVEL
    target_service_level: float = DEFAULT_TARGET_SERVICE_LEVEL
    stockout_percent: float = DEFAULT_STOCKOUT_PERCENT

    industry: Optional[str] = None

    class Config:
        allow_inf_nan = False


class EstimateRequest(BaseModel):
    concerns: List[ConcernEnum] = []
    profile: ProfileIn


# ---------------------------------------------------------------------------
# VALIDATION OUTCOME
# ---------------------------------------------------------------------------
class ValidationOutcomeOut(BaseModel):
    status: ValidationStatusEnum
    errors: Dict[str, str] = {}
    warnings: Dict[str, str] = {}
    proposed_fallback: Optional[ProfileIn] = None


# ---------------------------------------------------------------------------
# RESULT TREE
# ---------------------------------------------------------------------------
class InventoryResultOut(BaseModel):
    active_increase: float
    active_decrease: float
    pooling: float
    vmi: float
    dedup: float
    total_inv_reduction: float


class SpendResultOut(BaseModel):
    holding_savings: float
    wacc_savings: float
    ppv_savings: float
    replenishment_suppression: float
    repairable_materials: float
    expediting: float
    total_spend: float


class DowntimeResultOut(BaseModel):
    org_dt_hours: float
    unplanned_cost: float
    cur_stockout_rate: float
    tgt_stockout_rate: float
    optimized_dt_hours: float
    optimized_dt_cost: float
    dt_savings: float


class EstimateResultOut(BaseModel):
    schema_version: int
    concerns: List[ConcernEnum]
    inventory: Optional[InventoryResultOut] = None
    spend: Optional[SpendResultOut] = None
    downtime: Optional[DowntimeResultOut] = None
    grand_total: float


# ---------------------------------------------------------------------------
# LEAD CAPTURE
# ---------------------------------------------------------------------------
class ContactIn(BaseModel):
    first_name: str = Field(..., min_length=2)
    last_name: str = Field(..., min_length=2)
    email: str
    company: str = Field(..., min_length=2)
    job_function: JobFunctionEnum


class CalculationPayload(BaseModel):
    schema_version: Literal[1] = CALCULATION_SCHEMA_VERSION
    concerns: List[ConcernEnum]
    profile: ProfileIn
    # Client-side figures are accepted for display parity but never stored;
    # the server recomputes the result from concerns + profile.
    result: Optional[Dict[str, Any]] = None


class LeadSubmission(BaseModel):
    lead: ContactIn
    calculation: CalculationPayload


class LeadSubmitResponse(BaseModel):
    success: bool
    lead_id: Optional[int] = None
    calculation_id: Optional[int] = None


class LeadOut(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: str
    company: str
    job_function: str
    crm_sync_status: CrmSyncStatusEnum
    crm_contact_id: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class CalculationOut(BaseModel):
    id: int
    lead_id: int
    schema_version: int
    concerns: List[str]
    industry: str
    site_count: int
    total_inventory_value: Optional[float]
    sku_count: Optional[int]
    active_percent: float
    obsolete_percent: float
    special_percent: float
    annual_spend: Optional[float]
    holding_cost_rate: float
    wacc_rate: float
    downtime_hours_per_site: Optional[float]
    downtime_cost_per_hour: Optional[float]
    current_service_level: float
    target_service_level: float
    stockout_percent: float
    result: Dict[str, Any]
    grand_total: float
    created_at: datetime

    class Config:
        from_attributes = True


class LeadDetailOut(BaseModel):
    lead: LeadOut
    calculations: List[CalculationOut]


# ---------------------------------------------------------------------------
# WIZARD
# ---------------------------------------------------------------------------
class WizardSnapshotOut(BaseModel):
    session_id: str
    state: str
    concerns: List[ConcernEnum]
    profile: Optional[ProfileIn] = None
    result: Optional[Dict[str, Any]] = None
    errors: Dict[str, str] = {}
    warnings: Dict[str, str] = {}
    notice: Optional[str] = None
    focus_field: Optional[str] = None
    proposed_fallback: Optional[ProfileIn] = None
    lead_captured: bool = False


# ---------------------------------------------------------------------------
# GENERIC RESPONSES
# ---------------------------------------------------------------------------
class ErrorResponse(BaseModel):
    error: str
    details: Optional[Any] = None
