"""
Pytest configuration and fixtures
"""
import os
import sys
import tempfile
from pathlib import Path

import pytest

backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Throwaway SQLite file; CRM unconfigured so background syncs are skipped
_db_file = Path(tempfile.mkdtemp()) / "test.db"
os.environ["DATABASE_URL"] = f"sqlite:///{_db_file}"
for var in ("HUBSPOT_ACCESS_TOKEN", "HUBSPOT_CONNECTOR_URL", "HUBSPOT_PORTAL_ID", "HUBSPOT_FORM_GUID"):
    os.environ.pop(var, None)

from models import Base, engine  # noqa: E402
from schemas import ProfileIn  # noqa: E402


@pytest.fixture(autouse=True)
def db_schema():
    """Fresh tables for every test"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from main import app, SESSIONS
    SESSIONS.clear()
    return TestClient(app)


@pytest.fixture
def inventory_profile():
    """Scenario A/B profile: one site, $1M, 5,000 SKUs, default mix."""
    return ProfileIn(
        site_count=1,
        total_inventory_value=1_000_000,
        sku_count=5_000,
        annual_spend=2_500_000,
        industry="Chemicals",
    )


@pytest.fixture
def downtime_profile():
    return ProfileIn(
        site_count=6,
        downtime_hours_per_site=600,
        downtime_cost_per_hour=12_000,
        current_service_level=88,
        target_service_level=95,
        stockout_percent=50,
        industry="Oil & Gas",
    )


@pytest.fixture
def contact_payload():
    return {
        "first_name": "Dana",
        "last_name": "Okafor",
        "email": "dana.okafor@acme-industrial.com",
        "company": "Acme Industrial",
        "job_function": "Maintenance",
    }
