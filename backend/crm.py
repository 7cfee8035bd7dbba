# backend/crm.py — HubSpot sync (best-effort)
# Form-fill tracking, contact upsert by email, and a results note on the
# contact. Callers get a CrmSyncOutcome back; nothing in here raises to them.

import logging
from datetime import datetime, date, timezone
from typing import Any, Dict, NamedTuple, Optional

import httpx

import models
from engine import CONCERNS

logger = logging.getLogger(__name__)

NOTE_TO_CONTACT_ASSOCIATION = 202


class CrmError(Exception):
    pass


class CrmCredential(NamedTuple):
    token: str
    expires_at: Optional[datetime] = None  # None = does not expire

    def is_valid(self, now: datetime) -> bool:
        return bool(self.token) and (self.expires_at is None or self.expires_at > now)


class CrmSyncOutcome(NamedTuple):
    status: str  # synced | failed | skipped
    contact_id: Optional[str] = None
    error: Optional[str] = None
    credential: Optional[CrmCredential] = None

    @property
    def success(self) -> bool:
        return self.status == "synced"


# ---------------------------------------------------------------------------
# HELPERS
# ---------------------------------------------------------------------------
def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_expiry(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    if isinstance(raw, (int, float)):
        # epoch milliseconds
        return datetime.fromtimestamp(raw / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _money(val: Optional[float]) -> str:
    return f"${(val or 0):,.0f}"


def _split_contact(contact: Any) -> Dict[str, str]:
    job = getattr(contact.job_function, "value", contact.job_function)
    return {
        "email": contact.email.lower(),
        "firstname": contact.first_name,
        "lastname": contact.last_name,
        "company": contact.company,
        "jobtitle": job,
    }


def _raise_for(resp: httpx.Response, what: str):
    if resp.status_code >= 400:
        raise CrmError(f"{what} failed ({resp.status_code}): {resp.text[:300]}")


# ---------------------------------------------------------------------------
# 1) CREDENTIALS
#    Resolved per sync. A still-valid credential handed back by the caller is
#    reused, anything else is fetched again.
# ---------------------------------------------------------------------------
async def resolve_credential(
    client: httpx.AsyncClient,
    current: Optional[CrmCredential] = None,
    now: Optional[datetime] = None,
) -> Optional[CrmCredential]:
    """Returns None when no CRM is configured at all."""
    now = now or _utcnow()
    if current is not None and current.is_valid(now):
        return current

    if models.HUBSPOT_ACCESS_TOKEN:
        return CrmCredential(models.HUBSPOT_ACCESS_TOKEN)

    if not models.HUBSPOT_CONNECTOR_URL:
        return None

    resp = await client.get(
        models.HUBSPOT_CONNECTOR_URL,
        params={"include_secrets": "true", "connector_names": "hubspot"},
        headers={"Accept": "application/json", "X-Connector-Token": models.HUBSPOT_CONNECTOR_TOKEN},
    )
    _raise_for(resp, "Credential lookup")
    items = resp.json().get("items") or [{}]
    settings = items[0].get("settings") or {}
    token = settings.get("access_token") or (
        (settings.get("oauth") or {}).get("credentials", {}).get("access_token")
    )
    if not token:
        raise CrmError("HubSpot not connected")
    return CrmCredential(token, _parse_expiry(settings.get("expires_at")))


# ---------------------------------------------------------------------------
# 2) NOTE BODY
# ---------------------------------------------------------------------------
def build_calculation_note(profile: Any, result: Dict[str, Any], today: Optional[date] = None) -> str:
    today = today or date.today()
    lines = [
        "MRO Inventory Optimization Calculator Results",
        "=" * 46,
        f"Date: {today.isoformat()}",
        "",
        "INPUT PROFILE:",
        f"- Industry: {profile.industry}",
        f"- Number of Sites: {profile.site_count}",
    ]
    if result.get("inventory") or result.get("spend"):
        lines += [
            f"- Total Inventory Value: {_money(profile.total_inventory_value)}",
            f"- SKU Count: {profile.sku_count or 0:,}",
            f"- Active / Slow-Moving: {profile.active_percent:g}%",
            f"- Non-Moving / Obsolete: {profile.obsolete_percent:g}%",
            f"- Special (Consignment / Bulk / Strategic): {profile.special_percent:g}%",
        ]
    if result.get("spend"):
        lines.append(f"- Annual MRO Spend: {_money(profile.annual_spend)}")
    if result.get("downtime"):
        lines += [
            f"- Downtime Hours per Site: {profile.downtime_hours_per_site:,.0f}",
            f"- Downtime Cost per Hour: {_money(profile.downtime_cost_per_hour)}",
        ]

    inv = result.get("inventory")
    if inv:
        lines += [
            "",
            "INVENTORY REDUCTION:",
            f"- Active Material Right-Sizing: {_money(inv['active_decrease'])}",
            f"- Network Pooling & Transfers: {_money(inv['pooling'])}",
            f"- VMI Disposition: {_money(inv['vmi'])}",
            f"- Deduplication: {_money(inv['dedup'])}",
            f"- Total Inventory Reduction: {_money(inv['total_inv_reduction'])}",
            f"- Service-Level Investment (not netted): {_money(inv['active_increase'])}",
        ]
    spend = result.get("spend")
    if spend:
        lines += [
            "",
            "SPEND SAVINGS:",
            f"- Holding Cost: {_money(spend['holding_savings'])}",
            f"- Cost of Capital: {_money(spend['wacc_savings'])}",
            f"- Purchase Price Variance: {_money(spend['ppv_savings'])}",
            f"- Replenishment Suppression: {_money(spend['replenishment_suppression'])}",
            f"- Repairable Materials: {_money(spend['repairable_materials'])}",
            f"- Expediting: {_money(spend['expediting'])}",
            f"- Total Spend Savings: {_money(spend['total_spend'])}",
        ]
    dt = result.get("downtime")
    if dt:
        lines += [
            "",
            "DOWNTIME AVOIDANCE:",
            f"- Unplanned Downtime: {dt['org_dt_hours']:,.0f} hrs / {_money(dt['unplanned_cost'])}",
            f"- Optimized Downtime: {dt['optimized_dt_hours']:,.0f} hrs / {_money(dt['optimized_dt_cost'])}",
            f"- Stockout-Attributable Savings: {_money(dt['dt_savings'])}",
        ]

    picked = ", ".join(c for c in CONCERNS if c in result.get("concerns", []))
    lines += ["", f"TOTAL OPPORTUNITY ({picked}): {_money(result['grand_total'])}"]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# 3) HUBSPOT CALLS
# ---------------------------------------------------------------------------
async def submit_form(client: httpx.AsyncClient, contact: Any) -> bool:
    """Track the lead as a form fill. Skipped when no form is configured."""
    if not (models.HUBSPOT_PORTAL_ID and models.HUBSPOT_FORM_GUID):
        return False
    props = _split_contact(contact)
    body = {
        "fields": [
            {"name": "email", "value": props["email"]},
            {"name": "firstname", "value": props["firstname"]},
            {"name": "lastname", "value": props["lastname"]},
            {"name": "company", "value": props["company"]},
            {"name": "jobtitle", "value": props["jobtitle"]},
            {"name": "function", "value": props["jobtitle"]},
        ],
        "context": {"pageUri": models.HUBSPOT_PAGE_URI, "pageName": models.HUBSPOT_PAGE_NAME},
    }
    url = (
        f"{models.HUBSPOT_FORMS_URL}/submissions/v3/integration/submit/"
        f"{models.HUBSPOT_PORTAL_ID}/{models.HUBSPOT_FORM_GUID}"
    )
    resp = await client.post(url, json=body)
    _raise_for(resp, "Form submission")
    return True


async def upsert_contact(client: httpx.AsyncClient, token: str, contact: Any) -> str:
    headers = {"Authorization": f"Bearer {token}"}
    props = _split_contact(contact)
    base = f"{models.HUBSPOT_API_URL}/crm/v3/objects/contacts"

    resp = await client.post(f"{base}/search", headers=headers, json={
        "filterGroups": [{"filters": [{"propertyName": "email", "operator": "EQ", "value": props["email"]}]}],
        "properties": ["email", "firstname", "lastname"],
        "limit": 1,
    })
    _raise_for(resp, "Contact search")
    found = resp.json().get("results") or []

    if found:
        contact_id = str(found[0]["id"])
        update = {k: v for k, v in props.items() if k != "email"}
        resp = await client.patch(f"{base}/{contact_id}", headers=headers, json={"properties": update})
        _raise_for(resp, "Contact update")
        return contact_id

    resp = await client.post(base, headers=headers, json={"properties": props})
    _raise_for(resp, "Contact create")
    return str(resp.json()["id"])


async def attach_note(client: httpx.AsyncClient, token: str, contact_id: str, body: str) -> str:
    resp = await client.post(
        f"{models.HUBSPOT_API_URL}/crm/v3/objects/notes",
        headers={"Authorization": f"Bearer {token}"},
        json={
            "properties": {"hs_note_body": body, "hs_timestamp": _utcnow().isoformat()},
            "associations": [{
                "to": {"id": contact_id},
                "types": [{
                    "associationCategory": "HUBSPOT_DEFINED",
                    "associationTypeId": NOTE_TO_CONTACT_ASSOCIATION,
                }],
            }],
        },
    )
    _raise_for(resp, "Note create")
    return str(resp.json().get("id", ""))


# ---------------------------------------------------------------------------
# 4) FULL SYNC
# ---------------------------------------------------------------------------
async def sync_lead_to_crm(
    contact: Any,
    profile: Any,
    result: Dict[str, Any],
    client: Optional[httpx.AsyncClient] = None,
    credential: Optional[CrmCredential] = None,
    now: Optional[datetime] = None,
) -> CrmSyncOutcome:
    if client is None:
        async with httpx.AsyncClient(timeout=models.CRM_TIMEOUT_SECONDS) as own:
            return await sync_lead_to_crm(contact, profile, result, own, credential, now)

    try:
        await submit_form(client, contact)
    except Exception as exc:
        logger.warning("HubSpot form submission failed, continuing with CRM sync: %s", exc)

    try:
        credential = await resolve_credential(client, credential, now)
        if credential is None:
            logger.info("HubSpot not configured, skipping sync for %s", contact.email)
            return CrmSyncOutcome("skipped")

        contact_id = await upsert_contact(client, credential.token, contact)
        await attach_note(client, credential.token, contact_id, build_calculation_note(profile, result))
    except (CrmError, httpx.HTTPError, KeyError, ValueError) as exc:
        logger.error("HubSpot sync failed for %s: %s", contact.email, exc)
        return CrmSyncOutcome("failed", error=str(exc), credential=credential)
    except Exception as exc:
        # malformed HubSpot payloads (lists where objects were expected, etc.)
        logger.exception("Unexpected HubSpot response while syncing %s", contact.email)
        return CrmSyncOutcome("failed", error=f"{type(exc).__name__}: {exc}", credential=credential)

    logger.info("Lead synced to HubSpot: %s (contact %s)", contact.email, contact_id)
    return CrmSyncOutcome("synced", contact_id=contact_id, credential=credential)
