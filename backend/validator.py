# backend/validator.py — Input admissibility
# Profile rules depend on which concerns are selected. Blocking errors and
# advisory warnings are both keyed by field name; an edited inventory mix that
# does not sum to 100 yields a confirmation request, not an error.

import math
import re
from typing import Dict, Iterable, Any, Optional, Sequence

from schemas import (
    ProfileIn, ValidationOutcomeOut, ValidationStatusEnum, INDUSTRIES,
    DEFAULT_ACTIVE_PERCENT, DEFAULT_OBSOLETE_PERCENT, DEFAULT_SPECIAL_PERCENT,
)
from engine import normalize_concerns


# ---------------------------------------------------------------------------
# CONSTANTS
# ---------------------------------------------------------------------------
MIN_INVENTORY_VALUE = 1000
MIX_TOLERANCE = 1.0

# Advisory bands (outside = warning, never an error)
VALUE_PER_SKU_RANGE = (500, 2000)
SPEND_TO_INVENTORY_RANGE = (0.35, 0.75)
DOWNTIME_HOURS_RANGE = (300, 1200)
DOWNTIME_COST_RANGE = (5600, 22000)

FREE_MAIL_DOMAINS = frozenset([
    "gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "aol.com",
    "icloud.com", "mail.com", "protonmail.com", "zoho.com", "yandex.com",
    "gmx.com", "live.com", "msn.com", "me.com", "comcast.net",
    "att.net", "verizon.net", "sbcglobal.net", "bellsouth.net", "cox.net",
    "earthlink.net", "charter.net", "optonline.net", "frontier.com",
    "yahoo.co.uk", "hotmail.co.uk", "googlemail.com", "rocketmail.com",
    "ymail.com", "inbox.com", "mail.ru", "qq.com", "163.com", "126.com",
])

# Extended at deploy time via COMPETITOR_EMAIL_DOMAINS
COMPETITOR_DOMAINS = frozenset([
    "verusen.com",
    "sparesinmotion.com",
    "prometheusgroup.com",
])

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ---------------------------------------------------------------------------
# HELPERS
# ---------------------------------------------------------------------------
def _money(value: float) -> str:
    return f"${value:,.0f}"


def _check_range(errors: Dict[str, str], field: str, value: Optional[float],
                 lo: float, hi: float, label: str) -> None:
    if value is None:
        errors[field] = f"{label} is required"
    elif not math.isfinite(value):
        errors[field] = f"{label} must be a number"
    elif value < lo or value > hi:
        errors[field] = f"{label} must be between {lo:g} and {hi:g}"


def _check_minimum(errors: Dict[str, str], field: str, value: Optional[float],
                   minimum: float, required: str, too_small: str) -> None:
    # NaN compares False against everything, so it must be caught before the bound
    if value is None:
        errors[field] = required
    elif not math.isfinite(value):
        errors[field] = "Please enter a valid number"
    elif value < minimum:
        errors[field] = too_small


def apply_default_mix(profile: ProfileIn) -> ProfileIn:
    """Copy of the profile with the benchmark 67/23/10 mix, marked untouched."""
    return profile.model_copy(update={
        "active_percent": DEFAULT_ACTIVE_PERCENT,
        "obsolete_percent": DEFAULT_OBSOLETE_PERCENT,
        "special_percent": DEFAULT_SPECIAL_PERCENT,
        "mix_edited": False,
    })


def effective_profile(profile: ProfileIn) -> ProfileIn:
    """The profile the estimator should see: an untouched mix is always the default one."""
    return profile if profile.mix_edited else apply_default_mix(profile)


def mix_total(profile: ProfileIn) -> float:
    return profile.active_percent + profile.obsolete_percent + profile.special_percent


# ---------------------------------------------------------------------------
# PROFILE VALIDATION
# ---------------------------------------------------------------------------
def validate(profile: ProfileIn, concerns: Iterable[Any]) -> ValidationOutcomeOut:
    """
    Decide whether a profile may be estimated for the given concerns.

    Returns status "blocked" with field errors, "needs_confirmation" with a
    default-mix fallback profile when only the edited mix is off, or "valid".
    Warnings are attached in every case where the inputs they need are sane.
    """
    selected = normalize_concerns(concerns)
    needs_inventory = "inventory" in selected or "spend" in selected
    errors: Dict[str, str] = {}
    warnings: Dict[str, str] = {}

    # Checked in the order the fields appear on the form, so the first error is the one to focus
    _check_minimum(errors, "site_count", profile.site_count, 1,
                   "Number of sites is required", "At least 1 site is required")

    if needs_inventory:
        _check_minimum(errors, "total_inventory_value", profile.total_inventory_value, MIN_INVENTORY_VALUE,
                       "Total inventory value is required", "Value must be at least $1,000")
        _check_minimum(errors, "sku_count", profile.sku_count, 1,
                       "SKU count is required", "At least 1 SKU is required")

    if not (profile.industry or "").strip():
        errors["industry"] = "Please select your industry"
    elif profile.industry not in INDUSTRIES:
        errors["industry"] = "Please select an industry from the list"

    if needs_inventory and profile.mix_edited:
        _check_range(errors, "active_percent", profile.active_percent, 0, 100, "Active percentage")
        _check_range(errors, "obsolete_percent", profile.obsolete_percent, 0, 100, "Non-moving percentage")
        _check_range(errors, "special_percent", profile.special_percent, 0, 100, "Special percentage")

    if "spend" in selected:
        _check_minimum(errors, "annual_spend", profile.annual_spend, 1,
                       "Annual MRO spend is required", "Annual spend must be at least $1")
        _check_range(errors, "holding_cost_rate", profile.holding_cost_rate, 0, 100, "Holding cost rate")
        _check_range(errors, "wacc_rate", profile.wacc_rate, 0, 100, "WACC")

    if "downtime" in selected:
        _check_minimum(errors, "downtime_hours_per_site", profile.downtime_hours_per_site, 1,
                       "Downtime hours per site is required", "Downtime hours must be at least 1")
        _check_minimum(errors, "downtime_cost_per_hour", profile.downtime_cost_per_hour, 1,
                       "Downtime cost per hour is required", "Downtime cost must be at least $1")

        _check_range(errors, "current_service_level", profile.current_service_level, 75, 100, "Current service level")
        _check_range(errors, "target_service_level", profile.target_service_level, 0, 98, "Target service level")
        _check_range(errors, "stockout_percent", profile.stockout_percent, 0, 50, "Stockout share of downtime")

    warnings.update(_advisories(profile, selected, errors))

    if errors:
        return ValidationOutcomeOut(status=ValidationStatusEnum.blocked, errors=errors, warnings=warnings)

    if needs_inventory and profile.mix_edited and abs(mix_total(profile) - 100) > MIX_TOLERANCE:
        return ValidationOutcomeOut(
            status=ValidationStatusEnum.needs_confirmation,
            warnings=warnings,
            proposed_fallback=apply_default_mix(profile),
        )

    return ValidationOutcomeOut(status=ValidationStatusEnum.valid, warnings=warnings)


def _advisories(profile: ProfileIn, selected: Sequence[str], errors: Dict[str, str]) -> Dict[str, str]:
    """Out-of-typical-range notes. Skipped for any field that already failed."""
    out: Dict[str, str] = {}
    tiv_ok = profile.total_inventory_value is not None and "total_inventory_value" not in errors

    if ("inventory" in selected or "spend" in selected) and tiv_ok \
            and profile.sku_count and "sku_count" not in errors:
        per_sku = profile.total_inventory_value / profile.sku_count
        lo, hi = VALUE_PER_SKU_RANGE
        if per_sku < lo or per_sku > hi:
            out["sku_count"] = (
                f"Value per SKU is {_money(per_sku)}; most MRO storerooms run "
                f"{_money(lo)} to {_money(hi)}"
            )

    if "spend" in selected and tiv_ok and profile.annual_spend is not None \
            and "annual_spend" not in errors:
        ratio = profile.annual_spend / profile.total_inventory_value
        lo, hi = SPEND_TO_INVENTORY_RANGE
        if ratio < lo or ratio > hi:
            out["annual_spend"] = (
                f"Annual spend is {ratio:.0%} of inventory value; typical is {lo:.0%} to {hi:.0%}"
            )

    if "downtime" in selected:
        hours = profile.downtime_hours_per_site
        if hours is not None and "downtime_hours_per_site" not in errors:
            lo, hi = DOWNTIME_HOURS_RANGE
            if hours < lo or hours > hi:
                out["downtime_hours_per_site"] = f"Typical unplanned downtime is {lo} to {hi} hours per site"

        cost = profile.downtime_cost_per_hour
        if cost is not None and "downtime_cost_per_hour" not in errors:
            lo, hi = DOWNTIME_COST_RANGE
            if cost < lo or cost > hi:
                out["downtime_cost_per_hour"] = f"Typical downtime cost is {_money(lo)} to {_money(hi)} per hour"

        if "current_service_level" not in errors and "target_service_level" not in errors \
                and profile.target_service_level < profile.current_service_level:
            out["target_service_level"] = "Target service level is below your current level; no downtime savings will show"

    return out


# ---------------------------------------------------------------------------
# CONTACT VALIDATION
# ---------------------------------------------------------------------------
def email_domain_error(email: str, extra_denied: Iterable[str] = ()) -> Optional[str]:
    """None if the address is an admissible business email, else the message to show."""
    if not EMAIL_RE.match(email or ""):
        return "Invalid email address"
    domain = email.rsplit("@", 1)[1].lower()
    if domain in FREE_MAIL_DOMAINS:
        return "Please use your business email address"
    if domain in COMPETITOR_DOMAINS or domain in {d.lower() for d in extra_denied}:
        return "Please use your business email address"
    return None


def validate_contact(contact: Any, extra_denied: Iterable[str] = ()) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    email_error = email_domain_error(contact.email, extra_denied)
    if email_error:
        errors["email"] = email_error
    return errors
