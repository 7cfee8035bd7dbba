# backend/engine.py — The Savings Estimator
# All math: benchmark step factors, inventory reduction, spend savings,
# stockout-driven downtime avoidance, grand total. Pure functions, no I/O.

from typing import Dict, Any, Iterable, Optional, List


# ---------------------------------------------------------------------------
# CONSTANTS & BENCHMARKS
# ---------------------------------------------------------------------------
CONCERNS = ("inventory", "spend", "downtime")
RESULT_SCHEMA_VERSION = 1

ACTIVE_INCREASE_RATE = 0.06      # service-level protection on active stock
ACTIVE_DECREASE_RATE = 0.22      # right-sizing of active stock
REPLENISHMENT_SUPPRESSION_RATE = 0.45
REPAIRABLE_MATERIALS_RATE = 0.0275
EXPEDITING_RATE = 0.015

SKU_TIER_LOW = 50_000
SKU_TIER_HIGH = 100_000
SPEND_TIER_LOW = 50_000_000
SPEND_TIER_HIGH = 100_000_000


# ---------------------------------------------------------------------------
# HELPERS
# ---------------------------------------------------------------------------
def _num(value: Optional[float]) -> float:
    return float(value) if value is not None else 0.0


def normalize_concerns(concerns: Iterable[Any]) -> List[str]:
    """Dedupe and order a concern selection; accepts enum members or plain strings."""
    picked = {str(getattr(c, "value", c)) for c in concerns}
    return [c for c in CONCERNS if c in picked]


# ---------------------------------------------------------------------------
# 1) STEP FACTORS
#    Scale-dependent benchmarks. Step functions so savings do not grow
#    linearly with facility / catalog / spend size.
# ---------------------------------------------------------------------------
def pooling_factor(site_count: float) -> float:
    if site_count <= 1:
        return 0.0
    if site_count <= 5:
        return 0.04
    return 0.06


def vmi_factor(sku_count: float) -> float:
    if sku_count < SKU_TIER_LOW:
        return 0.05
    if sku_count <= SKU_TIER_HIGH:
        return 0.07
    return 0.09


def dedup_factor(sku_count: float) -> float:
    if sku_count < SKU_TIER_LOW:
        return 0.01
    if sku_count <= SKU_TIER_HIGH:
        return 0.025
    return 0.04


def ppv_factor(annual_spend: float) -> float:
    if annual_spend < SPEND_TIER_LOW:
        return 0.05
    if annual_spend <= SPEND_TIER_HIGH:
        return 0.07
    return 0.09


# ---------------------------------------------------------------------------
# 2) INVENTORY MIX
# ---------------------------------------------------------------------------
def split_inventory(profile: Any) -> Dict[str, float]:
    total = _num(profile.total_inventory_value)
    return {
        "active_value": total * _num(profile.active_percent) / 100,
        "non_moving_value": total * _num(profile.obsolete_percent) / 100,
        "special_value": total * _num(profile.special_percent) / 100,
    }


# ---------------------------------------------------------------------------
# 3) BUCKETS
# ---------------------------------------------------------------------------
def compute_inventory(profile: Any, mix: Dict[str, float]) -> Dict[str, float]:
    """
    Inventory reduction levers. active_increase is a service-level
    investment and is reported beside the reduction, never netted against it.
    """
    active = mix["active_value"]
    non_moving = mix["non_moving_value"]
    sites = _num(profile.site_count)
    skus = _num(profile.sku_count)

    active_increase = active * ACTIVE_INCREASE_RATE
    active_decrease = active * ACTIVE_DECREASE_RATE
    pooling = (active + non_moving) * pooling_factor(sites)
    vmi = active * vmi_factor(skus)
    dedup = (active + non_moving) * dedup_factor(skus)

    return {
        "active_increase": active_increase,
        "active_decrease": active_decrease,
        "pooling": pooling,
        "vmi": vmi,
        "dedup": dedup,
        "total_inv_reduction": active_decrease + pooling + vmi + dedup,
    }


def compute_spend(profile: Any, mix: Dict[str, float], total_inv_reduction: float) -> Dict[str, float]:
    spend = _num(profile.annual_spend)

    holding = total_inv_reduction * _num(profile.holding_cost_rate) / 100
    wacc = total_inv_reduction * _num(profile.wacc_rate) / 100
    ppv = spend * ppv_factor(spend)
    replenishment = total_inv_reduction * REPLENISHMENT_SUPPRESSION_RATE
    repairable = mix["active_value"] * REPAIRABLE_MATERIALS_RATE
    expediting = spend * EXPEDITING_RATE

    return {
        "holding_savings": holding,
        "wacc_savings": wacc,
        "ppv_savings": ppv,
        "replenishment_suppression": replenishment,
        "repairable_materials": repairable,
        "expediting": expediting,
        "total_spend": holding + wacc + ppv + replenishment + repairable + expediting,
    }


def compute_downtime(profile: Any) -> Dict[str, float]:
    """
    Stockout-attributable downtime avoidance. Total downtime is scaled by the
    ratio of target to current stockout rate; only stockout_percent of the
    avoided cost is credited.
    """
    cost_per_hour = _num(profile.downtime_cost_per_hour)
    org_hours = _num(profile.site_count) * _num(profile.downtime_hours_per_site)
    unplanned_cost = org_hours * cost_per_hour

    cur_rate = 1 - _num(profile.current_service_level) / 100
    tgt_rate = 1 - _num(profile.target_service_level) / 100

    # service level of 100% means no stockouts to scale from
    optimized_hours = (tgt_rate * org_hours) / cur_rate if cur_rate > 0 else 0.0
    optimized_cost = optimized_hours * cost_per_hour
    avoidable = max(unplanned_cost - optimized_cost, 0.0)

    return {
        "org_dt_hours": org_hours,
        "unplanned_cost": unplanned_cost,
        "cur_stockout_rate": cur_rate,
        "tgt_stockout_rate": tgt_rate,
        "optimized_dt_hours": optimized_hours,
        "optimized_dt_cost": optimized_cost,
        "dt_savings": avoidable * _num(profile.stockout_percent) / 100,
    }


# ---------------------------------------------------------------------------
# 4) FULL ESTIMATE
# ---------------------------------------------------------------------------
def estimate(profile: Any, concerns: Iterable[Any]) -> Dict[str, Any]:
    """
    Map a validated profile + concern selection to the result tree.

    Sub-trees for unselected concerns are None and contribute nothing to
    grand_total. The inventory levers are always computed internally because
    the spend bucket is driven by total_inv_reduction.
    """
    selected = normalize_concerns(concerns)
    mix = split_inventory(profile)
    inventory = compute_inventory(profile, mix)

    result: Dict[str, Any] = {
        "schema_version": RESULT_SCHEMA_VERSION,
        "concerns": selected,
        "inventory": None,
        "spend": None,
        "downtime": None,
        "grand_total": 0.0,
    }
    grand_total = 0.0

    if "inventory" in selected:
        result["inventory"] = inventory
        grand_total += inventory["total_inv_reduction"]

    if "spend" in selected:
        spend = compute_spend(profile, mix, inventory["total_inv_reduction"])
        result["spend"] = spend
        grand_total += spend["total_spend"]

    if "downtime" in selected:
        downtime = compute_downtime(profile)
        result["downtime"] = downtime
        grand_total += downtime["dt_savings"]

    result["grand_total"] = grand_total
    return result


# ---------------------------------------------------------------------------
# 5) FLAT SUMMARY (CRM properties / storage / export)
# ---------------------------------------------------------------------------
def flatten_result(result: Dict[str, Any], profile: Any = None) -> Dict[str, Any]:
    """
    One-level dict: "<bucket>_<field>" for every present bucket, grand_total,
    and the profile's mix percentages when a profile is given.
    """
    flat: Dict[str, Any] = {
        "schema_version": result["schema_version"],
        "concerns": ",".join(result["concerns"]),
    }
    for bucket in CONCERNS:
        values = result.get(bucket)
        if not values:
            continue
        for key, val in values.items():
            flat[f"{bucket}_{key}"] = round(val, 2)
    flat["grand_total"] = round(result["grand_total"], 2)

    if profile is not None:
        flat["active_percent"] = profile.active_percent
        flat["obsolete_percent"] = profile.obsolete_percent
        flat["special_percent"] = profile.special_percent
    return flat
