# backend/export.py — Downloadable report (CSV)

import csv
import io
from typing import Any, Dict

from engine import flatten_result

PROFILE_FIELDS = [
    "industry", "site_count", "total_inventory_value", "sku_count",
    "active_percent", "obsolete_percent", "special_percent",
    "annual_spend", "holding_cost_rate", "wacc_rate",
    "downtime_hours_per_site", "downtime_cost_per_hour",
    "current_service_level", "target_service_level", "stockout_percent",
]


def render_csv(profile: Any, result: Dict[str, Any]) -> str:
    """section,field,value rows: the profile as entered, then the flattened result."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(["section", "field", "value"])

    for field in PROFILE_FIELDS:
        val = getattr(profile, field, None)
        writer.writerow(["profile", field, "" if val is None else val])

    for key, val in flatten_result(result).items():
        writer.writerow(["result", key, val])
    return buf.getvalue()
