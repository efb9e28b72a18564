"""
Structured logging for calculation runs.

Every orchestrator step emits one JSON line on the "calculation_runs"
logger so a single calculation can be traced end to end by its id.

Usage:
    from dutycalc.logging_utils import log_calculation_event

    log_calculation_event("rate_selected", {
        "calculation_id": "...",
        "hts_number": "8544.42.90.90",
    })
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict


logger = logging.getLogger("calculation_runs")
logger.setLevel(logging.INFO)


class JSONFormatter(logging.Formatter):
    def format(self, record):
        if isinstance(record.msg, dict):
            # Decimals and dates are rendered as strings
            return json.dumps(record.msg, default=str)
        return super().format(record)


if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)


def log_calculation_event(event_type: str, payload: Dict[str, Any]) -> None:
    """
    Log a calculation event with structured data.

    Args:
        event_type: Step name (e.g., "rate_selected", "formula_resolved", "taxes_stacked")
        payload: Event data, normally including calculation_id
    """
    event = {
        "timestamp": datetime.utcnow().isoformat(),
        "event_type": event_type,
        **_truncate_dict(payload),
    }
    logger.info(event)


def _truncate_dict(d: Dict, max_str_len: int = 200) -> Dict:
    """Truncate long string values so log lines stay readable."""
    if not d:
        return d

    result = {}
    for key, value in d.items():
        if isinstance(value, str) and len(value) > max_str_len:
            result[key] = value[:max_str_len] + "..."
        elif isinstance(value, list) and len(value) > 10:
            result[key] = value[:10]
        elif isinstance(value, dict):
            result[key] = _truncate_dict(value, max_str_len)
        else:
            result[key] = value
    return result
