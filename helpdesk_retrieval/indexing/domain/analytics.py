"""
Record Analytics
================

Resolution-time and thread statistics stored in chunk metadata.
"""

import math
from typing import Any, Dict, List

from helpdesk_retrieval.indexing.domain.entities import LegacyRecord, LegacyReply

SECONDS_PER_HOUR = 3600


def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def extract_analytics(record: LegacyRecord, replies: List[LegacyReply]) -> Dict[str, Any]:
    """
    Priority, type, reply counts and timings of a record.

    Timing keys are present only when both timestamps are known.
    """
    result: Dict[str, Any] = {
        "priority": record.priority_label,
        "priorityLevel": record.priority,
        "responseCount": len(replies),
        "internalResponseCount": sum(1 for r in replies if r.is_internal),
    }
    if record.request_type:
        result["requestType"] = record.request_type

    if record.created_at and record.closed_at:
        hours = (record.closed_at - record.created_at).total_seconds() / SECONDS_PER_HOUR
        result["resolutionTimeHours"] = int(_round_half_up(hours))
        result["resolutionTimeDays"] = _round_half_up(hours / 24, 1)

    first_response = next((r for r in replies if not r.is_internal), None)
    if record.created_at and first_response is not None and first_response.created_at:
        hours = (first_response.created_at - record.created_at).total_seconds() / SECONDS_PER_HOUR
        result["firstResponseTimeHours"] = _round_half_up(hours, 1)

    return result
