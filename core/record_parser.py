"""
record_parser.py
-----------------
Shape validation for raw external records.

Providers may hand back RawExternalRecord objects or plain dict rows (one
CSV row, one API item). Either way each record passes through
coerce_record() before matching. A record that fails here raises
MalformedInputError; the orchestrator skips it and counts it.

Rules:
    - source must be a configured source, identifier a non-empty string
    - date must parse
    - every metric must be numeric, finite and non-negative
    - position 0 means "not reported" and is stored as None
    - a record's tenant must be the run's tenant
"""

import math
from datetime import date, datetime
from typing import Any, Optional

import pandas as pd

from core.errors import MalformedInputError
from core.models import (
    AnalyticsMetrics,
    PricingMetrics,
    RawExternalRecord,
    SearchMetrics,
    SOURCE_ANALYTICS,
    SOURCE_PRICING,
    SOURCE_SEARCH,
)

_COUNT_FIELDS = {"impressions", "clicks", "sessions", "transactions", "competitor_count"}


def coerce_record(raw: Any, source: str, tenant_id: str) -> RawExternalRecord:
    """
    Validate one record for the given source and tenant.

    Raises:
        MalformedInputError: If any field fails validation.
    """
    if isinstance(raw, RawExternalRecord):
        return _validate_record(raw, source, tenant_id)
    if isinstance(raw, dict):
        return _parse_row(raw, source, tenant_id)
    raise MalformedInputError(f"Unsupported record type: {type(raw).__name__}")


def metrics_to_dict(record: RawExternalRecord) -> dict:
    """Flat metrics bag, as preserved in the Unmatched Ledger."""
    return {k: v for k, v in vars(record.metrics).items() if v is not None}


# -----------------------------------------------------------------------------
# INTERNAL
# -----------------------------------------------------------------------------

def _validate_record(record: RawExternalRecord, source: str, tenant_id: str) -> RawExternalRecord:
    if record.source != source:
        raise MalformedInputError(f"Record source {record.source!r} delivered by provider {source!r}")
    if record.tenant_id != tenant_id:
        raise MalformedInputError(f"Record tenant {record.tenant_id!r} does not match run tenant {tenant_id!r}")
    if getattr(record.metrics, "source", None) != source:
        raise MalformedInputError(f"Metrics variant {type(record.metrics).__name__} does not belong to {source!r}")
    row = dict(vars(record.metrics))
    row.update(identifier=record.identifier, date=record.date, tenant_id=record.tenant_id)
    return _parse_row(row, source, tenant_id)


def _parse_row(row: dict, source: str, tenant_id: str) -> RawExternalRecord:
    row_source = row.get("source")
    if not _is_missing(row_source) and row_source != source:
        raise MalformedInputError(f"Row source {row_source!r} delivered by provider {source!r}")

    row_tenant = row.get("tenant_id")
    if not _is_missing(row_tenant) and str(row_tenant) != tenant_id:
        raise MalformedInputError(f"Row tenant {row_tenant!r} does not match run tenant {tenant_id!r}")

    identifier = row.get("identifier")
    if _is_missing(identifier) or not str(identifier).strip():
        raise MalformedInputError("Missing identifier")

    bag = row.get("metrics") if isinstance(row.get("metrics"), dict) else row

    if source == SOURCE_SEARCH:
        impressions = _count(bag, "impressions")
        clicks = _count(bag, "clicks")
        position = _number(bag, "position")
        metrics = SearchMetrics(
            impressions=impressions,
            clicks=clicks,
            ctr=_number(bag, "ctr"),
            position=position if position else None,
        )
    elif source == SOURCE_ANALYTICS:
        sessions = _count(bag, "sessions")
        transactions = _count(bag, "transactions")
        conversion_rate = _number(bag, "conversion_rate")
        if conversion_rate is None and sessions > 0:
            conversion_rate = transactions / sessions
        metrics = AnalyticsMetrics(
            sessions=sessions,
            revenue=_number(bag, "revenue") or 0.0,
            transactions=transactions,
            conversion_rate=conversion_rate,
        )
    elif source == SOURCE_PRICING:
        metrics = PricingMetrics(
            median_price=_number(bag, "median_price"),
            competitor_count=_count(bag, "competitor_count"),
        )
    else:
        raise MalformedInputError(f"Unknown source {source!r}")

    return RawExternalRecord(
        source=source,
        identifier=str(identifier).strip(),
        metrics=metrics,
        date=_parse_date(row.get("date")),
        tenant_id=tenant_id,
    )


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (float, datetime)) or value is pd.NaT:
        return bool(pd.isna(value))
    return False


def _number(bag: dict, key: str) -> Optional[float]:
    value = bag.get(key)
    if _is_missing(value):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise MalformedInputError(f"Non-numeric {key}: {value!r}")
    if not math.isfinite(number) or number < 0:
        raise MalformedInputError(f"Invalid {key}: {value!r}")
    return number


def _count(bag: dict, key: str) -> int:
    number = _number(bag, key)
    if number is None:
        return 0
    if key in _COUNT_FIELDS and number != int(number):
        raise MalformedInputError(f"Fractional count {key}: {number!r}")
    return int(number)


def _parse_date(value: Any) -> date:
    if _is_missing(value):
        raise MalformedInputError("Missing date")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        parsed = pd.Timestamp(value)
    except (TypeError, ValueError):
        raise MalformedInputError(f"Invalid date: {value!r}")
    if pd.isna(parsed):
        raise MalformedInputError(f"Invalid date: {value!r}")
    return parsed.date()
