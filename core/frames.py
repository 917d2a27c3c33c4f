"""
frames.py
----------
Flat DataFrame views of engine outputs, for CSV export and the result store.

Row order is fully determined by the data (sorted keys) and floats are
rounded, so two runs over identical inputs serialise identically apart
from timestamp columns.
"""

from typing import Iterable, List, Optional, Tuple

import pandas as pd

from core.models import AggregatedMetrics, MatchResult, OpportunityScore, RawExternalRecord

RATE_DECIMALS = 6
MONEY_DECIMALS = 2

AGGREGATED_COLUMNS = [
    "tenant_id", "node_id", "date",
    "clicks", "impressions", "ctr", "position",
    "sessions", "revenue", "transactions", "conversion_rate", "avg_order_value",
    "competitor_count", "market_median_price", "our_price",
    "is_aggregated", "leaf_count", "latest_date",
]

SCORE_COLUMNS = [
    "tenant_id", "node_id", "run_id", "score", "label", "confidence",
    "traffic_potential", "revenue_potential", "pricing_opportunity",
    "competitive_gap", "content_completeness", "revenue_impact",
    "computed_at", "expires_at",
]

MATCH_HISTORY_COLUMNS = [
    "tenant_id", "source", "identifier", "date",
    "entity_type", "entity_id", "confidence", "strategy",
]


def _round(value: Optional[float], digits: int) -> Optional[float]:
    return None if value is None else round(float(value), digits)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def aggregated_to_frame(rows: Iterable[AggregatedMetrics]) -> pd.DataFrame:
    records = []
    for r in sorted(rows, key=lambda r: (r.tenant_id, r.node_id, _iso(r.date) or "")):
        records.append({
            "tenant_id": r.tenant_id,
            "node_id": r.node_id,
            "date": _iso(r.date),
            "clicks": r.clicks,
            "impressions": r.impressions,
            "ctr": _round(r.ctr, RATE_DECIMALS),
            "position": _round(r.position, RATE_DECIMALS),
            "sessions": r.sessions,
            "revenue": _round(r.revenue, MONEY_DECIMALS),
            "transactions": r.transactions,
            "conversion_rate": _round(r.conversion_rate, RATE_DECIMALS),
            "avg_order_value": _round(r.avg_order_value, MONEY_DECIMALS),
            "competitor_count": r.competitor_count,
            "market_median_price": _round(r.market_median_price, MONEY_DECIMALS),
            "our_price": _round(r.our_price, MONEY_DECIMALS),
            "is_aggregated": r.is_aggregated,
            "leaf_count": r.leaf_count,
            "latest_date": _iso(r.latest_date),
        })
    return pd.DataFrame(records, columns=AGGREGATED_COLUMNS)


def scores_to_frame(scores: Iterable[OpportunityScore]) -> pd.DataFrame:
    records = []
    for s in sorted(scores, key=lambda s: (s.tenant_id, -s.score, s.node_id, s.run_id)):
        row = {
            "tenant_id": s.tenant_id,
            "node_id": s.node_id,
            "run_id": s.run_id,
            "score": s.score,
            "label": s.label,
            "confidence": s.confidence,
            "revenue_impact": s.revenue_impact,
            "computed_at": s.computed_at.isoformat(),
            "expires_at": s.expires_at.isoformat(),
        }
        row.update(s.factors.as_dict())
        records.append(row)
    return pd.DataFrame(records, columns=SCORE_COLUMNS)


def match_history_to_frame(matches: Iterable[Tuple[RawExternalRecord, MatchResult]]) -> pd.DataFrame:
    records: List[dict] = []
    for record, match in sorted(
        matches, key=lambda rm: (rm[0].source, rm[0].identifier, rm[0].date.isoformat())
    ):
        records.append({
            "tenant_id": record.tenant_id,
            "source": record.source,
            "identifier": record.identifier,
            "date": record.date.isoformat(),
            "entity_type": match.entity_type,
            "entity_id": match.entity_id,
            "confidence": match.confidence,
            "strategy": match.strategy,
        })
    return pd.DataFrame(records, columns=MATCH_HISTORY_COLUMNS)
