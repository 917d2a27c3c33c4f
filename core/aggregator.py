"""
aggregator.py
--------------
Bottom-up roll-up of matched metrics over the category tree.

Two steps:
    1. build_leaf_metrics(): fold matched records into per-node direct
       metrics. A product's metrics land on its owning node.
    2. aggregate(): walk nodes deepest-first (flat list, no recursion) and
       fold every child row into its parent.

Combination rules:
    - Counters (clicks, impressions, sessions, revenue, transactions,
      competitor_count) are summed.
    - Rates are weighted averages: position by impressions, conversion rate
      by sessions, market median and our price by competitor count. Pairs
      with zero weight are skipped; zero total weight leaves the rate None.
    - A node with no direct metrics and no descendant metrics gets no row.
      A zero row means "observed zero activity"; a missing row means "no data".
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from core.catalog_index import CatalogIndex
from core.models import (
    AggregatedMetrics,
    AnalyticsMetrics,
    CatalogNode,
    ENTITY_NODE,
    ENTITY_PRODUCT,
    MatchResult,
    PricingMetrics,
    RawExternalRecord,
    SearchMetrics,
)

logger = logging.getLogger(__name__)

COUNTER_FIELDS = ("clicks", "impressions", "sessions", "revenue", "transactions", "competitor_count")
RATE_FIELDS = ("position", "conversion_rate", "market_median_price", "our_price")

# Volume counter each rate is weighted by
RATE_WEIGHT_FIELDS = {
    "position": "impressions",
    "conversion_rate": "sessions",
    "market_median_price": "competitor_count",
    "our_price": "competitor_count",
}


@dataclass
class _Accumulator:
    """Mutable running totals for one node. Rates kept as (sum of rate*weight, sum of weight)."""

    counters: Dict[str, float] = field(default_factory=lambda: {f: 0 for f in COUNTER_FIELDS})
    weighted: Dict[str, List[float]] = field(default_factory=lambda: {f: [0.0, 0.0] for f in RATE_FIELDS})
    leaf_count: int = 0
    latest_date: Optional[date] = None

    def add_rate(self, name: str, rate: Optional[float], weight: float) -> None:
        if rate is None or weight <= 0:
            return
        self.weighted[name][0] += rate * weight
        self.weighted[name][1] += weight

    def add_date(self, value: Optional[date]) -> None:
        if value is not None and (self.latest_date is None or value > self.latest_date):
            self.latest_date = value

    def fold(self, row: AggregatedMetrics) -> None:
        for name in COUNTER_FIELDS:
            self.counters[name] += getattr(row, name)
        for name in RATE_FIELDS:
            weight = row.rate_weights.get(name, getattr(row, RATE_WEIGHT_FIELDS[name]))
            self.add_rate(name, getattr(row, name), weight)
        self.leaf_count += row.leaf_count
        self.add_date(row.latest_date)

    def finish(self, node_id: str, tenant_id: str, day: Optional[date], is_aggregated: bool) -> AggregatedMetrics:
        rates = {}
        weights = {}
        for name, (total, weight) in self.weighted.items():
            rates[name] = total / weight if weight > 0 else None
            weights[name] = weight
        return AggregatedMetrics(
            node_id=node_id,
            tenant_id=tenant_id,
            date=day,
            clicks=int(self.counters["clicks"]),
            impressions=int(self.counters["impressions"]),
            sessions=int(self.counters["sessions"]),
            revenue=float(self.counters["revenue"]),
            transactions=int(self.counters["transactions"]),
            competitor_count=int(self.counters["competitor_count"]),
            position=rates["position"],
            conversion_rate=rates["conversion_rate"],
            market_median_price=rates["market_median_price"],
            our_price=rates["our_price"],
            is_aggregated=is_aggregated,
            leaf_count=self.leaf_count,
            latest_date=self.latest_date,
            rate_weights=weights,
        )


# -------------------------------------------------------------------------
# PUBLIC INTERFACE
# -------------------------------------------------------------------------

def build_leaf_metrics(
    matches: Iterable[Tuple[RawExternalRecord, MatchResult]],
    index: CatalogIndex,
    tenant_id: str,
    day: Optional[date] = None,
) -> Dict[str, AggregatedMetrics]:
    """
    Fold matched records into direct, per-node metrics.

    Args:
        matches: (record, match) pairs. Misses are ignored.
        index: Catalog index, used to find a product's owning node and price.
        tenant_id: Tenant the rows belong to.
        day: Only records on this date when given; the whole period otherwise.

    Returns:
        Dict of node_id -> AggregatedMetrics with is_aggregated False.
    """
    accumulators: Dict[str, _Accumulator] = {}
    entities: Dict[str, set] = defaultdict(set)

    ordered = sorted(
        ((r, m) for r, m in matches if m.is_match and (day is None or r.date == day)),
        key=lambda rm: (rm[0].date, rm[0].source, rm[0].identifier, rm[1].entity_id),
    )

    for record, match in ordered:
        node_id, product = _attribution(match, index)
        if node_id is None:
            logger.debug(f"Match {match} has no owning node in the catalog; dropped from aggregation.")
            continue

        acc = accumulators.setdefault(node_id, _Accumulator())
        entities[node_id].add((match.entity_type, match.entity_id))
        acc.add_date(record.date)
        _add_record(acc, record, product)

    rows = {}
    for node_id, acc in accumulators.items():
        acc.leaf_count = len(entities[node_id])
        rows[node_id] = acc.finish(node_id, tenant_id, day, is_aggregated=False)
    return rows


def aggregate(
    nodes: Iterable[CatalogNode],
    leaf_metrics: Dict[str, AggregatedMetrics],
) -> Dict[str, AggregatedMetrics]:
    """
    Roll leaf metrics up the tree.

    Nodes are processed deepest first, so every child's row is final before
    its parent reads it.

    Returns:
        Dict of node_id -> AggregatedMetrics. Nodes with no data anywhere in
        their subtree are absent.
    """
    nodes = list(nodes)
    children: Dict[str, List[str]] = defaultdict(list)
    for node in nodes:
        if node.parent_id is not None:
            children[node.parent_id].append(node.node_id)

    result: Dict[str, AggregatedMetrics] = {}
    for node in sorted(nodes, key=lambda n: (-n.depth, n.node_id)):
        direct = leaf_metrics.get(node.node_id)
        child_rows = [result[c] for c in sorted(children.get(node.node_id, [])) if c in result]
        if direct is None and not child_rows:
            continue

        acc = _Accumulator()
        if direct is not None:
            acc.fold(direct)
        for row in child_rows:
            acc.fold(row)

        template = direct if direct is not None else child_rows[0]
        result[node.node_id] = acc.finish(
            node.node_id,
            template.tenant_id,
            template.date,
            is_aggregated=bool(child_rows),
        )

    return result


def aggregate_statistics(rows: Dict[str, AggregatedMetrics], index: CatalogIndex, top_n: int = 10) -> dict:
    """
    Tenant-level totals and highlights over one aggregation result.

    Totals come from root rows only, since every other row is already
    contained in a root.
    """
    totals = tenant_totals(rows, index)

    ranked = sorted(rows.values(), key=lambda r: (-r.revenue, -r.clicks, r.node_id))
    needs_attention = sorted(
        (r for r in rows.values() if r.impressions > 100 and (r.ctr or 0.0) < 0.02),
        key=lambda r: (-r.impressions, r.node_id),
    )

    return {
        "total_clicks": totals.clicks,
        "total_impressions": totals.impressions,
        "total_sessions": totals.sessions,
        "total_revenue": round(totals.revenue, 2),
        "total_transactions": totals.transactions,
        "overall_ctr": totals.ctr,
        "average_position": totals.position,
        "conversion_rate": totals.conversion_rate,
        "avg_order_value": totals.avg_order_value,
        "top_performers": [r.node_id for r in ranked[:top_n]],
        "needs_attention": [r.node_id for r in needs_attention[:top_n]],
    }


def tenant_totals(rows: Dict[str, AggregatedMetrics], index: CatalogIndex) -> AggregatedMetrics:
    """Sum of root rows as a single AggregatedMetrics (node_id "__tenant__")."""
    root_rows = [rows[n.node_id] for n in index.roots() if n.node_id in rows]
    acc = _Accumulator()
    for row in root_rows:
        acc.fold(row)
    return acc.finish("__tenant__", root_rows[0].tenant_id if root_rows else "", None, bool(root_rows))


# -------------------------------------------------------------------------
# INTERNAL
# -------------------------------------------------------------------------

def _attribution(match: MatchResult, index: CatalogIndex):
    """(node_id, product or None) a match's metrics are credited to."""
    if match.entity_type == ENTITY_NODE:
        return (match.entity_id if match.entity_id in index.nodes else None), None
    if match.entity_type == ENTITY_PRODUCT:
        return index.owning_node(match.entity_id), index.products.get(match.entity_id)
    return None, None


def _add_record(acc: _Accumulator, record: RawExternalRecord, product) -> None:
    m = record.metrics
    if isinstance(m, SearchMetrics):
        acc.counters["impressions"] += m.impressions
        acc.counters["clicks"] += m.clicks
        acc.add_rate("position", m.position, m.impressions)
    elif isinstance(m, AnalyticsMetrics):
        acc.counters["sessions"] += m.sessions
        acc.counters["revenue"] += m.revenue
        acc.counters["transactions"] += m.transactions
        acc.add_rate("conversion_rate", m.conversion_rate, m.sessions)
    elif isinstance(m, PricingMetrics):
        acc.counters["competitor_count"] += m.competitor_count
        acc.add_rate("market_median_price", m.median_price, m.competitor_count)
        if product is not None and product.price:
            acc.add_rate("our_price", product.price, m.competitor_count)
