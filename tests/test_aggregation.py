"""
test_aggregation.py
--------------------
Tests for record validation, the tree roll-up, per-node confidence and the
unmatched ledger.

Run from the project root:
    python -m pytest tests/test_aggregation.py -v
"""

import sys
import os
import pytest
from datetime import date, datetime

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import reset_config
from core.aggregator import aggregate, aggregate_statistics, build_leaf_metrics, tenant_totals
from core.catalog_index import CatalogIndex
from core.confidence import ConfidenceScorer, strategy_confidence
from core.errors import MalformedInputError
from core.frames import aggregated_to_frame
from core.models import (
    AggregatedMetrics,
    AnalyticsMetrics,
    CatalogNode,
    CatalogProduct,
    MatchResult,
    PricingMetrics,
    RawExternalRecord,
    SearchMetrics,
)
from core.record_parser import coerce_record
from core.unmatched_ledger import UnmatchedLedger

TENANT = "acme"
DAY = date(2024, 6, 1)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    reset_config()
    yield
    reset_config()


def _make_index() -> CatalogIndex:
    nodes = [
        CatalogNode(node_id="electronics", parent_id=None, url="https://x.com/electronics",
                    path="/electronics", depth=0),
        CatalogNode(node_id="phones", parent_id="electronics", url="https://x.com/c/phones",
                    path="/electronics/phones", depth=1),
        CatalogNode(node_id="laptops", parent_id="electronics", url="https://x.com/c/laptops",
                    path="/electronics/laptops", depth=1),
        CatalogNode(node_id="empty", parent_id="electronics", url="https://x.com/c/empty",
                    path="/electronics/empty", depth=1),
    ]
    products = [
        CatalogProduct(product_id="SKU-100", url="https://x.com/p/galaxy", node_id="phones",
                       codes=["012345678905"], price=500.0),
    ]
    return CatalogIndex(nodes, products)


def _search(identifier, impressions, clicks, position, day=DAY):
    return RawExternalRecord("search", identifier, SearchMetrics(impressions, clicks, None, position), day, TENANT)


def _analytics(identifier, sessions, revenue, transactions, day=DAY):
    metrics = AnalyticsMetrics(sessions, revenue, transactions, transactions / sessions if sessions else None)
    return RawExternalRecord("analytics", identifier, metrics, day, TENANT)


def _pricing(identifier, median_price, competitors, day=DAY):
    return RawExternalRecord("pricing", identifier, PricingMetrics(median_price, competitors), day, TENANT)


def _node_hit(node_id):
    return MatchResult("node", node_id, 0.8, "path_prefix")


def _make_rollup():
    """phones: 1000 impressions at position 2.0; laptops: 500 at 2.5; empty: nothing."""
    index = _make_index()
    matches = [
        (_search("/electronics/phones", 1000, 50, 2.0), _node_hit("phones")),
        (_search("/electronics/laptops", 500, 5, 2.5), _node_hit("laptops")),
        (_analytics("/electronics/phones", 200, 1000.0, 10), _node_hit("phones")),
        (_search("/nowhere", 999, 999, 1.0), MatchResult.none("no_match")),
    ]
    leaves = build_leaf_metrics(matches, index, TENANT)
    return index, leaves, aggregate(index.nodes.values(), leaves)


# =============================================================================
# RECORD VALIDATION
# =============================================================================

class TestRecordParser:
    def test_dict_row_parses(self):
        record = coerce_record(
            {"identifier": " /a ", "date": "2024-06-01", "impressions": 10, "clicks": 2, "position": 3.5},
            "search", TENANT,
        )
        assert record.identifier == "/a"
        assert record.date == DAY
        assert record.metrics.impressions == 10
        assert record.metrics.position == 3.5

    def test_position_zero_means_not_reported(self):
        record = coerce_record({"identifier": "/a", "date": DAY, "impressions": 10, "position": 0}, "search", TENANT)
        assert record.metrics.position is None

    def test_conversion_rate_derived_when_missing(self):
        record = coerce_record(
            {"identifier": "/a", "date": DAY, "sessions": 200, "transactions": 5, "revenue": 500},
            "analytics", TENANT,
        )
        assert record.metrics.conversion_rate == pytest.approx(0.025)

    def test_nested_metrics_bag(self):
        record = coerce_record(
            {"identifier": "012345678905", "date": DAY, "metrics": {"median_price": 450, "competitor_count": 5}},
            "pricing", TENANT,
        )
        assert record.metrics.median_price == 450.0
        assert record.metrics.competitor_count == 5

    @pytest.mark.parametrize("row", [
        {"identifier": "", "date": "2024-06-01", "impressions": 1},
        {"identifier": "/a", "date": "not-a-date", "impressions": 1},
        {"identifier": "/a", "impressions": 1},
        {"identifier": "/a", "date": "2024-06-01", "impressions": -1},
        {"identifier": "/a", "date": "2024-06-01", "impressions": "many"},
        {"identifier": "/a", "date": "2024-06-01", "impressions": 1.5},
        {"identifier": "/a", "date": "2024-06-01", "position": float("inf")},
        {"identifier": "/a", "date": "2024-06-01", "tenant_id": "other"},
    ])
    def test_malformed_rows_rejected(self, row):
        with pytest.raises(MalformedInputError):
            coerce_record(row, "search", TENANT)

    def test_record_from_other_tenant_rejected(self):
        record = RawExternalRecord("search", "/a", SearchMetrics(1, 0), DAY, "globex")
        with pytest.raises(MalformedInputError):
            coerce_record(record, "search", TENANT)

    def test_metrics_variant_must_match_source(self):
        record = RawExternalRecord("search", "/a", PricingMetrics(10.0, 1), DAY, TENANT)
        with pytest.raises(MalformedInputError):
            coerce_record(record, "search", TENANT)


# =============================================================================
# LEAF METRICS
# =============================================================================

class TestLeafMetrics:
    def test_misses_are_ignored(self):
        _, leaves, _ = _make_rollup()
        assert set(leaves) == {"phones", "laptops"}

    def test_sources_fold_onto_one_node(self):
        _, leaves, _ = _make_rollup()
        phones = leaves["phones"]
        assert phones.impressions == 1000
        assert phones.sessions == 200
        assert phones.revenue == 1000.0
        assert phones.is_aggregated is False
        assert phones.leaf_count == 1

    def test_product_metrics_land_on_owning_node(self):
        index = _make_index()
        matches = [(_pricing("012345678905", 450.0, 4), MatchResult("product", "SKU-100", 1.0, "gtin"))]
        leaves = build_leaf_metrics(matches, index, TENANT)
        phones = leaves["phones"]
        assert phones.competitor_count == 4
        assert phones.market_median_price == 450.0
        assert phones.our_price == 500.0

    def test_day_filter(self):
        index = _make_index()
        matches = [
            (_search("/a", 100, 1, 1.0, date(2024, 6, 1)), _node_hit("phones")),
            (_search("/a", 300, 3, 3.0, date(2024, 6, 2)), _node_hit("phones")),
        ]
        day_rows = build_leaf_metrics(matches, index, TENANT, day=date(2024, 6, 2))
        period_rows = build_leaf_metrics(matches, index, TENANT)
        assert day_rows["phones"].impressions == 300
        assert day_rows["phones"].date == date(2024, 6, 2)
        assert period_rows["phones"].impressions == 400
        assert period_rows["phones"].date is None
        assert period_rows["phones"].latest_date == date(2024, 6, 2)


# =============================================================================
# TREE ROLL-UP
# =============================================================================

class TestAggregate:
    def test_counters_sum_to_parent(self):
        _, _, rows = _make_rollup()
        assert rows["electronics"].clicks == 55
        assert rows["electronics"].impressions == 1500

    def test_position_is_impression_weighted(self):
        _, _, rows = _make_rollup()
        assert rows["electronics"].position == pytest.approx((1000 * 2.0 + 500 * 2.5) / 1500)

    def test_parent_ctr_from_summed_counters(self):
        _, _, rows = _make_rollup()
        assert rows["electronics"].ctr == pytest.approx(55 / 1500)

    def test_node_without_data_has_no_row(self):
        _, _, rows = _make_rollup()
        assert "empty" not in rows

    def test_provenance_flags(self):
        _, _, rows = _make_rollup()
        assert rows["electronics"].is_aggregated is True
        assert rows["phones"].is_aggregated is False
        assert rows["electronics"].leaf_count == 2

    def test_rate_with_no_weight_stays_none(self):
        _, _, rows = _make_rollup()
        assert rows["laptops"].conversion_rate is None
        assert rows["electronics"].market_median_price is None

    def test_conversion_rate_weighted_by_sessions(self):
        _, _, rows = _make_rollup()
        assert rows["electronics"].conversion_rate == pytest.approx(10 / 200)

    def test_zero_rate_pair_skipped(self):
        nodes = [
            CatalogNode(node_id="root", parent_id=None, url="", path="/root", depth=0),
            CatalogNode(node_id="a", parent_id="root", url="", path="/root/a", depth=1),
            CatalogNode(node_id="b", parent_id="root", url="", path="/root/b", depth=1),
        ]
        leaves = {
            "a": AggregatedMetrics(node_id="a", tenant_id=TENANT, date=None, impressions=0, position=7.0),
            "b": AggregatedMetrics(node_id="b", tenant_id=TENANT, date=None, impressions=100, position=3.0),
        }
        rows = aggregate(nodes, leaves)
        assert rows["root"].position == pytest.approx(3.0)

    def test_order_independent(self):
        index, leaves, rows = _make_rollup()
        reversed_rows = aggregate(list(index.nodes.values())[::-1], dict(reversed(list(leaves.items()))))
        assert aggregated_to_frame(rows.values()).equals(aggregated_to_frame(reversed_rows.values()))

    def test_statistics(self):
        index, _, rows = _make_rollup()
        stats = aggregate_statistics(rows, index)
        assert stats["total_clicks"] == 55
        assert stats["total_revenue"] == 1000.0
        assert stats["top_performers"][0] == "electronics"
        assert "laptops" in stats["needs_attention"]

    def test_tenant_totals_from_roots(self):
        index, _, rows = _make_rollup()
        totals = tenant_totals(rows, index)
        assert totals.node_id == "__tenant__"
        assert totals.impressions == 1500


# =============================================================================
# CONFIDENCE
# =============================================================================

class TestConfidence:
    def _row(self, **kwargs):
        return AggregatedMetrics(node_id="n", tenant_id=TENANT, date=None, **kwargs)

    def test_all_three_sources_high(self):
        scorer = ConfidenceScorer(as_of=DAY)
        row = self._row(impressions=10, sessions=5, competitor_count=2, latest_date=DAY)
        assert scorer.level(row) == "high"

    def test_two_sources_medium(self):
        scorer = ConfidenceScorer(as_of=DAY)
        assert scorer.level(self._row(impressions=10, sessions=5, latest_date=DAY)) == "medium"

    def test_one_source_low(self):
        scorer = ConfidenceScorer(as_of=DAY)
        assert scorer.level(self._row(impressions=10, latest_date=DAY)) == "low"
        assert scorer.level(None) == "low"

    def test_stale_data_degrades_one_level(self):
        scorer = ConfidenceScorer(as_of=date(2024, 12, 31))
        row = self._row(impressions=10, sessions=5, competitor_count=2, latest_date=date(2024, 6, 1))
        assert scorer.level(row) == "medium"

    def test_low_cannot_degrade_further(self):
        assert ConfidenceScorer(as_of=DAY).degrade("low") == "low"

    def test_distribution(self):
        scorer = ConfidenceScorer(as_of=DAY)
        rows = [self._row(impressions=1, latest_date=DAY), self._row(impressions=1, sessions=1, latest_date=DAY)]
        assert scorer.distribution(rows) == {"low": 1, "medium": 1, "high": 0}

    def test_strategy_confidence_table(self):
        assert strategy_confidence("manual") == 1.0
        assert strategy_confidence("path_prefix") == 0.8
        assert strategy_confidence("telepathy") == 0.0


# =============================================================================
# UNMATCHED LEDGER
# =============================================================================

class TestUnmatchedLedger:
    def test_deduplicates_by_source_and_identifier(self):
        ledger = UnmatchedLedger(TENANT, datetime(2024, 6, 2, 2, 0))
        ledger.add(_search("/nowhere", 10, 1, 4.0, date(2024, 6, 1)), "no_match")
        ledger.add(_search("/nowhere", 20, 2, 5.0, date(2024, 6, 2)), "no_match")
        ledger.add(_analytics("/nowhere", 5, 0.0, 0), "no_match")
        assert len(ledger) == 2

        frame = ledger.to_frame()
        search_row = frame[frame["source"] == "search"].iloc[0]
        assert search_row["occurrences"] == 2
        assert "impressions=10" in search_row["metrics"]

    def test_count_by_reason(self):
        ledger = UnmatchedLedger(TENANT, datetime(2024, 6, 2))
        ledger.add(_pricing("012345678900", 10.0, 1), "checksum_invalid")
        ledger.add(_search("/nowhere", 10, 1, 4.0), "no_match")
        assert ledger.count_by_reason() == {"checksum_invalid": 1, "no_match": 1}

    def test_empty_ledger_frame_has_columns(self):
        frame = UnmatchedLedger(TENANT, datetime(2024, 6, 2)).to_frame()
        assert frame.empty
        assert "identifier" in frame.columns
