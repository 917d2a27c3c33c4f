"""
test_scoring.py
----------------
Tests for the opportunity scorer: factor sub-scores, composite, labels and
revenue impact.

Run from the project root:
    python -m pytest tests/test_scoring.py -v
"""

import sys
import os
import math
import pytest
from datetime import datetime, timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import get_scoring_config, reset_config
from core.models import AggregatedMetrics, CatalogNode, CatalogProduct
from scoring.opportunity_scorer import OpportunityScorer, TenantBenchmarks

TENANT = "acme"
COMPUTED_AT = datetime(2024, 6, 30, 2, 0)
BENCHMARKS = TenantBenchmarks(conversion_rate=0.025, avg_order_value=150.0)


@pytest.fixture(autouse=True)
def reset_config_cache():
    reset_config()
    yield
    reset_config()


def _make_scorer() -> OpportunityScorer:
    return OpportunityScorer(run_id="run-1", tenant_id=TENANT, computed_at=COMPUTED_AT)


def _make_node(product_count=12) -> CatalogNode:
    return CatalogNode(node_id="phones", parent_id=None, url="https://x.com/c/phones",
                       path="/phones", depth=0, product_count=product_count)


def _make_metrics(**kwargs) -> AggregatedMetrics:
    return AggregatedMetrics(node_id="phones", tenant_id=TENANT, date=None, **kwargs)


# =============================================================================
# CONFIG
# =============================================================================

class TestScoringConfig:
    def test_weights_sum_to_one(self):
        assert sum(get_scoring_config()["weights"].values()) == pytest.approx(1.0)

    def test_expected_ctr_table(self):
        scorer = _make_scorer()
        assert scorer.expected_ctr(1) == 0.285
        assert scorer.expected_ctr(15) == 0.011
        assert scorer.expected_ctr(42) == 0.01


# =============================================================================
# FACTORS
# =============================================================================

class TestTrafficPotential:
    def test_position_eight_beating_expected_ctr(self):
        # Expected CTR at 8 is 1.7%; actual 2% leaves no CTR gap, position term is 90.
        metrics = _make_metrics(impressions=1000, clicks=20, position=8.0)
        assert _make_scorer().traffic_potential(metrics) == pytest.approx(45.0)

    def test_ctr_shortfall_adds_to_score(self):
        # Expected 15.7% at position 2, actual 0%: full gap (100) plus top-3 band (10).
        metrics = _make_metrics(impressions=1000, clicks=0, position=2.0)
        assert _make_scorer().traffic_potential(metrics) == pytest.approx(55.0)

    def test_position_rounds_half_up(self):
        scorer = _make_scorer()
        assert scorer.traffic_potential(_make_metrics(impressions=100, clicks=50, position=3.5)) == pytest.approx(45.0)
        assert scorer.traffic_potential(_make_metrics(impressions=100, clicks=50, position=3.4)) == pytest.approx(5.0)

    def test_no_search_data_falls_back(self):
        assert _make_scorer().traffic_potential(_make_metrics(impressions=0, position=None)) == 0.0
        assert _make_scorer().traffic_potential(None) == 0.0


class TestRevenuePotential:
    def test_sessions_without_revenue_scores_full(self):
        metrics = _make_metrics(sessions=200, revenue=0.0, transactions=0)
        assert _make_scorer().revenue_potential(metrics, BENCHMARKS) == pytest.approx(100.0)

    def test_at_benchmark_scores_zero(self):
        metrics = _make_metrics(sessions=1000, revenue=3750.0, transactions=25, conversion_rate=0.025)
        assert _make_scorer().revenue_potential(metrics, BENCHMARKS) == pytest.approx(0.0)

    def test_half_conversion_rate(self):
        metrics = _make_metrics(sessions=1000, revenue=1875.0, transactions=12, conversion_rate=0.0125)
        # Conversion shortfall 50%, AOV above benchmark.
        assert _make_scorer().revenue_potential(metrics, BENCHMARKS) == pytest.approx(25.0)

    def test_no_sessions_falls_back(self):
        assert _make_scorer().revenue_potential(_make_metrics(), BENCHMARKS) == 50.0


class TestPricingOpportunity:
    def test_underpriced_is_proportional(self):
        metrics = _make_metrics(competitor_count=5, market_median_price=100.0, our_price=80.0)
        assert _make_scorer().pricing_opportunity(metrics) == pytest.approx(50.0)

    def test_underpriced_caps_at_hundred(self):
        metrics = _make_metrics(competitor_count=5, market_median_price=100.0, our_price=10.0)
        assert _make_scorer().pricing_opportunity(metrics) == 100.0

    def test_overpriced_is_flat(self):
        metrics = _make_metrics(competitor_count=5, market_median_price=100.0, our_price=120.0)
        assert _make_scorer().pricing_opportunity(metrics) == 30.0

    def test_at_market(self):
        metrics = _make_metrics(competitor_count=5, market_median_price=100.0, our_price=102.0)
        assert _make_scorer().pricing_opportunity(metrics) == 10.0

    def test_missing_prices_fall_back(self):
        scorer = _make_scorer()
        assert scorer.pricing_opportunity(_make_metrics(market_median_price=100.0)) == 0.0
        assert scorer.pricing_opportunity(_make_metrics(market_median_price=0.0, our_price=10.0)) == 0.0


class TestCompetitiveGap:
    @pytest.mark.parametrize("position,expected", [(1.0, 10), (7.0, 40), (15.0, 70), (35.0, 90)])
    def test_bands(self, position, expected):
        metrics = _make_metrics(impressions=100, clicks=1, position=position)
        assert _make_scorer().competitive_gap(metrics) == expected

    def test_no_position_falls_back(self):
        assert _make_scorer().competitive_gap(_make_metrics(impressions=100)) == 50.0


class TestContentCompleteness:
    def test_mean_of_products(self):
        products = [
            CatalogProduct(product_id="a", url="/p/a", node_id="phones", codes=["012345678905"],
                           title="A", price=10.0),
            CatalogProduct(product_id="b", url="/p/b", node_id="phones", codes=["012345678900"]),
        ]
        assert _make_scorer().content_completeness(products) == pytest.approx(62.5)

    def test_no_products_is_none(self):
        assert _make_scorer().content_completeness([]) is None


# =============================================================================
# COMPOSITE
# =============================================================================

class TestComposite:
    def test_no_data_uses_every_fallback(self):
        result = _make_scorer().score(_make_node(), None, BENCHMARKS, confidence="low")
        # 0.30*50 (revenue) + 0.10*50 (competitive) + 0.10*50 (content)
        assert result.score == pytest.approx(25.0)
        assert result.label == "maintain"
        assert result.revenue_impact == 0.0

    def test_zero_denominators_never_leak_nan(self):
        metrics = _make_metrics(impressions=0, clicks=0, sessions=0, transactions=0, competitor_count=0)
        result = _make_scorer().score(_make_node(), metrics, BENCHMARKS, confidence="low")
        for value in list(result.factors.as_dict().values()) + [result.score, result.revenue_impact]:
            assert math.isfinite(value)

    def test_score_is_bounded(self):
        metrics = _make_metrics(
            impressions=5000, clicks=0, position=15.0, sessions=1000, revenue=0.0,
            competitor_count=5, market_median_price=100.0, our_price=10.0,
        )
        result = _make_scorer().score(_make_node(), metrics, BENCHMARKS, "high", content_completeness=0.0)
        assert 0.0 <= result.score <= 100.0
        assert result.score >= 70
        assert result.label == "quick-win"

    def test_carries_run_identity_and_expiry(self):
        result = _make_scorer().score(_make_node(), None, BENCHMARKS, confidence="medium")
        assert result.tenant_id == TENANT
        assert result.run_id == "run-1"
        assert result.confidence == "medium"
        assert result.expires_at == COMPUTED_AT + timedelta(days=7)


class TestLabels:
    @pytest.mark.parametrize("score,product_count,expected", [
        (75, 12, "quick-win"),
        (75, 40, "strategic"),
        (70, 12, "quick-win"),
        (55, 12, "incremental"),
        (55, 40, "long-term"),
        (40, 12, "maintain"),
        (10, 40, "maintain"),
    ])
    def test_label_matrix(self, score, product_count, expected):
        assert _make_scorer().label(score, product_count) == expected


class TestRevenueImpactAndBenchmarks:
    def test_revenue_impact(self):
        metrics = _make_metrics(sessions=1000, revenue=1000.0)
        # 1000 * 0.025 * 150 = 3750 potential
        assert _make_scorer().revenue_impact(metrics, BENCHMARKS) == pytest.approx(2750.0)

    def test_revenue_impact_never_negative(self):
        metrics = _make_metrics(sessions=10, revenue=10_000.0)
        assert _make_scorer().revenue_impact(metrics, BENCHMARKS) == 0.0

    def test_benchmarks_from_totals(self):
        totals = _make_metrics(sessions=1000, transactions=20, revenue=3000.0)
        benchmarks = _make_scorer().benchmarks(totals)
        assert benchmarks.conversion_rate == pytest.approx(0.02)
        assert benchmarks.avg_order_value == pytest.approx(150.0)

    def test_benchmarks_fall_back_on_empty_totals(self):
        benchmarks = _make_scorer().benchmarks(_make_metrics())
        assert benchmarks == TenantBenchmarks(conversion_rate=0.025, avg_order_value=150.0)
