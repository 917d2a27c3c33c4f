"""
opportunity_scorer.py
----------------------
Turns a node's aggregated metrics into a 0–100 prioritisation score.

Five factor sub-scores, each 0–100:

    traffic_potential     CTR shortfall vs the expected CTR for the node's
                          average position, plus a position-improvement term
                          that peaks for positions 4–10
    revenue_potential     conversion-rate and AOV shortfall vs tenant
                          averages, plus a bonus for traffic with no revenue
    pricing_opportunity   proportional when underpriced, flat when
                          overpriced, low when at market
    competitive_gap       how far down the results page the node sits
    content_completeness  share of catalog attributes present on the
                          node's products

Composite = fixed-weight sum, clamped to [0, 100].

Every ratio has a defined fallback for a zero or missing denominator, so a
score never carries NaN or inf. Weights, tables and fallbacks come from
config.yaml.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from core.models import AggregatedMetrics, CatalogNode, CatalogProduct, OpportunityScore, ScoreFactors
from core.normalizer import normalize_gtin
from config.config_loader import get_scoring_config

logger = logging.getLogger(__name__)

QUICK_WIN = "quick-win"
STRATEGIC = "strategic"
INCREMENTAL = "incremental"
LONG_TERM = "long-term"
MAINTAIN = "maintain"


@dataclass(frozen=True)
class TenantBenchmarks:
    """Tenant-wide averages the revenue factor is measured against."""
    conversion_rate: float
    avg_order_value: float


class OpportunityScorer:
    """
    Scores nodes for one run.

    Usage:
        scorer = OpportunityScorer(run_id="run-1", tenant_id="acme")
        benchmarks = scorer.benchmarks(tenant_totals_row)
        result = scorer.score(node, metrics, benchmarks, confidence="high")
    """

    def __init__(self, run_id: str, tenant_id: str, computed_at: datetime | None = None):
        self.config = get_scoring_config()
        self.run_id = run_id
        self.tenant_id = tenant_id
        self.computed_at = computed_at or datetime.now()
        self.weights = self.config["weights"]
        self.fallbacks = self.config["fallbacks"]
        self.ttl = timedelta(days=int(self.config["ttl_days"]))

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def score(
        self,
        node: CatalogNode,
        metrics: Optional[AggregatedMetrics],
        benchmarks: TenantBenchmarks,
        confidence: str,
        content_completeness: Optional[float] = None,
    ) -> OpportunityScore:
        """
        Score one node.

        Args:
            node: The catalog node (product_count drives effort).
            metrics: Whole-period aggregated row, or None if the node has no data.
            benchmarks: Tenant averages from benchmarks().
            confidence: Per-node confidence level from ConfidenceScorer.
            content_completeness: Pre-computed 0–100 content score, or None
                when the node has no products.
        """
        factors = ScoreFactors(
            traffic_potential=self._guard("traffic_potential", self.traffic_potential(metrics)),
            revenue_potential=self._guard("revenue_potential", self.revenue_potential(metrics, benchmarks)),
            pricing_opportunity=self._guard("pricing_opportunity", self.pricing_opportunity(metrics)),
            competitive_gap=self._guard("competitive_gap", self.competitive_gap(metrics)),
            content_completeness=self._guard(
                "content_completeness",
                content_completeness if content_completeness is not None else self.fallbacks["content_completeness"],
            ),
        )

        composite = sum(self.weights[name] * value for name, value in factors.as_dict().items())
        composite = round(min(max(composite, 0.0), 100.0), 2)

        return OpportunityScore(
            node_id=node.node_id,
            tenant_id=self.tenant_id,
            run_id=self.run_id,
            score=composite,
            factors=factors,
            label=self.label(composite, node.product_count),
            confidence=confidence,
            revenue_impact=self.revenue_impact(metrics, benchmarks),
            computed_at=self.computed_at,
            expires_at=self.computed_at + self.ttl,
        )

    def benchmarks(self, totals: Optional[AggregatedMetrics]) -> TenantBenchmarks:
        """
        Tenant conversion rate and AOV from the tenant's total row, falling
        back to the configured industry figures where the totals are zero.
        """
        defaults = self.config["benchmarks"]
        conversion_rate = float(defaults["conversion_rate"])
        avg_order_value = float(defaults["avg_order_value"])
        if totals is not None:
            if totals.sessions > 0 and totals.transactions > 0:
                conversion_rate = totals.transactions / totals.sessions
            if totals.transactions > 0 and totals.revenue > 0:
                avg_order_value = totals.revenue / totals.transactions
        return TenantBenchmarks(conversion_rate=conversion_rate, avg_order_value=avg_order_value)

    # -------------------------------------------------------------------------
    # FACTORS
    # -------------------------------------------------------------------------

    def traffic_potential(self, metrics: Optional[AggregatedMetrics]) -> float:
        if not self._has_search(metrics):
            return float(self.fallbacks["traffic_potential"])

        cfg = self.config["traffic"]
        position = self._rounded_position(metrics.position)
        expected = self.expected_ctr(position)
        actual = metrics.ctr or 0.0

        if expected > 0:
            ctr_gap_score = min(max((expected - actual) / expected, 0.0) * 100, 100.0)
        else:
            ctr_gap_score = 0.0

        position_score = self._band_score(position, cfg["position_bands"], cfg["position_beyond"])
        return cfg["ctr_gap_weight"] * ctr_gap_score + cfg["position_weight"] * position_score

    def revenue_potential(self, metrics: Optional[AggregatedMetrics], benchmarks: TenantBenchmarks) -> float:
        if metrics is None or metrics.sessions <= 0:
            return float(self.fallbacks["revenue_potential"])

        cfg = self.config["revenue"]
        conversion_rate = metrics.conversion_rate
        if conversion_rate is None:
            conversion_rate = metrics.transactions / metrics.sessions

        conversion_gap = self._shortfall(conversion_rate, benchmarks.conversion_rate)
        aov = metrics.avg_order_value
        aov_gap = self._shortfall(aov, benchmarks.avg_order_value) if aov is not None else 0.0

        score = cfg["conversion_gap_weight"] * conversion_gap + cfg["aov_gap_weight"] * aov_gap
        if metrics.revenue <= 0:
            score += cfg["monetization_gap_bonus"]
        return min(score, 100.0)

    def pricing_opportunity(self, metrics: Optional[AggregatedMetrics]) -> float:
        fallback = float(self.fallbacks["pricing_opportunity"])
        if metrics is None:
            return fallback
        median, ours = metrics.market_median_price, metrics.our_price
        if median is None or ours is None or median <= 0 or ours <= 0:
            return fallback

        cfg = self.config["pricing"]
        gap = (median - ours) / median
        if gap > cfg["market_tolerance"]:
            return min(100.0, gap * 100 * cfg["underpriced_multiplier"])
        if gap < -cfg["market_tolerance"]:
            return float(cfg["overpriced_score"])
        return float(cfg["at_market_score"])

    def competitive_gap(self, metrics: Optional[AggregatedMetrics]) -> float:
        if not self._has_search(metrics):
            return float(self.fallbacks["competitive_gap"])
        cfg = self.config["competitive"]
        return float(self._band_score(self._rounded_position(metrics.position), cfg["position_bands"], cfg["position_beyond"]))

    def content_completeness(self, products: Iterable[CatalogProduct]) -> Optional[float]:
        """Mean per-product completeness (url, valid GTIN, price, title), None with no products."""
        points = self.config["content"]["points_per_attribute"]
        scores = []
        for product in products:
            score = 0
            if product.url:
                score += points
            if any(normalize_gtin(code).is_valid for code in product.codes):
                score += points
            if product.price is not None and product.price > 0:
                score += points
            if product.title:
                score += points
            scores.append(score)
        if not scores:
            return None
        return sum(scores) / len(scores)

    # -------------------------------------------------------------------------
    # LABEL & IMPACT
    # -------------------------------------------------------------------------

    def label(self, score: float, product_count: int) -> str:
        cfg = self.config["labels"]
        low_effort = product_count < cfg["low_effort_max_products"]
        if score >= cfg["high_score"]:
            return QUICK_WIN if low_effort else STRATEGIC
        if score > cfg["mid_score"]:
            return INCREMENTAL if low_effort else LONG_TERM
        return MAINTAIN

    def revenue_impact(self, metrics: Optional[AggregatedMetrics], benchmarks: TenantBenchmarks) -> float:
        """Revenue the node would earn at tenant-average conversion and AOV, minus what it earns."""
        if metrics is None or metrics.sessions <= 0:
            return 0.0
        potential = metrics.sessions * benchmarks.conversion_rate * benchmarks.avg_order_value
        impact = max(0.0, potential - metrics.revenue)
        return round(impact, 2) if math.isfinite(impact) else 0.0

    def expected_ctr(self, position: int) -> float:
        table = self.config["expected_ctr"]
        if position in table:
            return float(table[position])
        if position <= 20:
            return float(self.config["expected_ctr_11_to_20"])
        return float(self.config["expected_ctr_beyond_20"])

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    @staticmethod
    def _has_search(metrics: Optional[AggregatedMetrics]) -> bool:
        return metrics is not None and metrics.impressions > 0 and metrics.position is not None

    @staticmethod
    def _rounded_position(position: float) -> int:
        return max(1, int(math.floor(position + 0.5)))

    @staticmethod
    def _band_score(position: int, bands: list, beyond: float) -> float:
        for max_position, score in bands:
            if position <= max_position:
                return float(score)
        return float(beyond)

    @staticmethod
    def _shortfall(actual: float, benchmark: float) -> float:
        """Relative shortfall below a benchmark, as 0–100."""
        if benchmark <= 0:
            return 0.0
        return min(max((benchmark - actual) / benchmark, 0.0) * 100, 100.0)

    def _guard(self, name: str, value: float) -> float:
        if value is None or not math.isfinite(value):
            logger.warning(f"Degenerate {name} value {value!r}; using fallback.")
            return float(self.fallbacks[name])
        return round(float(value), 2)
