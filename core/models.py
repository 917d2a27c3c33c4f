"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- CatalogNode / CatalogProduct: the tenant's catalog. Read-only to the engine.

- SearchMetrics / AnalyticsMetrics / PricingMetrics: the closed set of
  per-source metric variants carried by a RawExternalRecord.

- MatchResult: outcome of resolving one raw identifier.

- AggregatedMetrics: per-node composite row produced by the aggregator.

- OpportunityScore: per-node prioritisation output of the scorer.

- UnmatchedRecord / ManualMapping: the triage loop between this engine and
  the external review tool.

- SourceSummary / RunSummary: what a run reports back to its caller.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import ClassVar, Optional, Union


SOURCE_SEARCH = "search"
SOURCE_ANALYTICS = "analytics"
SOURCE_PRICING = "pricing"

ENTITY_NODE = "node"
ENTITY_PRODUCT = "product"
ENTITY_NONE = "none"


# =============================================================================
# CATALOG
# =============================================================================

@dataclass
class CatalogNode:
    """A node in the tenant's category hierarchy."""

    node_id: str
    parent_id: Optional[str]         # None for roots
    url: str
    path: str                        # Canonical path, e.g. "/electronics/phones"
    depth: int                       # Root = 0
    children: list[str] = field(default_factory=list)
    product_count: int = 0
    title: str = ""
    aliases: list[str] = field(default_factory=list)  # Extra segment names for hierarchy matching


@dataclass
class CatalogProduct:
    """A product owned by exactly one category node."""

    product_id: str
    url: str
    node_id: str                     # Owning category
    codes: list[str] = field(default_factory=list)   # GTIN/EAN as supplied, may be malformed
    title: Optional[str] = None
    price: Optional[float] = None    # Our selling price


# =============================================================================
# SOURCE METRIC VARIANTS
# =============================================================================

@dataclass(frozen=True)
class SearchMetrics:
    source: ClassVar[str] = SOURCE_SEARCH

    impressions: int = 0
    clicks: int = 0
    ctr: Optional[float] = None      # As reported; recomputed downstream from clicks/impressions
    position: Optional[float] = None # Average ranking position, 1 = top


@dataclass(frozen=True)
class AnalyticsMetrics:
    source: ClassVar[str] = SOURCE_ANALYTICS

    sessions: int = 0
    revenue: float = 0.0
    transactions: int = 0
    conversion_rate: Optional[float] = None  # transactions / sessions when not reported


@dataclass(frozen=True)
class PricingMetrics:
    source: ClassVar[str] = SOURCE_PRICING

    median_price: Optional[float] = None     # Market median
    competitor_count: int = 0


SourceMetrics = Union[SearchMetrics, AnalyticsMetrics, PricingMetrics]

METRICS_BY_SOURCE: dict[str, type] = {
    SOURCE_SEARCH: SearchMetrics,
    SOURCE_ANALYTICS: AnalyticsMetrics,
    SOURCE_PRICING: PricingMetrics,
}


@dataclass(frozen=True)
class RawExternalRecord:
    """One measurement from one source for one identifier on one date."""

    source: str
    identifier: str
    metrics: SourceMetrics
    date: date
    tenant_id: str


# =============================================================================
# MATCHING
# =============================================================================

@dataclass(frozen=True)
class MatchResult:
    entity_type: str                 # "node" | "product" | "none"
    entity_id: Optional[str]
    confidence: float                # 0.0 – 1.0
    strategy: str

    @staticmethod
    def none(strategy: str = "none") -> "MatchResult":
        return MatchResult(ENTITY_NONE, None, 0.0, strategy)

    @property
    def is_match(self) -> bool:
        return self.entity_type != ENTITY_NONE and self.entity_id is not None


# =============================================================================
# AGGREGATION
# =============================================================================

@dataclass
class AggregatedMetrics:
    """
    Composite metrics for one node.

    Counters are plain sums. Rates are weighted averages and stay None when
    no contributor carried weight, so "no data" and "observed zero" remain
    distinguishable.
    """

    node_id: str
    tenant_id: str
    date: Optional[date]             # None for a whole-period roll-up

    # Counters
    clicks: int = 0
    impressions: int = 0
    sessions: int = 0
    revenue: float = 0.0
    transactions: int = 0
    competitor_count: int = 0

    # Weighted rates
    position: Optional[float] = None             # weight: impressions
    conversion_rate: Optional[float] = None      # weight: sessions
    market_median_price: Optional[float] = None  # weight: competitor_count
    our_price: Optional[float] = None            # weight: competitor_count

    # Provenance
    is_aggregated: bool = False
    leaf_count: int = 0
    latest_date: Optional[date] = None

    # Total weight behind each rate, so parents can re-weight exactly
    rate_weights: dict = field(default_factory=dict, repr=False)

    @property
    def ctr(self) -> Optional[float]:
        if self.impressions <= 0:
            return None
        return self.clicks / self.impressions

    @property
    def avg_order_value(self) -> Optional[float]:
        if self.transactions <= 0:
            return None
        return self.revenue / self.transactions


# =============================================================================
# SCORING
# =============================================================================

@dataclass
class ScoreFactors:
    traffic_potential: float
    revenue_potential: float
    pricing_opportunity: float
    competitive_gap: float
    content_completeness: float

    def as_dict(self) -> dict[str, float]:
        return {
            "traffic_potential": self.traffic_potential,
            "revenue_potential": self.revenue_potential,
            "pricing_opportunity": self.pricing_opportunity,
            "competitive_gap": self.competitive_gap,
            "content_completeness": self.content_completeness,
        }


@dataclass
class OpportunityScore:
    """One scored node for one run. Superseded, never mutated, by later runs."""

    node_id: str
    tenant_id: str
    run_id: str
    score: float                     # 0 – 100
    factors: ScoreFactors
    label: str                       # "quick-win" | "strategic" | "incremental" | "long-term" | "maintain"
    confidence: str                  # "high" | "medium" | "low"
    revenue_impact: float
    computed_at: datetime
    expires_at: datetime


# =============================================================================
# TRIAGE
# =============================================================================

@dataclass
class UnmatchedRecord:
    source: str
    identifier: str
    metrics: dict                    # Raw bag, preserved for triage
    run_timestamp: datetime
    tenant_id: str
    reason: str = "no_match"         # "no_match" | "checksum_invalid"
    attempts: int = 1                # Runs that failed to resolve this identifier


@dataclass
class ManualMapping:
    identifier: str
    entity_type: str                 # "node" | "product"
    entity_id: str
    created_by: str
    created_at: datetime = field(default_factory=datetime.now)
    active: bool = True


# =============================================================================
# RUN REPORTING
# =============================================================================

@dataclass
class SourceSummary:
    source: str
    available: bool = True
    total: int = 0
    matched: int = 0
    unmatched: int = 0
    checksum_invalid: int = 0
    malformed: int = 0
    by_strategy: dict = field(default_factory=dict)     # strategy -> count
    by_entity_type: dict = field(default_factory=dict)  # "node" | "product" -> count
    average_confidence: float = 0.0                     # Over matched records only

    @property
    def match_rate(self) -> float:
        return self.matched / self.total if self.total > 0 else 0.0


@dataclass
class RunSummary:
    run_id: str
    tenant_id: str
    state: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    sources: dict = field(default_factory=dict)                  # source -> SourceSummary
    confidence_distribution: dict = field(default_factory=dict)  # level -> node count
    nodes_aggregated: int = 0
    nodes_scored: int = 0
    error: Optional[str] = None
