"""
confidence.py
--------------
Two kinds of confidence live in this engine:

    1. Per-match confidence: fixed per strategy (matching.confidence in
       config.yaml). Strategies stamp it on each MatchResult themselves;
       strategy_confidence() exposes the same table.

    2. Per-entity confidence: how much to trust a node's aggregated
       numbers. Count the sources that contributed real volume:
           3 sources -> "high", 2 -> "medium", 0-1 -> "low"
       then drop one level if the newest contributing record is older than
       confidence.freshness_days relative to the run's as-of date.
"""

from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional

from core.models import AggregatedMetrics
from config.config_loader import get_all_sources, get_confidence_config, get_matching_config, get_source_config

LOW = "low"
MEDIUM = "medium"
HIGH = "high"


def strategy_confidence(strategy: str) -> float:
    """Fixed confidence for a strategy name, 0.0 if unknown."""
    return float(get_matching_config()["confidence"].get(strategy, 0.0))


class ConfidenceScorer:
    """
    Derives per-node confidence from source coverage and data age.

    Usage:
        scorer = ConfidenceScorer(as_of=date(2024, 6, 30))
        scorer.level(aggregated_row)   # "high" | "medium" | "low"
    """

    def __init__(self, as_of: date):
        self.as_of = as_of
        self.config = get_confidence_config()
        self.levels: List[str] = list(self.config["levels"])
        self.freshness = timedelta(days=int(self.config["freshness_days"]))
        self._volume_gates = {
            source: (get_source_config(source)["volume_field"], get_source_config(source)["min_volume"])
            for source in get_all_sources()
        }

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def sources_present(self, row: Optional[AggregatedMetrics]) -> List[str]:
        """Sources whose volume counter on this row clears its minimum."""
        if row is None:
            return []
        return [
            source for source, (volume_field, min_volume) in self._volume_gates.items()
            if getattr(row, volume_field, 0) > min_volume
        ]

    def level(self, row: Optional[AggregatedMetrics]) -> str:
        present = len(self.sources_present(row))
        if present >= 3:
            level = HIGH
        elif present == 2:
            level = MEDIUM
        else:
            level = LOW

        if row is not None and self.is_stale(row.latest_date):
            level = self.degrade(level)
        return level

    def is_stale(self, latest: Optional[date]) -> bool:
        if latest is None:
            return False
        return self.as_of - latest > self.freshness

    def degrade(self, level: str) -> str:
        """One level down; "low" stays "low"."""
        position = self.levels.index(level)
        return self.levels[max(position - 1, 0)]

    def distribution(self, rows: Iterable[AggregatedMetrics]) -> Dict[str, int]:
        counts = {name: 0 for name in self.levels}
        for row in rows:
            counts[self.level(row)] += 1
        return counts
