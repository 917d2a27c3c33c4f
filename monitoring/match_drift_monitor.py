"""
match_drift_monitor.py
-----------------------
Match-quality drift monitoring between two reconciliation runs.

Compares a baseline run's match history with the current run's, per source:
    1. Match rate: has the share of resolved identifiers dropped?
       (catalog restructure, new URL scheme, provider identifier change)
    2. Confidence distribution: are matches coming from weaker strategies
       than before?

Methods:
    - KS test (Kolmogorov-Smirnov) on matched confidences, baseline vs current.
    - PSI (Population Stability Index) on the same. <0.1 stable,
      0.1–0.25 minor shift, >0.25 major shift.

Input frames have the match-history layout produced by the pipeline
(source, entity_type, confidence, ...). Thresholds come from config.yaml.
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from datetime import datetime
from scipy import stats
from typing import List

from core.models import ENTITY_NONE
from config.config_loader import get_drift_monitoring_config


@dataclass
class DriftAlert:
    """A single drift detection alert."""
    alert_type: str                  # "MATCH_RATE" | "CONFIDENCE_DISTRIBUTION"
    severity: str                    # "INFO" | "WARNING" | "CRITICAL"
    source: str                      # Which source
    metric_name: str                 # e.g. "match_rate_drop", "ks_p_value", "psi"
    metric_value: float
    threshold: float
    message: str
    detected_at: str = ""            # ISO timestamp


@dataclass
class DriftReport:
    """Drift report for one baseline/current comparison."""
    run_timestamp: str
    baseline_rows: int
    current_rows: int
    alerts: List[DriftAlert] = field(default_factory=list)
    summary: dict = field(default_factory=dict)


class MatchDriftMonitor:
    """
    Usage:
        monitor = MatchDriftMonitor()
        report = monitor.run(baseline_history_df, current_history_df)
    """

    REQUIRED_COLUMNS = {"source", "entity_type", "confidence"}

    def __init__(self):
        self.config = get_drift_monitoring_config()
        self.match_rate_drop = self.config["match_rate_drop"]
        self.ks_alpha = self.config["ks_alpha"]
        self.psi_minor = self.config["psi_minor"]
        self.psi_major = self.config["psi_major"]
        self.min_baseline = self.config["min_baseline_samples"]
        self.min_comparison = self.config["min_comparison_samples"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run(self, baseline: pd.DataFrame, current: pd.DataFrame) -> DriftReport:
        """
        Compare two match histories.

        Raises:
            ValueError: If either frame lacks the match-history columns.
        """
        for name, df in (("baseline", baseline), ("current", current)):
            missing = sorted(self.REQUIRED_COLUMNS - set(df.columns))
            if missing:
                raise ValueError(f"Missing required columns in {name} history: {missing}")

        now = datetime.now().isoformat()
        alerts: List[DriftAlert] = []

        sources = sorted(set(baseline["source"].unique()) | set(current["source"].unique()))
        for source in sources:
            base = baseline[baseline["source"] == source]
            cur = current[current["source"] == source]

            # --- 1. Match rate ---
            alerts.extend(self._check_match_rate(source, base, cur, now))

            # --- 2. Confidence distribution ---
            alerts.extend(self._check_confidence_drift(source, base, cur, now))

        summary = {
            "total_alerts": len(alerts),
            "critical_alerts": sum(1 for a in alerts if a.severity == "CRITICAL"),
            "warning_alerts": sum(1 for a in alerts if a.severity == "WARNING"),
            "info_alerts": sum(1 for a in alerts if a.severity == "INFO"),
            "baseline_match_rate": self._match_rate(baseline),
            "current_match_rate": self._match_rate(current),
        }

        return DriftReport(
            run_timestamp=now,
            baseline_rows=len(baseline),
            current_rows=len(current),
            alerts=alerts,
            summary=summary,
        )

    # -------------------------------------------------------------------------
    # INTERNAL: MATCH RATE
    # -------------------------------------------------------------------------

    def _check_match_rate(self, source: str, base: pd.DataFrame, cur: pd.DataFrame, now: str) -> List[DriftAlert]:
        """Flags a drop in match rate larger than match_rate_drop (absolute)."""
        if base.empty:
            return []

        base_rate = self._match_rate(base)
        cur_rate = self._match_rate(cur)
        drop = base_rate - cur_rate

        if cur.empty:
            return [DriftAlert(
                alert_type="MATCH_RATE",
                severity="WARNING",
                source=source,
                metric_name="current_records",
                metric_value=0.0,
                threshold=0.0,
                message=f"No {source} records in the current run (baseline had {len(base):,}).",
                detected_at=now,
            )]

        if drop <= self.match_rate_drop:
            return []

        severity = "CRITICAL" if drop > 2 * self.match_rate_drop else "WARNING"
        return [DriftAlert(
            alert_type="MATCH_RATE",
            severity=severity,
            source=source,
            metric_name="match_rate_drop",
            metric_value=round(drop, 4),
            threshold=self.match_rate_drop,
            message=(
                f"{source} match rate fell from {base_rate:.1%} to {cur_rate:.1%}. "
                f"Check the Unmatched Ledger for new identifier patterns."
            ),
            detected_at=now,
        )]

    # -------------------------------------------------------------------------
    # INTERNAL: CONFIDENCE DISTRIBUTION
    # -------------------------------------------------------------------------

    def _check_confidence_drift(self, source: str, base: pd.DataFrame, cur: pd.DataFrame, now: str) -> List[DriftAlert]:
        """KS test + PSI on the confidences of matched rows."""
        alerts = []
        base_conf = base.loc[base["entity_type"] != ENTITY_NONE, "confidence"].astype(float).values
        cur_conf = cur.loc[cur["entity_type"] != ENTITY_NONE, "confidence"].astype(float).values

        # Need minimum samples for meaningful tests
        if len(base_conf) < self.min_baseline or len(cur_conf) < self.min_comparison:
            return alerts

        # --- KS Test ---
        ks_stat, ks_pvalue = stats.ks_2samp(base_conf, cur_conf)
        if ks_pvalue < self.ks_alpha:
            alerts.append(DriftAlert(
                alert_type="CONFIDENCE_DISTRIBUTION",
                severity="WARNING",
                source=source,
                metric_name="ks_p_value",
                metric_value=round(float(ks_pvalue), 4),
                threshold=self.ks_alpha,
                message=(
                    f"Match confidence distribution shifted for {source}. "
                    f"KS statistic={ks_stat:.3f}, p-value={ks_pvalue:.4f}. "
                    f"Mean confidence {base_conf.mean():.3f} -> {cur_conf.mean():.3f}."
                ),
                detected_at=now,
            ))

        # --- PSI ---
        psi = self._compute_psi(base_conf, cur_conf)
        if psi > self.psi_minor:
            severity = "CRITICAL" if psi > self.psi_major else "WARNING"
            alerts.append(DriftAlert(
                alert_type="CONFIDENCE_DISTRIBUTION",
                severity=severity,
                source=source,
                metric_name="psi",
                metric_value=round(psi, 4),
                threshold=self.psi_major if severity == "CRITICAL" else self.psi_minor,
                message=(
                    f"PSI={psi:.3f} for {source} match confidence. "
                    f"({'Major' if severity == 'CRITICAL' else 'Minor'} distribution shift.)"
                ),
                detected_at=now,
            ))

        return alerts

    # -------------------------------------------------------------------------
    # INTERNAL: HELPERS
    # -------------------------------------------------------------------------

    @staticmethod
    def _match_rate(df: pd.DataFrame) -> float:
        if df.empty:
            return 0.0
        return float((df["entity_type"] != ENTITY_NONE).mean())

    @staticmethod
    def _compute_psi(baseline: np.ndarray, comparison: np.ndarray) -> float:
        """
        Population Stability Index between two confidence samples.

        PSI = Σ (P_actual - P_expected) * ln(P_actual / P_expected)

        Confidences cluster on a handful of strategy values, so each distinct
        value seen in either sample gets its own bin instead of percentile bins.
        """
        edges = np.unique(np.concatenate([baseline, comparison]))
        if len(edges) < 2:
            return 0.0
        bin_edges = np.append(edges, edges[-1] + 1e-9)

        baseline_counts, _ = np.histogram(baseline, bins=bin_edges)
        comparison_counts, _ = np.histogram(comparison, bins=bin_edges)

        # Add small epsilon to avoid log(0) and division by zero
        eps = 1e-6
        baseline_freq = (baseline_counts + eps) / (baseline_counts.sum() + eps * len(baseline_counts))
        comparison_freq = (comparison_counts + eps) / (comparison_counts.sum() + eps * len(comparison_counts))

        psi = np.sum((comparison_freq - baseline_freq) * np.log(comparison_freq / baseline_freq))

        return float(psi)
