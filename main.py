"""
main.py
--------
Entry point for the Category Metrics Reconciliation Engine.

Reads a catalog, raw source records and optional manual mappings from CSV,
runs one reconciliation for one tenant and date range, and writes the
outputs to the outputs/ folder.

Input CSVs:
    nodes.csv      node_id, parent_id, url, path, depth, product_count, title, aliases ("|"-separated)
    products.csv   product_id, url, node_id, codes ("|"-separated), title, price
    records.csv    source, identifier, date, plus that source's metric columns
    mappings.csv   identifier, entity_type, entity_id, created_by (optional)

Usage (from the project root):
    python main.py --nodes data/nodes.csv --products data/products.csv \\
        --records data/records.csv --tenant acme --start 2024-06-01 --end 2024-06-30

    # Compare match quality against a previous run:
    python main.py ... --baseline-history outputs/match_history_20240601_020000.csv
"""

import sys
import os
import argparse
import logging
import pandas as pd
from datetime import datetime

# Ensure project root is on path (for runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from core.errors import InconsistentCatalogError
from core.models import CatalogNode, CatalogProduct, ManualMapping
from core.store import InMemoryStore, StaticCatalogProvider, StaticSourceProvider
from pipeline import IntegrationPipeline, RunState
from monitoring.match_drift_monitor import MatchDriftMonitor
from config.config_loader import get_all_sources


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Category Metrics Reconciliation Engine: match external metrics to the catalog and score categories."
    )
    parser.add_argument("--nodes", type=str, required=True, help="Path to catalog nodes CSV.")
    parser.add_argument("--products", type=str, required=True, help="Path to catalog products CSV.")
    parser.add_argument("--records", type=str, required=True, help="Path to raw source records CSV.")
    parser.add_argument("--mappings", type=str, default=None, help="Optional manual mappings CSV.")
    parser.add_argument("--tenant", type=str, required=True, help="Tenant id the run is scoped to.")
    parser.add_argument("--start", type=str, required=True, help="First date of the run (YYYY-MM-DD).")
    parser.add_argument("--end", type=str, required=True, help="Last date of the run (YYYY-MM-DD).")
    parser.add_argument(
        "--output-dir", type=str, default=None,
        help="Output directory. Defaults to outputs/ in project root."
    )
    parser.add_argument(
        "--baseline-history", type=str, default=None,
        help="Match-history CSV from an earlier run. Enables the match-quality drift monitor."
    )
    return parser.parse_args(argv)


# =============================================================================
# CSV LOADING
# =============================================================================

def _split(value: str) -> list[str]:
    return [part.strip() for part in str(value or "").split("|") if part.strip()]


def _optional_float(value: str):
    return float(value) if str(value).strip() else None


def _required(row: dict, column: str) -> str:
    value = str(row.get(column) or "").strip()
    if not value:
        raise ValueError(f"missing {column}")
    return value


def load_nodes(path: str) -> list[CatalogNode]:
    """Catalog nodes from CSV. Rows that fail to parse are skipped and counted."""
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    nodes = []
    skipped = 0
    for line, row in enumerate(df.to_dict("records"), start=2):
        try:
            nodes.append(CatalogNode(
                node_id=_required(row, "node_id"),
                parent_id=row.get("parent_id") or None,
                url=row.get("url", ""),
                path=row.get("path", ""),
                depth=int(row["depth"]),
                product_count=int(row.get("product_count") or 0),
                title=row.get("title", ""),
                aliases=_split(row.get("aliases", "")),
            ))
        except (KeyError, ValueError) as exc:
            skipped += 1
            logger.warning(f"Skipping malformed node row {line} in {path}: {exc!r}")
    if skipped:
        logger.warning(f"Skipped {skipped:,} malformed node rows.")
    return nodes


def load_products(path: str) -> list[CatalogProduct]:
    """Catalog products from CSV. Rows that fail to parse are skipped and counted."""
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    products = []
    skipped = 0
    for line, row in enumerate(df.to_dict("records"), start=2):
        try:
            products.append(CatalogProduct(
                product_id=_required(row, "product_id"),
                url=row.get("url", ""),
                node_id=_required(row, "node_id"),
                codes=_split(row.get("codes", "")),
                title=row.get("title") or None,
                price=_optional_float(row.get("price", "")),
            ))
        except (KeyError, ValueError) as exc:
            skipped += 1
            logger.warning(f"Skipping malformed product row {line} in {path}: {exc!r}")
    if skipped:
        logger.warning(f"Skipped {skipped:,} malformed product rows.")
    return products


def load_records(path: str) -> dict[str, list[dict]]:
    """Raw rows grouped by source. Validation happens inside the pipeline."""
    df = pd.read_csv(path, dtype={"identifier": str, "source": str})
    grouped: dict[str, list[dict]] = {source: [] for source in get_all_sources()}
    for row in df.to_dict("records"):
        grouped.setdefault(str(row.get("source", "")), []).append(row)
    unknown = sorted(s for s in grouped if s not in get_all_sources())
    if unknown:
        logger.warning(f"Ignoring records for unknown sources: {unknown}")
    return grouped


def load_mappings(path: str) -> list[ManualMapping]:
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    return [
        ManualMapping(
            identifier=row["identifier"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            created_by=row.get("created_by") or "csv-import",
        )
        for row in df.to_dict("records")
    ]


# =============================================================================
# MAIN
# =============================================================================

def main(argv=None):
    args = parse_args(argv)

    output_dir = args.output_dir or os.path.join(PROJECT_ROOT, "outputs")
    os.makedirs(output_dir, exist_ok=True)

    for label, path in (("nodes", args.nodes), ("products", args.products), ("records", args.records)):
        if not os.path.exists(path):
            logger.error(f"Input file not found ({label}): {path}")
            sys.exit(1)

    # --- Load inputs ---
    nodes = load_nodes(args.nodes)
    products = load_products(args.products)
    records = load_records(args.records)
    logger.info(
        f"Loaded {len(nodes):,} nodes, {len(products):,} products, "
        f"{sum(len(r) for r in records.values()):,} raw records."
    )

    store = InMemoryStore()
    if args.mappings:
        for mapping in load_mappings(args.mappings):
            store.add_mapping(args.tenant, mapping)

    providers = {
        source: StaticSourceProvider(source, rows)
        for source, rows in records.items() if source in get_all_sources()
    }
    date_range = (pd.Timestamp(args.start).date(), pd.Timestamp(args.end).date())

    # --- Run pipeline ---
    pipeline = IntegrationPipeline(StaticCatalogProvider(nodes, products), providers, store)
    try:
        result = pipeline.run_with_outputs(args.tenant, date_range)
    except InconsistentCatalogError as exc:
        logger.error(f"Catalog is inconsistent, nothing was written. Offending nodes: {exc.node_ids}")
        sys.exit(1)

    if result.summary.state != RunState.DONE:
        logger.error(f"Run ended {result.summary.state}: {result.summary.error}")
        sys.exit(1)

    # --- Output ---
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    outputs = {
        "aggregated_metrics": result.aggregated,
        "opportunity_scores": result.scores,
        "unmatched": result.unmatched,
        "match_history": result.match_history,
    }
    for name, frame in outputs.items():
        out_path = os.path.join(output_dir, f"{name}_{timestamp}.csv")
        frame.to_csv(out_path, index=False)
        logger.info(f"{name} saved to: {out_path}")

    _print_summary(result)

    # --- Optional: Drift Monitoring ---
    if args.baseline_history:
        logger.info("Running match-quality drift monitor...")
        baseline = pd.read_csv(args.baseline_history, dtype={"identifier": str})
        report = MatchDriftMonitor().run(baseline, result.match_history)

        logger.info(f"Drift Report: {report.summary}")
        for alert in report.alerts:
            level = {"CRITICAL": logging.ERROR, "WARNING": logging.WARNING}.get(alert.severity, logging.INFO)
            logger.log(level, f"[{alert.alert_type}] {alert.severity} ({alert.source}): {alert.message}")

        if report.alerts:
            drift_path = os.path.join(output_dir, f"drift_report_{timestamp}.csv")
            pd.DataFrame([vars(a) for a in report.alerts]).to_csv(drift_path, index=False)
            logger.info(f"Drift report saved to: {drift_path}")
        else:
            logger.info("No drift alerts detected.")


def _print_summary(result):
    """Prints a clean summary table to the console."""
    summary = result.summary

    print("\n" + "=" * 80)
    print(f"  RECONCILIATION SUMMARY  ({summary.tenant_id}, run {summary.run_id})")
    print("=" * 80)

    print("\n  Records by Source:")
    print("  " + "-" * 76)
    for source, s in summary.sources.items():
        status = "" if s.available else "  [UNAVAILABLE]"
        print(
            f"    {source:10s}  total {s.total:>6,}  matched {s.matched:>6,} ({s.match_rate:6.1%})  "
            f"unmatched {s.unmatched:>5,}  bad-gtin {s.checksum_invalid:>4,}  malformed {s.malformed:>4,}{status}"
        )

    print("\n  Node Confidence:")
    print("  " + "-" * 76)
    total_nodes = sum(summary.confidence_distribution.values())
    for level in ["high", "medium", "low"]:
        count = summary.confidence_distribution.get(level, 0)
        pct = (count / total_nodes * 100) if total_nodes > 0 else 0
        print(f"    {level:10s}  {count:>5,}  ({pct:.1f}%)")

    stats = result.statistics
    if stats:
        print("\n  Tenant Totals:")
        print("  " + "-" * 76)
        print(
            f"    clicks {stats['total_clicks']:,}  impressions {stats['total_impressions']:,}  "
            f"CTR {_fmt_rate(stats['overall_ctr'])}  avg position {_fmt_number(stats['average_position'])}"
        )
        print(
            f"    sessions {stats['total_sessions']:,}  revenue {stats['total_revenue']:,.2f}  "
            f"CR {_fmt_rate(stats['conversion_rate'])}  AOV {_fmt_number(stats['avg_order_value'])}"
        )
        if stats["needs_attention"]:
            print(f"    Needs attention (high impressions, CTR < 2%): {', '.join(stats['needs_attention'])}")

    if not result.scores.empty:
        print("\n  Top Opportunities:")
        print("  " + "-" * 76)
        for row in result.scores.head(10).to_dict("records"):
            print(f"    {row['node_id']:30s}  {row['score']:>6.2f}  {row['label']:12s}  {row['confidence']}")

    print("=" * 80 + "\n")


def _fmt_rate(value) -> str:
    return "n/a" if value is None else f"{value:.2%}"


def _fmt_number(value) -> str:
    return "n/a" if value is None else f"{value:,.2f}"


if __name__ == "__main__":
    main()
