"""
pipeline.py
------------
Main orchestration layer. One call to run() is one batch reconciliation
for one tenant over one date range:

    LOADING      catalog, manual mappings, raw records per source
    INDEXING     CatalogIndex + override table + resolver (read-only after)
    MATCHING     each source on its own worker; records on a bounded pool
    AGGREGATING  per-date rows for persistence, whole-period rows for scoring
    SCORING      per-node confidence and opportunity score
    PERSISTING   one commit of aggregates, scores and the unmatched ledger
    DONE

FAILED is reachable from every phase. Everything a run builds lives on its
RunContext and is dropped when the run ends, so nothing leaks between runs
or tenants.

Usage:
    from pipeline import IntegrationPipeline

    pipeline = IntegrationPipeline(catalog_provider, source_providers, store)
    summary = pipeline.run("acme", (date(2024, 6, 1), date(2024, 6, 30)))
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import pandas as pd

from core.aggregator import aggregate, aggregate_statistics, build_leaf_metrics, tenant_totals
from core.catalog_index import CatalogIndex
from core.confidence import ConfidenceScorer
from core.errors import InconsistentCatalogError, MalformedInputError, RunCancelledError, SourceUnavailableError
from core.frames import aggregated_to_frame, match_history_to_frame, scores_to_frame
from core.models import (
    AggregatedMetrics,
    CatalogNode,
    CatalogProduct,
    ManualMapping,
    MatchResult,
    OpportunityScore,
    RawExternalRecord,
    RunSummary,
    SourceSummary,
)
from core.overrides import ManualOverrides
from core.record_parser import coerce_record
from core.store import CatalogProvider, DateRange, InMemoryStore, MappingStore, ResultStore, SourceProvider
from core.unmatched_ledger import UnmatchedLedger
from matchers.gtin_matcher import CHECKSUM_INVALID
from matchers.resolver import NO_MATCH, RecordResolver
from scoring.opportunity_scorer import OpportunityScorer
from config.config_loader import get_all_sources, get_matching_config, get_source_config

logger = logging.getLogger(__name__)


class RunState:
    LOADING = "LOADING"
    INDEXING = "INDEXING"
    MATCHING = "MATCHING"
    AGGREGATING = "AGGREGATING"
    SCORING = "SCORING"
    PERSISTING = "PERSISTING"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class RunContext:
    """Everything one run owns. Built at LOADING, discarded at DONE / FAILED."""

    run_id: str
    tenant_id: str
    date_range: DateRange
    started_at: datetime
    summary: RunSummary

    nodes: List[CatalogNode] = field(default_factory=list)
    products: List[CatalogProduct] = field(default_factory=list)
    mappings: List[ManualMapping] = field(default_factory=list)
    raw_by_source: Dict[str, list] = field(default_factory=dict)

    index: Optional[CatalogIndex] = None
    resolver: Optional[RecordResolver] = None

    matches: List[Tuple[RawExternalRecord, MatchResult]] = field(default_factory=list)
    ledger: Optional[UnmatchedLedger] = None

    daily_rows: List[AggregatedMetrics] = field(default_factory=list)
    period_rows: Dict[str, AggregatedMetrics] = field(default_factory=dict)
    scores: List[OpportunityScore] = field(default_factory=list)


@dataclass
class RunResult:
    """Run summary plus flat views of everything the run produced."""

    summary: RunSummary
    aggregated: pd.DataFrame
    period_aggregated: pd.DataFrame
    scores: pd.DataFrame
    unmatched: pd.DataFrame
    match_history: pd.DataFrame
    statistics: dict = field(default_factory=dict)


class IntegrationPipeline:
    """
    End-to-end reconciliation run.

    Collaborators are injected; the pipeline itself holds no per-run state
    other than the cancel flag.
    """

    def __init__(
        self,
        catalog_provider: CatalogProvider,
        source_providers: Dict[str, SourceProvider],
        store: Optional[InMemoryStore] = None,
        mapping_store: Optional[MappingStore] = None,
        result_store: Optional[ResultStore] = None,
        max_workers: int | None = None,
    ):
        self.catalog_provider = catalog_provider
        self.source_providers = source_providers
        store = store or InMemoryStore()
        self.mapping_store = mapping_store or store
        self.result_store = result_store or store
        self.sources = get_all_sources()

        configured = max_workers or get_matching_config()["max_workers"]
        self.max_workers = max(1, min(configured, os.cpu_count() or 1))
        self._cancel = threading.Event()

        logger.info(
            f"Pipeline initialized. Sources: {self.sources}. "
            f"Providers: {sorted(source_providers)}. Record workers per source: {self.max_workers}."
        )

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run(self, tenant_id: str, date_range: DateRange, run_id: str | None = None) -> RunSummary:
        """
        Run the full reconciliation and return its summary.

        Raises:
            InconsistentCatalogError: If the catalog tree is malformed. The
                run ends FAILED and nothing is persisted.
        """
        return self.run_with_outputs(tenant_id, date_range, run_id=run_id).summary

    def run_with_outputs(self, tenant_id: str, date_range: DateRange, run_id: str | None = None) -> RunResult:
        """Same as run(), also returning the run's outputs as DataFrames."""
        ctx = self._new_context(tenant_id, date_range, run_id)
        self._cancel.clear()
        logger.info(f"[{ctx.run_id}] Run starting for tenant {tenant_id}, {date_range[0]} to {date_range[1]}.")

        try:
            self._enter(ctx, RunState.LOADING)
            self._load(ctx)

            self._enter(ctx, RunState.INDEXING)
            self._build_indices(ctx)

            self._enter(ctx, RunState.MATCHING)
            self._match_all_sources(ctx)

            self._enter(ctx, RunState.AGGREGATING)
            self._aggregate(ctx)

            self._enter(ctx, RunState.SCORING)
            self._score(ctx)

            self._enter(ctx, RunState.PERSISTING)
            self._persist(ctx)

            ctx.summary.state = RunState.DONE
        except RunCancelledError as exc:
            self._fail(ctx, f"Run cancelled: {exc}")
        except InconsistentCatalogError as exc:
            self._fail(ctx, str(exc))
            raise
        except Exception as exc:
            logger.exception(f"[{ctx.run_id}] Run failed in {ctx.summary.state}.")
            self._fail(ctx, f"{type(exc).__name__}: {exc}")
            raise
        finally:
            ctx.summary.finished_at = datetime.now()

        self._log_summary(ctx.summary)
        return self._build_result(ctx)

    def cancel(self) -> None:
        """Request cancellation. Observed at the next phase boundary."""
        self._cancel.set()

    # -------------------------------------------------------------------------
    # INTERNAL: STATE MACHINE
    # -------------------------------------------------------------------------

    def _new_context(self, tenant_id: str, date_range: DateRange, run_id: str | None) -> RunContext:
        started_at = datetime.now()
        run_id = run_id or f"{tenant_id}-{started_at.strftime('%Y%m%d%H%M%S%f')}"
        summary = RunSummary(run_id=run_id, tenant_id=tenant_id, state=RunState.LOADING, started_at=started_at)
        return RunContext(
            run_id=run_id,
            tenant_id=tenant_id,
            date_range=date_range,
            started_at=started_at,
            summary=summary,
        )

    def _enter(self, ctx: RunContext, state: str) -> None:
        if self._cancel.is_set():
            raise RunCancelledError(f"cancelled before {state}")
        ctx.summary.state = state
        logger.info(f"[{ctx.run_id}] -> {state}")

    def _fail(self, ctx: RunContext, message: str) -> None:
        logger.error(f"[{ctx.run_id}] FAILED during {ctx.summary.state}: {message}")
        ctx.summary.state = RunState.FAILED
        ctx.summary.error = message

    # -------------------------------------------------------------------------
    # INTERNAL: LOADING & INDEXING
    # -------------------------------------------------------------------------

    def _load(self, ctx: RunContext) -> None:
        ctx.nodes = list(self.catalog_provider.list_nodes(ctx.tenant_id))
        ctx.products = list(self.catalog_provider.list_products(ctx.tenant_id))
        ctx.mappings = list(self.mapping_store.list_mappings(ctx.tenant_id))

        for source in self.sources:
            summary = SourceSummary(source=source)
            ctx.summary.sources[source] = summary
            try:
                ctx.raw_by_source[source] = self._fetch(source, ctx)
            except SourceUnavailableError as exc:
                logger.warning(f"[{ctx.run_id}] {exc}. Continuing with zero {source} records.")
                summary.available = False
                ctx.raw_by_source[source] = []
                continue
            if not ctx.raw_by_source[source]:
                logger.warning(f"[{ctx.run_id}] {source} returned zero records; marked unavailable.")
                summary.available = False

        logger.info(
            f"[{ctx.run_id}] Loaded {len(ctx.nodes):,} nodes, {len(ctx.products):,} products, "
            f"{len(ctx.mappings):,} manual mappings, "
            f"records: { {s: len(r) for s, r in ctx.raw_by_source.items()} }."
        )

    def _fetch(self, source: str, ctx: RunContext) -> list:
        provider = self.source_providers.get(source)
        if provider is None:
            raise SourceUnavailableError(source, "no provider configured")
        try:
            records = provider.fetch_records(ctx.tenant_id, ctx.date_range)
        except Exception as exc:
            raise SourceUnavailableError(source, f"{type(exc).__name__}: {exc}") from exc
        return list(records or [])

    def _build_indices(self, ctx: RunContext) -> None:
        ctx.index = CatalogIndex(ctx.nodes, ctx.products)
        overrides = ManualOverrides(ctx.mappings, ctx.index)
        ctx.resolver = RecordResolver(ctx.index, overrides)
        ctx.ledger = UnmatchedLedger(ctx.tenant_id, ctx.started_at)
        logger.info(
            f"[{ctx.run_id}] Indices ready. Active overrides: {len(overrides):,}. "
            f"URL strategy chain: {ctx.resolver.strategy_names}."
        )

    # -------------------------------------------------------------------------
    # INTERNAL: MATCHING
    # -------------------------------------------------------------------------

    def _match_all_sources(self, ctx: RunContext) -> None:
        """
        Matches every source concurrently. Each worker returns its own
        results; nothing shared is written until all workers have joined.
        """
        results: Dict[str, List[Tuple[RawExternalRecord, MatchResult]]] = {}
        with ThreadPoolExecutor(max_workers=max(1, len(self.sources))) as executor:
            futures = {
                executor.submit(self._match_source, source, ctx): source
                for source in self.sources
            }
            for future in as_completed(futures):
                results[futures[future]] = future.result()

        # Join barrier passed; fold results in a fixed order.
        for source in self.sources:
            summary = ctx.summary.sources[source]
            matched_confidence = 0.0
            for record, match in results.get(source, []):
                ctx.matches.append((record, match))
                if match.is_match:
                    summary.matched += 1
                    summary.by_strategy[match.strategy] = summary.by_strategy.get(match.strategy, 0) + 1
                    summary.by_entity_type[match.entity_type] = summary.by_entity_type.get(match.entity_type, 0) + 1
                    matched_confidence += match.confidence
                elif match.strategy == CHECKSUM_INVALID:
                    summary.checksum_invalid += 1
                    ctx.ledger.add(record, CHECKSUM_INVALID)
                else:
                    summary.unmatched += 1
                    ctx.ledger.add(record, NO_MATCH)
            if summary.matched:
                summary.average_confidence = round(matched_confidence / summary.matched, 4)

            logger.info(
                f"[{ctx.run_id}] {source}: {summary.total:,} records, {summary.matched:,} matched, "
                f"{summary.unmatched:,} unmatched, {summary.checksum_invalid:,} checksum-invalid, "
                f"{summary.malformed:,} malformed."
            )

    def _match_source(self, source: str, ctx: RunContext) -> List[Tuple[RawExternalRecord, MatchResult]]:
        summary = ctx.summary.sources[source]
        raw_records = ctx.raw_by_source.get(source, [])
        summary.total = len(raw_records)

        records: List[RawExternalRecord] = []
        for raw in raw_records:
            try:
                records.append(coerce_record(raw, source, ctx.tenant_id))
            except MalformedInputError as exc:
                summary.malformed += 1
                logger.debug(f"[{ctx.run_id}] Skipping malformed {source} record: {exc}")

        if summary.malformed:
            logger.warning(f"[{ctx.run_id}] Skipped {summary.malformed:,} malformed {source} records.")

        identifier_type = get_source_config(source)["identifier_type"]
        resolver = ctx.resolver
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            results = list(pool.map(lambda r: resolver.resolve(r.identifier, identifier_type), records))

        return list(zip(records, results))

    # -------------------------------------------------------------------------
    # INTERNAL: AGGREGATION & SCORING
    # -------------------------------------------------------------------------

    def _aggregate(self, ctx: RunContext) -> None:
        days = sorted({record.date for record, match in ctx.matches if match.is_match})
        for day in days:
            leaf = build_leaf_metrics(ctx.matches, ctx.index, ctx.tenant_id, day=day)
            rows = aggregate(ctx.nodes, leaf)
            ctx.daily_rows.extend(rows[node_id] for node_id in sorted(rows))

        leaf = build_leaf_metrics(ctx.matches, ctx.index, ctx.tenant_id)
        ctx.period_rows = aggregate(ctx.nodes, leaf)
        ctx.summary.nodes_aggregated = len(ctx.period_rows)
        logger.info(
            f"[{ctx.run_id}] Aggregated {len(ctx.period_rows):,} nodes over {len(days):,} dates "
            f"({len(ctx.daily_rows):,} daily rows)."
        )

    def _score(self, ctx: RunContext) -> None:
        confidence = ConfidenceScorer(as_of=ctx.date_range[1])
        scorer = OpportunityScorer(run_id=ctx.run_id, tenant_id=ctx.tenant_id, computed_at=ctx.started_at)
        benchmarks = scorer.benchmarks(tenant_totals(ctx.period_rows, ctx.index))

        for node_id in sorted(ctx.period_rows):
            node = ctx.index.nodes[node_id]
            row = ctx.period_rows[node_id]
            content = scorer.content_completeness(ctx.index.subtree_products(node_id))
            ctx.scores.append(scorer.score(node, row, benchmarks, confidence.level(row), content))

        ctx.summary.confidence_distribution = confidence.distribution(
            ctx.period_rows[n] for n in sorted(ctx.period_rows)
        )
        ctx.summary.nodes_scored = len(ctx.scores)
        logger.info(
            f"[{ctx.run_id}] Scored {len(ctx.scores):,} nodes. "
            f"Confidence: {ctx.summary.confidence_distribution}. "
            f"Benchmarks: CR={benchmarks.conversion_rate:.4f}, AOV={benchmarks.avg_order_value:.2f}."
        )

    # -------------------------------------------------------------------------
    # INTERNAL: PERSISTENCE & OUTPUT
    # -------------------------------------------------------------------------

    def _persist(self, ctx: RunContext) -> None:
        """Single commit at the end of the run."""
        written_rows = self.result_store.write_aggregated(ctx.daily_rows, ctx.started_at)
        written_scores = self.result_store.write_scores(ctx.scores)
        written_unmatched = self.result_store.append_unmatched(ctx.ledger.entries())
        resolved = sorted({(record.source, record.identifier) for record, match in ctx.matches if match.is_match})
        closed = self.result_store.resolve_unmatched(ctx.tenant_id, resolved)
        logger.info(
            f"[{ctx.run_id}] Persisted {written_rows:,} aggregate rows, {written_scores:,} scores, "
            f"{written_unmatched:,} unmatched entries; closed {closed:,} now-resolved entries."
        )

    def _build_result(self, ctx: RunContext) -> RunResult:
        statistics = aggregate_statistics(ctx.period_rows, ctx.index) if ctx.index is not None else {}
        ledger = ctx.ledger or UnmatchedLedger(ctx.tenant_id, ctx.started_at)
        return RunResult(
            summary=ctx.summary,
            aggregated=aggregated_to_frame(ctx.daily_rows),
            period_aggregated=aggregated_to_frame(ctx.period_rows.values()),
            scores=scores_to_frame(ctx.scores),
            unmatched=ledger.to_frame(),
            match_history=match_history_to_frame(ctx.matches),
            statistics=statistics,
        )

    def _log_summary(self, summary: RunSummary) -> None:
        logger.info(
            f"[{summary.run_id}] Run {summary.state}. Nodes aggregated: {summary.nodes_aggregated:,}, "
            f"scored: {summary.nodes_scored:,}."
        )
