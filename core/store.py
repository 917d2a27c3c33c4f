"""
store.py
---------
Interfaces to the engine's external collaborators, plus in-memory
implementations used by the CLI and the test suite.

Inputs:
    - CatalogProvider:  list_nodes(tenant), list_products(tenant)
    - SourceProvider:   fetch_records(tenant, date_range)
    - MappingStore:     lookup(tenant, identifier), list_unresolved(tenant)

Outputs:
    - ResultStore:      write_aggregated / write_scores / append_unmatched
                        / resolve_unmatched

Keying:
    - AggregatedMetrics   (node, date, tenant). Last writer wins by run
      timestamp, so an older run finishing late cannot clobber a newer one.
    - OpportunityScore    (node, tenant, run). Kept until expires_at.
    - UnmatchedRecord     (source, identifier, tenant). Re-appending bumps
      attempts. Closed once a mapping or a later run resolves the identifier.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

from core.models import (
    AggregatedMetrics,
    CatalogNode,
    CatalogProduct,
    ManualMapping,
    OpportunityScore,
    UnmatchedRecord,
)

logger = logging.getLogger(__name__)

DateRange = Tuple[date, date]


# =============================================================================
# INPUT COLLABORATORS
# =============================================================================

class CatalogProvider(ABC):

    @abstractmethod
    def list_nodes(self, tenant_id: str) -> List[CatalogNode]:
        ...

    @abstractmethod
    def list_products(self, tenant_id: str) -> List[CatalogProduct]:
        ...


class SourceProvider(ABC):
    """
    One upstream source (search, analytics or pricing).

    Implementations may return RawExternalRecord objects or dict rows; the
    orchestrator validates both. Raising any exception marks the source
    unavailable for the run.
    """

    source: str = ""

    @abstractmethod
    def fetch_records(self, tenant_id: str, date_range: DateRange) -> list:
        ...


class MappingStore(ABC):

    @abstractmethod
    def lookup(self, tenant_id: str, identifier: str) -> Optional[ManualMapping]:
        ...

    @abstractmethod
    def list_mappings(self, tenant_id: str) -> List[ManualMapping]:
        ...

    @abstractmethod
    def list_unresolved(self, tenant_id: str) -> List[UnmatchedRecord]:
        ...


class ResultStore(ABC):

    @abstractmethod
    def write_aggregated(self, rows: Iterable[AggregatedMetrics], run_timestamp: datetime) -> int:
        ...

    @abstractmethod
    def write_scores(self, scores: Iterable[OpportunityScore]) -> int:
        ...

    @abstractmethod
    def append_unmatched(self, entries: Iterable[UnmatchedRecord]) -> int:
        ...

    @abstractmethod
    def resolve_unmatched(self, tenant_id: str, keys: Iterable[Tuple[str, str]]) -> int:
        """Close ledger rows whose (source, identifier) now resolves."""
        ...


# =============================================================================
# STATIC PROVIDERS
# =============================================================================

class StaticCatalogProvider(CatalogProvider):
    """Serves one fixed catalog whatever tenant is asked for."""

    def __init__(self, nodes: List[CatalogNode], products: List[CatalogProduct]):
        self.nodes = nodes
        self.products = products

    def list_nodes(self, tenant_id: str) -> List[CatalogNode]:
        return list(self.nodes)

    def list_products(self, tenant_id: str) -> List[CatalogProduct]:
        return list(self.products)


class StaticSourceProvider(SourceProvider):
    """Serves a fixed list of records, filtered to the requested date range."""

    def __init__(self, source: str, records: list):
        self.source = source
        self.records = records

    def fetch_records(self, tenant_id: str, date_range: DateRange) -> list:
        start, end = date_range
        selected = []
        for record in self.records:
            record_date = _record_date(record)
            if record_date is None or start <= record_date <= end:
                selected.append(record)
        return selected


def _record_date(record) -> Optional[date]:
    """Best-effort date for range filtering; unparseable rows pass through to validation."""
    value = record.get("date") if isinstance(record, dict) else getattr(record, "date", None)
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        parsed = pd.Timestamp(value)
    except (TypeError, ValueError):
        return None
    return None if pd.isna(parsed) else parsed.date()


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryStore(MappingStore, ResultStore):
    """
    Mapping + result store held in process memory.

    All writes take one lock, so a commit from one run is never interleaved
    with another run's commit.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._mappings: Dict[str, Dict[str, ManualMapping]] = {}
        self._aggregated: Dict[Tuple[str, Optional[date], str], Tuple[datetime, AggregatedMetrics]] = {}
        self._scores: Dict[Tuple[str, str, str], OpportunityScore] = {}
        self._unmatched: Dict[Tuple[str, str, str], UnmatchedRecord] = {}

    # -------------------------------------------------------------------------
    # MAPPINGS
    # -------------------------------------------------------------------------

    def add_mapping(self, tenant_id: str, mapping: ManualMapping) -> None:
        with self._lock:
            self._mappings.setdefault(tenant_id, {})[mapping.identifier] = mapping
            for key in [k for k in self._unmatched if k[1] == mapping.identifier and k[2] == tenant_id]:
                del self._unmatched[key]

    def lookup(self, tenant_id: str, identifier: str) -> Optional[ManualMapping]:
        mapping = self._mappings.get(tenant_id, {}).get(identifier)
        return mapping if mapping is not None and mapping.active else None

    def list_mappings(self, tenant_id: str) -> List[ManualMapping]:
        with self._lock:
            return list(self._mappings.get(tenant_id, {}).values())

    def list_unresolved(self, tenant_id: str) -> List[UnmatchedRecord]:
        with self._lock:
            return [
                self._unmatched[k] for k in sorted(self._unmatched)
                if k[2] == tenant_id
            ]

    def promote_unmatched(
        self,
        tenant_id: str,
        source: str,
        identifier: str,
        entity_type: str,
        entity_id: str,
        created_by: str,
    ) -> ManualMapping:
        """
        Turn a ledger entry into a manual mapping; the next run resolves it.

        Raises:
            KeyError: If no such ledger entry exists for the tenant.
        """
        if (source, identifier, tenant_id) not in self._unmatched:
            raise KeyError(f"No unmatched entry for ({source!r}, {identifier!r}) in tenant {tenant_id!r}")
        mapping = ManualMapping(
            identifier=identifier,
            entity_type=entity_type,
            entity_id=entity_id,
            created_by=created_by,
        )
        self.add_mapping(tenant_id, mapping)
        logger.info(f"Promoted unmatched {source}:{identifier!r} -> {entity_type} {entity_id} by {created_by}.")
        return mapping

    # -------------------------------------------------------------------------
    # RESULTS
    # -------------------------------------------------------------------------

    def write_aggregated(self, rows: Iterable[AggregatedMetrics], run_timestamp: datetime) -> int:
        written = 0
        with self._lock:
            for row in rows:
                key = (row.node_id, row.date, row.tenant_id)
                existing = self._aggregated.get(key)
                if existing is not None and existing[0] > run_timestamp:
                    continue
                self._aggregated[key] = (run_timestamp, row)
                written += 1
        return written

    def write_scores(self, scores: Iterable[OpportunityScore]) -> int:
        written = 0
        with self._lock:
            for score in scores:
                self._scores[(score.node_id, score.tenant_id, score.run_id)] = score
                written += 1
        return written

    def append_unmatched(self, entries: Iterable[UnmatchedRecord]) -> int:
        written = 0
        with self._lock:
            for entry in entries:
                key = (entry.source, entry.identifier, entry.tenant_id)
                existing = self._unmatched.get(key)
                if existing is not None:
                    entry = replace(entry, attempts=existing.attempts + 1)
                self._unmatched[key] = entry
                written += 1
        return written

    def resolve_unmatched(self, tenant_id: str, keys: Iterable[Tuple[str, str]]) -> int:
        closed = 0
        with self._lock:
            for source, identifier in keys:
                if self._unmatched.pop((source, identifier, tenant_id), None) is not None:
                    closed += 1
        if closed:
            logger.info(f"Closed {closed:,} unmatched entries for tenant {tenant_id} that now resolve.")
        return closed

    def prune_expired_scores(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, s in self._scores.items() if s.expires_at <= now]
            for key in expired:
                del self._scores[key]
        if expired:
            logger.info(f"Pruned {len(expired):,} expired opportunity scores.")
        return len(expired)

    # -------------------------------------------------------------------------
    # READ-BACK
    # -------------------------------------------------------------------------

    def aggregated_rows(self, tenant_id: str) -> List[AggregatedMetrics]:
        with self._lock:
            return [row for (_, _, t), (_, row) in self._aggregated.items() if t == tenant_id]

    def scores(self, tenant_id: str) -> List[OpportunityScore]:
        with self._lock:
            return [s for (_, t, _), s in self._scores.items() if t == tenant_id]
