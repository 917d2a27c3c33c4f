"""
overrides.py
-------------
Manual mapping overrides. A human-authored pin from one exact raw
identifier to one catalog entity, consulted before any strategy runs.

The table is snapshotted from the mapping store when a run starts and is
read-only afterwards. Mappings that point at an entity missing from the
current catalog are dropped with a warning, since their metrics could not
be attributed to any node.
"""

import logging
from typing import Dict, Iterable, Optional

from core.catalog_index import CatalogIndex
from core.models import ENTITY_NODE, ENTITY_PRODUCT, ManualMapping, MatchResult
from config.config_loader import get_matching_config

logger = logging.getLogger(__name__)

MANUAL_STRATEGY = "manual"


class ManualOverrides:
    """
    Exact-identifier lookup of active manual mappings.

    Usage:
        overrides = ManualOverrides(store.list_mappings(tenant_id), index)
        result = overrides.lookup(raw_identifier)
    """

    def __init__(self, mappings: Iterable[ManualMapping], index: CatalogIndex):
        self.confidence = float(get_matching_config()["confidence"][MANUAL_STRATEGY])
        self._table: Dict[str, ManualMapping] = {}

        # Latest creation wins when one identifier was mapped twice.
        for mapping in sorted(mappings, key=lambda m: (m.created_at, m.entity_id)):
            if not mapping.active:
                continue
            if not self._entity_exists(mapping, index):
                logger.warning(
                    f"Manual mapping {mapping.identifier!r} -> {mapping.entity_type} "
                    f"{mapping.entity_id} targets an entity missing from the catalog; ignored."
                )
                continue
            self._table[mapping.identifier] = mapping

    def lookup(self, identifier: str) -> Optional[MatchResult]:
        mapping = self._table.get(identifier)
        if mapping is None:
            return None
        return MatchResult(
            entity_type=mapping.entity_type,
            entity_id=mapping.entity_id,
            confidence=self.confidence,
            strategy=MANUAL_STRATEGY,
        )

    @staticmethod
    def _entity_exists(mapping: ManualMapping, index: CatalogIndex) -> bool:
        if mapping.entity_type == ENTITY_NODE:
            return mapping.entity_id in index.nodes
        if mapping.entity_type == ENTITY_PRODUCT:
            return mapping.entity_id in index.products
        return False

    def __len__(self) -> int:
        return len(self._table)
