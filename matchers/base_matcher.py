"""
base_matcher.py
----------------
Abstract base class for all match strategies.

A strategy answers one question: "which catalog entity, if any, does this
raw identifier refer to?" It returns a MatchResult on a hit and None on a
miss. Strategies never look at each other; ordering and first-hit-wins
live in the resolver.

Each strategy's confidence is a fixed value read from config.yaml.
Concrete strategies only need to implement:
    - _match(): the strategy-specific lookup
"""

from abc import ABC, abstractmethod
from typing import Optional, Tuple

from core.catalog_index import CatalogIndex
from core.models import MatchResult
from config.config_loader import get_matching_config


class BaseMatchStrategy(ABC):
    """
    Abstract base for match strategies.

    Subclasses implement _match() and return (entity_type, entity_id) or
    (entity_type, entity_id, confidence) when the confidence varies per hit.
    """

    name: str = ""

    def __init__(self):
        self.config = get_matching_config()
        self.confidence = float(self.config["confidence"].get(self.name, 0.0))

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def try_match(self, identifier: str, index: CatalogIndex) -> Optional[MatchResult]:
        """
        Attempt to resolve a raw identifier against the catalog.

        Returns:
            MatchResult on a hit, None on a miss.
        """
        if not identifier:
            return None
        hit = self._match(identifier, index)
        if hit is None:
            return None
        if len(hit) == 3:
            entity_type, entity_id, confidence = hit
        else:
            entity_type, entity_id = hit
            confidence = self.confidence
        return MatchResult(
            entity_type=entity_type,
            entity_id=entity_id,
            confidence=round(confidence, 4),
            strategy=self.name,
        )

    # -------------------------------------------------------------------------
    # ABSTRACT METHODS
    # -------------------------------------------------------------------------

    @abstractmethod
    def _match(self, identifier: str, index: CatalogIndex) -> Optional[Tuple]:
        """Strategy-specific lookup. None on a miss."""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(confidence={self.confidence})"
