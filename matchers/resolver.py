"""
resolver.py
------------
Turns one raw identifier into one MatchResult.

    1. Manual override for the exact raw identifier   (strategy "manual")
    2. url sources:  the ordered strategy chain, first hit wins
       gtin sources: the single GTIN strategy
    3. Otherwise a miss: MatchResult.none("no_match") or
       MatchResult.none("checksum_invalid")

Confidences are not compared across strategies. The first strategy that
answers is trusted.
"""

from typing import List, Optional

from core.catalog_index import CatalogIndex
from core.models import MatchResult
from core.overrides import ManualOverrides
from matchers.base_matcher import BaseMatchStrategy
from matchers.gtin_matcher import GtinStrategy
from matchers.url_matchers import build_strategy_chain

NO_MATCH = "no_match"

IDENTIFIER_URL = "url"
IDENTIFIER_GTIN = "gtin"


class RecordResolver:
    """
    Stateless after construction; safe to share across match workers.

    Usage:
        resolver = RecordResolver(index, overrides)
        result = resolver.resolve("https://x.com/electronics/phones", "url")
    """

    def __init__(
        self,
        index: CatalogIndex,
        overrides: ManualOverrides,
        url_chain: Optional[List[BaseMatchStrategy]] = None,
        gtin_strategy: Optional[GtinStrategy] = None,
    ):
        self.index = index
        self.overrides = overrides
        self.url_chain = url_chain if url_chain is not None else build_strategy_chain()
        self.gtin_strategy = gtin_strategy or GtinStrategy()

    def resolve(self, identifier: str, identifier_type: str = IDENTIFIER_URL) -> MatchResult:
        override = self.overrides.lookup(identifier)
        if override is not None:
            return override

        if identifier_type == IDENTIFIER_GTIN:
            result = self.gtin_strategy.try_match(identifier, self.index)
            return result if result is not None else MatchResult.none(NO_MATCH)

        for strategy in self.url_chain:
            result = strategy.try_match(identifier, self.index)
            if result is not None:
                return result
        return MatchResult.none(NO_MATCH)

    @property
    def strategy_names(self) -> List[str]:
        return [s.name for s in self.url_chain]
