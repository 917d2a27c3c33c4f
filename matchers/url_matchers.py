"""
url_matchers.py
----------------
Concrete URL / path strategies. Tried in the order given by
matching.strategy_order in config.yaml, most precise first:

    exact_url           1.0   normalised URL equals a catalog URL
    product_id          0.9   a URL segment or id-like query value is a product id
    path_prefix         0.8   URL path contains a node path on segment boundaries
    category_hierarchy  0.7   category path string, aliases applied, deepest node
    fuzzy               sim   difflib similarity >= threshold, capped

Each strategy maps one identifier to at most one entity, so a record can
never be counted against two nodes.
"""

import logging
from difflib import SequenceMatcher
from typing import Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from core.catalog_index import CatalogIndex
from core.models import ENTITY_NODE, ENTITY_PRODUCT
from core.normalizer import normalize_category_path, normalize_url, url_segments
from matchers.base_matcher import BaseMatchStrategy
from config.config_loader import get_matching_config

logger = logging.getLogger(__name__)

_PRODUCT_ID_QUERY_KEYS = ("product_id", "id", "sku")
_PAGE_SUFFIXES = (".html", ".htm", ".php", ".aspx")


# =============================================================================
# EXACT URL
# =============================================================================
class ExactUrlStrategy(BaseMatchStrategy):
    """Normalised identifier equals a product's or node's normalised URL."""

    name = "exact_url"

    def _match(self, identifier: str, index: CatalogIndex) -> Optional[Tuple]:
        return index.lookup_url(normalize_url(identifier))


# =============================================================================
# PRODUCT ID IN URL
# =============================================================================
class ProductIdStrategy(BaseMatchStrategy):
    """
    Last path segment (with or without a page suffix) or an id-like query
    parameter equals a known product id. Case-insensitive.
    """

    name = "product_id"

    def _match(self, identifier: str, index: CatalogIndex) -> Optional[Tuple]:
        for candidate in self._candidates(identifier):
            product_id = index.lookup_product_id(candidate)
            if product_id is not None:
                return ENTITY_PRODUCT, product_id
        return None

    @staticmethod
    def _candidates(identifier: str) -> list[str]:
        candidates = []
        segments = url_segments(normalize_url(identifier))
        if segments:
            last = segments[-1]
            candidates.append(last)
            for suffix in _PAGE_SUFFIXES:
                if last.endswith(suffix):
                    candidates.append(last[: -len(suffix)])
        try:
            query = parse_qs(urlsplit(identifier).query)
        except ValueError:
            query = {}
        for key in _PRODUCT_ID_QUERY_KEYS:
            candidates.extend(query.get(key, []))
        return candidates


# =============================================================================
# PATH PREFIX
# =============================================================================
class PathPrefixStrategy(BaseMatchStrategy):
    """
    Normalised URL path contains a node's normalised path on segment
    boundaries ("/en/electronics/phones" contains "/electronics/phones",
    "/electronics/phonesx" does not). Node paths are pre-sorted longest
    first, so the first hit is the most specific node.
    """

    name = "path_prefix"

    def _match(self, identifier: str, index: CatalogIndex) -> Optional[Tuple]:
        path = normalize_url(identifier)
        if not path:
            return None
        padded = path + "/"
        for node_path, node_id in index.node_paths():
            if node_path.startswith("/") and (node_path + "/") in padded:
                return ENTITY_NODE, node_id
        return None


# =============================================================================
# CATEGORY HIERARCHY
# =============================================================================
class CategoryHierarchyStrategy(BaseMatchStrategy):
    """
    Treats the identifier as a category path ("Electronics > Phones"),
    resolves aliases per segment and returns the deepest node whose segment
    list is a prefix of the identifier's.
    """

    name = "category_hierarchy"

    def _match(self, identifier: str, index: CatalogIndex) -> Optional[Tuple]:
        segments = [index.canonical_segment(s) for s in normalize_category_path(identifier)]
        for length in range(len(segments), 0, -1):
            node_id = index.lookup_segments(tuple(segments[:length]))
            if node_id is not None:
                return ENTITY_NODE, node_id
        return None


# =============================================================================
# FUZZY
# =============================================================================
class FuzzyStrategy(BaseMatchStrategy):
    """
    Best-effort similarity match. Compares the normalised identifier to every
    node and product key with difflib's SequenceMatcher ratio and accepts the
    single best candidate at or above min_similarity. Ties go to the first
    candidate in (entity_type, entity_id) order.

    Reported confidence is the similarity capped at max_confidence, keeping
    fuzzy hits below every deterministic strategy.
    """

    name = "fuzzy"

    def __init__(self):
        super().__init__()
        fuzzy_cfg = self.config["fuzzy"]
        self.min_similarity = float(fuzzy_cfg["min_similarity"])
        self.max_confidence = float(fuzzy_cfg["max_confidence"])

    def _match(self, identifier: str, index: CatalogIndex) -> Optional[Tuple]:
        key = self._comparison_key(identifier)
        if not key:
            return None

        best: Optional[Tuple[str, str]] = None
        best_score = 0.0
        matcher = SequenceMatcher(None, b=key, autojunk=False)
        for candidate, entity_type, entity_id in index.fuzzy_candidates():
            matcher.set_seq1(candidate)
            if matcher.real_quick_ratio() < self.min_similarity:
                continue
            if matcher.quick_ratio() < self.min_similarity:
                continue
            score = matcher.ratio()
            if score > best_score:
                best_score = score
                best = (entity_type, entity_id)

        if best is None or best_score < self.min_similarity:
            return None

        logger.debug(f"Fuzzy hit {identifier!r} -> {best} (similarity={best_score:.3f})")
        return best[0], best[1], min(best_score, self.max_confidence)

    @staticmethod
    def _comparison_key(identifier: str) -> str:
        key = normalize_url(identifier)
        if key.startswith("/"):
            return key
        segments = normalize_category_path(identifier)
        return "/" + "/".join(segments) if segments else key


# =============================================================================
# STRATEGY REGISTRY
# =============================================================================
# Names here are the vocabulary of matching.strategy_order in config.yaml.

STRATEGY_REGISTRY: dict[str, type[BaseMatchStrategy]] = {
    "exact_url": ExactUrlStrategy,
    "product_id": ProductIdStrategy,
    "path_prefix": PathPrefixStrategy,
    "category_hierarchy": CategoryHierarchyStrategy,
    "fuzzy": FuzzyStrategy,
}


def build_strategy_chain(order: list[str] | None = None) -> list[BaseMatchStrategy]:
    """
    Instantiates the ordered URL strategy chain.

    Raises:
        KeyError: If the order names an unknown strategy.
    """
    if order is None:
        order = get_matching_config()["strategy_order"]
    unknown = [name for name in order if name not in STRATEGY_REGISTRY]
    if unknown:
        raise KeyError(
            f"Unknown match strategies {unknown}. "
            f"Available: {list(STRATEGY_REGISTRY.keys())}"
        )
    return [STRATEGY_REGISTRY[name]() for name in order]
