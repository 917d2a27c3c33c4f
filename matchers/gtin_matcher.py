"""
gtin_matcher.py
----------------
Single-strategy path for product codes (GTIN / EAN / UPC).

The code is cleaned and checksum-validated, then looked up by its padded
14-digit key. A hit is always confidence 1.0. There is no fallback: a
product code is either an exact catalog code or it is unmatched.

A code that fails its checksum is never looked up, even if the same digits
sit in a product's code list. It comes back as a miss tagged
"checksum_invalid" so the run summary can count it separately from an
ordinary miss.
"""

import logging
from typing import Optional, Tuple

from core.catalog_index import CatalogIndex
from core.models import ENTITY_PRODUCT, MatchResult
from core.normalizer import normalize_gtin
from matchers.base_matcher import BaseMatchStrategy

logger = logging.getLogger(__name__)

CHECKSUM_INVALID = "checksum_invalid"


class GtinStrategy(BaseMatchStrategy):

    name = "gtin"

    def try_match(self, identifier: str, index: CatalogIndex) -> Optional[MatchResult]:
        """
        Returns:
            MatchResult on a hit, MatchResult.none("checksum_invalid") for a
            code that fails validation, None for a valid code with no product.
        """
        gtin = normalize_gtin(identifier)
        if not gtin.is_valid:
            logger.warning(f"Checksum-invalid product code {identifier!r} (cleaned: {gtin.code!r}); not looked up.")
            return MatchResult.none(CHECKSUM_INVALID)
        return super().try_match(identifier, index)

    def _match(self, identifier: str, index: CatalogIndex) -> Optional[Tuple]:
        product_id = index.lookup_gtin(normalize_gtin(identifier).key)
        if product_id is None:
            return None
        return ENTITY_PRODUCT, product_id
