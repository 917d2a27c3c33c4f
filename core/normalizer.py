"""
normalizer.py
--------------
Identifier canonicalisation. Everything the match strategies compare goes
through one of these three functions first:

    normalize_url()            ->  lower-cased path, no trailing slash
    normalize_gtin()           ->  digits only + checksum validity
    normalize_category_path()  ->  list of slug segments

None of these raise on bad input. A URL that cannot be parsed falls back to
its lower-cased raw form; a code that fails its checksum comes back with
is_valid=False so callers can still display it.
"""

import logging
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

from config.config_loader import get_matching_config

logger = logging.getLogger(__name__)

_NON_DIGIT = re.compile(r"\D")
_PATH_SEPARATORS = re.compile(r"\s*(?:::|>|\||/)\s*")
_WHITESPACE = re.compile(r"\s+")
_SLUG_INVALID = re.compile(r"[^a-z0-9_-]")
_REPEATED_DASH = re.compile(r"-{2,}")

GTIN_KEY_LENGTH = 14


@dataclass(frozen=True)
class GtinCode:
    code: str                        # Digits only, original length
    is_valid: bool

    @property
    def key(self) -> str:
        """Index key. Left-padding keeps the check digit, so UPC-A and EAN-13 forms collide."""
        return self.code.zfill(GTIN_KEY_LENGTH)


# -----------------------------------------------------------------------------
# URLS
# -----------------------------------------------------------------------------

def normalize_url(raw: str) -> str:
    """
    Canonical form of a URL: path only, single trailing slash stripped,
    lower-cased. Scheme, host, query string and fragment are discarded.
    """
    if raw is None:
        return ""
    text = str(raw).strip()
    try:
        path = urlsplit(text).path
    except ValueError:
        logger.debug(f"Unparseable URL, falling back to raw form: {text!r}")
        return _strip_trailing_slash(text.lower())
    return _strip_trailing_slash(path.lower())


def url_segments(normalized: str) -> list[str]:
    """Non-empty path segments of an already-normalised URL."""
    return [s for s in normalized.split("/") if s]


def _strip_trailing_slash(value: str) -> str:
    if value.endswith("/"):
        return value[:-1]
    return value


# -----------------------------------------------------------------------------
# GTIN / EAN
# -----------------------------------------------------------------------------

def normalize_gtin(raw: str) -> GtinCode:
    """
    Strips non-digits and validates the GS1 modulo-10 check digit.

    Valid lengths are GTIN-8, UPC-A (12), EAN-13 and GTIN-14.
    """
    code = _NON_DIGIT.sub("", str(raw or ""))
    valid_lengths = get_matching_config()["gtin_valid_lengths"]
    if len(code) not in valid_lengths:
        return GtinCode(code=code, is_valid=False)
    return GtinCode(code=code, is_valid=gtin_check_digit(code[:-1]) == int(code[-1]))


def gtin_check_digit(body: str) -> int:
    """
    Check digit for a GTIN body (all digits except the last).

    Weights alternate 3, 1, 3, ... starting from the rightmost body digit.
    """
    total = 0
    for i, ch in enumerate(reversed(body)):
        weight = 3 if i % 2 == 0 else 1
        total += int(ch) * weight
    return (10 - total % 10) % 10


# -----------------------------------------------------------------------------
# CATEGORY PATHS
# -----------------------------------------------------------------------------

def normalize_category_path(raw: str) -> list[str]:
    """
    Splits a category path on any of ">", "|", "::" or "/" and slugifies
    each segment.

    "Electronics > Mobile Phones" -> ["electronics", "mobile-phones"]
    """
    if not raw:
        return []
    segments = []
    for part in _PATH_SEPARATORS.split(str(raw).strip()):
        slug = slugify(part)
        if slug:
            segments.append(slug)
    return segments


def slugify(segment: str) -> str:
    text = _WHITESPACE.sub("-", segment.strip().lower())
    text = _SLUG_INVALID.sub("", text)
    return _REPEATED_DASH.sub("-", text).strip("-")
