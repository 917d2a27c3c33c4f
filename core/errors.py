"""
errors.py
----------
Error taxonomy for a reconciliation run.

    - MalformedInputError: one record failed shape validation. Skipped and
      counted; never aborts a run.
    - SourceUnavailableError: a source provider failed. That source contributes
      zero records; sibling sources continue.
    - InconsistentCatalogError: the category tree violates a structural
      invariant. Fatal for the run.
    - RunCancelledError: the run was cancelled at a phase boundary.

Unresolved identifiers are not errors; they go to the Unmatched Ledger.
Zero-denominator cases in scoring never raise; they resolve to fallbacks.
"""


class MalformedInputError(ValueError):
    """A raw record or catalog row failed basic shape validation."""


class SourceUnavailableError(RuntimeError):
    """An upstream source provider failed to return records."""

    def __init__(self, source: str, reason: str = ""):
        self.source = source
        self.reason = reason
        super().__init__(f"Source '{source}' unavailable: {reason}" if reason else f"Source '{source}' unavailable")


class InconsistentCatalogError(RuntimeError):
    """
    The category tree is not a well-formed forest.

    Carries the offending node ids so the catalog owner can fix them.
    """

    def __init__(self, message: str, node_ids: list[str]):
        self.node_ids = sorted(set(node_ids))
        super().__init__(f"{message}: {self.node_ids}")


class RunCancelledError(RuntimeError):
    """Raised when a run's cancel flag is observed at a phase boundary."""
