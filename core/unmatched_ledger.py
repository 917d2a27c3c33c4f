"""
unmatched_ledger.py
--------------------
Audit trail of raw identifiers that no override or strategy resolved.

One ledger per run. Entries are deduplicated by (source, identifier): the
first record seen keeps its metrics bag, later duplicates only bump a
counter. The ledger is handed to the result store in one commit at the
end of the run; the store merges it with earlier runs' entries.
"""

import logging
from datetime import datetime
from typing import Dict, List, Tuple

import pandas as pd

from core.models import RawExternalRecord, UnmatchedRecord
from core.record_parser import metrics_to_dict

logger = logging.getLogger(__name__)

LEDGER_COLUMNS = [
    "tenant_id", "source", "identifier", "reason", "attempts",
    "occurrences", "run_timestamp", "metrics",
]


class UnmatchedLedger:

    def __init__(self, tenant_id: str, run_timestamp: datetime):
        self.tenant_id = tenant_id
        self.run_timestamp = run_timestamp
        self._entries: Dict[Tuple[str, str], UnmatchedRecord] = {}
        self._occurrences: Dict[Tuple[str, str], int] = {}

    def add(self, record: RawExternalRecord, reason: str) -> None:
        key = (record.source, record.identifier)
        if key in self._entries:
            self._occurrences[key] += 1
            return
        self._entries[key] = UnmatchedRecord(
            source=record.source,
            identifier=record.identifier,
            metrics=metrics_to_dict(record),
            run_timestamp=self.run_timestamp,
            tenant_id=self.tenant_id,
            reason=reason,
        )
        self._occurrences[key] = 1

    def entries(self) -> List[UnmatchedRecord]:
        return [self._entries[k] for k in sorted(self._entries)]

    def count_by_reason(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for entry in self._entries.values():
            counts[entry.reason] = counts.get(entry.reason, 0) + 1
        return counts

    def to_frame(self) -> pd.DataFrame:
        if not self._entries:
            return pd.DataFrame(columns=LEDGER_COLUMNS)
        rows = []
        for key in sorted(self._entries):
            entry = self._entries[key]
            rows.append({
                "tenant_id": entry.tenant_id,
                "source": entry.source,
                "identifier": entry.identifier,
                "reason": entry.reason,
                "attempts": entry.attempts,
                "occurrences": self._occurrences[key],
                "run_timestamp": entry.run_timestamp.isoformat(),
                "metrics": " | ".join(f"{k}={v}" for k, v in sorted(entry.metrics.items())),
            })
        return pd.DataFrame(rows, columns=LEDGER_COLUMNS)

    def __len__(self) -> int:
        return len(self._entries)
