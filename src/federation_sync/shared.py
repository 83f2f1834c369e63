"""federation_sync.shared

Shared utilities used by every sync mode.
Includes the record-level exceptions, RejectWriter, RunCounters and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RecordError(Exception):
    """A problem confined to one member; the run continues without it.

    Carries enough context (name, external id) for manual resolution.
    """

    reason = "record_error"

    def __init__(
        self,
        message: str,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        external_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.first_name = first_name
        self.last_name = last_name
        self.external_id = external_id

    def reject_row(self) -> dict[str, str]:
        return {
            "external_id": self.external_id or "",
            "first_name": self.first_name or "",
            "last_name": self.last_name or "",
            "detail": str(self),
        }


class AmbiguousMatchError(RecordError):
    """Raised when a name + date-of-birth lookup matches multiple store records."""

    reason = "multiple_users_found"


class AlreadyLinkedError(RecordError):
    """Raised when the only name + date-of-birth match is linked to another platform user."""

    reason = "user_already_exists"


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Rejected members as CSV, one row per RecordError.

    The file is only created once the first member is rejected.
    """

    FIELDS = ("external_id", "first_name", "last_name", "detail", "_reject_reason")

    def __init__(self, path: Path) -> None:
        self.path = path
        self.count = 0
        self._file: TextIO | None = None
        self._csv: csv.DictWriter | None = None

    def reject(self, exc: RecordError) -> None:
        if self._csv is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = self.path.open("w", newline="", encoding="utf-8")
            self._csv = csv.DictWriter(self._file, fieldnames=self.FIELDS)
            self._csv.writeheader()
        self._csv.writerow({**exc.reject_row(), "_reject_reason": exc.reason})
        self._file.flush()
        self.count += 1

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Fetch / reconcile
    members_fetched: int = 0
    members_rejected: int = 0
    unknown_products: int = 0
    # Store sync
    records_read: int = 0
    records_unchanged: int = 0
    metadata_updated: int = 0
    users_linked: int = 0
    users_created: int = 0
    ambiguous_matches: int = 0
    already_linked: int = 0
    # Competition results
    result_pages_fetched: int = 0
    result_pages_failed: int = 0
    # INSEE backfill
    cities_looked_up: int = 0
    insee_filled: int = 0
    insee_unresolved: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    extra: dict[str, Any],
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **extra,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
