"""Merge batch outcomes into run counters, audit table and text log."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import polars as pl

from .config import AuditExportConfig
from .errors import DispatchError
from .exporter import build_audit_dataframe, export_audit
from .policy import AuditEntry, TraceEntry
from .processor import BatchOutcome


logger = logging.getLogger(__name__)


# Progress reporting callback: done_records, total_records
ProgressCallback = Callable[[int, int], None]

LOG_FILENAME = "output.log"


@dataclass(frozen=True)
class RunCounters:
    processed: int
    skipped: int
    failed: int

    @property
    def done(self) -> int:
        return self.processed + self.skipped + self.failed


@dataclass
class FinalizeReport:
    audit_path: Path
    log_path: Path
    audit_rows: int


class ResultAggregator:
    """Thread-safe sink for batch outcomes arriving in any order."""

    def __init__(
        self,
        total: int,
        *,
        verbose: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        self._total = total
        self._verbose = verbose
        self._progress = progress
        self._lock = threading.Lock()
        self._processed = 0
        self._skipped = 0
        self._failed = 0
        self._audit: List[AuditEntry] = []
        self._trace: List[TraceEntry] = []
        self._error_logs: List[str] = []
        self._failures: List[Tuple[str, str]] = []
        self._dispatch_errors: List[DispatchError] = []
        self._finalized = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def total(self) -> int:
        return self._total

    @property
    def counters(self) -> RunCounters:
        with self._lock:
            return RunCounters(self._processed, self._skipped, self._failed)

    @property
    def failures(self) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._failures)

    @property
    def dispatch_errors(self) -> List[DispatchError]:
        with self._lock:
            return list(self._dispatch_errors)

    @property
    def audit_entries(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._audit)

    def consume(self, outcome: BatchOutcome) -> None:
        with self._lock:
            for result in outcome.results:
                if result.success:
                    self._processed += 1
                elif result.skipped:
                    self._skipped += 1
                else:
                    self._failed += 1
                    self._failures.append((result.path, result.error or "unknown error"))
            self._audit.extend(outcome.audit)
            if self._verbose:
                self._trace.extend(outcome.trace)
            if outcome.error_log:
                self._error_logs.append(outcome.error_log)
            done = self._processed + self._skipped + self._failed
        self._report(done)

    def record_dispatch_failure(self, error: DispatchError) -> None:
        with self._lock:
            self._failed += len(error.paths)
            self._failures.extend((path, str(error.cause)) for path in error.paths)
            self._dispatch_errors.append(error)
            done = self._processed + self._skipped + self._failed
        logger.error("%s", error)
        self._report(done)

    def build_audit_dataframe(self) -> pl.DataFrame:
        with self._lock:
            entries = list(self._audit)
        return build_audit_dataframe(entries)

    def build_log_text(self) -> str:
        with self._lock:
            counters = RunCounters(self._processed, self._skipped, self._failed)
            error_logs = list(self._error_logs)
            failures = list(self._failures)
            dispatch_errors = list(self._dispatch_errors)
            trace = list(self._trace)

        parts: List[str] = []
        summary = ["DICOM Processing Summary", "=" * 30, ""]
        summary.append(f"Total files: {self._total}")
        summary.append(f"Processed: {counters.processed}")
        summary.append(f"Skipped: {counters.skipped}")
        summary.append(f"Failed: {counters.failed}")
        summary.append("")
        if counters.skipped:
            summary.append(f"{counters.skipped} files were skipped due to SOPClassUID filtering.")
        if failures:
            summary.append(f"{len(failures)} files failed to process:")
            summary.extend(f"- {path}: {reason}" for path, reason in failures)
        parts.append("\n".join(summary).rstrip() + "\n")

        if error_logs:
            parts.append("\n\n".join(log.rstrip("\n") for log in error_logs) + "\n")

        if dispatch_errors:
            lines = ["Dispatch Errors", "=" * 30, ""]
            for error in dispatch_errors:
                lines.append(f"Unit {error.unit_id}: {error.cause}")
                lines.extend(f"- {path}" for path in error.paths)
            parts.append("\n".join(lines) + "\n")

        if self._verbose and trace:
            lines = ["Detailed Tag Processing Log", "=" * 40, ""]
            for entry in trace:
                lines.append(f"File: {entry.path}")
                lines.append(f"Tag: {entry.tag} ({entry.tag_name})")
                lines.append(f"Original Value: {entry.original_value or '[EMPTY/MISSING]'}")
                lines.append(f"Action: {entry.action}")
                lines.append(f"New Value: {entry.new_value or '[DELETED/UNCHANGED]'}")
                lines.append(f"Time: {entry.timestamp}")
                lines.append("-" * 50)
            parts.append("\n".join(lines) + "\n")

        return "\n\n".join(parts)

    def finalize(self, output_root: Path, audit_export: AuditExportConfig) -> FinalizeReport:
        """Write the audit table and ``output.log``; allowed exactly once."""

        with self._lock:
            if self._finalized:
                raise RuntimeError("Result aggregator already finalized")
            self._finalized = True

        output_root.mkdir(parents=True, exist_ok=True)
        df = self.build_audit_dataframe()
        audit_path = export_audit(df, output_root, audit_export)

        log_path = output_root / LOG_FILENAME
        log_path.write_text(self.build_log_text(), encoding="utf-8")

        counters = self.counters
        logger.info(
            f"Finalized run: {counters.processed} processed, {counters.skipped} skipped, "
            f"{counters.failed} failed of {self._total}"
        )
        return FinalizeReport(audit_path=audit_path, log_path=log_path, audit_rows=df.height)

    @property
    def finalized(self) -> bool:
        with self._lock:
            return self._finalized

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _report(self, done: int) -> None:
        if self._progress is None:
            return
        try:
            self._progress(done, self._total)
        except Exception:  # pragma: no cover
            logger.exception("Progress callback failed")


__all__ = ["FinalizeReport", "ProgressCallback", "ResultAggregator", "RunCounters"]
