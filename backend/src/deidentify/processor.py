"""Per-batch record processing executed inside an execution unit."""

from __future__ import annotations

import io
import logging
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

import pydicom

from .acceptance import classify_record
from .config import RunContext
from .errors import AcceptanceError, DecodeError, DeidentifyError, EncodeError, TransformError
from .policy import AuditEntry, PolicyEngine, TraceEntry
from .tags import SOP_CLASS_UID_TAG, format_tag


warnings.filterwarnings(
    "ignore",
    message=r"The value length .* exceeds the maximum length .* allowed for VR",
    module="pydicom",
)
warnings.filterwarnings(
    "ignore",
    message=r"Incorrect value for Specific Character Set",
    module="pydicom",
)


logger = logging.getLogger(__name__)


ERROR_LOG_TITLE = "DICOM Processing Error Log"
ERROR_LOG_HEADERS = ("Filename", "Error Type", "Error Message", "SOPClassUID", "Timestamp")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ProcessingResult:
    path: str
    success: bool
    error: Optional[str] = None
    error_type: Optional[str] = None
    skipped: bool = False
    # Transformed bytes; dropped by the dispatcher right after persistence
    data: Optional[bytes] = None


@dataclass
class ErrorLogEntry:
    path: str
    error_type: str
    message: str
    sop_class_uid: Optional[str] = None
    timestamp: str = field(default_factory=_now)


@dataclass
class BatchOutcome:
    results: List[ProcessingResult] = field(default_factory=list)
    audit: List[AuditEntry] = field(default_factory=list)
    trace: List[TraceEntry] = field(default_factory=list)
    errors: List[ErrorLogEntry] = field(default_factory=list)
    error_log: str = ""
    skipped: int = 0


def format_error_log(entries: Sequence[ErrorLogEntry]) -> str:
    """Render error entries as the tab-separated error log fragment."""

    if not entries:
        return ""
    lines = [ERROR_LOG_TITLE, "=" * 50, "", "\t".join(ERROR_LOG_HEADERS), "-" * 100]
    for entry in entries:
        row = (
            entry.path or "N/A",
            entry.error_type or "N/A",
            entry.message or "N/A",
            entry.sop_class_uid or "N/A",
            entry.timestamp or "N/A",
        )
        lines.append("\t".join(row))
    return "\n".join(lines) + "\n"


class RecordProcessor:
    """Run acceptance, decode, policy and encode for single records."""

    def __init__(self, context: RunContext) -> None:
        self._context = context
        self._allowed = context.allowed_sop_class_uids
        self._engine = PolicyEngine(context)

    def process(
        self, rel_path: str, raw: bytes, outcome: BatchOutcome
    ) -> ProcessingResult:
        try:
            decision = classify_record(raw, self._allowed)
        except AcceptanceError as exc:
            logger.debug("Skipping %s: %s", rel_path, exc)
            outcome.errors.append(ErrorLogEntry(rel_path, exc.error_type, str(exc), exc.sop_class_uid))
            outcome.skipped += 1
            return ProcessingResult(path=rel_path, success=False, error=str(exc), error_type=exc.error_type, skipped=True)

        if decision.heuristic and self._context.verbose:
            outcome.trace.append(
                TraceEntry(
                    path=rel_path,
                    tag=format_tag(SOP_CLASS_UID_TAG),
                    tag_name="SOPClassUID",
                    original_value="[PARSE FAILED]",
                    action="HEURISTIC_PARSE",
                    new_value=decision.sop_class_uid,
                    timestamp=_now(),
                )
            )

        try:
            data, audit, trace = self._transform(rel_path, raw)
        except DeidentifyError as exc:
            message = str(exc)
            error_type = exc.error_type
        except Exception as exc:
            logger.exception("Unexpected failure while processing %s", rel_path)
            message = str(exc) or exc.__class__.__name__
            error_type = "PROCESSING_ERROR"
        else:
            outcome.audit.append(audit)
            outcome.trace.extend(trace)
            return ProcessingResult(path=rel_path, success=True, data=data)

        logger.warning("Failed to process %s: %s", rel_path, message)
        outcome.errors.append(ErrorLogEntry(rel_path, error_type, message, decision.sop_class_uid))
        return ProcessingResult(path=rel_path, success=False, error=message, error_type=error_type)

    def _transform(self, rel_path: str, raw: bytes) -> Tuple[bytes, AuditEntry, List[TraceEntry]]:
        try:
            source = pydicom.dcmread(io.BytesIO(raw), force=True)
        except Exception as exc:
            raise DecodeError(f"Failed to decode DICOM: {exc}") from exc

        try:
            transformed = self._engine.apply(source, rel_path)
        except Exception as exc:
            raise TransformError(f"Failed to apply tag policy: {exc}") from exc
        del source

        buffer = io.BytesIO()
        try:
            pydicom.dcmwrite(buffer, transformed.dataset, enforce_file_format=True)
        except Exception as exc:
            raise EncodeError(f"Failed to write DICOM file: {exc}") from exc
        data = buffer.getvalue()
        if not data:
            raise EncodeError("Failed to write DICOM file: write operation produced empty buffer")
        return data, transformed.audit, transformed.trace


def process_batch(context: RunContext, records: List[Optional[Tuple[str, bytes]]]) -> BatchOutcome:
    """Process one batch of ``(relative path, raw bytes)`` records.

    Module-level so it can be submitted to a process pool. Each slot of
    *records* is cleared once handled so raw bytes are released early.
    """

    processor = RecordProcessor(context)
    outcome = BatchOutcome()
    for index in range(len(records)):
        item = records[index]
        records[index] = None
        if item is None:
            continue
        rel_path, raw = item
        del item
        outcome.results.append(processor.process(rel_path, raw, outcome))
        del raw
    outcome.error_log = format_error_log(outcome.errors)
    return outcome


__all__ = [
    "BatchOutcome",
    "ErrorLogEntry",
    "ProcessingResult",
    "RecordProcessor",
    "format_error_log",
    "process_batch",
]
