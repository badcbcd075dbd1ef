"""Exceptions raised by the de-identification pipeline."""

from __future__ import annotations

from typing import Optional, Sequence


class DeidentifyError(RuntimeError):
    """Base error carrying the type code written to the error log."""

    error_type = "PROCESSING_ERROR"

    def __init__(self, message: str, *, error_type: Optional[str] = None) -> None:
        super().__init__(message)
        if error_type:
            self.error_type = error_type


class AcceptanceError(DeidentifyError):
    """Raised when a record's SOP class is missing, unreadable or not allowed."""

    error_type = "SOPCLASSUID_FILTERED"

    def __init__(
        self,
        message: str,
        *,
        error_type: Optional[str] = None,
        sop_class_uid: Optional[str] = None,
    ) -> None:
        super().__init__(message, error_type=error_type)
        self.sop_class_uid = sop_class_uid


class DecodeError(DeidentifyError):
    error_type = "DECODE_ERROR"


class TransformError(DeidentifyError):
    error_type = "TRANSFORM_ERROR"


class EncodeError(DeidentifyError):
    error_type = "WRITE_ERROR"


class PersistError(DeidentifyError):
    error_type = "WRITE_ERROR"


class DispatchError(DeidentifyError):
    """A batch could not be executed as a whole; every record in it failed."""

    error_type = "WORKER_ERROR"

    def __init__(self, unit_id: int, paths: Sequence[str], cause: BaseException) -> None:
        super().__init__(f"Batch of {len(paths)} record(s) on unit {unit_id} failed: {cause}")
        self.unit_id = unit_id
        self.paths = list(paths)
        self.cause = cause


class ValidationOverflow:
    """Non-fatal record of a value clamped to its VR contract.

    Collected by the policy engine rather than raised.
    """

    __slots__ = ("tag", "vr", "original", "clamped")

    def __init__(self, tag: str, vr: str, original: object, clamped: object) -> None:
        self.tag = tag
        self.vr = vr
        self.original = original
        self.clamped = clamped

    def __repr__(self) -> str:
        return f"ValidationOverflow({self.tag} {self.vr}: {self.original!r} -> {self.clamped!r})"


__all__ = [
    "AcceptanceError",
    "DecodeError",
    "DeidentifyError",
    "DispatchError",
    "EncodeError",
    "PersistError",
    "TransformError",
    "ValidationOverflow",
]
