"""SOP class acceptance filter applied before any transform runs."""

from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass
from typing import Collection, Optional

import pydicom

from .errors import AcceptanceError
from .tags import MEDIA_STORAGE_SOP_CLASS_UID_TAG, SOP_CLASS_UID_TAG


logger = logging.getLogger(__name__)


PREAMBLE_LENGTH = 128
MAGIC = b"DICM"
HEADER_LENGTH = PREAMBLE_LENGTH + len(MAGIC)
HEURISTIC_SCAN_LIMIT = 1024 * 1024

_TAG_LITTLE_ENDIAN = b"\x08\x00\x16\x00"
_TAG_BIG_ENDIAN = b"\x00\x08\x00\x16"
_UID_TEXT = re.compile(r"^\d+(?:\.\d+)+$")
_DICOM_UID_PATTERN = re.compile(r"1\.2\.840\.10008(?:\.[0-9]+)+")


def is_dicom_candidate(header: bytes) -> bool:
    """True when the 132-byte header carries the ``DICM`` marker."""

    return len(header) >= HEADER_LENGTH and header[PREAMBLE_LENGTH:HEADER_LENGTH] == MAGIC


@dataclass(frozen=True)
class AcceptanceDecision:
    sop_class_uid: str
    heuristic: bool = False


# ---------------------------------------------------------------------------
# Heuristic byte scan
# ---------------------------------------------------------------------------


def _read_ascii(raw: bytes, start: int, length: int) -> str:
    chunk = raw[start : start + length]
    nul = chunk.find(b"\x00")
    if nul >= 0:
        chunk = chunk[:nul]
    return "".join(chr(byte) for byte in chunk if 32 <= byte <= 126).strip()


def _uid_at(raw: bytes, index: int, little_endian: bool) -> Optional[str]:
    order = "little" if little_endian else "big"
    size = len(raw)

    # Explicit VR: 2-byte VR code followed by a 2-byte length
    if raw[index + 4 : index + 6] == b"UI":
        length = int.from_bytes(raw[index + 6 : index + 8], order)
        if 0 < length < 128 and index + 8 + length <= size:
            text = _read_ascii(raw, index + 8, length)
            if _UID_TEXT.match(text):
                return text

    # Implicit VR: 4-byte length
    length = int.from_bytes(raw[index + 4 : index + 8], order)
    if 0 < length < 128 and index + 8 + length <= size:
        text = _read_ascii(raw, index + 8, length)
        if _UID_TEXT.match(text):
            return text
    return None


def _scan_tag_positions(raw: bytes) -> Optional[str]:
    next_le = raw.find(_TAG_LITTLE_ENDIAN)
    next_be = raw.find(_TAG_BIG_ENDIAN)
    while next_le >= 0 or next_be >= 0:
        if next_le >= 0 and (next_be < 0 or next_le <= next_be):
            index, little_endian = next_le, True
            next_le = raw.find(_TAG_LITTLE_ENDIAN, index + 1)
        else:
            index, little_endian = next_be, False
            next_be = raw.find(_TAG_BIG_ENDIAN, index + 1)
        if index + 8 > len(raw):
            continue
        uid = _uid_at(raw, index, little_endian)
        if uid:
            return uid
    return None


def heuristic_sop_class_uid(raw: bytes, allowed: Collection[str] = ()) -> Optional[str]:
    """Recover a SOP class UID from bytes that did not decode cleanly."""

    uid = _scan_tag_positions(raw)
    if uid:
        return uid

    text = raw[:HEURISTIC_SCAN_LIMIT].decode("latin-1")
    first: Optional[str] = None
    for match in _DICOM_UID_PATTERN.finditer(text):
        candidate = match.group(0)
        if candidate in allowed:
            return candidate
        if first is None:
            first = candidate
    return first


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _structured_sop_class_uid(raw: bytes) -> Optional[str]:
    ds = pydicom.dcmread(
        io.BytesIO(raw),
        force=True,
        stop_before_pixels=True,
        specific_tags=[SOP_CLASS_UID_TAG],
    )
    element = ds.get(SOP_CLASS_UID_TAG)
    if element is None or not element.value:
        element = ds.file_meta.get(MEDIA_STORAGE_SOP_CLASS_UID_TAG) if ds.file_meta else None
    if element is None or not element.value:
        return None
    return str(element.value).strip() or None


def _heuristic_decision(raw: bytes, allowed: Collection[str]) -> Optional[AcceptanceDecision]:
    fallback = heuristic_sop_class_uid(raw, allowed)
    if not fallback:
        return None
    if fallback not in allowed:
        raise AcceptanceError(
            f"SOPClassUID {fallback} not in allowed list (heuristic)",
            sop_class_uid=fallback,
        )
    return AcceptanceDecision(fallback, heuristic=True)


def classify_record(raw: bytes, allowed: Collection[str]) -> AcceptanceDecision:
    """Decide whether *raw* belongs to an allowed SOP class.

    Raises :class:`AcceptanceError` when the record must be skipped.
    """

    try:
        sop_class_uid = _structured_sop_class_uid(raw)
    except Exception as exc:
        logger.debug("Structured SOP class read failed, trying heuristic scan: %s", exc)
        decision = _heuristic_decision(raw, allowed)
        if decision is None:
            raise AcceptanceError(str(exc) or "Unable to read SOPClassUID", error_type="SOPCLASSUID_PARSE_ERROR")
        return decision

    if not sop_class_uid:
        # A damaged meta group can swallow the dataset without raising
        decision = _heuristic_decision(raw, allowed)
        if decision is not None:
            return decision
        raise AcceptanceError(
            "File does not contain SOPClassUID tag (00080016)",
            error_type="MISSING_SOPCLASSUID",
        )
    if sop_class_uid not in allowed:
        raise AcceptanceError(
            f"SOPClassUID {sop_class_uid} not in allowed list",
            sop_class_uid=sop_class_uid,
        )
    return AcceptanceDecision(sop_class_uid)


__all__ = ["AcceptanceDecision", "classify_record", "heuristic_sop_class_uid", "is_dicom_candidate"]
