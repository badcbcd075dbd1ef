"""Clamp element values to the size and range contract of their VR."""

from __future__ import annotations

import logging
import re
from typing import Any, List, Optional, Tuple

import pydicom
from pydicom.dataelem import DataElement
from pydicom.multival import MultiValue

from .errors import ValidationOverflow
from .tags import format_tag


logger = logging.getLogger(__name__)


INTEGER_RANGES = {
    "US": (0, 65535),
    "SS": (-32768, 32767),
    "UL": (0, 4294967295),
    "SL": (-2147483648, 2147483647),
}

FLOAT_VRS = frozenset({"FL", "FD"})

VR_MAX_LENGTH = {
    "AE": 16,
    "AS": 4,
    "CS": 16,
    "DA": 8,
    "DS": 16,
    "DT": 26,
    "IS": 12,
    "LO": 64,
    "LT": 10240,
    "PN": 64,
    "SH": 16,
    "ST": 1024,
    "TM": 16,
    "UI": 64,
}

DEFAULT_MAX_LENGTH = 64

_INT_PREFIX = re.compile(r"^\s*([+-]?\d+)")
_FLOAT_PREFIX = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def max_length_for(vr: str) -> int:
    return VR_MAX_LENGTH.get(vr, DEFAULT_MAX_LENGTH)


# ---------------------------------------------------------------------------
# Scalar clamping
# ---------------------------------------------------------------------------


def _clamp_integer(value: Any, vr: str) -> Any:
    low, high = INTEGER_RANGES[vr]
    if isinstance(value, bool):
        value = int(value)
    if isinstance(value, (int, float)):
        number = int(value // 1)
    elif isinstance(value, str):
        match = _INT_PREFIX.match(value)
        number = int(match.group(1)) if match else 0
    else:
        return value
    return min(max(number, low), high)


def _clamp_float(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    match = _FLOAT_PREFIX.match(value)
    return float(match.group(1)) if match else 0.0


def _is_number(text: str) -> bool:
    try:
        float(text)
    except ValueError:
        return False
    return True


def _clamp_decimal_string(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, str):
        text = str(value)
        if "e" in text.lower():
            text = f"{float(value):.6f}".rstrip("0").rstrip(".")
    elif isinstance(value, str):
        text = value.strip()
    else:
        return value
    if text and not _is_number(text):
        return "0"
    return text[: VR_MAX_LENGTH["DS"]]


def _clamp_integer_string(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, str):
        text = str(int(value // 1))
    elif isinstance(value, str):
        text = value.strip()
        if text and not _is_number(text):
            return "0"
    else:
        return value
    return text[: VR_MAX_LENGTH["IS"]]


def clamp_value(value: Any, vr: str) -> Any:
    """Return *value* clamped to the contract of *vr* (single value)."""

    if value is None:
        return value
    if vr in INTEGER_RANGES:
        return _clamp_integer(value, vr)
    if vr in FLOAT_VRS:
        return _clamp_float(value)
    if vr == "DS":
        return _clamp_decimal_string(value)
    if vr == "IS":
        return _clamp_integer_string(value)
    if vr in VR_MAX_LENGTH:
        if isinstance(value, bytes):
            return value
        text = str(value)
        limit = VR_MAX_LENGTH[vr]
        return text[:limit] if len(text) > limit else value
    return value


def _differs(original: Any, clamped: Any, vr: str) -> bool:
    if vr in ("DS", "IS"):
        return isinstance(clamped, str) and str(original).strip() != clamped
    if vr in VR_MAX_LENGTH:
        return clamped is not original
    return clamped != original or type(clamped) is not type(original)


def _is_clamped_vr(vr: str) -> bool:
    return vr in INTEGER_RANGES or vr in FLOAT_VRS or vr in VR_MAX_LENGTH


def clamp_values(value: Any, vr: str) -> Tuple[Any, bool]:
    """Clamp a single or multi-valued element value.

    Returns the clamped value and whether anything had to change.
    """

    if value is None or not _is_clamped_vr(vr):
        return value, False
    if isinstance(value, str) and not value:
        return value, False
    if isinstance(value, (MultiValue, list, tuple)):
        items: List[Any] = []
        changed = False
        for item in value:
            clamped = clamp_value(item, vr)
            changed = changed or _differs(item, clamped, vr)
            items.append(clamped)
        return (items if changed else value), changed
    clamped = clamp_value(value, vr)
    if _differs(value, clamped, vr):
        return clamped, True
    return value, False


def clamp_element(element: DataElement) -> Optional[ValidationOverflow]:
    """Clamp *element* in place; report the change when one was needed."""

    if element.VR == "SQ":
        return None
    original = element.value
    clamped, changed = clamp_values(original, element.VR)
    if not changed:
        return None
    element.value = clamped
    overflow = ValidationOverflow(format_tag(element.tag), element.VR, original, clamped)
    logger.debug("Clamped %s", overflow)
    return overflow


def validate_fields(dataset: pydicom.Dataset) -> List[ValidationOverflow]:
    """Final sweep over every top-level element of *dataset* and its file meta."""

    overflows: List[ValidationOverflow] = []
    groups = [dataset]
    file_meta = getattr(dataset, "file_meta", None)
    if file_meta is not None:
        groups.append(file_meta)
    for group in groups:
        for element in group:
            overflow = clamp_element(element)
            if overflow is not None:
                overflows.append(overflow)
    return overflows


__all__ = [
    "INTEGER_RANGES",
    "VR_MAX_LENGTH",
    "clamp_element",
    "clamp_value",
    "clamp_values",
    "max_length_for",
    "validate_fields",
]
