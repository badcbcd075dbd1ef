"""Keyed deterministic scrambling of DICOM identifiers, dates, times and text."""

from __future__ import annotations

import hashlib
from datetime import date, timedelta
from typing import Optional

from .tags import TransformKind


UID_PREFIX = "1.2.826.0.1.3680043.8.498."
UID_MAX_LENGTH = 64
TEXT_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
MIN_TEXT_LENGTH = 8
DATE_OFFSET_RANGE_DAYS = 365 * 20
TIME_OFFSET_RANGE_SECONDS = 3600
SECONDS_PER_DAY = 86400
TIME_MAX_LENGTH = 16
SEED_CONTEXT = "studyuid:"


class Scrambler:
    """SHA-256 based scrambler bound to one passphrase (and optional salt).

    Every method is a pure function of the key and its arguments, so the same
    patient identifier scrambles identically in every record of a run.
    """

    def __init__(self, passphrase: str, salt: str = "") -> None:
        if not passphrase:
            raise ValueError("passphrase must not be empty")
        self._secret = passphrase + (salt or "")

    # ------------------------------------------------------------------
    # Digest helpers
    # ------------------------------------------------------------------

    def _digest(self, value: str) -> bytes:
        return hashlib.sha256((value + self._secret).encode("utf-8")).digest()

    @staticmethod
    def _numeric(digest: bytes) -> int:
        return int.from_bytes(digest[:8], "big")

    @staticmethod
    def _alphanumeric(digest: bytes, length: int) -> str:
        return "".join(TEXT_ALPHABET[byte % len(TEXT_ALPHABET)] for byte in digest[:length])

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def scramble_identifier(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        suffix = str(self._numeric(self._digest(value)))
        return (UID_PREFIX + suffix)[:UID_MAX_LENGTH]

    def scramble_text(self, value: Optional[str], max_length: int = 32) -> Optional[str]:
        if not value:
            return value
        length = min(max_length, max(MIN_TEXT_LENGTH, len(value)))
        return self._alphanumeric(self._digest(value), length)

    def scramble_from_seed(self, seed: Optional[str], max_length: int = 16) -> str:
        """Derive a placeholder from an already-scrambled related value.

        The seed is prefixed with its own context so the placeholder never
        equals a direct text scramble of the same string.
        """
        if not seed:
            return ""
        return self._alphanumeric(self._digest(SEED_CONTEXT + seed), max_length)

    def scramble_date(self, value: Optional[str], context_key: Optional[str] = None) -> Optional[str]:
        if not value or len(value) != 8 or not value.isdigit():
            return value
        try:
            original = date(int(value[:4]), int(value[4:6]), int(value[6:]))
        except ValueError:
            return value
        offset = self._numeric(self._digest((context_key or "global") + "date_offset")) % DATE_OFFSET_RANGE_DAYS
        try:
            shifted = original + timedelta(days=offset)
        except OverflowError:
            return value
        return shifted.strftime("%Y%m%d")[:8]

    def scramble_time(self, value: Optional[str]) -> Optional[str]:
        if not value or len(value) < 6:
            return value
        whole, _, fraction = value.partition(".")
        if len(whole) < 6 or not whole[:6].isdigit():
            return value
        offset = self._numeric(self._digest(value)) % TIME_OFFSET_RANGE_SECONDS
        hours, minutes, seconds = int(whole[:2]), int(whole[2:4]), int(whole[4:6])
        total = (hours * 3600 + minutes * 60 + seconds + offset) % SECONDS_PER_DAY
        rendered = f"{total // 3600:02d}{(total % 3600) // 60:02d}{total % 60:02d}"
        if "." in value:
            return f"{rendered}.{fraction}"[: min(TIME_MAX_LENGTH, len(value))]
        return rendered

    def scramble(
        self,
        kind: TransformKind,
        value: Optional[str],
        *,
        max_length: int = 32,
        context_key: Optional[str] = None,
    ) -> Optional[str]:
        """Apply the scramble matching *kind*; ``NONE`` falls back to text."""

        if kind == TransformKind.UID:
            return self.scramble_identifier(value)
        if kind == TransformKind.DATE:
            return self.scramble_date(value, context_key)
        if kind == TransformKind.TIME:
            return self.scramble_time(value)
        if kind in (TransformKind.TEXT, TransformKind.NONE):
            return self.scramble_text(value, max_length)
        raise ValueError(f"Unsupported transform kind: {kind!r}")


__all__ = ["Scrambler", "UID_PREFIX"]
