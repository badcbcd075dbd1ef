"""Audit export utilities."""

from __future__ import annotations

import io
from pathlib import Path
from typing import Iterable

import polars as pl
from openpyxl import Workbook
import msoffcrypto

from .config import AuditExportConfig, AuditExportFormat
from .policy import AuditEntry


AUDIT_COLUMNS = [
    "Filename",
    "Original Study Instance UID",
    "Scrambled Study Instance UID",
    "Original Accession",
    "Scrambled Accession",
    "Original Patient ID",
    "Scrambled Patient ID",
]


def build_audit_dataframe(entries: Iterable[AuditEntry]) -> pl.DataFrame:
    """One row per transformed record; the header exists even with no rows."""

    rows = [
        {
            "Filename": entry.path,
            "Original Study Instance UID": entry.original_study_uid,
            "Scrambled Study Instance UID": entry.scrambled_study_uid,
            "Original Accession": entry.original_accession,
            "Scrambled Accession": entry.scrambled_accession,
            "Original Patient ID": entry.original_patient_id,
            "Scrambled Patient ID": entry.scrambled_patient_id,
        }
        for entry in entries
    ]
    schema = {col: pl.Utf8 for col in AUDIT_COLUMNS}
    return pl.DataFrame(rows, schema=schema)


def export_csv(df: pl.DataFrame, path: Path) -> Path:
    """Export dataframe to CSV."""
    path.parent.mkdir(parents=True, exist_ok=True)
    df.write_csv(path)
    return path


def export_encrypted_excel(df: pl.DataFrame, path: Path, password: str) -> Path:
    """Export dataframe to password-protected Excel."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Audit"

    ws.append(df.columns)
    for row in df.iter_rows():
        ws.append(list(row))

    buffer = io.BytesIO()
    wb.save(buffer)
    buffer.seek(0)

    encrypted = io.BytesIO()
    office_file = msoffcrypto.OfficeFile(buffer)
    office_file.encrypt(password, encrypted)

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as fh:
        fh.write(encrypted.getvalue())
    return path


def export_audit(df: pl.DataFrame, output_root: Path, config: AuditExportConfig) -> Path:
    destination = output_root / config.target_name()
    if config.format == AuditExportFormat.ENCRYPTED_EXCEL:
        return export_encrypted_excel(df, destination, config.excel_password or "")
    return export_csv(df, destination)


__all__ = ["AUDIT_COLUMNS", "build_audit_dataframe", "export_audit", "export_csv", "export_encrypted_excel"]
