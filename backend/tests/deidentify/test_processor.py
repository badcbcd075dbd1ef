from __future__ import annotations

import io

import pydicom
from pydicom.dataset import FileDataset, FileMetaDataset

import deidentify.processor as processor_module
from deidentify.config import RunContext, ScrambleKey, default_tag_policy
from deidentify.processor import BatchOutcome, ErrorLogEntry, RecordProcessor, format_error_log, process_batch


MR = "1.2.840.10008.5.1.4.1.1.4"
CT = "1.2.840.10008.5.1.4.1.1.2"


def _dicom_bytes(*, uid_suffix: str, sop_class_uid: str = MR) -> bytes:
    file_meta = FileMetaDataset()
    file_meta.MediaStorageSOPClassUID = sop_class_uid
    file_meta.MediaStorageSOPInstanceUID = f"1.2.826.0.1.3680043.2.1125.{uid_suffix}"
    file_meta.TransferSyntaxUID = pydicom.uid.ExplicitVRLittleEndian

    ds = FileDataset("memory", {}, file_meta=file_meta, preamble=b"\0" * 128)
    ds.SOPClassUID = sop_class_uid
    ds.SOPInstanceUID = file_meta.MediaStorageSOPInstanceUID
    ds.StudyInstanceUID = "1.2.3.4.5"
    ds.PatientID = "PATIENT1"
    ds.PatientName = "Test^Patient"
    ds.Modality = "MR"

    buffer = io.BytesIO()
    ds.save_as(buffer, enforce_file_format=True)
    return buffer.getvalue()


def _context(verbose: bool = False) -> RunContext:
    return RunContext(
        key=ScrambleKey(passphrase="secret"),
        policy=default_tag_policy(),
        allowed_sop_class_uids=frozenset({MR}),
        verbose=verbose,
    )


def test_process_batch_transforms_and_skips():
    records = [
        ("a/one.dcm", _dicom_bytes(uid_suffix="1")),
        ("a/two.dcm", _dicom_bytes(uid_suffix="2", sop_class_uid=CT)),
    ]

    outcome = process_batch(_context(), records)

    assert records == [None, None]
    ok, skipped = outcome.results
    assert ok.success and ok.data
    assert skipped.skipped and not skipped.success
    assert skipped.error_type == "SOPCLASSUID_FILTERED"
    assert outcome.skipped == 1
    assert [entry.path for entry in outcome.audit] == ["a/one.dcm"]

    written = pydicom.dcmread(io.BytesIO(ok.data))
    assert written.PatientID != "PATIENT1"
    assert written.file_meta.TransferSyntaxUID == pydicom.uid.ExplicitVRLittleEndian

    assert outcome.error_log.startswith("DICOM Processing Error Log")
    assert "a/two.dcm\tSOPCLASSUID_FILTERED" in outcome.error_log
    assert CT in outcome.error_log


def test_transform_failure_is_recorded(monkeypatch):
    def boom(self, source, rel_path):
        raise RuntimeError("policy exploded")

    monkeypatch.setattr(processor_module.PolicyEngine, "apply", boom)

    outcome = BatchOutcome()
    result = RecordProcessor(_context()).process("bad.dcm", _dicom_bytes(uid_suffix="3"), outcome)

    assert not result.success
    assert not result.skipped
    assert result.error_type == "TRANSFORM_ERROR"
    assert "policy exploded" in result.error
    assert outcome.errors[0].sop_class_uid == MR
    assert outcome.audit == []


def test_error_log_uses_placeholders():
    text = format_error_log([ErrorLogEntry("x.dcm", "DECODE_ERROR", "", None, "")])

    lines = text.splitlines()
    assert lines[0] == "DICOM Processing Error Log"
    assert lines[3] == "Filename\tError Type\tError Message\tSOPClassUID\tTimestamp"
    assert lines[5] == "x.dcm\tDECODE_ERROR\tN/A\tN/A\tN/A"
    assert format_error_log([]) == ""
