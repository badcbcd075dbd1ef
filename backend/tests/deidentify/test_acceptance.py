import io

import pydicom
import pytest
from pydicom.dataset import Dataset, FileDataset, FileMetaDataset

from deidentify.acceptance import classify_record, heuristic_sop_class_uid, is_dicom_candidate
from deidentify.errors import AcceptanceError


MR = "1.2.840.10008.5.1.4.1.1.4"
CT = "1.2.840.10008.5.1.4.1.1.2"


def _dicom_bytes(sop_class_uid: str = MR) -> bytes:
    file_meta = FileMetaDataset()
    file_meta.MediaStorageSOPClassUID = sop_class_uid
    file_meta.MediaStorageSOPInstanceUID = "1.2.826.0.1.3680043.2.1125.1"
    file_meta.TransferSyntaxUID = pydicom.uid.ImplicitVRLittleEndian

    ds = FileDataset("memory", {}, file_meta=file_meta, preamble=b"\0" * 128)
    ds.SOPClassUID = sop_class_uid
    ds.SOPInstanceUID = file_meta.MediaStorageSOPInstanceUID
    ds.PatientID = "PATIENT1"
    ds.Modality = "MR"

    buffer = io.BytesIO()
    ds.save_as(buffer, enforce_file_format=True)
    return buffer.getvalue()


def test_magic_bytes():
    assert is_dicom_candidate(b"\0" * 128 + b"DICM")
    assert is_dicom_candidate(_dicom_bytes()[:132])
    assert not is_dicom_candidate(b"\0" * 128 + b"NOPE")
    assert not is_dicom_candidate(b"DICM")


def test_allowed_record_is_accepted():
    decision = classify_record(_dicom_bytes(), {MR})

    assert decision.sop_class_uid == MR
    assert decision.heuristic is False


def test_disallowed_record_is_filtered():
    with pytest.raises(AcceptanceError) as excinfo:
        classify_record(_dicom_bytes(CT), {MR})

    assert excinfo.value.error_type == "SOPCLASSUID_FILTERED"
    assert excinfo.value.sop_class_uid == CT
    assert "not in allowed list" in str(excinfo.value)


def test_missing_sop_class_is_reported():
    ds = Dataset()
    ds.PatientID = "PATIENT1"
    buffer = io.BytesIO()
    pydicom.dcmwrite(buffer, ds, implicit_vr=True, little_endian=True)

    with pytest.raises(AcceptanceError) as excinfo:
        classify_record(buffer.getvalue(), {MR})

    assert excinfo.value.error_type == "MISSING_SOPCLASSUID"


def _damaged_meta_record(sop_class_uid: str) -> bytes:
    uid = sop_class_uid.encode("ascii")
    if len(uid) % 2:
        uid += b"\0"
    # (0002,0000) UL claiming 0xFFFF bytes swallows the whole dataset
    meta = b"\x02\x00\x00\x00UL\xff\xff"
    element = b"\x08\x00\x16\x00" + len(uid).to_bytes(4, "little") + uid
    return b"\0" * 128 + b"DICM" + meta + element


def test_damaged_meta_group_falls_back_to_heuristic():
    decision = classify_record(_damaged_meta_record(MR), {MR})

    assert decision.sop_class_uid == MR
    assert decision.heuristic is True


def test_damaged_meta_group_with_disallowed_class_is_filtered():
    with pytest.raises(AcceptanceError) as excinfo:
        classify_record(_damaged_meta_record(CT), {MR})

    assert excinfo.value.error_type == "SOPCLASSUID_FILTERED"
    assert excinfo.value.sop_class_uid == CT
    assert "(heuristic)" in str(excinfo.value)


def test_heuristic_reads_implicit_element():
    uid = MR.encode("ascii") + b"\0"
    raw = b"\xff" * 40 + b"\x08\x00\x16\x00" + len(uid).to_bytes(4, "little") + uid + b"\xff" * 16

    assert heuristic_sop_class_uid(raw) == MR


def test_heuristic_reads_explicit_big_endian_element():
    uid = CT.encode("ascii")
    raw = b"\xee" * 12 + b"\x00\x08\x00\x16" + b"UI" + len(uid).to_bytes(2, "big") + uid

    assert heuristic_sop_class_uid(raw) == CT


def test_heuristic_text_scan_prefers_allowed_uid():
    raw = f"junk {CT} more junk {MR} tail".encode("latin-1")

    assert heuristic_sop_class_uid(raw, {MR}) == MR
    assert heuristic_sop_class_uid(raw) == CT


def test_heuristic_finds_nothing_in_noise():
    assert heuristic_sop_class_uid(b"\x01\x02\x03" * 100) is None
