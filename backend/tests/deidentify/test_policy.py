from __future__ import annotations

import io

import pydicom
from pydicom.dataset import FileDataset, FileMetaDataset

from deidentify.config import RunContext, ScrambleKey, TagPolicy, TagRule, default_tag_policy
from deidentify.policy import PolicyEngine
from deidentify.scrambler import UID_PREFIX, Scrambler


MR = "1.2.840.10008.5.1.4.1.1.4"
PIXELS = bytes(range(8))


def _dicom_bytes(
    *,
    uid_suffix: str = "1",
    patient_id: str = "PATIENT1",
    patient_name: str | None = "Test^Patient",
    accession: str | None = "ACC123",
    institution: str | None = "General Hospital",
) -> bytes:
    file_meta = FileMetaDataset()
    file_meta.MediaStorageSOPClassUID = MR
    file_meta.MediaStorageSOPInstanceUID = f"1.2.826.0.1.3680043.2.1125.{uid_suffix}"
    file_meta.TransferSyntaxUID = pydicom.uid.ImplicitVRLittleEndian

    ds = FileDataset("memory", {}, file_meta=file_meta, preamble=b"\0" * 128)
    ds.SOPClassUID = MR
    ds.SOPInstanceUID = file_meta.MediaStorageSOPInstanceUID
    ds.StudyInstanceUID = "1.2.3.4.5"
    ds.SeriesInstanceUID = "1.2.3.4.5.6"
    ds.PatientID = patient_id
    if patient_name is not None:
        ds.PatientName = patient_name
    if accession is not None:
        ds.AccessionNumber = accession
    if institution is not None:
        ds.InstitutionName = institution
    ds.ReferringPhysicianName = "Dr^Who"
    ds.Modality = "MR"
    ds.StudyDate = "20240101"
    ds.SeriesDate = "20240101"
    ds.StudyTime = "101500"
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = "MONOCHROME2"
    ds.Rows = 2
    ds.Columns = 2
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelRepresentation = 0
    ds.PixelData = PIXELS
    block = ds.private_block(0x0009, "ACME", create=True)
    block.add_new(0x01, "LO", "private secret")

    buffer = io.BytesIO()
    ds.save_as(buffer, enforce_file_format=True)
    return buffer.getvalue()


def _dataset(**kwargs) -> pydicom.Dataset:
    return pydicom.dcmread(io.BytesIO(_dicom_bytes(**kwargs)), force=True)


def _context(policy: TagPolicy | None = None, verbose: bool = True) -> RunContext:
    return RunContext(
        key=ScrambleKey(passphrase="secret"),
        policy=policy if policy is not None else default_tag_policy(),
        allowed_sop_class_uids=frozenset({MR}),
        verbose=verbose,
    )


def _actions(outcome, tag: str) -> list[str]:
    return [entry.action for entry in outcome.trace if entry.tag == tag]


def test_instance_uid_linked_to_file_meta():
    outcome = PolicyEngine(_context()).apply(_dataset(), "a.dcm")
    ds = outcome.dataset

    assert ds.SOPInstanceUID == ds.file_meta.MediaStorageSOPInstanceUID
    assert ds.SOPInstanceUID != "1.2.826.0.1.3680043.2.1125.1"
    assert ds.SOPInstanceUID.startswith(UID_PREFIX)
    assert ds.file_meta.MediaStorageSOPClassUID == MR
    assert ds.StudyInstanceUID.startswith(UID_PREFIX)


def test_only_whitelisted_elements_survive():
    outcome = PolicyEngine(_context()).apply(_dataset(), "a.dcm")
    ds = outcome.dataset

    assert "ReferringPhysicianName" not in ds
    assert 0x00091001 not in ds
    assert 0x00090010 not in ds
    assert ds.PixelData == PIXELS
    assert ds.Modality == "MR"
    assert _actions(outcome, "(0008,0090)") == ["DELETE"]


def test_identifiers_scrambled_and_audited():
    outcome = PolicyEngine(_context()).apply(_dataset(), "sub/a.dcm")
    ds = outcome.dataset
    audit = outcome.audit

    assert str(ds.PatientName) != "Test^Patient"
    assert ds.PatientID != "PATIENT1"
    assert ds.InstitutionName != "General Hospital"
    assert audit.path == "sub/a.dcm"
    assert audit.original_patient_id == "PATIENT1"
    assert audit.scrambled_patient_id == ds.PatientID
    assert audit.original_study_uid == "1.2.3.4.5"
    assert audit.scrambled_study_uid == ds.StudyInstanceUID
    assert audit.original_accession == "ACC123"
    assert audit.scrambled_accession == ds.AccessionNumber


def test_scrambling_is_consistent_across_records():
    engine = PolicyEngine(_context())

    first = engine.apply(_dataset(uid_suffix="1"), "a.dcm").dataset
    second = engine.apply(_dataset(uid_suffix="2"), "b.dcm").dataset

    assert first.PatientID == second.PatientID
    assert first.StudyInstanceUID == second.StudyInstanceUID
    assert first.StudyDate == second.StudyDate
    assert first.SOPInstanceUID != second.SOPInstanceUID


def test_dates_shift_by_patient_offset():
    ds = PolicyEngine(_context()).apply(_dataset(), "a.dcm").dataset

    expected = Scrambler("secret").scramble_date("20240101", "PATIENT1")
    assert ds.StudyDate == expected
    assert ds.SeriesDate == expected


def test_source_dataset_is_not_mutated():
    source = _dataset()

    PolicyEngine(_context()).apply(source, "a.dcm")

    assert source.PatientID == "PATIENT1"
    assert source.ReferringPhysicianName == "Dr^Who"


def test_numeric_tags_are_never_scrambled():
    policy = TagPolicy(rules={"00280010": TagRule(if_present="scramble")})

    ds = PolicyEngine(_context(policy)).apply(_dataset(), "a.dcm").dataset

    assert ds.Rows == 2


def test_missing_tag_added_with_literal():
    policy = TagPolicy(rules={"00100010": TagRule(if_absent="replace", absent_value="X")})

    outcome = PolicyEngine(_context(policy)).apply(_dataset(patient_name=None), "a.dcm")

    assert str(outcome.dataset.PatientName) == "X"
    assert _actions(outcome, "(0010,0010)") == ["ADD_MISSING"]


def test_missing_accession_derived_from_study_uid():
    outcome = PolicyEngine(_context()).apply(_dataset(accession=None), "a.dcm")
    ds = outcome.dataset

    expected = Scrambler("secret").scramble_from_seed(ds.StudyInstanceUID, 16)
    assert ds.AccessionNumber == expected
    assert _actions(outcome, "(0008,0050)") == ["DERIVE_FROM_RELATED"]


def test_present_replace_and_delete():
    policy = TagPolicy(
        rules={
            "00100010": TagRule(if_present="replace", present_value="ANON"),
            "00080080": TagRule(if_present="delete"),
        }
    )

    ds = PolicyEngine(_context(policy)).apply(_dataset(), "a.dcm").dataset

    assert str(ds.PatientName) == "ANON"
    assert "InstitutionName" not in ds


def test_replacement_literal_is_clamped_to_vr():
    policy = TagPolicy(rules={"00280010": TagRule(if_present="replace", present_value="70000")})

    ds = PolicyEngine(_context(policy)).apply(_dataset(), "a.dcm").dataset

    assert ds.Rows == 65535


def test_trace_is_only_collected_when_verbose():
    outcome = PolicyEngine(_context(verbose=False)).apply(_dataset(), "a.dcm")

    assert outcome.trace == []


def test_output_can_be_encoded_and_read_back():
    outcome = PolicyEngine(_context()).apply(_dataset(), "a.dcm")

    buffer = io.BytesIO()
    pydicom.dcmwrite(buffer, outcome.dataset, enforce_file_format=True)
    reread = pydicom.dcmread(io.BytesIO(buffer.getvalue()))

    assert reread.PatientID == outcome.dataset.PatientID
    assert reread.PixelData == PIXELS
    assert reread.file_meta.MediaStorageSOPInstanceUID == reread.SOPInstanceUID
