"""Static tag tables and helpers shared by the policy engine."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Tuple

from pydicom.datadict import dictionary_description, dictionary_VR
from pydicom.tag import BaseTag, Tag


class TransformKind(str, Enum):
    """Default transform applied to a whitelisted tag."""

    NONE = "none"
    UID = "uid"
    DATE = "date"
    TIME = "time"
    TEXT = "text"


# ---------------------------------------------------------------------------
# Whitelist (everything else is dropped, except PixelData)
# ---------------------------------------------------------------------------

_N = TransformKind.NONE

WHITELIST: Dict[Tuple[int, int], Tuple[str, TransformKind]] = {
    # File meta information
    (0x0002, 0x0000): ("FileMetaInformationGroupLength", _N),
    (0x0002, 0x0001): ("FileMetaInformationVersion", _N),
    (0x0002, 0x0002): ("MediaStorageSOPClassUID", _N),
    (0x0002, 0x0003): ("MediaStorageSOPInstanceUID", TransformKind.UID),
    (0x0002, 0x0010): ("TransferSyntaxUID", _N),
    (0x0002, 0x0012): ("ImplementationClassUID", _N),
    (0x0002, 0x0013): ("ImplementationVersionName", _N),
    # Identification
    (0x0008, 0x0005): ("SpecificCharacterSet", _N),
    (0x0008, 0x0008): ("ImageType", _N),
    (0x0008, 0x0016): ("SOPClassUID", _N),
    (0x0008, 0x0018): ("SOPInstanceUID", TransformKind.UID),
    (0x0020, 0x000D): ("StudyInstanceUID", TransformKind.UID),
    (0x0020, 0x000E): ("SeriesInstanceUID", TransformKind.UID),
    (0x0020, 0x0052): ("FrameOfReferenceUID", TransformKind.UID),
    (0x0008, 0x0020): ("StudyDate", TransformKind.DATE),
    (0x0008, 0x0021): ("SeriesDate", TransformKind.DATE),
    (0x0008, 0x0022): ("AcquisitionDate", TransformKind.DATE),
    (0x0008, 0x0023): ("ContentDate", TransformKind.DATE),
    (0x0008, 0x0030): ("StudyTime", TransformKind.TIME),
    (0x0008, 0x0031): ("SeriesTime", TransformKind.TIME),
    (0x0008, 0x0032): ("AcquisitionTime", TransformKind.TIME),
    (0x0008, 0x0033): ("ContentTime", TransformKind.TIME),
    (0x0008, 0x0050): ("AccessionNumber", TransformKind.TEXT),
    (0x0008, 0x0060): ("Modality", _N),
    (0x0008, 0x0068): ("PresentationIntentType", _N),
    (0x0008, 0x0070): ("Manufacturer", _N),
    (0x0008, 0x0080): ("InstitutionName", TransformKind.TEXT),
    (0x0008, 0x1030): ("StudyDescription", _N),
    (0x0008, 0x103E): ("SeriesDescription", _N),
    (0x0008, 0x1090): ("ManufacturerModelName", _N),
    (0x0008, 0x2218): ("AnatomicRegionSequence", _N),
    # Patient
    (0x0010, 0x0010): ("PatientName", TransformKind.TEXT),
    (0x0010, 0x0020): ("PatientID", TransformKind.TEXT),
    (0x0010, 0x0030): ("PatientBirthDate", TransformKind.DATE),
    (0x0010, 0x0040): ("PatientSex", _N),
    (0x0010, 0x1010): ("PatientAge", _N),
    # Acquisition
    (0x0018, 0x0010): ("ContrastBolusAgent", _N),
    (0x0018, 0x0015): ("BodyPartExamined", _N),
    (0x0018, 0x0050): ("SliceThickness", _N),
    (0x0018, 0x0060): ("KVP", _N),
    (0x0018, 0x0088): ("SpacingBetweenSlices", _N),
    (0x0018, 0x1164): ("ImagerPixelSpacing", _N),
    (0x0018, 0x1210): ("ConvolutionKernel", _N),
    (0x0018, 0x1411): ("ExposureIndex", _N),
    (0x0018, 0x1412): ("TargetExposureIndex", _N),
    (0x0018, 0x7022): ("DetectorElementSpacing", _N),
    # Relationship / geometry
    (0x0020, 0x0011): ("SeriesNumber", _N),
    (0x0020, 0x0012): ("AcquisitionNumber", _N),
    (0x0020, 0x0013): ("InstanceNumber", _N),
    (0x0020, 0x0020): ("PatientOrientation", _N),
    (0x0020, 0x0032): ("ImagePositionPatient", _N),
    (0x0020, 0x0037): ("ImageOrientationPatient", _N),
    (0x0020, 0x0062): ("ImageLaterality", _N),
    (0x0020, 0x1040): ("PositionReferenceIndicator", _N),
    (0x0020, 0x1041): ("SliceLocation", _N),
    # Image pixel module
    (0x0028, 0x0002): ("SamplesPerPixel", _N),
    (0x0028, 0x0004): ("PhotometricInterpretation", _N),
    (0x0028, 0x0006): ("PlanarConfiguration", _N),
    (0x0028, 0x0010): ("Rows", _N),
    (0x0028, 0x0011): ("Columns", _N),
    (0x0028, 0x0030): ("PixelSpacing", _N),
    (0x0028, 0x0034): ("PixelAspectRatio", _N),
    (0x0028, 0x0100): ("BitsAllocated", _N),
    (0x0028, 0x0101): ("BitsStored", _N),
    (0x0028, 0x0102): ("HighBit", _N),
    (0x0028, 0x0103): ("PixelRepresentation", _N),
    (0x0028, 0x0106): ("SmallestImagePixelValue", _N),
    (0x0028, 0x0107): ("LargestImagePixelValue", _N),
    (0x0028, 0x1040): ("PixelIntensityRelationship", _N),
    (0x0028, 0x1041): ("PixelIntensityRelationshipSign", _N),
    (0x0028, 0x1050): ("WindowCenter", _N),
    (0x0028, 0x1051): ("WindowWidth", _N),
    (0x0028, 0x1052): ("RescaleIntercept", _N),
    (0x0028, 0x1053): ("RescaleSlope", _N),
    (0x0028, 0x1054): ("RescaleType", _N),
    (0x0028, 0x1056): ("VOILUTFunction", _N),
    (0x0028, 0x3002): ("LUTDescriptor", _N),
    (0x0028, 0x3003): ("LUTExplanation", _N),
    (0x0028, 0x3006): ("LUTData", _N),
    (0x0028, 0x3010): ("VOILUTSequence", _N),
    (0x2050, 0x0020): ("PresentationLUTShape", _N),
}

del _N

PIXEL_DATA_TAG = Tag(0x7FE0, 0x0010)
SOP_CLASS_UID_TAG = Tag(0x0008, 0x0016)
MEDIA_STORAGE_SOP_CLASS_UID_TAG = Tag(0x0002, 0x0002)
SOP_INSTANCE_UID_TAG = Tag(0x0008, 0x0018)
MEDIA_STORAGE_SOP_INSTANCE_UID_TAG = Tag(0x0002, 0x0003)
STUDY_INSTANCE_UID_TAG = Tag(0x0020, 0x000D)
ACCESSION_NUMBER_TAG = Tag(0x0008, 0x0050)
PATIENT_ID_TAG = Tag(0x0010, 0x0020)

# File meta tag -> dataset tag whose scrambled value it must mirror
LINKED_IDENTIFIERS: Dict[BaseTag, BaseTag] = {
    MEDIA_STORAGE_SOP_INSTANCE_UID_TAG: SOP_INSTANCE_UID_TAG,
}

NUMERIC_VRS = frozenset({"DS", "IS", "FL", "FD", "SL", "SS", "UL", "US"})

# Image storage classes accepted when the caller does not supply a list
DEFAULT_ALLOWED_SOP_CLASS_UIDS: Tuple[str, ...] = (
    "1.2.840.10008.5.1.4.1.1.1",  # Computed Radiography
    "1.2.840.10008.5.1.4.1.1.1.1",  # Digital X-Ray, presentation
    "1.2.840.10008.5.1.4.1.1.1.1.1",  # Digital X-Ray, processing
    "1.2.840.10008.5.1.4.1.1.1.2",  # Digital Mammography, presentation
    "1.2.840.10008.5.1.4.1.1.1.2.1",  # Digital Mammography, processing
    "1.2.840.10008.5.1.4.1.1.2",  # CT
    "1.2.840.10008.5.1.4.1.1.4",  # MR
    "1.2.840.10008.5.1.4.1.1.6.1",  # Ultrasound
    "1.2.840.10008.5.1.4.1.1.7",  # Secondary Capture
    "1.2.840.10008.5.1.4.1.1.128",  # PET
)


def whitelist_tags() -> Dict[BaseTag, Tuple[str, TransformKind]]:
    return {Tag(key): value for key, value in WHITELIST.items()}


def is_whitelisted(tag: BaseTag) -> bool:
    return (tag.group, tag.element) in WHITELIST


def transform_kind(tag: BaseTag) -> TransformKind:
    entry = WHITELIST.get((tag.group, tag.element))
    return entry[1] if entry else TransformKind.NONE


def parse_tag(value: str) -> Optional[BaseTag]:
    """Parse ``"00100020"``, ``"0010,0020"`` or ``"(0010,0020)"`` into a tag."""

    cleaned = value.strip().replace("(", "").replace(")", "").replace(",", "").replace(" ", "")
    if len(cleaned) != 8:
        return None
    try:
        group = int(cleaned[:4], 16)
        element = int(cleaned[4:], 16)
    except ValueError:
        return None
    return Tag(group, element)


def tag_key(tag: BaseTag) -> str:
    return f"{tag.group:04X}{tag.element:04X}"


def format_tag(tag: BaseTag) -> str:
    return f"({tag.group:04X},{tag.element:04X})"


def tag_name(tag: BaseTag) -> str:
    entry = WHITELIST.get((tag.group, tag.element))
    if entry:
        return entry[0]
    try:
        return dictionary_description(tag)
    except KeyError:
        return "Unknown Tag"


def tag_vr(tag: BaseTag) -> str:
    """VR used when a tag has to be created from scratch."""

    try:
        vr = dictionary_VR(tag)
    except KeyError:
        return "LO"
    # Ambiguous entries such as "US or SS" resolve to the first alternative
    return vr.split(" or ")[0] or "LO"
