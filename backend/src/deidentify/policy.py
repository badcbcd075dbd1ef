"""Tag policy engine: whitelist, scramble, replace and clamp one record."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Set

import pydicom
from pydicom.dataelem import DataElement
from pydicom.dataset import Dataset, FileMetaDataset
from pydicom.multival import MultiValue
from pydicom.sequence import Sequence
from pydicom.tag import BaseTag
from pydicom.uid import ExplicitVRBigEndian, ExplicitVRLittleEndian, ImplicitVRLittleEndian

from .config import AbsentAction, PresentAction, RunContext, TagRule
from .errors import ValidationOverflow
from .tags import (
    ACCESSION_NUMBER_TAG,
    LINKED_IDENTIFIERS,
    MEDIA_STORAGE_SOP_CLASS_UID_TAG,
    NUMERIC_VRS,
    PATIENT_ID_TAG,
    PIXEL_DATA_TAG,
    SOP_CLASS_UID_TAG,
    STUDY_INSTANCE_UID_TAG,
    TransformKind,
    format_tag,
    is_whitelisted,
    parse_tag,
    tag_name,
    tag_vr,
    transform_kind,
)
from .validation import clamp_element, clamp_value, max_length_for, validate_fields


logger = logging.getLogger(__name__)


TRANSFER_SYNTAX_TAG = (0x0002, 0x0010)
SEED_MAX_LENGTH = 16

# VRs whose values are not text and are never scrambled
_OPAQUE_VRS = frozenset({"SQ", "OB", "OD", "OF", "OL", "OV", "OW", "UN", "AT"})

_SCRAMBLE_ACTIONS = {
    TransformKind.UID: "SCRAMBLE_UID",
    TransformKind.DATE: "SCRAMBLE_DATE",
    TransformKind.TIME: "SCRAMBLE_TIME",
    TransformKind.TEXT: "SCRAMBLE_TEXT",
    TransformKind.NONE: "SCRAMBLE_TEXT",
}

# Rules for whitelisted tags the policy does not mention
_DEFAULT_SCRAMBLE = TagRule(if_present=PresentAction.SCRAMBLE)
_DEFAULT_KEEP = TagRule(if_present=PresentAction.KEEP)


@dataclass
class TraceEntry:
    path: str
    tag: str
    tag_name: str
    original_value: str
    action: str
    new_value: str
    timestamp: str


@dataclass
class AuditEntry:
    path: str
    original_study_uid: str = ""
    scrambled_study_uid: str = ""
    original_accession: str = ""
    scrambled_accession: str = ""
    original_patient_id: str = ""
    scrambled_patient_id: str = ""


@dataclass
class TransformOutcome:
    dataset: Dataset
    audit: AuditEntry
    trace: List[TraceEntry] = field(default_factory=list)
    overflows: List[ValidationOverflow] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple, MultiValue)):
        return value[0] if len(value) else None
    return value


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple, MultiValue)):
        return len(value) == 0 or all(_is_empty(item) for item in value)
    if isinstance(value, (bytes, bytearray)):
        return len(value) == 0
    if isinstance(value, Sequence):
        return len(value) == 0
    return str(value).strip() == ""


def _text(value: Any) -> str:
    first = _first(value)
    if first is None:
        return ""
    if isinstance(first, bytes):
        return f"<bytes:{len(first)}>"
    return str(first).strip()


def _element_text(container: pydicom.Dataset, tag: BaseTag) -> str:
    element = container.get(tag)
    if element is None or element.VR in _OPAQUE_VRS:
        return ""
    return _text(element.value)


def _infer_transfer_syntax(source: pydicom.Dataset) -> str:
    encoding = getattr(source, "original_encoding", (True, True))
    is_implicit, is_little = encoding if encoding and None not in encoding else (True, True)
    if is_implicit:
        return ImplicitVRLittleEndian
    return ExplicitVRLittleEndian if is_little else ExplicitVRBigEndian


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PolicyEngine:
    """Apply a run's tag policy to decoded records.

    The engine never mutates the dataset it receives; every transform writes
    into a freshly built dataset which is returned in the outcome.
    """

    def __init__(self, context: RunContext) -> None:
        self._context = context
        self._policy = context.policy
        self._scrambler = context.key.scrambler()
        self._verbose = context.verbose

    def apply(self, source: pydicom.Dataset, rel_path: str) -> TransformOutcome:
        source_meta = getattr(source, "file_meta", None) or FileMetaDataset()
        original_patient_id = _element_text(source, PATIENT_ID_TAG)
        audit = AuditEntry(
            path=rel_path,
            original_study_uid=_element_text(source, STUDY_INSTANCE_UID_TAG),
            original_accession=_element_text(source, ACCESSION_NUMBER_TAG),
            original_patient_id=original_patient_id,
        )

        file_meta = FileMetaDataset()
        dataset = Dataset()
        dataset.file_meta = file_meta
        dataset.preamble = getattr(source, "preamble", None) or b"\x00" * 128
        outcome = TransformOutcome(dataset=dataset, audit=audit)

        self._copy_whitelisted(source_meta, file_meta, file_meta, outcome)
        self._copy_whitelisted(source, dataset, file_meta, outcome)

        handled: Set[BaseTag] = set()
        for meta_tag, dataset_tag in LINKED_IDENTIFIERS.items():
            self._apply_linked(meta_tag, dataset_tag, outcome, original_patient_id, handled)

        for container in (file_meta, dataset):
            for tag in list(container.keys()):
                if tag in handled or tag == PIXEL_DATA_TAG:
                    continue
                self._apply_present(container, tag, outcome, original_patient_id)

        self._apply_absent_rules(outcome)
        self._ensure_file_meta(source, outcome)

        for overflow in validate_fields(dataset):
            self._record_overflow(outcome, overflow)

        audit.scrambled_study_uid = _element_text(dataset, STUDY_INSTANCE_UID_TAG)
        audit.scrambled_accession = _element_text(dataset, ACCESSION_NUMBER_TAG)
        audit.scrambled_patient_id = _element_text(dataset, PATIENT_ID_TAG)
        return outcome

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _copy_whitelisted(
        self,
        source: pydicom.Dataset,
        target: pydicom.Dataset,
        file_meta: FileMetaDataset,
        outcome: TransformOutcome,
    ) -> None:
        for element in source:
            tag = element.tag
            if tag == PIXEL_DATA_TAG:
                # Never modified, so the element can be shared
                target[tag] = element
            elif not is_whitelisted(tag):
                self._trace(outcome, tag, element.value, "DELETE", None)
            elif tag.group == 0x0002:
                # Group 0002 found in the dataset body belongs in the file meta
                if tag not in file_meta:
                    file_meta[tag] = copy.deepcopy(element)
            else:
                target[tag] = copy.deepcopy(element)

    def _apply_linked(
        self,
        meta_tag: BaseTag,
        dataset_tag: BaseTag,
        outcome: TransformOutcome,
        context_key: str,
        handled: Set[BaseTag],
    ) -> None:
        dataset = outcome.dataset
        if dataset_tag not in dataset or _is_empty(dataset[dataset_tag].value):
            return
        action = self._apply_present(dataset, dataset_tag, outcome, context_key)
        handled.add(dataset_tag)

        file_meta = dataset.file_meta
        if dataset_tag not in dataset or meta_tag not in file_meta:
            return
        original = file_meta[meta_tag].value
        file_meta[meta_tag].value = dataset[dataset_tag].value
        handled.add(meta_tag)
        self._trace(outcome, meta_tag, original, action or "UNCHANGED", file_meta[meta_tag].value)

    def _rule_for(self, tag: BaseTag) -> TagRule:
        rule = self._policy.rule_for(tag)
        if rule is not None:
            return rule
        if transform_kind(tag) != TransformKind.NONE:
            return _DEFAULT_SCRAMBLE
        return _DEFAULT_KEEP

    def _apply_present(
        self,
        container: pydicom.Dataset,
        tag: BaseTag,
        outcome: TransformOutcome,
        context_key: str,
    ) -> Optional[str]:
        element = container[tag]
        if _is_empty(element.value):
            return None

        rule = self._rule_for(tag)
        original = element.value
        vr = element.VR

        if rule.if_present == PresentAction.DELETE:
            del container[tag]
            self._trace(outcome, tag, original, "DELETE", None)
            return "DELETE"

        if rule.if_present == PresentAction.REPLACE:
            element.value = clamp_value(rule.present_value, vr)
            action = "REPLACE"
        elif rule.if_present == PresentAction.SCRAMBLE and vr not in NUMERIC_VRS and vr not in _OPAQUE_VRS:
            kind = transform_kind(tag)
            element.value = self._scrambler.scramble(
                kind,
                _text(original),
                max_length=max_length_for(vr),
                context_key=context_key or None,
            )
            action = _SCRAMBLE_ACTIONS[kind]
        else:
            action = "UNCHANGED"

        overflow = clamp_element(element)
        if overflow is not None:
            outcome.overflows.append(overflow)
        self._trace(outcome, tag, original, action, element.value)
        return action

    def _apply_absent_rules(self, outcome: TransformOutcome) -> None:
        dataset = outcome.dataset
        for key, rule in self._policy.rules.items():
            if rule.if_absent == AbsentAction.LEAVE:
                continue
            tag = parse_tag(key)
            container = dataset.file_meta if tag.group == 0x0002 else dataset
            element = container.get(tag)
            if element is not None and not _is_empty(element.value):
                continue
            original = element.value if element is not None else None

            if rule.if_absent == AbsentAction.DELETE:
                if element is not None:
                    del container[tag]
                    self._trace(outcome, tag, original, "DELETE", None)
                continue

            if rule.if_absent == AbsentAction.REPLACE:
                literal = rule.absent_value
                action = "ADD_MISSING"
            else:
                related = parse_tag(rule.related_tag)
                seed = _element_text(dataset.file_meta if related.group == 0x0002 else dataset, related)
                if not seed:
                    logger.debug("No %s value to derive %s from", format_tag(related), format_tag(tag))
                    continue
                vr = element.VR if element is not None else tag_vr(tag)
                literal = self._scrambler.scramble_from_seed(seed, min(SEED_MAX_LENGTH, max_length_for(vr)))
                action = "DERIVE_FROM_RELATED"

            vr = element.VR if element is not None else tag_vr(tag)
            container[tag] = DataElement(tag, vr, clamp_value(literal, vr))
            self._trace(outcome, tag, original, action, container[tag].value, rule.description)

    def _ensure_file_meta(self, source: pydicom.Dataset, outcome: TransformOutcome) -> None:
        dataset = outcome.dataset
        file_meta = dataset.file_meta
        if MEDIA_STORAGE_SOP_CLASS_UID_TAG not in file_meta and SOP_CLASS_UID_TAG in dataset:
            file_meta.MediaStorageSOPClassUID = dataset.SOPClassUID
        for meta_tag, dataset_tag in LINKED_IDENTIFIERS.items():
            if meta_tag not in file_meta and dataset_tag in dataset:
                file_meta[meta_tag] = DataElement(meta_tag, dataset[dataset_tag].VR, dataset[dataset_tag].value)
        if TRANSFER_SYNTAX_TAG not in file_meta:
            file_meta.TransferSyntaxUID = _infer_transfer_syntax(source)

    # ------------------------------------------------------------------
    # Trace helpers
    # ------------------------------------------------------------------

    def _record_overflow(self, outcome: TransformOutcome, overflow: ValidationOverflow) -> None:
        outcome.overflows.append(overflow)
        if self._verbose:
            outcome.trace.append(
                TraceEntry(
                    path=outcome.audit.path,
                    tag=overflow.tag,
                    tag_name=tag_name(parse_tag(overflow.tag)),
                    original_value=_text(overflow.original),
                    action="CLAMP",
                    new_value=_text(overflow.clamped),
                    timestamp=datetime.now(timezone.utc).isoformat(),
                )
            )

    def _trace(
        self,
        outcome: TransformOutcome,
        tag: BaseTag,
        original: Any,
        action: str,
        new_value: Any,
        description: str = "",
    ) -> None:
        if not self._verbose:
            return
        outcome.trace.append(
            TraceEntry(
                path=outcome.audit.path,
                tag=format_tag(tag),
                tag_name=description or tag_name(tag),
                original_value=_text(original) if not isinstance(original, Sequence) else "<sequence>",
                action=action,
                new_value=_text(new_value) if not isinstance(new_value, Sequence) else "<sequence>",
                timestamp=datetime.now(timezone.utc).isoformat(),
            )
        )


def deidentify_dataset(source: pydicom.Dataset, context: RunContext, rel_path: str) -> TransformOutcome:
    """Convenience wrapper building a one-off :class:`PolicyEngine`."""

    return PolicyEngine(context).apply(source, rel_path)


__all__ = ["AuditEntry", "PolicyEngine", "TraceEntry", "TransformOutcome", "deidentify_dataset"]
