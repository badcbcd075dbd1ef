"""Configuration models for the de-identification stage."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from .scrambler import Scrambler
from .tags import DEFAULT_ALLOWED_SOP_CLASS_UIDS, is_whitelisted, parse_tag, tag_key, tag_name


_DOTTED_UID = re.compile(r"^\d+(?:\.\d+)+$")


class PresentAction(str, Enum):
    """What to do with a tag that carries a value."""

    SCRAMBLE = "scramble"
    DELETE = "delete"
    KEEP = "keep"
    REPLACE = "replace"


class AbsentAction(str, Enum):
    """What to do with a tag that is missing or empty."""

    LEAVE = "leave"
    DELETE = "delete"
    REPLACE = "replace"
    DERIVE_FROM_RELATED = "derive_from_related"


# Spellings accepted from exported policy files
_PRESENT_ALIASES = {"unchanged": "keep"}
_ABSENT_ALIASES = {
    "unchanged": "leave",
    "scrambleFromStudyUID": "derive_from_related",
    "scramble_from_study_uid": "derive_from_related",
}


class TagRule(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    if_present: PresentAction = Field(PresentAction.KEEP, alias="ifPresent")
    if_absent: AbsentAction = Field(AbsentAction.LEAVE, alias="ifNotPresent")
    present_value: str = Field("", alias="presentValue")
    absent_value: str = Field("", alias="notPresentValue")
    description: str = ""
    related_tag: str = Field("0020000D", alias="relatedTag")

    @field_validator("if_present", mode="before")
    @classmethod
    def normalize_present(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _PRESENT_ALIASES.get(value, value)
        return value

    @field_validator("if_absent", mode="before")
    @classmethod
    def normalize_absent(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _ABSENT_ALIASES.get(value, value)
        return value

    @field_validator("related_tag")
    @classmethod
    def validate_related_tag(cls, value: str) -> str:
        tag = parse_tag(value)
        if tag is None:
            raise ValueError(f"related_tag '{value}' is not a valid tag")
        return tag_key(tag)

    @model_validator(mode="after")
    def ensure_literals(self) -> "TagRule":
        if self.if_present == PresentAction.REPLACE and not self.present_value:
            raise ValueError("present_value is required when if_present is 'replace'")
        if self.if_absent == AbsentAction.REPLACE and not self.absent_value:
            raise ValueError("absent_value is required when if_absent is 'replace'")
        return self


class TagPolicy(BaseModel):
    """Per-tag overrides keyed by 8-hex-digit tag strings.

    Only whitelisted tags may carry a rule; everything else is dropped from
    the output regardless of policy.
    """

    model_config = ConfigDict(frozen=True)

    rules: Dict[str, TagRule] = Field(default_factory=dict)

    @field_validator("rules", mode="before")
    @classmethod
    def normalize_keys(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        normalized: Dict[str, Any] = {}
        for key, rule in value.items():
            tag = parse_tag(str(key))
            if tag is None:
                raise ValueError(f"Invalid tag key '{key}'")
            if not is_whitelisted(tag):
                raise ValueError(f"Tag {key} ({tag_name(tag)}) is not whitelisted and is always removed")
            normalized[tag_key(tag)] = rule
        return normalized

    def rule_for(self, tag: Any) -> Optional[TagRule]:
        return self.rules.get(tag_key(tag))


def _rule(present: str, absent: str, description: str, absent_value: str = "") -> TagRule:
    return TagRule(if_present=present, if_absent=absent, absent_value=absent_value, description=description)


def default_tag_policy() -> TagPolicy:
    """Policy shipped with the tool; mirrors the whitelist's identifying tags."""

    return TagPolicy(
        rules={
            "00020003": _rule("scramble", "leave", "Media Storage SOP Instance UID"),
            "0020000D": _rule("scramble", "leave", "Study Instance UID"),
            "0020000E": _rule("scramble", "leave", "Series Instance UID"),
            "00080018": _rule("scramble", "leave", "SOP Instance UID"),
            "00080050": _rule("scramble", "derive_from_related", "Accession Number"),
            "00100010": _rule("scramble", "replace", "Patient Name", "ANONYMOUS^PATIENT"),
            "00100020": _rule("scramble", "replace", "Patient ID", "PATIENTID1"),
            "00100030": _rule("scramble", "replace", "Patient Birth Date", "19000101"),
            "00100040": _rule("keep", "replace", "Patient Sex", "M"),
            "00101010": _rule("keep", "replace", "Patient Age", "027Y"),
            "00080020": _rule("scramble", "replace", "Study Date", "19270101"),
            "00080030": _rule("scramble", "leave", "Study Time"),
            "00080060": _rule("keep", "leave", "Modality"),
            "00080070": _rule("keep", "leave", "Manufacturer"),
            "00080080": _rule("scramble", "leave", "Institution Name"),
            "00081030": _rule("keep", "replace", "Study Description", "UNKNOWNSTUDY"),
            "0008103E": _rule("keep", "replace", "Series Description", "UNKNOWNSTUDY"),
            "00200011": _rule("keep", "leave", "Series Number"),
            "00200013": _rule("keep", "leave", "Instance Number"),
            "00280010": _rule("keep", "leave", "Rows"),
            "00280011": _rule("keep", "leave", "Columns"),
            "00280100": _rule("keep", "leave", "Bits Allocated"),
            "00280101": _rule("keep", "leave", "Bits Stored"),
            "00280102": _rule("keep", "leave", "High Bit"),
            "00280103": _rule("keep", "leave", "Pixel Representation"),
        }
    )


class ScrambleKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    passphrase: SecretStr
    salt: str = ""

    @field_validator("passphrase")
    @classmethod
    def ensure_passphrase(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("passphrase must not be empty")
        return value

    def scrambler(self) -> Scrambler:
        return Scrambler(self.passphrase.get_secret_value(), self.salt)


class AuditExportFormat(str, Enum):
    CSV = "csv"
    ENCRYPTED_EXCEL = "encrypted_excel"


class AuditExportConfig(BaseModel):
    format: AuditExportFormat = AuditExportFormat.CSV
    filename: Optional[str] = None
    excel_password: Optional[str] = None

    @model_validator(mode="after")
    def validate_excel_requirements(self) -> "AuditExportConfig":
        if self.format == AuditExportFormat.ENCRYPTED_EXCEL and not self.excel_password:
            raise ValueError("excel_password is required for encrypted excel export")
        return self

    def target_name(self) -> str:
        if self.filename:
            return self.filename
        if self.format == AuditExportFormat.ENCRYPTED_EXCEL:
            return "deidentification_audit.xlsx"
        return "deidentification_audit.csv"


class DeidentifyConfig(BaseModel):
    source: Path
    output_root: Path
    passphrase: SecretStr
    salt: str = ""
    allowed_sop_class_uids: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_SOP_CLASS_UIDS))
    tag_policy: TagPolicy = Field(default_factory=default_tag_policy)
    batch_size: int = Field(50, ge=1)
    concurrent_processes: Optional[int] = Field(None, ge=1)
    use_process_pool: bool = True
    verbose: bool = False
    audit_export: AuditExportConfig = Field(default_factory=AuditExportConfig)

    @field_validator("allowed_sop_class_uids")
    @classmethod
    def validate_sop_classes(cls, value: list[str]) -> list[str]:
        cleaned = [uid.strip() for uid in value if uid and uid.strip()]
        if not cleaned:
            raise ValueError("at least one allowed SOP class UID is required")
        for uid in cleaned:
            if not _DOTTED_UID.match(uid):
                raise ValueError(f"'{uid}' is not a dotted-numeric UID")
        return cleaned

    @model_validator(mode="after")
    def ensure_paths(self) -> "DeidentifyConfig":
        if not self.passphrase.get_secret_value():
            raise ValueError("passphrase must not be empty")
        if not self.source.exists():
            raise ValueError(f"source '{self.source}' does not exist")
        if self.output_root.resolve() == self.source.resolve():
            raise ValueError("output_root must differ from source")

        self.output_root.mkdir(parents=True, exist_ok=True)

        return self

    def scramble_key(self) -> ScrambleKey:
        return ScrambleKey(passphrase=self.passphrase, salt=self.salt)


@dataclass(frozen=True)
class RunContext:
    """Immutable per-run inputs handed to every batch."""

    key: ScrambleKey
    policy: TagPolicy
    allowed_sop_class_uids: FrozenSet[str]
    verbose: bool = False

    @classmethod
    def from_config(cls, config: DeidentifyConfig) -> "RunContext":
        return cls(
            key=config.scramble_key(),
            policy=config.tag_policy,
            allowed_sop_class_uids=frozenset(config.allowed_sop_class_uids),
            verbose=config.verbose,
        )


class DeidentifyResult(BaseModel):
    total_files: int
    processed_files: int
    skipped_files: int
    failed_files: int
    duration_seconds: float
    audit_rows_written: int
    audit_path: Optional[Path]
    log_path: Optional[Path]
    errors: list[str] = Field(default_factory=list)
    dispatch_errors: list[str] = Field(default_factory=list)
    peak_resident_records: Optional[int] = None


def _load_mapping(path: Path) -> Any:
    text = path.read_text()
    if path.suffix.lower() in {".yaml", ".yml"}:
        import yaml  # type: ignore

        return yaml.safe_load(text)
    return json.loads(text)


def load_config(path: Path) -> DeidentifyConfig:
    """Load a de-identification config from a JSON or YAML file."""

    return DeidentifyConfig.model_validate(_load_mapping(path))


def load_tag_policy(path: Path) -> TagPolicy:
    """Load a tag policy; accepts ``{"rules": {...}}`` or a bare tag mapping."""

    data = _load_mapping(path) or {}
    if isinstance(data, dict) and "rules" not in data:
        data = {"rules": data}
    return TagPolicy.model_validate(data)


def write_tag_policy(policy: TagPolicy, path: Path) -> Path:
    payload = {key: rule.model_dump(mode="json") for key, rule in policy.rules.items()}
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() in {".yaml", ".yml"}:
        import yaml  # type: ignore

        path.write_text(yaml.safe_dump(payload, sort_keys=False))
    else:
        path.write_text(json.dumps(payload, indent=2))
    return path
