"""DICOM de-identification with keyed scrambling and bounded-memory batching."""

from .config import (
    AbsentAction,
    AuditExportConfig,
    AuditExportFormat,
    DeidentifyConfig,
    DeidentifyResult,
    PresentAction,
    RunContext,
    ScrambleKey,
    TagPolicy,
    TagRule,
    default_tag_policy,
    load_config,
    load_tag_policy,
)
from .core import run_deidentification
from .scrambler import Scrambler

__all__ = [
    "AbsentAction",
    "AuditExportConfig",
    "AuditExportFormat",
    "DeidentifyConfig",
    "DeidentifyResult",
    "PresentAction",
    "RunContext",
    "ScrambleKey",
    "Scrambler",
    "TagPolicy",
    "TagRule",
    "default_tag_policy",
    "load_config",
    "load_tag_policy",
    "run_deidentification",
]
