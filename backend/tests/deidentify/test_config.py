import json
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from deidentify.config import (
    AbsentAction,
    AuditExportConfig,
    AuditExportFormat,
    DeidentifyConfig,
    PresentAction,
    RunContext,
    TagPolicy,
    TagRule,
    default_tag_policy,
    load_config,
    load_tag_policy,
    write_tag_policy,
)


MR = "1.2.840.10008.5.1.4.1.1.4"


def test_valid_config(tmp_path: Path):
    source = tmp_path / "dicom"
    source.mkdir()

    config = DeidentifyConfig(
        source=source,
        output_root=tmp_path / "out",
        passphrase="secret",
        allowed_sop_class_uids=[MR],
        audit_export=AuditExportConfig(
            format=AuditExportFormat.ENCRYPTED_EXCEL,
            excel_password="xlsx-pass",
        ),
    )

    assert config.output_root.exists()
    assert config.batch_size == 50
    assert config.passphrase.get_secret_value() == "secret"
    assert "secret" not in repr(config)
    assert config.audit_export.target_name() == "deidentification_audit.xlsx"

    context = RunContext.from_config(config)
    assert context.allowed_sop_class_uids == frozenset({MR})
    assert context.key.scrambler().scramble_text("X") == config.scramble_key().scrambler().scramble_text("X")


def test_output_must_differ_from_source(tmp_path: Path):
    source = tmp_path / "dicom"
    source.mkdir()

    with pytest.raises(ValidationError):
        DeidentifyConfig(source=source, output_root=source, passphrase="secret")


def test_empty_passphrase_rejected(tmp_path: Path):
    source = tmp_path / "dicom"
    source.mkdir()

    with pytest.raises(ValidationError):
        DeidentifyConfig(source=source, output_root=tmp_path / "out", passphrase="")


def test_missing_source_rejected(tmp_path: Path):
    with pytest.raises(ValidationError):
        DeidentifyConfig(source=tmp_path / "missing", output_root=tmp_path / "out", passphrase="secret")


def test_sop_class_list_validation(tmp_path: Path):
    source = tmp_path / "dicom"
    source.mkdir()

    with pytest.raises(ValidationError):
        DeidentifyConfig(source=source, output_root=tmp_path / "out", passphrase="s", allowed_sop_class_uids=[])
    with pytest.raises(ValidationError):
        DeidentifyConfig(source=source, output_root=tmp_path / "out", passphrase="s", allowed_sop_class_uids=["MR"])


def test_excel_export_requires_password():
    with pytest.raises(ValidationError):
        AuditExportConfig(format=AuditExportFormat.ENCRYPTED_EXCEL)
    assert AuditExportConfig().target_name() == "deidentification_audit.csv"


def test_rule_accepts_exported_spellings():
    rule = TagRule.model_validate(
        {"ifPresent": "unchanged", "ifNotPresent": "scrambleFromStudyUID", "relatedTag": "(0020,000D)"}
    )

    assert rule.if_present == PresentAction.KEEP
    assert rule.if_absent == AbsentAction.DERIVE_FROM_RELATED
    assert rule.related_tag == "0020000D"


def test_replace_requires_literal():
    with pytest.raises(ValidationError):
        TagRule(if_present="replace")
    with pytest.raises(ValidationError):
        TagRule(if_absent="replace")
    assert TagRule(if_absent="replace", absent_value="X").absent_value == "X"


def test_policy_normalizes_keys_and_rejects_unknown_tags():
    policy = TagPolicy(rules={"(0010,0020)": TagRule(if_present="delete")})

    assert list(policy.rules) == ["00100020"]
    assert policy.rules["00100020"].if_present == PresentAction.DELETE

    with pytest.raises(ValidationError):
        TagPolicy(rules={"00080090": TagRule()})
    with pytest.raises(ValidationError):
        TagPolicy(rules={"not-a-tag": TagRule()})


def test_default_policy_covers_identifiers():
    policy = default_tag_policy()

    patient_name = policy.rules["00100010"]
    assert patient_name.if_present == PresentAction.SCRAMBLE
    assert patient_name.absent_value == "ANONYMOUS^PATIENT"
    assert policy.rules["00080050"].if_absent == AbsentAction.DERIVE_FROM_RELATED


def test_load_tag_policy_from_bare_yaml_mapping(tmp_path: Path):
    path = tmp_path / "policy.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "00100010": {"ifPresent": "replace", "presentValue": "ANON"},
                "00080080": {"if_present": "delete"},
            }
        )
    )

    policy = load_tag_policy(path)

    assert policy.rules["00100010"].present_value == "ANON"
    assert policy.rules["00080080"].if_present == PresentAction.DELETE


def test_written_policy_can_be_loaded_again(tmp_path: Path):
    path = write_tag_policy(default_tag_policy(), tmp_path / "policy.json")

    assert "00100020" in json.loads(path.read_text())
    assert load_tag_policy(path) == default_tag_policy()


def test_load_config_from_yaml(tmp_path: Path):
    source = tmp_path / "dicom"
    source.mkdir()
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "source": str(source),
                "output_root": str(tmp_path / "out"),
                "passphrase": "secret",
                "batch_size": 10,
                "use_process_pool": False,
                "tag_policy": {"rules": {"00100010": {"if_absent": "replace", "absent_value": "X"}}},
            }
        )
    )

    config = load_config(path)

    assert config.batch_size == 10
    assert config.use_process_pool is False
    assert config.tag_policy.rules["00100010"].absent_value == "X"
