"""Typer application entrypoint."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError
from rich import print as rprint
from rich.table import Table

from deidentify import run_deidentification
from deidentify.config import (
    AuditExportConfig,
    AuditExportFormat,
    DeidentifyConfig,
    DeidentifyResult,
    TagPolicy,
    default_tag_policy,
    load_config,
    load_tag_policy,
    write_tag_policy,
)
from deidentify.progress import ProgressTracker
from deidentify.tags import DEFAULT_ALLOWED_SOP_CLASS_UIDS, WHITELIST
from logging_config import configure_logging


configure_logging()


app = typer.Typer(help="DICOM de-identification toolkit")
policy_app = typer.Typer(help="Inspect and export tag policies")

app.add_typer(policy_app, name="policy")


def _run_with_progress(config: DeidentifyConfig) -> DeidentifyResult:
    latest: dict[str, int] = {"done": 0, "total": 0}
    tracker = ProgressTracker(
        lambda percent: typer.echo(
            f"Progress: {percent}% ({latest['done']}/{latest['total']})",
            err=True,
        )
    )

    def progress_cb(done: int, total: int) -> None:
        latest["done"] = done
        latest["total"] = total
        tracker.update(done, total)

    try:
        result = run_deidentification(config, progress=progress_cb)
    except Exception as exc:  # pragma: no cover - CLI reporting
        typer.echo(f"De-identification failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    latest["done"] = result.processed_files + result.skipped_files + result.failed_files
    latest["total"] = result.total_files
    tracker.finalize()
    return result


def _print_summary(result: DeidentifyResult) -> None:
    table = Table(title="De-identification summary")
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("Total files", str(result.total_files))
    table.add_row("Processed", str(result.processed_files))
    table.add_row("Skipped", str(result.skipped_files))
    table.add_row("Failed", str(result.failed_files))
    table.add_row("Audit rows", str(result.audit_rows_written))
    table.add_row("Duration (s)", f"{result.duration_seconds:.2f}")
    if result.peak_resident_records is not None:
        table.add_row("Peak resident records", str(result.peak_resident_records))
    if result.audit_path:
        table.add_row("Audit", str(result.audit_path))
    if result.log_path:
        table.add_row("Log", str(result.log_path))
    rprint(table)
    for message in result.dispatch_errors:
        rprint(f"[red]{message}[/red]")


@app.command("run")
def deidentify_run(
    source: Path = typer.Argument(..., help="Folder, ZIP archive or single DICOM file"),
    output: Path = typer.Argument(..., help="Destination folder"),
    passphrase: str = typer.Option(
        ...,
        prompt=True,
        hide_input=True,
        envvar="DEID_PASSPHRASE",
        help="Scrambling passphrase",
    ),
    salt: str = typer.Option("", help="Optional salt appended to the passphrase"),
    policy: Optional[Path] = typer.Option(None, help="Tag policy (JSON or YAML)"),
    allow: Optional[List[str]] = typer.Option(None, "--allow", help="Allowed SOP class UID (repeatable)"),
    batch_size: int = typer.Option(50, min=1, help="Records per batch"),
    workers: Optional[int] = typer.Option(None, min=1, help="Execution units (default: CPU count)"),
    threads: bool = typer.Option(False, "--threads", help="Use a thread pool instead of processes"),
    verbose: bool = typer.Option(False, "--verbose", help="Write the per-tag trace to output.log"),
    audit_format: AuditExportFormat = typer.Option(AuditExportFormat.CSV, help="Audit export format"),
    excel_password: Optional[str] = typer.Option(None, help="Password for encrypted Excel audit"),
) -> None:
    """De-identify SOURCE into OUTPUT."""

    try:
        tag_policy: TagPolicy = load_tag_policy(policy) if policy else default_tag_policy()
        config = DeidentifyConfig(
            source=source,
            output_root=output,
            passphrase=passphrase,
            salt=salt,
            allowed_sop_class_uids=list(allow) if allow else list(DEFAULT_ALLOWED_SOP_CLASS_UIDS),
            tag_policy=tag_policy,
            batch_size=batch_size,
            concurrent_processes=workers,
            use_process_pool=not threads,
            verbose=verbose,
            audit_export=AuditExportConfig(format=audit_format, excel_password=excel_password),
        )
    except (ValidationError, ValueError, OSError) as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(code=1)

    _print_summary(_run_with_progress(config))


@app.command("run-config")
def deidentify_run_config(config_path: Path) -> None:
    """Run using a JSON or YAML configuration file."""

    try:
        config = load_config(config_path)
    except (ValidationError, ValueError, OSError) as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(code=1)
    _print_summary(_run_with_progress(config))


@policy_app.command("show")
def policy_show(policy: Optional[Path] = typer.Argument(None, help="Policy file; defaults to the built-in policy")) -> None:
    """Print the tag rules of a policy."""

    try:
        tag_policy = load_tag_policy(policy) if policy else default_tag_policy()
    except (ValidationError, ValueError, OSError) as exc:
        typer.echo(f"Invalid policy: {exc}", err=True)
        raise typer.Exit(code=1)

    table = Table(title="Tag policy")
    table.add_column("Tag")
    table.add_column("Description")
    table.add_column("If present")
    table.add_column("If absent")
    table.add_column("Value")
    for key, rule in tag_policy.rules.items():
        literal = rule.present_value or rule.absent_value
        table.add_row(
            f"({key[:4]},{key[4:]})",
            rule.description,
            rule.if_present.value,
            rule.if_absent.value,
            literal,
        )
    rprint(table)


@policy_app.command("template")
def policy_template(path: Path) -> None:
    """Write the built-in policy to PATH for editing."""

    write_tag_policy(default_tag_policy(), path)
    typer.echo(f"Policy template written to {path}")


@policy_app.command("whitelist")
def policy_whitelist() -> None:
    """List tags retained in de-identified output."""

    table = Table(title="Whitelisted tags")
    table.add_column("Tag")
    table.add_column("Keyword")
    table.add_column("Default transform")
    for (group, element), (keyword, kind) in sorted(WHITELIST.items()):
        table.add_row(f"({group:04X},{element:04X})", keyword, kind.value)
    rprint(table)


if __name__ == "__main__":  # pragma: no cover
    app()
