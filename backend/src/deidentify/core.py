"""Run orchestration for the de-identification pipeline."""

from __future__ import annotations

import logging
import time
from typing import List, Optional

from .aggregator import FinalizeReport, ProgressCallback, ResultAggregator
from .config import DeidentifyConfig, DeidentifyResult, RunContext
from .dispatcher import BatchDispatcher, ResidencyTracker
from .sources import enumerate_descriptors, open_source


logger = logging.getLogger(__name__)


def run_deidentification(
    config: DeidentifyConfig,
    *,
    progress: Optional[ProgressCallback] = None,
    residency: Optional[ResidencyTracker] = None,
) -> DeidentifyResult:
    start_time = time.monotonic()

    context = RunContext.from_config(config)
    source = open_source(config.source)
    descriptors = enumerate_descriptors(source)
    if not descriptors:
        logger.warning(f"No DICOM files found in {config.source}; files must carry the DICM marker at bytes 128-131")

    aggregator = ResultAggregator(len(descriptors), verbose=config.verbose, progress=progress)
    reports: List[FinalizeReport] = []

    def finalize() -> None:
        reports.append(aggregator.finalize(config.output_root, config.audit_export))

    dispatcher = BatchDispatcher(
        context,
        descriptors,
        config.output_root,
        aggregator,
        batch_size=config.batch_size,
        units=config.concurrent_processes,
        use_process_pool=config.use_process_pool,
        residency=residency,
        on_complete=finalize,
    )
    dispatcher.run()

    report = reports[0] if reports else None
    counters = aggregator.counters
    duration = time.monotonic() - start_time
    logger.info(
        f"De-identification complete in {duration:.2f}s: {counters.processed} processed, "
        f"{counters.skipped} skipped, {counters.failed} failed"
    )

    return DeidentifyResult(
        total_files=aggregator.total,
        processed_files=counters.processed,
        skipped_files=counters.skipped,
        failed_files=counters.failed,
        duration_seconds=duration,
        audit_rows_written=report.audit_rows if report else 0,
        audit_path=report.audit_path if report else None,
        log_path=report.log_path if report else None,
        errors=[f"{path}: {reason}" for path, reason in aggregator.failures],
        dispatch_errors=[str(error) for error in aggregator.dispatch_errors],
        peak_resident_records=dispatcher.residency.peak,
    )


__all__ = ["run_deidentification"]
