"""Bounded-memory batch dispatcher.

N unit threads pull contiguous slices from one shared cursor. Each unit
reads the raw bytes of its slice, hands them to an executor (process pool by
default), waits for the outcome, persists successful records and releases the
batch before claiming the next one. At most ``units * batch_size`` raw records
are resident at any time, whatever the size of the input.

A pool that breaks (a worker process dies) fails only the batch it was running
and is swapped for a fresh pool; later batches keep going.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from concurrent.futures import BrokenExecutor, Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional, Sequence, Tuple

from .aggregator import ResultAggregator
from .config import RunContext
from .errors import DispatchError, PersistError
from .processor import BatchOutcome, ErrorLogEntry, ProcessingResult, format_error_log, process_batch
from .sources import FileDescriptor


logger = logging.getLogger(__name__)


DEFAULT_BATCH_SIZE = 50


def resolve_unit_count(requested: Optional[int], total: int) -> int:
    """Available parallelism (or *requested*), capped by the record count."""

    units = requested or os.cpu_count() or 1
    return max(1, min(units, total))


class BatchCursor:
    """Monotonic cursor over the ordered descriptors.

    Not synchronized on its own; the dispatcher claims under its state lock.
    """

    def __init__(self, descriptors: Sequence[FileDescriptor]) -> None:
        self._descriptors = descriptors
        self._position = 0

    @property
    def position(self) -> int:
        return self._position

    @property
    def exhausted(self) -> bool:
        return self._position >= len(self._descriptors)

    def claim(self, size: int) -> List[FileDescriptor]:
        start = self._position
        end = min(start + max(size, 1), len(self._descriptors))
        self._position = end
        return list(self._descriptors[start:end])


class ResidencyTracker:
    """Counts raw records currently held in memory by the dispatcher."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current = 0
        self._peak = 0
        self._reads = 0
        self._releases = 0

    def on_read(self, count: int = 1) -> None:
        with self._lock:
            self._current += count
            self._reads += count
            if self._current > self._peak:
                self._peak = self._current

    def on_release(self, count: int = 1) -> None:
        with self._lock:
            self._current -= count
            self._releases += count

    @property
    def current(self) -> int:
        with self._lock:
            return self._current

    @property
    def peak(self) -> int:
        with self._lock:
            return self._peak

    @property
    def reads(self) -> int:
        with self._lock:
            return self._reads

    @property
    def releases(self) -> int:
        with self._lock:
            return self._releases


def _safe_relative_path(rel_path: str) -> PurePosixPath:
    parts = [part for part in PurePosixPath(rel_path.replace("\\", "/")).parts if part not in ("", ".", "..", "/")]
    if not parts:
        raise PersistError(f"Invalid output path derived from '{rel_path}'")
    return PurePosixPath(*parts)


def _abandoned_outcome(
    batch: Sequence[FileDescriptor], read_failures: BatchOutcome, cause: BaseException
) -> BatchOutcome:
    """Fail every record of a batch that could not be settled normally."""

    outcome = BatchOutcome()
    already_failed = {result.path for result in read_failures.results}
    outcome.results.extend(read_failures.results)
    outcome.errors.extend(read_failures.errors)
    message = f"Batch aborted: {cause}"
    for descriptor in batch:
        if descriptor.rel_path in already_failed:
            continue
        outcome.results.append(
            ProcessingResult(path=descriptor.rel_path, success=False, error=message, error_type="PROCESSING_ERROR")
        )
        outcome.errors.append(ErrorLogEntry(descriptor.rel_path, "PROCESSING_ERROR", message))
    outcome.error_log = format_error_log(outcome.errors)
    return outcome


class BatchDispatcher:
    def __init__(
        self,
        context: RunContext,
        descriptors: Sequence[FileDescriptor],
        output_root: Path,
        aggregator: ResultAggregator,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        units: Optional[int] = None,
        use_process_pool: bool = True,
        residency: Optional[ResidencyTracker] = None,
        on_complete: Optional[Callable[[], None]] = None,
    ) -> None:
        self._context = context
        self._descriptors = descriptors
        self._output_root = output_root
        self._aggregator = aggregator
        self._batch_size = max(1, batch_size)
        self._units = resolve_unit_count(units, len(descriptors))
        self._use_process_pool = use_process_pool
        self._residency = residency or ResidencyTracker()
        self._on_complete = on_complete

        self._lock = threading.Lock()
        self._executor: Optional[Executor] = None
        self._generation = 0
        self._cursor = BatchCursor(descriptors)
        self._in_flight = 0
        self._finalized = False
        self._finalize_calls = 0
        self._finalize_error: Optional[BaseException] = None
        self._unit_errors: List[BaseException] = []
        self._batches_completed = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def units(self) -> int:
        return self._units

    @property
    def residency(self) -> ResidencyTracker:
        return self._residency

    @property
    def finalize_calls(self) -> int:
        with self._lock:
            return self._finalize_calls

    @property
    def batches_completed(self) -> int:
        with self._lock:
            return self._batches_completed

    @property
    def pool_generation(self) -> int:
        """How many times a broken execution pool has been replaced."""

        with self._lock:
            return self._generation

    def run(self) -> None:
        if not self._descriptors:
            logger.info("No records to dispatch")
            with self._lock:
                self._finalized = True
            self._finalize()
            self._raise_captured()
            return

        pool_kind = "process" if self._use_process_pool else "thread"
        logger.info(
            f"Dispatching {len(self._descriptors)} records in batches of {self._batch_size} "
            f"across {self._units} units ({pool_kind} pool)"
        )

        with self._lock:
            self._executor = self._new_executor()
        try:
            threads = [
                threading.Thread(
                    target=self._unit_main,
                    args=(unit_id,),
                    name=f"deidentify-unit-{unit_id}",
                    daemon=True,
                )
                for unit_id in range(self._units)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()
        finally:
            with self._lock:
                executor, self._executor = self._executor, None
            if executor is not None:
                executor.shutdown(wait=True)

        self._raise_captured()

    # ------------------------------------------------------------------
    # Execution pool
    # ------------------------------------------------------------------

    def _new_executor(self) -> Executor:
        if self._use_process_pool:
            return ProcessPoolExecutor(max_workers=self._units)
        return ThreadPoolExecutor(max_workers=self._units)

    def _current_executor(self) -> Tuple[Executor, int]:
        with self._lock:
            if self._executor is None:
                raise RuntimeError("Dispatcher is not running")
            return self._executor, self._generation

    def _replace_executor(self, generation: int) -> None:
        """Swap a broken pool for a fresh one, once per broken generation."""

        with self._lock:
            if self._executor is None or generation != self._generation:
                return
            broken = self._executor
            self._executor = self._new_executor()
            self._generation += 1
            current = self._generation
        logger.warning("Execution pool broke; started replacement pool (generation %d)", current)
        broken.shutdown(wait=False)

    def _submit(self, records: List[Optional[Tuple[str, bytes]]]) -> Tuple[Future, int]:
        while True:
            executor, generation = self._current_executor()
            try:
                return executor.submit(process_batch, self._context, records), generation
            except BrokenExecutor:
                # Nothing was handed over yet; retry on the replacement pool
                self._replace_executor(generation)

    # ------------------------------------------------------------------
    # Unit loop
    # ------------------------------------------------------------------

    def _unit_main(self, unit_id: int) -> None:
        try:
            self._unit_loop(unit_id)
        except BaseException as exc:  # pragma: no cover - surfaced from run()
            logger.exception("Execution unit %s stopped unexpectedly", unit_id)
            with self._lock:
                self._unit_errors.append(exc)

    def _unit_loop(self, unit_id: int) -> None:
        while True:
            with self._lock:
                batch = self._cursor.claim(self._batch_size)
                if not batch:
                    return
                self._in_flight += 1

            try:
                self._run_batch(unit_id, batch)
            finally:
                del batch
                with self._lock:
                    self._in_flight -= 1
                    self._batches_completed += 1
                    should_finalize = self._cursor.exhausted and self._in_flight == 0 and not self._finalized
                    if should_finalize:
                        self._finalized = True
                if should_finalize:
                    self._finalize()

    def _run_batch(self, unit_id: int, batch: List[FileDescriptor]) -> None:
        records: Optional[List[Optional[Tuple[str, bytes]]]] = []
        read_failures = BatchOutcome()
        resident = 0
        settled = False
        try:
            for descriptor in batch:
                try:
                    raw = descriptor.read()
                except Exception as exc:
                    message = f"Failed to read record: {exc}"
                    logger.warning("%s: %s", descriptor.rel_path, message)
                    read_failures.results.append(
                        ProcessingResult(path=descriptor.rel_path, success=False, error=message, error_type="READ_ERROR")
                    )
                    read_failures.errors.append(ErrorLogEntry(descriptor.rel_path, "READ_ERROR", message))
                    continue
                records.append((descriptor.rel_path, raw))
                del raw
                resident += 1
                self._residency.on_read()

            paths = [item[0] for item in records if item is not None]
            logger.debug("Unit %s claimed %d records (%d readable)", unit_id, len(batch), resident)

            try:
                if records:
                    future, generation = self._submit(records)
                    # Ownership moves to the execution context
                    records = None
                    try:
                        outcome = future.result()
                    except BrokenExecutor:
                        self._replace_executor(generation)
                        raise
                    del future
                else:
                    outcome = BatchOutcome()
            except Exception as exc:
                records = None
                error = DispatchError(unit_id, paths, exc)
                if read_failures.results:
                    read_failures.error_log = format_error_log(read_failures.errors)
                    self._aggregator.consume(read_failures)
                self._aggregator.record_dispatch_failure(error)
                settled = True
                return

            self._persist(outcome)
            if read_failures.results:
                outcome.results.extend(read_failures.results)
                outcome.errors.extend(read_failures.errors)
                outcome.error_log = format_error_log(outcome.errors)
            self._aggregator.consume(outcome)
            settled = True
        except Exception as exc:
            if settled:
                raise
            logger.exception("Unit %s could not settle its batch", unit_id)
            self._aggregator.consume(_abandoned_outcome(batch, read_failures, exc))
        finally:
            records = None
            if resident:
                self._residency.on_release(resident)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _target_path(self, rel_path: str) -> Path:
        return self._output_root.joinpath(*_safe_relative_path(rel_path).parts)

    def _write(self, rel_path: str, data: bytes) -> Path:
        target = self._target_path(rel_path)
        temp: Optional[Path] = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=target.parent, prefix=f".{target.name}.", suffix=".tmp", delete=False
            ) as handle:
                temp = Path(handle.name)
                handle.write(data)
            os.replace(temp, target)
        except OSError as exc:
            if temp is not None:
                temp.unlink(missing_ok=True)
            raise PersistError(f"Failed to persist record: {exc}") from exc
        return target

    def _persist(self, outcome: BatchOutcome) -> None:
        failed_paths = set()
        for result in outcome.results:
            if not result.success or result.data is None:
                result.data = None
                continue
            try:
                self._write(result.path, result.data)
            except PersistError as exc:
                logger.warning("%s: %s", result.path, exc)
                result.success = False
                result.error = str(exc)
                result.error_type = exc.error_type
                outcome.errors.append(ErrorLogEntry(result.path, exc.error_type, str(exc)))
                failed_paths.add(result.path)
            finally:
                result.data = None

        if failed_paths:
            outcome.audit = [entry for entry in outcome.audit if entry.path not in failed_paths]
            outcome.error_log = format_error_log(outcome.errors)

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _finalize(self) -> None:
        with self._lock:
            self._finalize_calls += 1
        logger.info("All batches resolved; finalizing run")
        if self._on_complete is None:
            return
        try:
            self._on_complete()
        except Exception as exc:
            logger.exception("Finalization failed")
            self._finalize_error = exc

    def _raise_captured(self) -> None:
        if self._unit_errors:
            raise self._unit_errors[0]
        if self._finalize_error is not None:
            raise self._finalize_error


__all__ = [
    "BatchCursor",
    "BatchDispatcher",
    "DEFAULT_BATCH_SIZE",
    "ResidencyTracker",
    "resolve_unit_count",
]
