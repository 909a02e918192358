"""Per-property pipeline and batch driver for vacancywatch."""

from __future__ import annotations

import datetime as dt
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar

from .adapters import ExtractionAdapter, build_adapter
from .db import Database, DateLike, as_date_text
from .diff import detect_changes, diff_units
from .models import (
    BatchSummary,
    CanonicalUnit,
    ConfigurationError,
    ExtractionError,
    ExtractionFailed,
    ExtractionResult,
    ExtractionSuccess,
    ExtractionSuspectEmpty,
    PropertyRunResult,
    PropertyTarget,
    RawUnitRecord,
    RunStage,
    RunStatus,
)
from .normalize import build_canonical_units
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

AdapterFactory = Callable[[PropertyTarget], ExtractionAdapter]


@dataclass
class VacancyRunner:
    """Coordinates fetch, canonicalize, diff, and persistence per property."""

    database: Database
    source: str = "snapshot"
    adapter_factory: AdapterFactory = field(default_factory=lambda: build_adapter)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    property_max_seconds: Optional[float] = 240.0
    max_workers: int = 1
    property_delay: float = 0.0

    def init(self) -> None:
        """Initialize required persistence structures."""
        logger.info("Initializing database at %s", self.database.path)
        self.database.initialize()

    # Extraction

    def extract(self, adapter: ExtractionAdapter, target: PropertyTarget) -> ExtractionResult:
        """Fetch raw records under the retry policy and the per-property deadline.

        The deadline also caps each attempt's timeout and stops further retries,
        so an abandoned fetch thread winds down within the property budget.
        """
        policy = self.retry_policy
        deadline = (
            policy.clock() + self.property_max_seconds if self.property_max_seconds else None
        )

        def attempt() -> List[RawUnitRecord]:
            return list(adapter.fetch(target, timeout=policy.attempt_timeout(deadline)))

        def with_retries() -> List[RawUnitRecord]:
            return policy.call(attempt, description=f"Fetch {target.label}", deadline=deadline)

        try:
            records = self._with_deadline(with_retries, target)
        except ExtractionError as exc:
            return ExtractionFailed(reason=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Adapter crashed for %s", target.label)
            return ExtractionFailed(reason=f"{type(exc).__name__}: {exc}")

        if not records:
            return ExtractionSuspectEmpty()
        return ExtractionSuccess(records=records)

    def _with_deadline(self, func: Callable[[], T], target: PropertyTarget) -> T:
        if not self.property_max_seconds:
            return func()

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fetch")
        future = executor.submit(func)
        try:
            return future.result(timeout=self.property_max_seconds)
        except FutureTimeoutError as exc:
            raise ExtractionError(
                f"Property timeout exceeded ({self.property_max_seconds:g}s)"
            ) from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    # Single property

    def run_property(
        self,
        target: PropertyTarget,
        snapshot_date: Optional[DateLike] = None,
    ) -> PropertyRunResult:
        """Execute the full pipeline for one property; never raises."""
        day = as_date_text(snapshot_date or dt.date.today())
        result = PropertyRunResult(
            property_id=target.property_id,
            status=RunStatus.SUCCESS,
            name=target.name,
        )

        if target.skip:
            result.status = RunStatus.SKIPPED
            result.reason = target.skip_reason or "skip flag set"
            logger.warning("[SKIP] %s: %s", target.label, result.reason)
            return result

        try:
            adapter = self.adapter_factory(target)
        except ConfigurationError as exc:
            result.status = RunStatus.SKIPPED
            result.reason = str(exc)
            logger.warning("[SKIP] %s: %s", target.label, exc)
            return result
        except Exception as exc:  # noqa: BLE001
            self._advance(result, RunStage.FETCHING)
            logger.exception("[FAIL] %s: could not build adapter", target.label)
            result.status = RunStatus.FAILED
            result.reason = f"{type(exc).__name__}: {exc}"
            return result

        logger.info("[RUN] %s @ %s (source=%s)", target.label, day, self.source)
        self._advance(result, RunStage.FETCHING)
        extraction = self.extract(adapter, target)
        if isinstance(extraction, ExtractionFailed):
            result.status = RunStatus.FAILED
            result.reason = extraction.reason
            logger.error("[FAIL] %s during fetch: %s", target.label, extraction.reason)
            return result

        records = extraction.records if isinstance(extraction, ExtractionSuccess) else []
        result.raw_count = len(records)

        try:
            self._advance(result, RunStage.CANONICALIZING)
            built = build_canonical_units(records)
            result.unit_count = len(built.units)
            result.dropped_count = built.dropped_count
            self._process(result, day, built.units)
        except Exception as exc:  # noqa: BLE001
            logger.exception("[FAIL] %s during %s", target.label, result.stage.value)
            result.status = RunStatus.FAILED
            result.reason = f"{type(exc).__name__}: {exc}"
            return result

        if not built.units:
            result.status = RunStatus.SUSPECT_EMPTY
            result.reason = (
                "adapter returned no records"
                if not records
                else f"all {len(records)} records were unkeyable"
            )
            logger.warning(
                "[SUSPECT-EMPTY] %s: %s; empty snapshot stored and flagged",
                target.label,
                result.reason,
            )
        logger.info(
            "[DONE] %s: %d units (+%d / -%d, %d changed, %d dropped), %d events written",
            target.label,
            result.unit_count,
            len(result.appeared),
            len(result.disappeared),
            result.changed,
            result.dropped_count,
            result.events_written,
        )
        return result

    def _process(
        self,
        result: PropertyRunResult,
        day: str,
        units: Sequence[CanonicalUnit],
        persist_snapshot: bool = True,
    ) -> None:
        """Diff against the baseline and write events.

        Re-diffs pass ``persist_snapshot=False`` so stored snapshots are only read.
        """
        property_id = result.property_id

        self._advance(result, RunStage.DIFFING)
        baseline = self.database.get_comparison_baseline(property_id, day)
        previous_units = baseline.units if baseline else []
        if baseline is None:
            logger.info("%s: no earlier snapshot; every unit counts as appeared", property_id)
        diff = diff_units(previous_units, units)
        changes = detect_changes(previous_units, units)
        result.appeared = diff.appeared
        result.disappeared = diff.disappeared
        result.changed = len(changes)

        if persist_snapshot:
            self._advance(result, RunStage.PERSISTING_SNAPSHOT)
            self.database.upsert_snapshot(property_id, day, units, suspect_empty=not units)

        self._advance(result, RunStage.WRITING_EVENTS)
        result.events_written = self.database.replace_events(
            property_id,
            day,
            self.source,
            diff,
            current_units=units,
            previous_units=previous_units,
        )
        self.database.replace_changes(property_id, day, self.source, changes)
        self._advance(result, RunStage.DONE)

    @staticmethod
    def _advance(result: PropertyRunResult, stage: RunStage) -> None:
        result.stage = stage
        logger.debug("%s -> %s", result.property_id, stage.value)

    # Re-diff from stored snapshots

    def rediff_property(
        self,
        property_id: str,
        snapshot_date: Optional[DateLike] = None,
    ) -> PropertyRunResult:
        """Recompute events for the latest stored snapshot at or before a date."""
        result = PropertyRunResult(property_id=property_id, status=RunStatus.SUCCESS)
        try:
            day = self.database.latest_snapshot_date(property_id, on_or_before=snapshot_date)
            if day is None:
                result.status = RunStatus.SKIPPED
                result.reason = "no stored snapshot"
                logger.info("[SKIP] %s: no stored snapshot to re-diff", property_id)
                return result

            current = self.database.fetch_snapshot(property_id, day)
            units = current.units if current else []
            result.unit_count = len(units)
            self._process(result, day, units, persist_snapshot=False)
        except Exception as exc:  # noqa: BLE001
            logger.exception("[FAIL] re-diff of %s during %s", property_id, result.stage.value)
            result.status = RunStatus.FAILED
            result.reason = f"{type(exc).__name__}: {exc}"
            return result

        if current is not None and current.suspect_empty:
            result.status = RunStatus.SUSPECT_EMPTY
            result.reason = "stored snapshot flagged suspect-empty"
        logger.info(
            "- %s @ %s: +%d appeared, -%d disappeared (%d events)",
            property_id,
            day,
            len(result.appeared),
            len(result.disappeared),
            result.events_written,
        )
        return result

    # Batches

    def run_batch(
        self,
        targets: Iterable[PropertyTarget],
        snapshot_date: Optional[DateLike] = None,
    ) -> BatchSummary:
        """Run every target independently and aggregate the outcomes."""
        day = as_date_text(snapshot_date or dt.date.today())
        executed_at = dt.datetime.now(dt.timezone.utc).isoformat()
        unique_targets: List[PropertyTarget] = []
        # One slot per input target; duplicates are filled in place.
        slots: List[Optional[PropertyRunResult]] = []
        seen = set()
        for target in targets:
            if target.property_id in seen:
                logger.warning("Duplicate property %s in batch; skipping repeat", target.property_id)
                slots.append(
                    PropertyRunResult(
                        property_id=target.property_id,
                        status=RunStatus.SKIPPED,
                        reason="duplicate property in batch",
                        name=target.name,
                    )
                )
                continue
            seen.add(target.property_id)
            unique_targets.append(target)
            slots.append(None)

        logger.info(
            "Starting batch of %d properties for %s (source=%s, workers=%d)",
            len(unique_targets),
            day,
            self.source,
            self.max_workers,
        )
        ran = iter(self._map(lambda target: self.run_property(target, day), unique_targets))
        results = [slot if slot is not None else next(ran) for slot in slots]
        return self._finish(executed_at, day, results)

    def rediff_batch(
        self,
        property_ids: Optional[Iterable[str]] = None,
        snapshot_date: Optional[DateLike] = None,
    ) -> BatchSummary:
        executed_at = dt.datetime.now(dt.timezone.utc).isoformat()
        day = as_date_text(snapshot_date or dt.date.today())
        ids = list(dict.fromkeys(property_ids or self.database.snapshot_property_ids()))
        logger.info("Re-diffing %d properties (source=%s)", len(ids), self.source)
        results = self._map(lambda pid: self.rediff_property(pid, day), ids)
        return self._finish(executed_at, day, results)

    def _map(self, func: Callable[[T], PropertyRunResult], items: Sequence[T]) -> List[PropertyRunResult]:
        if self.max_workers <= 1 or len(items) <= 1:
            results = []
            for index, item in enumerate(items):
                if index and self.property_delay:
                    time.sleep(self.property_delay)
                results.append(func(item))
            return results
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="property") as pool:
            return list(pool.map(func, items))

    def _finish(self, executed_at: str, day: str, results: List[PropertyRunResult]) -> BatchSummary:
        for result in results:
            try:
                self.database.add_run(executed_at, day, self.source, result)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to record run for %s", result.property_id)

        summary = BatchSummary(
            executed_at=executed_at,
            snapshot_date=day,
            source=self.source,
            results=results,
        )
        logger.info(
            "Batch done: success=%d suspect_empty=%d failed=%d skipped=%d "
            "(+%d appeared / -%d disappeared, %d events)",
            len(summary.succeeded),
            len(summary.suspect_empty),
            len(summary.failed),
            len(summary.skipped),
            summary.appeared_total,
            summary.disappeared_total,
            summary.events_written_total,
        )
        return summary
