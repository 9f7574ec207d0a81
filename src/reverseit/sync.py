"""Coordinador de sincronización con el proveedor externo de salud.

Imports a bounded window of provider samples into the local store in
small batches, committing after each batch, and pushes locally created
records outward.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol, TypeVar

from dateutil import tz

from reverseit.activity import ActivityKind, activity_from_provider, label_for
from reverseit.model import (
    ExerciseSample,
    FoodSample,
    GlucoseSample,
    Intensity,
    ReadingContext,
    Record,
)
from reverseit.providers.base import (
    READ_CAPABILITIES,
    WRITE_CAPABILITIES,
    AuthorizationStatus,
    Capability,
    GlucoseUnit,
    HealthProvider,
    ProviderError,
    ProviderItem,
    ProviderSample,
    ProviderWorkout,
    from_mg_dl,
    to_mg_dl,
)
from reverseit.storage import StoreError

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 7
GLUCOSE_BATCH_SIZE = 20
WORKOUT_BATCH_SIZE = 10
MINIMUM_FETCH_INTERVAL = timedelta(seconds=60)

T = TypeVar("T")


class RecordStore(Protocol):
    """The part of the local store the coordinator writes through."""

    def insert(self, record: Record) -> None: ...

    def save(self) -> None: ...

    def rollback(self) -> None: ...

    def fetch(
        self,
        kind: type,
        *,
        start: datetime | None = ...,
        end: datetime | None = ...,
    ) -> list: ...


@dataclass(frozen=True)
class ImportResult:
    """Per-pipeline outcome of one import."""

    glucose_imported: bool
    exercise_imported: bool
    glucose_count: int = 0
    exercise_count: int = 0

    @property
    def success(self) -> bool:
        return self.glucose_imported and self.exercise_imported


@dataclass(frozen=True)
class AuthorizationResult:
    granted: bool
    error: Exception | None = None


@dataclass(frozen=True)
class PushResult:
    """Outcome of pushing one local record to the provider."""

    success: bool
    error: Exception | None = None
    writes: int = 0

    @property
    def noop(self) -> bool:
        return self.success and self.writes == 0


@dataclass(frozen=True)
class _PipelineOutcome:
    ok: bool
    committed: int


class SyncCoordinator:
    """Owns authorization state and moves records between provider and store.

    All store mutation happens on the event loop thread. Between inserting
    a batch and committing it there is no ``await``, so batches of the two
    import pipelines never interleave inside one transaction.
    """

    def __init__(
        self,
        provider: HealthProvider,
        store: RecordStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._clock = clock or (lambda: datetime.now(tz=tz.UTC))
        self.authorized = False
        self.last_successful_pull_at: datetime | None = None
        self._last_fetch_at: datetime | None = None
        self._cached_latest: float | None = None

    # -- authorization --

    async def check_authorization_status(self) -> bool:
        """Refresh ``authorized`` from the provider. Never raises."""
        try:
            if not self._provider.is_available():
                self.authorized = False
            else:
                status = await self._provider.authorization_status(
                    Capability.BLOOD_GLUCOSE
                )
                self.authorized = status is AuthorizationStatus.GRANTED
        except Exception:
            logger.exception("Authorization status check failed")
            self.authorized = False
        return self.authorized

    async def request_authorization(self) -> AuthorizationResult:
        """Ask the provider for read and write access. Failures are not retried."""
        if not self._provider.is_available():
            self.authorized = False
            return AuthorizationResult(granted=False)
        try:
            granted = await self._provider.request_authorization(
                READ_CAPABILITIES, WRITE_CAPABILITIES
            )
        except ProviderError as exc:
            logger.warning("Authorization request failed: %s", exc)
            self.authorized = False
            return AuthorizationResult(granted=False, error=exc)
        self.authorized = granted
        logger.info("Authorization %s", "granted" if granted else "denied")
        return AuthorizationResult(granted=granted)

    # -- pull --

    async def import_recent(
        self,
        window_days: int = DEFAULT_WINDOW_DAYS,
        *,
        skip_existing: bool = False,
    ) -> ImportResult:
        """Import glucose samples and workouts from the last ``window_days``.

        Every call re-imports the whole window, so overlapping calls create
        duplicate records unless ``skip_existing`` is set.

        Args:
            window_days: Size of the lookback window in days.
            skip_existing: Drop samples already present locally before batching.

        Returns:
            Per-pipeline success flags and committed counts.
        """
        if not self.authorized or not self._provider.is_available():
            logger.info("Import skipped: provider not authorized or unavailable")
            return ImportResult(glucose_imported=False, exercise_imported=False)

        end = self._clock()
        start = end - timedelta(days=window_days)
        glucose, workouts = await asyncio.gather(
            _guarded(self._import_glucose(start, end, skip_existing), "glucose"),
            _guarded(self._import_workouts(start, end, skip_existing), "workout"),
        )
        result = ImportResult(
            glucose_imported=glucose.ok,
            exercise_imported=workouts.ok,
            glucose_count=glucose.committed,
            exercise_count=workouts.committed,
        )
        if result.success:
            self.last_successful_pull_at = end
        logger.info(
            "Import finished: glucose=%s (%d) workouts=%s (%d)",
            glucose.ok,
            glucose.committed,
            workouts.ok,
            workouts.committed,
        )
        return result

    async def _import_glucose(
        self, start: datetime, end: datetime, skip_existing: bool
    ) -> _PipelineOutcome:
        try:
            samples = await self._provider.query_samples(
                Capability.BLOOD_GLUCOSE, start, end, ascending=True
            )
        except ProviderError as exc:
            logger.warning("Glucose query failed: %s", exc)
            return _PipelineOutcome(ok=False, committed=0)

        in_window = sorted(
            (s for s in samples if start <= s.start <= end), key=lambda s: s.start
        )
        records: list[GlucoseSample] = []
        for sample in in_window:
            try:
                records.append(glucose_from_provider(sample))
            except ValueError as exc:
                logger.warning("Skipping glucose sample at %s: %s", sample.start, exc)
        if skip_existing:
            existing = {
                (r.timestamp, r.value)
                for r in self._store.fetch(GlucoseSample, start=start, end=end)
            }
            records = [r for r in records if (r.timestamp, r.value) not in existing]
        return await self._commit_in_batches(records, GLUCOSE_BATCH_SIZE, "glucose")

    async def _import_workouts(
        self, start: datetime, end: datetime, skip_existing: bool
    ) -> _PipelineOutcome:
        try:
            workouts = await self._provider.query_workouts(start, end, ascending=True)
        except ProviderError as exc:
            logger.warning("Workout query failed: %s", exc)
            return _PipelineOutcome(ok=False, committed=0)

        in_window = sorted(
            (w for w in workouts if start <= w.start <= end), key=lambda w: w.start
        )
        records: list[ExerciseSample] = []
        for workout in in_window:
            try:
                records.append(exercise_from_provider(workout))
            except ValueError as exc:
                logger.warning("Skipping workout at %s: %s", workout.start, exc)
        if skip_existing:
            existing = {
                (r.start, r.duration_s, r.activity)
                for r in self._store.fetch(ExerciseSample, start=start, end=end)
            }
            records = [
                r
                for r in records
                if (r.start, r.duration_s, r.activity) not in existing
            ]
        return await self._commit_in_batches(records, WORKOUT_BATCH_SIZE, "workout")

    async def _commit_in_batches(
        self, records: Sequence[Record], batch_size: int, label: str
    ) -> _PipelineOutcome:
        committed = 0
        for index, batch in enumerate(batches(records, batch_size), start=1):
            try:
                for record in batch:
                    self._store.insert(record)
                self._store.save()
            except StoreError as exc:
                self._discard_pending()
                logger.error(
                    "Commit of %s batch %d failed, %d records kept: %s",
                    label,
                    index,
                    committed,
                    exc,
                )
                return _PipelineOutcome(ok=False, committed=committed)
            committed += len(batch)
            logger.debug("Committed %s batch %d (%d records)", label, index, len(batch))
            # Let the other pipeline run between batches.
            await asyncio.sleep(0)
        return _PipelineOutcome(ok=True, committed=committed)

    def _discard_pending(self) -> None:
        try:
            self._store.rollback()
        except StoreError as exc:
            logger.error("Rollback after failed batch also failed: %s", exc)

    async def latest_glucose(self) -> float | None:
        """Newest provider glucose value in mg/dL, throttled to one query a minute."""
        now = self._clock()
        if (
            self._last_fetch_at is not None
            and now - self._last_fetch_at <= MINIMUM_FETCH_INTERVAL
        ):
            return self._cached_latest
        if not self.authorized or not self._provider.is_available():
            return None
        try:
            samples = await self._provider.query_samples(
                Capability.BLOOD_GLUCOSE, None, None, ascending=False, limit=1
            )
        except ProviderError as exc:
            logger.warning("Latest glucose query failed: %s", exc)
            return None
        if not samples:
            return None
        try:
            value = to_mg_dl(samples[0].value, samples[0].unit)
        except ValueError as exc:
            logger.warning("Latest glucose has an unknown unit: %s", exc)
            return None
        self._last_fetch_at = now
        self._cached_latest = value
        return value

    # -- push --

    async def push(self, record: Record) -> PushResult:
        if isinstance(record, GlucoseSample):
            return await self.push_glucose(record)
        if isinstance(record, FoodSample):
            return await self.push_food(record)
        if isinstance(record, ExerciseSample):
            return await self.push_exercise(record)
        raise TypeError(f"Cannot push record of type {type(record).__name__}")

    async def push_glucose(self, reading: GlucoseSample) -> PushResult:
        return await self._save(
            [glucose_to_provider(reading, self._provider.glucose_unit)]
        )

    async def push_food(self, food: FoodSample) -> PushResult:
        samples = food_to_provider(food)
        if not samples:
            logger.info("Food '%s' has no macros to push", food.name)
            return PushResult(success=True, writes=0)
        return await self._save(samples)

    async def push_exercise(self, exercise: ExerciseSample) -> PushResult:
        return await self._save([exercise_to_provider(exercise)])

    async def _save(self, items: Sequence[ProviderItem]) -> PushResult:
        try:
            await self._provider.save(items)
        except ProviderError as exc:
            logger.warning("Push of %d items failed: %s", len(items), exc)
            return PushResult(success=False, error=exc)
        logger.info("Pushed %d items to provider", len(items))
        return PushResult(success=True, writes=len(items))


async def _guarded(
    pipeline: Awaitable[_PipelineOutcome], label: str
) -> _PipelineOutcome:
    """Reduce an unexpected pipeline error to a failed outcome."""
    try:
        return await pipeline
    except Exception:
        logger.exception("Unexpected error in %s import", label)
        return _PipelineOutcome(ok=False, committed=0)


def batches(items: Sequence[T], size: int) -> list[Sequence[T]]:
    """Split ``items`` into consecutive chunks of at most ``size``."""
    if size <= 0:
        raise ValueError(f"Batch size must be positive: {size}")
    return [items[i : i + size] for i in range(0, len(items), size)]


def glucose_from_provider(sample: ProviderSample) -> GlucoseSample:
    """Provider glucose samples carry no meal context; they import as random."""
    return GlucoseSample(
        timestamp=sample.start,
        value=to_mg_dl(sample.value, sample.unit),
        context=ReadingContext.RANDOM,
    )


def exercise_from_provider(workout: ProviderWorkout) -> ExerciseSample:
    """Provider workouts carry no intensity; they import as moderate."""
    kind = activity_from_provider(workout.activity)
    return ExerciseSample(
        activity=label_for(kind),
        activity_kind=kind,
        start=workout.start,
        duration_s=workout.duration_s,
        calories_burned=workout.total_energy_kcal,
        intensity=Intensity.MODERATE,
    )


def food_to_provider(food: FoodSample) -> list[ProviderSample]:
    metadata = {"meal": food.meal_type.value, "food_name": food.name}
    out: list[ProviderSample] = []
    for capability, grams in (
        (Capability.DIETARY_CARBOHYDRATES, food.carbs_g),
        (Capability.DIETARY_PROTEIN, food.protein_g),
        (Capability.DIETARY_FAT, food.fat_g),
    ):
        if grams > 0:
            out.append(
                ProviderSample(
                    sample_type=capability,
                    value=grams,
                    unit="g",
                    start=food.timestamp,
                    end=food.timestamp,
                    metadata=dict(metadata),
                )
            )
    return out


def exercise_to_provider(exercise: ExerciseSample) -> ProviderWorkout:
    metadata: dict[str, object] = {"intensity": exercise.intensity.value}
    if exercise.note:
        metadata["note"] = exercise.note
    kind = exercise.activity_kind or ActivityKind.OTHER
    return ProviderWorkout(
        activity=kind.value,
        start=exercise.start,
        end=exercise.start + timedelta(seconds=exercise.duration_s),
        duration_s=exercise.duration_s,
        total_energy_kcal=exercise.calories_burned,
        metadata=metadata,
    )


def glucose_to_provider(reading: GlucoseSample, unit: GlucoseUnit) -> ProviderSample:
    metadata: dict[str, object] = {"meal_time": reading.context.value}
    if reading.note:
        metadata["note"] = reading.note
    return ProviderSample(
        sample_type=Capability.BLOOD_GLUCOSE,
        value=from_mg_dl(reading.value, unit),
        unit=unit.value,
        start=reading.timestamp,
        end=reading.timestamp,
        metadata=metadata,
    )
