from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from dateutil import tz

from reverseit.activity import ActivityKind
from reverseit.model import (
    ExerciseSample,
    FoodSample,
    GlucoseSample,
    Intensity,
    MealType,
    Profile,
    ReadingContext,
    Record,
)
from reverseit.providers.base import (
    AuthorizationStatus,
    Capability,
    GlucoseUnit,
    HealthProvider,
    ProviderError,
    ProviderItem,
    ProviderSample,
    ProviderWorkout,
)
from reverseit.storage import SQLiteStore, StoreError
from reverseit.sync import (
    GLUCOSE_BATCH_SIZE,
    WORKOUT_BATCH_SIZE,
    SyncCoordinator,
    batches,
    exercise_from_provider,
    glucose_from_provider,
    glucose_to_provider,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=tz.UTC)


def _glucose(age: timedelta, value: float, unit: str = "mg/dL") -> ProviderSample:
    at = NOW - age
    return ProviderSample(
        sample_type=Capability.BLOOD_GLUCOSE, value=value, unit=unit, start=at, end=at
    )


def _workout(age: timedelta, activity: str = "walking") -> ProviderWorkout:
    at = NOW - age
    return ProviderWorkout(
        activity=activity,
        start=at,
        end=at + timedelta(minutes=30),
        duration_s=1800,
        total_energy_kcal=120,
    )


class _FakeProvider(HealthProvider):
    def __init__(
        self,
        samples: Sequence[ProviderSample] = (),
        workouts: Sequence[ProviderWorkout] = (),
        *,
        available: bool = True,
        status: AuthorizationStatus = AuthorizationStatus.GRANTED,
    ) -> None:
        self.samples = list(samples)
        self.workouts = list(workouts)
        self.available = available
        self.status = status
        self.saved: list[ProviderItem] = []
        self.queries = 0
        self.fail_status = False
        self.fail_glucose = False
        self.fail_request = False
        self.fail_workouts = False
        self.fail_save = False

    def is_available(self) -> bool:
        return self.available

    async def authorization_status(
        self, capability: Capability
    ) -> AuthorizationStatus:
        if self.fail_status:
            raise RuntimeError("provider crashed")
        return self.status

    async def request_authorization(
        self, read: frozenset[Capability], write: frozenset[Capability]
    ) -> bool:
        if self.fail_request:
            raise ProviderError("user cancelled")
        return self.status is AuthorizationStatus.GRANTED

    async def query_samples(
        self,
        sample_type: Capability,
        start: datetime | None,
        end: datetime | None,
        *,
        ascending: bool = True,
        limit: int | None = None,
    ) -> list[ProviderSample]:
        if self.fail_glucose:
            raise ProviderError("glucose unavailable")
        # Ignores the window on purpose; the coordinator filters again.
        self.queries += 1
        out = sorted(self.samples, key=lambda s: s.start, reverse=not ascending)
        return out[:limit] if limit is not None else out

    async def query_workouts(
        self,
        start: datetime | None,
        end: datetime | None,
        *,
        ascending: bool = True,
    ) -> list[ProviderWorkout]:
        if self.fail_workouts:
            raise ProviderError("workouts unavailable")
        return list(reversed(self.workouts))

    async def save(self, items: Sequence[ProviderItem]) -> None:
        if self.fail_save:
            raise ProviderError("write denied")
        self.saved.extend(items)


class _FakeStore:
    """In-memory unit of work; the ``fail_on_save``-th save raises."""

    def __init__(self, fail_on_save: int | None = None) -> None:
        self.pending: list[Record] = []
        self.committed: list[Record] = []
        self.commits: list[list[Record]] = []
        self.saves = 0
        self.fail_on_save = fail_on_save

    def insert(self, record: Record) -> None:
        self.pending.append(record)

    def save(self) -> None:
        self.saves += 1
        if self.saves == self.fail_on_save:
            raise StoreError("disk full")
        self.commits.append(list(self.pending))
        self.committed.extend(self.pending)
        self.pending.clear()

    def rollback(self) -> None:
        self.pending.clear()

    def fetch(
        self,
        kind: type,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list:
        return [r for r in self.committed if isinstance(r, kind)]


class _CountingConnection:
    """Wraps a connection so that only the ``fail_on``-th commit fails."""

    def __init__(self, conn: sqlite3.Connection, fail_on: int) -> None:
        self._conn = conn
        self.fail_on = fail_on
        self.commits = 0

    def commit(self) -> None:
        self.commits += 1
        if self.commits == self.fail_on:
            raise sqlite3.OperationalError("disk I/O error")
        self._conn.commit()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)


def _coordinator(
    provider: _FakeProvider, store: object, clock: list[datetime] | None = None
) -> SyncCoordinator:
    ticks = clock if clock is not None else [NOW]
    coordinator = SyncCoordinator(
        provider, store, clock=lambda: ticks[0]  # type: ignore[arg-type]
    )
    asyncio.run(coordinator.check_authorization_status())
    return coordinator


def test_batches_split_and_reject_bad_size() -> None:
    assert [list(b) for b in batches([1, 2, 3, 4, 5], 2)] == [[1, 2], [3, 4], [5]]
    assert batches([], 3) == []
    with pytest.raises(ValueError, match="positive"):
        batches([1], 0)


def test_import_commits_once_per_batch() -> None:
    samples = [_glucose(timedelta(minutes=i + 1), 100 + i) for i in range(45)]
    workouts = [_workout(timedelta(hours=i + 1)) for i in range(25)]
    store = _FakeStore()
    coordinator = _coordinator(_FakeProvider(samples, workouts), store)

    result = asyncio.run(coordinator.import_recent())

    assert result.success
    assert (result.glucose_count, result.exercise_count) == (45, 25)
    assert store.saves == 3 + 3
    glucose_batches = [
        len(c) for c in store.commits if isinstance(c[0], GlucoseSample)
    ]
    workout_batches = [
        len(c) for c in store.commits if isinstance(c[0], ExerciseSample)
    ]
    assert glucose_batches == [GLUCOSE_BATCH_SIZE, GLUCOSE_BATCH_SIZE, 5]
    assert workout_batches == [WORKOUT_BATCH_SIZE, WORKOUT_BATCH_SIZE, 5]
    # Pipelines interleave between batches, never inside one.
    assert all(len({type(r) for r in commit}) == 1 for commit in store.commits)
    assert coordinator.last_successful_pull_at == NOW


def test_failed_commit_keeps_earlier_batches() -> None:
    samples = [_glucose(timedelta(minutes=i + 1), 100 + i) for i in range(45)]
    store = _FakeStore(fail_on_save=3)
    coordinator = _coordinator(_FakeProvider(samples), store)

    result = asyncio.run(coordinator.import_recent())

    assert not result.glucose_imported
    assert result.exercise_imported
    assert result.glucose_count == 40
    assert len(store.committed) == 40
    assert store.pending == []
    assert coordinator.last_successful_pull_at is None


def test_import_filters_window_and_sorts_ascending() -> None:
    samples = [
        _glucose(timedelta(hours=2), 120),
        _glucose(timedelta(days=8), 300),
        _glucose(timedelta(days=1), 110),
        _glucose(-timedelta(hours=1), 90),
        _glucose(timedelta(days=7), 130),
    ]
    store = _FakeStore()
    coordinator = _coordinator(_FakeProvider(samples), store)

    asyncio.run(coordinator.import_recent(7))

    imported = [r for r in store.committed if isinstance(r, GlucoseSample)]
    assert [r.value for r in imported] == [130, 110, 120]
    assert all(r.context is ReadingContext.RANDOM for r in imported)


def test_workout_import_sorted_and_mapped() -> None:
    workouts = [
        _workout(timedelta(hours=1), "cycling"),
        _workout(timedelta(hours=5), "curling"),
    ]
    store = _FakeStore()
    coordinator = _coordinator(_FakeProvider(workouts=workouts), store)

    asyncio.run(coordinator.import_recent())

    sessions = [r for r in store.committed if isinstance(r, ExerciseSample)]
    assert [s.activity for s in sessions] == ["Other Exercise", "Cycling"]
    assert sessions[1].activity_kind is ActivityKind.CYCLING
    assert all(s.intensity is Intensity.MODERATE for s in sessions)
    assert all(s.calories_burned == 120 for s in sessions)


def test_reimport_duplicates_records(tmp_path: Path) -> None:
    samples = [_glucose(timedelta(hours=i + 1), 100 + i) for i in range(3)]
    workouts = [_workout(timedelta(hours=2))]
    with SQLiteStore(tmp_path / "app.sqlite3") as store:
        coordinator = _coordinator(_FakeProvider(samples, workouts), store)
        asyncio.run(coordinator.import_recent())
        asyncio.run(coordinator.import_recent())
        assert store.count(GlucoseSample) == 6
        assert store.count(ExerciseSample) == 2


def test_reimport_with_skip_existing(tmp_path: Path) -> None:
    samples = [_glucose(timedelta(hours=i + 1), 100 + i) for i in range(3)]
    workouts = [_workout(timedelta(hours=2))]
    with SQLiteStore(tmp_path / "app.sqlite3") as store:
        coordinator = _coordinator(_FakeProvider(samples, workouts), store)
        asyncio.run(coordinator.import_recent())
        result = asyncio.run(coordinator.import_recent(skip_existing=True))
        assert result.success
        assert (result.glucose_count, result.exercise_count) == (0, 0)
        assert store.count(GlucoseSample) == 3
        assert store.count(ExerciseSample) == 1


def test_import_unauthorized_is_noop() -> None:
    provider = _FakeProvider(
        [_glucose(timedelta(hours=1), 100)], status=AuthorizationStatus.DENIED
    )
    store = _FakeStore()
    coordinator = _coordinator(provider, store)

    result = asyncio.run(coordinator.import_recent())

    assert (result.glucose_imported, result.exercise_imported) == (False, False)
    assert provider.queries == 0
    assert store.saves == 0


def test_workout_query_failure_does_not_block_glucose() -> None:
    provider = _FakeProvider([_glucose(timedelta(hours=1), 100)])
    provider.fail_workouts = True
    store = _FakeStore()
    coordinator = _coordinator(provider, store)

    result = asyncio.run(coordinator.import_recent())

    assert result.glucose_imported
    assert not result.exercise_imported
    assert len(store.committed) == 1


def test_mmol_samples_are_converted() -> None:
    reading = glucose_from_provider(_glucose(timedelta(hours=1), 5.5, "mmol/L"))
    assert reading.value == pytest.approx(99.0)
    with pytest.raises(ValueError):
        glucose_from_provider(_glucose(timedelta(hours=1), 5.5, "g/L"))


def test_exercise_from_provider_unknown_activity() -> None:
    workout = ProviderWorkout(
        activity="underwater_hockey",
        start=NOW,
        end=NOW + timedelta(minutes=20),
        duration_s=1200,
    )
    session = exercise_from_provider(workout)
    assert session.activity == "Other Exercise"
    assert session.activity_kind is ActivityKind.OTHER
    assert session.calories_burned is None


def test_check_authorization_never_raises() -> None:
    provider = _FakeProvider()
    provider.fail_status = True
    coordinator = SyncCoordinator(provider, _FakeStore())
    coordinator.authorized = True

    assert asyncio.run(coordinator.check_authorization_status()) is False
    assert coordinator.authorized is False


def test_check_authorization_unavailable() -> None:
    coordinator = _coordinator(_FakeProvider(available=False), _FakeStore())
    assert coordinator.authorized is False


def test_request_authorization_results() -> None:
    coordinator = SyncCoordinator(_FakeProvider(), _FakeStore())
    assert asyncio.run(coordinator.request_authorization()).granted
    assert coordinator.authorized

    failing = _FakeProvider()
    failing.fail_request = True
    coordinator = SyncCoordinator(failing, _FakeStore())
    result = asyncio.run(coordinator.request_authorization())
    assert not result.granted
    assert isinstance(result.error, ProviderError)

    unavailable = SyncCoordinator(_FakeProvider(available=False), _FakeStore())
    result = asyncio.run(unavailable.request_authorization())
    assert not result.granted
    assert result.error is None


def test_latest_glucose_is_throttled() -> None:
    provider = _FakeProvider(
        [_glucose(timedelta(hours=3), 100), _glucose(timedelta(hours=1), 140)]
    )
    clock = [NOW]
    coordinator = _coordinator(provider, _FakeStore(), clock)

    assert asyncio.run(coordinator.latest_glucose()) == 140
    provider.samples.append(_glucose(timedelta(minutes=1), 180))
    clock[0] = NOW + timedelta(seconds=30)
    assert asyncio.run(coordinator.latest_glucose()) == 140
    assert provider.queries == 1

    clock[0] = NOW + timedelta(seconds=61)
    assert asyncio.run(coordinator.latest_glucose()) == 180
    assert provider.queries == 2


def test_push_food_without_macros_is_noop() -> None:
    provider = _FakeProvider()
    coordinator = _coordinator(provider, _FakeStore())
    water = FoodSample(
        name="Water", carbs_g=0, protein_g=0, fat_g=0, meal_type=MealType.SNACK
    )

    result = asyncio.run(coordinator.push(water))

    assert result.success
    assert result.noop
    assert provider.saved == []


def test_push_food_writes_one_sample_per_macro() -> None:
    provider = _FakeProvider()
    coordinator = _coordinator(provider, _FakeStore())
    meal = FoodSample(
        name="Toast", carbs_g=30, protein_g=0, fat_g=4, meal_type=MealType.BREAKFAST
    )

    result = asyncio.run(coordinator.push(meal))

    assert result.writes == 2
    kinds = [item.sample_type for item in provider.saved]  # type: ignore[union-attr]
    assert kinds == [Capability.DIETARY_CARBOHYDRATES, Capability.DIETARY_FAT]
    assert provider.saved[0].metadata == {"meal": "breakfast", "food_name": "Toast"}


def test_push_exercise_mapping() -> None:
    provider = _FakeProvider()
    coordinator = _coordinator(provider, _FakeStore())
    session = ExerciseSample(
        activity="Morning Jog",
        duration_s=1800,
        start=NOW,
        intensity=Intensity.VIGOROUS,
        calories_burned=300,
        note="park",
    )

    result = asyncio.run(coordinator.push(session))

    assert result.success and result.writes == 1
    (workout,) = provider.saved
    assert isinstance(workout, ProviderWorkout)
    assert workout.activity == "running"
    assert workout.end == NOW + timedelta(minutes=30)
    assert workout.total_energy_kcal == 300
    assert workout.metadata == {"intensity": "vigorous", "note": "park"}


def test_push_glucose_in_provider_unit() -> None:
    reading = GlucoseSample(value=90, timestamp=NOW, context=ReadingContext.FASTING)
    sample = glucose_to_provider(reading, GlucoseUnit.MMOL_L)
    assert sample.value == pytest.approx(5.0)
    assert sample.unit == "mmol/L"
    assert sample.metadata == {"meal_time": "fasting"}


def test_push_failure_is_reported() -> None:
    provider = _FakeProvider()
    provider.fail_save = True
    coordinator = _coordinator(provider, _FakeStore())

    result = asyncio.run(coordinator.push(GlucoseSample(value=100, timestamp=NOW)))

    assert not result.success
    assert isinstance(result.error, ProviderError)


def test_glucose_query_failure_does_not_block_workouts() -> None:
    provider = _FakeProvider(
        [_glucose(timedelta(hours=1), 100)], [_workout(timedelta(hours=2))]
    )
    provider.fail_glucose = True
    store = _FakeStore()
    coordinator = _coordinator(provider, store)

    result = asyncio.run(coordinator.import_recent())

    assert not result.glucose_imported
    assert result.exercise_imported
    assert (result.glucose_count, result.exercise_count) == (0, 1)
    assert [type(r) for r in store.committed] == [ExerciseSample]
    assert coordinator.last_successful_pull_at is None


def test_unexpected_workout_error_does_not_block_glucose() -> None:
    class _CrashingProvider(_FakeProvider):
        async def query_workouts(self, *args: Any, **kwargs: Any) -> list:
            raise RuntimeError("malformed export")

    provider = _CrashingProvider([_glucose(timedelta(hours=1), 100)])
    store = _FakeStore()
    coordinator = _coordinator(provider, store)

    result = asyncio.run(coordinator.import_recent())

    assert result.glucose_imported
    assert not result.exercise_imported
    assert result.glucose_count == 1
    assert len(store.committed) == 1


def test_failed_sqlite_commit_keeps_earlier_batches(tmp_path: Path) -> None:
    samples = [_glucose(timedelta(minutes=i + 1), 100 + i) for i in range(45)]
    with SQLiteStore(tmp_path / "app.sqlite3") as store:
        real = store._conn
        store._conn = _CountingConnection(real, fail_on=3)  # type: ignore[assignment]
        coordinator = _coordinator(_FakeProvider(samples), store)

        result = asyncio.run(coordinator.import_recent())

        store._conn = real
        assert not result.glucose_imported
        assert result.glucose_count == 40
        assert store.count(GlucoseSample) == 40


def test_locked_database_fails_import_cleanly(tmp_path: Path) -> None:
    db = tmp_path / "app.sqlite3"
    samples = [_glucose(timedelta(hours=i + 1), 100 + i) for i in range(3)]
    workouts = [_workout(timedelta(hours=2))]
    with SQLiteStore(db) as store:
        store._conn.execute("PRAGMA busy_timeout = 100")
        coordinator = _coordinator(_FakeProvider(samples, workouts), store)
        blocker = sqlite3.connect(db, isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            result = asyncio.run(coordinator.import_recent())
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        assert (result.glucose_imported, result.exercise_imported) == (False, False)
        assert (result.glucose_count, result.exercise_count) == (0, 0)
        assert store.count(GlucoseSample) == 0

        result = asyncio.run(coordinator.import_recent())
        assert result.success
        assert store.count(GlucoseSample) == 3
        assert store.count(ExerciseSample) == 1


def test_push_rejects_unknown_record_type() -> None:
    coordinator = _coordinator(_FakeProvider(), _FakeStore())
    with pytest.raises(TypeError, match="Cannot push record of type Profile"):
        asyncio.run(coordinator.push(Profile()))  # type: ignore[arg-type]
