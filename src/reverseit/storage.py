"""Persistencia SQLite para perfil, registros y configuracion."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from types import TracebackType
from typing import Any, TypeVar

from dateutil import tz
from dateutil.relativedelta import relativedelta

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
    clamp_targets,
    ensure_aware,
)

logger = logging.getLogger(__name__)

RETENTION = relativedelta(months=3)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS app_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS profile (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    name TEXT NOT NULL,
    age INTEGER NOT NULL,
    weight_kg REAL NOT NULL,
    height_cm REAL NOT NULL,
    diagnosis_date TEXT NOT NULL,
    target_glucose_min REAL NOT NULL,
    target_glucose_max REAL NOT NULL,
    target_daily_carbs INTEGER NOT NULL,
    target_daily_exercise_minutes INTEGER NOT NULL,
    use_metric_system INTEGER NOT NULL,
    onboarding_completed INTEGER NOT NULL,
    last_updated TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS glucose_samples (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    value_mg_dl REAL NOT NULL,
    context TEXT NOT NULL,
    note TEXT
);

CREATE TABLE IF NOT EXISTS food_samples (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    carbs_g REAL NOT NULL,
    protein_g REAL NOT NULL,
    fat_g REAL NOT NULL,
    calories REAL NOT NULL,
    meal_type TEXT NOT NULL,
    photo BLOB,
    note TEXT
);

CREATE TABLE IF NOT EXISTS exercise_samples (
    id TEXT PRIMARY KEY,
    activity TEXT NOT NULL,
    activity_kind TEXT NOT NULL,
    started_at TEXT NOT NULL,
    duration_s REAL NOT NULL,
    intensity TEXT NOT NULL,
    calories_burned REAL,
    note TEXT
);

CREATE TABLE IF NOT EXISTS glucose_food_links (
    glucose_id TEXT NOT NULL,
    food_id TEXT NOT NULL,
    PRIMARY KEY (glucose_id, food_id)
);

CREATE INDEX IF NOT EXISTS idx_glucose_timestamp ON glucose_samples(timestamp);
CREATE INDEX IF NOT EXISTS idx_food_timestamp ON food_samples(timestamp);
CREATE INDEX IF NOT EXISTS idx_exercise_started ON exercise_samples(started_at);
CREATE INDEX IF NOT EXISTS idx_links_food ON glucose_food_links(food_id);
"""


class StoreError(Exception):
    """Raised when pending changes cannot be committed."""


@dataclass(frozen=True)
class AppConfig:
    """Configuracion persistida de la app."""

    provider_root: str = ""
    export_dir: str = ""
    import_window_days: int = 7
    sync_enabled: bool = False


@dataclass(frozen=True)
class _Table:
    name: str
    time_column: str
    columns: tuple[str, ...]
    to_row: Callable[[Any], tuple[object, ...]]
    from_row: Callable[[sqlite3.Row], Any]


R = TypeVar("R", GlucoseSample, FoodSample, ExerciseSample)


class SQLiteStore:
    """Record store over a single SQLite connection.

    ``insert`` and ``delete`` only stage changes; ``save`` commits them.
    The connection is owned by the creating thread.
    """

    def __init__(self, db_path: Path) -> None:
        """Create store and ensure schema exists."""
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = self._connect()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> SQLiteStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # -- unit of work --

    def save(self) -> None:
        """Commit pending changes.

        Raises:
            StoreError: If the commit fails; pending changes are rolled back.
        """
        try:
            self._conn.commit()
        except sqlite3.Error as exc:
            self.rollback()
            raise StoreError(f"Commit failed: {exc}") from exc

    def rollback(self) -> None:
        """Discard pending changes."""
        try:
            self._conn.rollback()
        except sqlite3.Error as exc:
            raise StoreError(f"Rollback failed: {exc}") from exc

    def _execute(self, sql: str, params: Sequence[object] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise StoreError(f"Statement failed: {exc}") from exc

    # -- records --

    def insert(self, record: Record) -> None:
        """Stage an insert.

        Raises:
            StoreError: If SQLite rejects the row (locked database, constraint).
        """
        table = _table_for(type(record))
        placeholders = ", ".join("?" for _ in table.columns)
        self._execute(
            f"INSERT INTO {table.name} ({', '.join(table.columns)}) "
            f"VALUES ({placeholders})",
            table.to_row(record),
        )

    def delete(self, record: Record) -> None:
        """Delete one record; links to it are removed, never the linked records."""
        table = _table_for(type(record))
        self._execute(f"DELETE FROM {table.name} WHERE id = ?", (record.id,))
        if isinstance(record, GlucoseSample):
            self._execute(
                "DELETE FROM glucose_food_links WHERE glucose_id = ?", (record.id,)
            )
        elif isinstance(record, FoodSample):
            self._execute(
                "DELETE FROM glucose_food_links WHERE food_id = ?", (record.id,)
            )

    def delete_all(self, kind: type[Record]) -> None:
        table = _table_for(kind)
        self._execute(f"DELETE FROM {table.name}")
        if kind in (GlucoseSample, FoodSample):
            self._execute("DELETE FROM glucose_food_links")

    def fetch(
        self,
        kind: type[R],
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        descending: bool = False,
        limit: int | None = None,
        where: Callable[[R], bool] | None = None,
    ) -> list[R]:
        """Fetch records of ``kind`` within ``[start, end]`` ordered by time.

        Args:
            kind: Record class to fetch.
            start: Inclusive lower time bound.
            end: Inclusive upper time bound.
            descending: Newest first when True.
            limit: Maximum number of records returned.
            where: Extra predicate applied before ``limit``.

        Returns:
            List of records.
        """
        table = _table_for(kind)
        clauses: list[str] = []
        params: list[object] = []
        if start is not None:
            clauses.append(f"{table.time_column} >= ?")
            params.append(_iso(start))
        if end is not None:
            clauses.append(f"{table.time_column} <= ?")
            params.append(_iso(end))
        sql = f"SELECT * FROM {table.name}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {table.time_column} {'DESC' if descending else 'ASC'}"
        if limit is not None and where is None:
            sql += " LIMIT ?"
            params.append(limit)

        rows = self._execute(sql, params).fetchall()
        records: list[R] = [table.from_row(row) for row in rows]
        if where is not None:
            records = [r for r in records if where(r)]
            if limit is not None:
                records = records[:limit]
        return records

    def count(self, kind: type[Record]) -> int:
        table = _table_for(kind)
        row = self._conn.execute(f"SELECT COUNT(*) AS n FROM {table.name}").fetchone()
        return int(row["n"])

    # -- glucose <-> food links --

    def link(self, glucose: GlucoseSample, food: FoodSample) -> None:
        self._execute(
            "INSERT OR IGNORE INTO glucose_food_links(glucose_id, food_id) "
            "VALUES (?, ?)",
            (glucose.id, food.id),
        )

    def link_recent_meals(
        self, glucose: GlucoseSample, window: timedelta = timedelta(hours=2)
    ) -> int:
        """Link ``glucose`` to meals logged within ``window`` before it."""
        meals = self.fetch(
            FoodSample,
            start=glucose.timestamp - window,
            end=glucose.timestamp,
            where=lambda f: f.timestamp < glucose.timestamp,
        )
        for meal in meals:
            self.link(glucose, meal)
        return len(meals)

    def linked_food(self, glucose: GlucoseSample) -> list[FoodSample]:
        rows = self._conn.execute(
            """
            SELECT f.* FROM food_samples f
            JOIN glucose_food_links l ON l.food_id = f.id
            WHERE l.glucose_id = ?
            ORDER BY f.timestamp
            """,
            (glucose.id,),
        ).fetchall()
        return [_food_from_row(row) for row in rows]

    def linked_glucose(self, food: FoodSample) -> list[GlucoseSample]:
        rows = self._conn.execute(
            """
            SELECT g.* FROM glucose_samples g
            JOIN glucose_food_links l ON l.glucose_id = g.id
            WHERE l.food_id = ?
            ORDER BY g.timestamp
            """,
            (food.id,),
        ).fetchall()
        return [_glucose_from_row(row) for row in rows]

    # -- profile --

    def load_profile(self) -> Profile | None:
        row = self._conn.execute("SELECT * FROM profile WHERE id = 1").fetchone()
        if row is None:
            return None
        return Profile(
            name=row["name"],
            age=int(row["age"]),
            weight_kg=float(row["weight_kg"]),
            height_cm=float(row["height_cm"]),
            diagnosis_date=date.fromisoformat(row["diagnosis_date"]),
            target_glucose_min=float(row["target_glucose_min"]),
            target_glucose_max=float(row["target_glucose_max"]),
            target_daily_carbs=int(row["target_daily_carbs"]),
            target_daily_exercise_minutes=int(row["target_daily_exercise_minutes"]),
            use_metric_system=bool(row["use_metric_system"]),
            onboarding_completed=bool(row["onboarding_completed"]),
            last_updated=_parse_iso(row["last_updated"]),
        )

    def save_profile(self, profile: Profile) -> Profile:
        """Clamp targets and upsert the single profile row. Devuelve lo guardado."""
        clamped = clamp_targets(profile)
        self._conn.execute(
            """
            INSERT INTO profile(
                id, name, age, weight_kg, height_cm, diagnosis_date,
                target_glucose_min, target_glucose_max, target_daily_carbs,
                target_daily_exercise_minutes, use_metric_system,
                onboarding_completed, last_updated
            ) VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name=excluded.name,
                age=excluded.age,
                weight_kg=excluded.weight_kg,
                height_cm=excluded.height_cm,
                diagnosis_date=excluded.diagnosis_date,
                target_glucose_min=excluded.target_glucose_min,
                target_glucose_max=excluded.target_glucose_max,
                target_daily_carbs=excluded.target_daily_carbs,
                target_daily_exercise_minutes=excluded.target_daily_exercise_minutes,
                use_metric_system=excluded.use_metric_system,
                onboarding_completed=excluded.onboarding_completed,
                last_updated=excluded.last_updated
            """,
            (
                clamped.name,
                clamped.age,
                clamped.weight_kg,
                clamped.height_cm,
                clamped.diagnosis_date.isoformat(),
                clamped.target_glucose_min,
                clamped.target_glucose_max,
                clamped.target_daily_carbs,
                clamped.target_daily_exercise_minutes,
                int(clamped.use_metric_system),
                int(clamped.onboarding_completed),
                _iso(clamped.last_updated),
            ),
        )
        self.save()
        return clamped

    # -- lifecycle --

    def cleanup_old_data(self, now: datetime | None = None) -> int:
        """Delete glucose samples older than the retention horizon."""
        current = now or datetime.now(tz=tz.UTC)
        cutoff = _iso(current - RETENTION)
        ids = [
            row["id"]
            for row in self._conn.execute(
                "SELECT id FROM glucose_samples WHERE timestamp < ?", (cutoff,)
            ).fetchall()
        ]
        if ids:
            self._conn.executemany(
                "DELETE FROM glucose_food_links WHERE glucose_id = ?",
                [(i,) for i in ids],
            )
            self._conn.execute(
                "DELETE FROM glucose_samples WHERE timestamp < ?", (cutoff,)
            )
        self.save()
        logger.info("Retention cleanup removed %d glucose samples", len(ids))
        return len(ids)

    def reset_all_data(self) -> None:
        """Delete every record of every kind, including the profile."""
        self._conn.execute("DELETE FROM profile")
        for kind in (GlucoseSample, FoodSample, ExerciseSample):
            self.delete_all(kind)
        self.save()
        logger.warning("All local data was reset")

    # -- config --

    def load_config(self) -> AppConfig:
        """Devuelve configuracion guardada o defaults."""
        defaults = AppConfig()
        rows = self._conn.execute("SELECT key, value FROM app_config").fetchall()
        values = {row["key"]: row["value"] for row in rows}
        return AppConfig(
            provider_root=_parse_json(
                values.get("provider_root"), defaults.provider_root, str
            ),
            export_dir=_parse_json(values.get("export_dir"), defaults.export_dir, str),
            import_window_days=_parse_json(
                values.get("import_window_days"), defaults.import_window_days, int
            ),
            sync_enabled=_parse_json(
                values.get("sync_enabled"), defaults.sync_enabled, bool
            ),
        )

    def save_config(self, config: AppConfig) -> None:
        """Guarda la configuracion en tabla key/value."""
        payload = {
            "provider_root": json.dumps(config.provider_root),
            "export_dir": json.dumps(config.export_dir),
            "import_window_days": json.dumps(config.import_window_days),
            "sync_enabled": json.dumps(config.sync_enabled),
        }
        self._conn.executemany(
            """
            INSERT INTO app_config(key, value) VALUES(?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value
            """,
            payload.items(),
        )
        self.save()


T = TypeVar("T")


def _parse_json(raw: str | None, default: T, expected: type[T]) -> T:
    if raw is None:
        return default
    try:
        parsed: Any = json.loads(raw)
    except json.JSONDecodeError:
        return default
    # bool is a subclass of int; keep them apart.
    if expected is int and isinstance(parsed, bool):
        return default
    if not isinstance(parsed, expected):
        return default
    return parsed


def _iso(value: datetime) -> str:
    return ensure_aware(value).astimezone(tz.UTC).isoformat(timespec="microseconds")


def _parse_iso(raw: str) -> datetime:
    return ensure_aware(datetime.fromisoformat(raw)).astimezone(tz.UTC)


def _glucose_to_row(r: GlucoseSample) -> tuple[object, ...]:
    return (r.id, _iso(r.timestamp), r.value, r.context.value, r.note)


def _glucose_from_row(row: sqlite3.Row) -> GlucoseSample:
    return GlucoseSample(
        id=row["id"],
        timestamp=_parse_iso(row["timestamp"]),
        value=float(row["value_mg_dl"]),
        context=ReadingContext(row["context"]),
        note=row["note"],
    )


def _food_to_row(r: FoodSample) -> tuple[object, ...]:
    return (
        r.id,
        r.name,
        _iso(r.timestamp),
        r.carbs_g,
        r.protein_g,
        r.fat_g,
        r.calories,
        r.meal_type.value,
        r.photo,
        r.note,
    )


def _food_from_row(row: sqlite3.Row) -> FoodSample:
    return FoodSample(
        id=row["id"],
        name=row["name"],
        timestamp=_parse_iso(row["timestamp"]),
        carbs_g=float(row["carbs_g"]),
        protein_g=float(row["protein_g"]),
        fat_g=float(row["fat_g"]),
        calories=float(row["calories"]),
        meal_type=MealType(row["meal_type"]),
        photo=row["photo"],
        note=row["note"],
    )


def _exercise_to_row(r: ExerciseSample) -> tuple[object, ...]:
    kind = r.activity_kind or ActivityKind.OTHER
    return (
        r.id,
        r.activity,
        kind.value,
        _iso(r.start),
        r.duration_s,
        r.intensity.value,
        r.calories_burned,
        r.note,
    )


def _exercise_from_row(row: sqlite3.Row) -> ExerciseSample:
    calories = row["calories_burned"]
    return ExerciseSample(
        id=row["id"],
        activity=row["activity"],
        activity_kind=ActivityKind(row["activity_kind"]),
        start=_parse_iso(row["started_at"]),
        duration_s=float(row["duration_s"]),
        intensity=Intensity(row["intensity"]),
        calories_burned=float(calories) if calories is not None else None,
        note=row["note"],
    )


_TABLES: dict[type, _Table] = {
    GlucoseSample: _Table(
        name="glucose_samples",
        time_column="timestamp",
        columns=("id", "timestamp", "value_mg_dl", "context", "note"),
        to_row=_glucose_to_row,
        from_row=_glucose_from_row,
    ),
    FoodSample: _Table(
        name="food_samples",
        time_column="timestamp",
        columns=(
            "id",
            "name",
            "timestamp",
            "carbs_g",
            "protein_g",
            "fat_g",
            "calories",
            "meal_type",
            "photo",
            "note",
        ),
        to_row=_food_to_row,
        from_row=_food_from_row,
    ),
    ExerciseSample: _Table(
        name="exercise_samples",
        time_column="started_at",
        columns=(
            "id",
            "activity",
            "activity_kind",
            "started_at",
            "duration_s",
            "intensity",
            "calories_burned",
            "note",
        ),
        to_row=_exercise_to_row,
        from_row=_exercise_from_row,
    ),
}


def _table_for(kind: type) -> _Table:
    try:
        return _TABLES[kind]
    except KeyError:
        raise ValueError(f"Unsupported record kind: {kind!r}") from None
