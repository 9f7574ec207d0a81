"""Agregados diarios y progreso de glucosa sobre los registros locales."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum

import pandas as pd
from dateutil import tz

from reverseit.metrics import estimated_calories, glucose_status
from reverseit.model import ExerciseSample, FoodSample, GlucoseSample, Profile

_LOCAL_TZ = tz.tzlocal()

GLUCOSE_COLUMNS = [
    "datetime",
    "date",
    "time",
    "glucose_mg_dl",
    "context",
    "status",
    "note",
]


class ProgressStatus(str, Enum):
    EXCELLENT = "Excellent Control"
    GOOD = "Good Control"
    FAIR = "Fair Control"
    NEEDS_IMPROVEMENT = "Needs Improvement"


@dataclass(frozen=True)
class GlucoseProgress:
    """Time-in-range summary over the last ``days_analyzed`` days."""

    in_range_percentage: float
    average_reading: float
    total_readings: int
    days_analyzed: int

    @property
    def status(self) -> ProgressStatus:
        if self.in_range_percentage >= 80:
            return ProgressStatus.EXCELLENT
        if self.in_range_percentage >= 60:
            return ProgressStatus.GOOD
        if self.in_range_percentage >= 40:
            return ProgressStatus.FAIR
        return ProgressStatus.NEEDS_IMPROVEMENT


@dataclass(frozen=True)
class DailyTotals:
    day: date
    carbs_g: float
    food_calories: float
    exercise_seconds: float
    exercise_calories: float


def glucose_frame(samples: Sequence[GlucoseSample]) -> pd.DataFrame:
    """Convert glucose samples to a DataFrame in local time, oldest first."""
    rows = []
    for s in samples:
        local = s.timestamp.astimezone(_LOCAL_TZ)
        rows.append(
            {
                "datetime": local,
                "date": local.date(),
                "time": local.time().replace(second=0, microsecond=0),
                "glucose_mg_dl": s.value,
                "context": s.context.value,
                "status": glucose_status(s.value).value,
                "note": s.note,
            }
        )
    if not rows:
        return pd.DataFrame(columns=GLUCOSE_COLUMNS)
    df = pd.DataFrame(rows)
    return df.sort_values("datetime").reset_index(drop=True)


def daily_glucose_summary(glucose_events: pd.DataFrame) -> pd.DataFrame:
    """Aggregate glucose by day (count/min/max/avg)."""
    if glucose_events.empty:
        return pd.DataFrame(
            columns=[
                "date",
                "glucose_count",
                "glucose_min",
                "glucose_max",
                "glucose_avg",
            ]
        )
    g = glucose_events.groupby("date", as_index=False).agg(
        glucose_count=("glucose_mg_dl", "count"),
        glucose_min=("glucose_mg_dl", "min"),
        glucose_max=("glucose_mg_dl", "max"),
        glucose_avg=("glucose_mg_dl", "mean"),
    )
    g["glucose_avg"] = g["glucose_avg"].round(2)
    return g.sort_values("date").reset_index(drop=True)


def glucose_progress(
    samples: Sequence[GlucoseSample],
    profile: Profile,
    days: int = 30,
    now: datetime | None = None,
) -> GlucoseProgress:
    """Share of readings inside the profile target range over ``days``.

    No readings in the window gives zeros instead of dividing by zero.
    """
    end = now or datetime.now(tz=_LOCAL_TZ)
    start = end - timedelta(days=days)
    values = pd.Series(
        [s.value for s in samples if start <= s.timestamp <= end], dtype="float64"
    )
    if values.empty:
        return GlucoseProgress(0.0, 0.0, 0, days)
    in_range = values.between(profile.target_glucose_min, profile.target_glucose_max)
    return GlucoseProgress(
        in_range_percentage=float(in_range.mean() * 100),
        average_reading=float(values.mean()),
        total_readings=int(values.size),
        days_analyzed=days,
    )


def daily_totals(
    food: Sequence[FoodSample],
    exercise: Sequence[ExerciseSample],
    day: date,
) -> DailyTotals:
    """Sum meals and exercise whose local date is ``day``."""
    meals = [f for f in food if f.timestamp.astimezone(_LOCAL_TZ).date() == day]
    sessions = [e for e in exercise if e.start.astimezone(_LOCAL_TZ).date() == day]
    return DailyTotals(
        day=day,
        carbs_g=sum(f.carbs_g for f in meals),
        food_calories=sum(f.calories or 0.0 for f in meals),
        exercise_seconds=sum(e.duration_s for e in sessions),
        exercise_calories=sum(estimated_calories(e) for e in sessions),
    )


def on_track_with_carbs(totals: DailyTotals, profile: Profile) -> bool:
    return totals.carbs_g <= profile.target_daily_carbs


def on_track_with_exercise(totals: DailyTotals, profile: Profile) -> bool:
    return totals.exercise_seconds >= profile.target_daily_exercise_minutes * 60
