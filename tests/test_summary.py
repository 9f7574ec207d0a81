from __future__ import annotations

from datetime import datetime, timedelta

import pandas as pd
import pytest
from dateutil import tz

from reverseit.model import (
    ExerciseSample,
    FoodSample,
    GlucoseSample,
    MealType,
    Profile,
    ReadingContext,
)
from reverseit.summary import (
    GLUCOSE_COLUMNS,
    DailyTotals,
    GlucoseProgress,
    ProgressStatus,
    daily_glucose_summary,
    daily_totals,
    glucose_frame,
    glucose_progress,
    on_track_with_carbs,
    on_track_with_exercise,
)

LOCAL = tz.tzlocal()
NOW = datetime(2026, 3, 10, 20, 0, tzinfo=LOCAL)


def test_glucose_frame_sorted_local() -> None:
    samples = [
        GlucoseSample(value=200, timestamp=NOW - timedelta(hours=1)),
        GlucoseSample(
            value=65, timestamp=NOW - timedelta(hours=5), context=ReadingContext.FASTING
        ),
    ]
    df = glucose_frame(samples)
    assert list(df.columns) == GLUCOSE_COLUMNS
    assert df["glucose_mg_dl"].tolist() == [65, 200]
    assert df["status"].tolist() == ["low", "high"]
    assert df.iloc[0]["context"] == "fasting"


def test_glucose_frame_empty_has_columns() -> None:
    df = glucose_frame([])
    assert df.empty
    assert list(df.columns) == GLUCOSE_COLUMNS


def test_daily_glucose_summary() -> None:
    df = pd.DataFrame(
        {
            "date": [
                pd.to_datetime("2025-01-02").date(),
                pd.to_datetime("2025-01-02").date(),
                pd.to_datetime("2025-01-03").date(),
            ],
            "glucose_mg_dl": [100.0, 121.0, 90.0],
        }
    )
    out = daily_glucose_summary(df)
    assert out["glucose_count"].tolist() == [2, 1]
    assert out.iloc[0]["glucose_min"] == 100.0
    assert out.iloc[0]["glucose_max"] == 121.0
    assert out.iloc[0]["glucose_avg"] == 110.5


def test_daily_glucose_summary_empty() -> None:
    out = daily_glucose_summary(glucose_frame([]))
    assert out.empty
    assert "glucose_avg" in out.columns


def test_glucose_progress_window_and_status() -> None:
    samples = [
        GlucoseSample(value=100, timestamp=NOW - timedelta(days=1)),
        GlucoseSample(value=130, timestamp=NOW - timedelta(days=2)),
        GlucoseSample(value=200, timestamp=NOW - timedelta(days=3)),
        GlucoseSample(value=90, timestamp=NOW - timedelta(days=4)),
        GlucoseSample(value=300, timestamp=NOW - timedelta(days=40)),
    ]
    progress = glucose_progress(samples, Profile(), days=30, now=NOW)
    assert progress.total_readings == 4
    assert progress.in_range_percentage == pytest.approx(75.0)
    assert progress.average_reading == pytest.approx(130.0)
    assert progress.status is ProgressStatus.GOOD


def test_glucose_progress_without_readings() -> None:
    progress = glucose_progress([], Profile(), days=7, now=NOW)
    assert progress == GlucoseProgress(0.0, 0.0, 0, 7)
    assert progress.status is ProgressStatus.NEEDS_IMPROVEMENT


@pytest.mark.parametrize(
    ("pct", "status"),
    [
        (80, ProgressStatus.EXCELLENT),
        (60, ProgressStatus.GOOD),
        (40, ProgressStatus.FAIR),
        (39.9, ProgressStatus.NEEDS_IMPROVEMENT),
    ],
)
def test_progress_status_thresholds(pct: float, status: ProgressStatus) -> None:
    assert GlucoseProgress(pct, 120.0, 10, 30).status is status


def test_daily_totals_and_targets() -> None:
    day = NOW.date()
    food = [
        FoodSample(
            name="Lunch",
            carbs_g=80,
            protein_g=20,
            fat_g=10,
            meal_type=MealType.LUNCH,
            timestamp=NOW - timedelta(hours=6),
        ),
        FoodSample(
            name="Yesterday",
            carbs_g=200,
            protein_g=0,
            fat_g=0,
            meal_type=MealType.DINNER,
            timestamp=NOW - timedelta(days=1),
        ),
    ]
    exercise = [
        ExerciseSample(
            activity="Walk",
            duration_s=1200,
            start=NOW - timedelta(hours=2),
            calories_burned=90,
        ),
    ]
    totals = daily_totals(food, exercise, day)
    assert totals == DailyTotals(
        day=day,
        carbs_g=80,
        food_calories=80 * 4 + 20 * 4 + 10 * 9,
        exercise_seconds=1200,
        exercise_calories=90,
    )
    profile = Profile(target_daily_carbs=100, target_daily_exercise_minutes=30)
    assert on_track_with_carbs(totals, profile)
    assert not on_track_with_exercise(totals, profile)
