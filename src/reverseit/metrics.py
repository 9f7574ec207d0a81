"""Métricas derivadas (funciones puras sobre registros)."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, timedelta
from enum import Enum

from dateutil.relativedelta import relativedelta

from reverseit.model import (
    KCAL_PER_GRAM_CARBS,
    KCAL_PER_GRAM_FAT,
    KCAL_PER_GRAM_PROTEIN,
    ExerciseSample,
    FoodSample,
    GlucoseSample,
    Profile,
)

LOW_THRESHOLD = 70.0
HIGH_THRESHOLD = 180.0
DEFAULT_RANGE = (70.0, 140.0)
MET_CONVERSION = 3.5 / 200.0
GLUCOSE_IMPACT_WINDOW = timedelta(hours=2)


class GlucoseStatus(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class ActivityLevel(str, Enum):
    LIGHT = "light"
    MODERATE = "moderate"
    INTENSE = "intense"


def glucose_status(value: float) -> GlucoseStatus:
    """Classify a mg/dL value: <70 low, >180 high, normal otherwise."""
    if value < LOW_THRESHOLD:
        return GlucoseStatus.LOW
    if value > HIGH_THRESHOLD:
        return GlucoseStatus.HIGH
    return GlucoseStatus.NORMAL


def is_in_range(value: float, low: float, high: float) -> bool:
    return low <= value <= high


def is_in_default_range(value: float) -> bool:
    return is_in_range(value, *DEFAULT_RANGE)


def macro_percentages(food: FoodSample) -> tuple[float, float, float]:
    """Return (carbs, protein, fat) as percentage of the meal calories.

    A meal with zero calories returns zeros.
    """
    calories = food.calories or 0.0
    if calories <= 0:
        return (0.0, 0.0, 0.0)
    return (
        food.carbs_g * KCAL_PER_GRAM_CARBS / calories * 100,
        food.protein_g * KCAL_PER_GRAM_PROTEIN / calories * 100,
        food.fat_g * KCAL_PER_GRAM_FAT / calories * 100,
    )


def estimated_calories(exercise: ExerciseSample) -> float:
    """Actual calories when known, else minutes * MET * 3.5 / 200."""
    if exercise.calories_burned is not None:
        return exercise.calories_burned
    return (
        exercise.duration_minutes * exercise.intensity.met_multiplier * MET_CONVERSION
    )


def activity_level(exercise: ExerciseSample) -> ActivityLevel:
    per_hour = estimated_calories(exercise) / (exercise.duration_s / 3600)
    if per_hour < 200:
        return ActivityLevel.LIGHT
    if per_hour < 400:
        return ActivityLevel.MODERATE
    return ActivityLevel.INTENSE


def exercise_goal_progress(exercise: ExerciseSample, target_minutes: int) -> float:
    if target_minutes <= 0:
        return 0.0
    return min(exercise.duration_minutes / target_minutes, 1.0)


def bmi(profile: Profile) -> float:
    height_m = profile.height_cm / 100
    if height_m <= 0:
        return 0.0
    return profile.weight_kg / (height_m * height_m)


def bmi_category(value: float) -> str:
    if value < 18.5:
        return "Underweight"
    if value < 25:
        return "Normal"
    if value < 30:
        return "Overweight"
    return "Obese"


def diabetes_duration(diagnosis_date: date, today: date | None = None) -> str:
    """Elapsed time since diagnosis in the largest whole unit."""
    delta = relativedelta(today or date.today(), diagnosis_date)
    if delta.years > 0:
        return f"{delta.years} year{'' if delta.years == 1 else 's'}"
    months = max(delta.months, 0)
    return f"{months} month{'' if months == 1 else 's'}"


def meal_period(timestamp: datetime) -> str:
    hour = timestamp.hour
    if 5 <= hour < 11:
        return "Morning"
    if 11 <= hour < 16:
        return "Afternoon"
    if 16 <= hour < 22:
        return "Evening"
    return "Night"


def glucose_impact(
    food: FoodSample,
    readings: Iterable[GlucoseSample],
    window: timedelta = GLUCOSE_IMPACT_WINDOW,
) -> list[GlucoseSample]:
    """Readings taken after the meal and within ``window``, oldest first."""
    end = food.timestamp + window
    return sorted(
        (r for r in readings if food.timestamp < r.timestamp <= end),
        key=lambda r: r.timestamp,
    )


def average_glucose_impact(
    food: FoodSample, readings: Iterable[GlucoseSample]
) -> float | None:
    impact = glucose_impact(food, readings)
    if not impact:
        return None
    return sum(r.value for r in impact) / len(impact)
