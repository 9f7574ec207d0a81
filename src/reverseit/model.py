"""Modelos tipados para glucosa, comidas, ejercicio y perfil."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from uuid import uuid4

from dateutil import tz

from reverseit.activity import ActivityKind, resolve_activity

_LOCAL_TZ = tz.tzlocal()

KCAL_PER_GRAM_CARBS = 4.0
KCAL_PER_GRAM_PROTEIN = 4.0
KCAL_PER_GRAM_FAT = 9.0


class ReadingContext(str, Enum):
    """When a glucose reading was taken relative to meals and sleep."""

    FASTING = "fasting"
    BEFORE_MEAL = "before_meal"
    AFTER_MEAL = "after_meal"
    BEDTIME = "bedtime"
    RANDOM = "random"


class MealType(str, Enum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"
    SNACK = "snack"


class Intensity(str, Enum):
    """Exercise intensity with its MET multiplier."""

    LIGHT = "light"
    MODERATE = "moderate"
    VIGOROUS = "vigorous"

    @property
    def met_multiplier(self) -> float:
        return _MET_MULTIPLIERS[self]


_MET_MULTIPLIERS: dict[Intensity, float] = {
    Intensity.LIGHT: 2.0,
    Intensity.MODERATE: 4.0,
    Intensity.VIGOROUS: 6.0,
}


def _new_id() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(tz=_LOCAL_TZ)


def ensure_aware(value: datetime) -> datetime:
    """Return ``value`` with tzinfo, assuming local time for naive values."""
    if value.tzinfo is None:
        return value.replace(tzinfo=_LOCAL_TZ)
    return value


@dataclass(frozen=True)
class GlucoseSample:
    """One glucose measurement (mg/dL)."""

    value: float
    timestamp: datetime = field(default_factory=_now)
    context: ReadingContext = ReadingContext.RANDOM
    note: str | None = None
    id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        if not math.isfinite(self.value) or self.value < 0:
            raise ValueError(f"Invalid glucose value: {self.value!r}")
        object.__setattr__(self, "timestamp", ensure_aware(self.timestamp))


@dataclass(frozen=True)
class FoodSample:
    """A logged meal.

    When ``calories`` is omitted it is derived from the macros
    (4 kcal/g carbs and protein, 9 kcal/g fat).
    """

    name: str
    carbs_g: float
    protein_g: float
    fat_g: float
    meal_type: MealType
    calories: float | None = None
    timestamp: datetime = field(default_factory=_now)
    photo: bytes | None = None
    note: str | None = None
    id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("Food name must not be empty")
        for label, grams in (
            ("carbs", self.carbs_g),
            ("protein", self.protein_g),
            ("fat", self.fat_g),
        ):
            if not math.isfinite(grams) or grams < 0:
                raise ValueError(f"Invalid {label} grams: {grams!r}")
        if self.calories is None:
            derived = (
                self.carbs_g * KCAL_PER_GRAM_CARBS
                + self.protein_g * KCAL_PER_GRAM_PROTEIN
                + self.fat_g * KCAL_PER_GRAM_FAT
            )
            object.__setattr__(self, "calories", derived)
        elif self.calories < 0:
            raise ValueError(f"Invalid calories: {self.calories!r}")
        object.__setattr__(self, "timestamp", ensure_aware(self.timestamp))

    @property
    def total_macros(self) -> float:
        return self.carbs_g + self.protein_g + self.fat_g


@dataclass(frozen=True)
class ExerciseSample:
    """A logged activity session.

    ``activity_kind`` is resolved from the free-text ``activity`` label when
    not given explicitly.
    """

    activity: str
    duration_s: float
    start: datetime = field(default_factory=_now)
    intensity: Intensity = Intensity.MODERATE
    calories_burned: float | None = None
    note: str | None = None
    activity_kind: ActivityKind | None = None
    id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        if not math.isfinite(self.duration_s) or self.duration_s <= 0:
            raise ValueError(f"Duration must be positive: {self.duration_s!r}")
        if self.calories_burned is not None and self.calories_burned < 0:
            raise ValueError(f"Invalid calories burned: {self.calories_burned!r}")
        if self.activity_kind is None:
            object.__setattr__(self, "activity_kind", resolve_activity(self.activity))
        object.__setattr__(self, "start", ensure_aware(self.start))

    @property
    def duration_minutes(self) -> float:
        return self.duration_s / 60.0


@dataclass(frozen=True)
class Profile:
    """Perfil único de la instalación."""

    name: str = ""
    age: int = 0
    weight_kg: float = 0.0
    height_cm: float = 0.0
    diagnosis_date: date = field(default_factory=date.today)
    target_glucose_min: float = 70.0
    target_glucose_max: float = 140.0
    target_daily_carbs: int = 150
    target_daily_exercise_minutes: int = 30
    use_metric_system: bool = True
    onboarding_completed: bool = False
    last_updated: datetime = field(default_factory=_now)


def clamp_targets(profile: Profile) -> Profile:
    """Clamp profile targets into sane bounds.

    The glucose bounds do not overlap (min <= 120 < 140 <= max), so the
    clamped range always satisfies max > min.
    """
    return replace(
        profile,
        target_glucose_min=max(40.0, min(profile.target_glucose_min, 120.0)),
        target_glucose_max=max(140.0, min(profile.target_glucose_max, 250.0)),
        target_daily_carbs=max(0, min(profile.target_daily_carbs, 500)),
        target_daily_exercise_minutes=max(
            0, min(profile.target_daily_exercise_minutes, 360)
        ),
    )


Record = GlucoseSample | FoodSample | ExerciseSample
