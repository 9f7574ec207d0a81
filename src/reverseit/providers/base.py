"""Interfaz del proveedor externo de datos de salud."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

MG_DL_PER_MMOL_L = 18.0


class Capability(str, Enum):
    """Sample types the provider can grant access to."""

    BLOOD_GLUCOSE = "blood_glucose"
    ACTIVE_ENERGY = "active_energy"
    WORKOUT = "workout"
    DIETARY_CARBOHYDRATES = "dietary_carbohydrates"
    DIETARY_FAT = "dietary_fat"
    DIETARY_PROTEIN = "dietary_protein"
    BODY_MASS = "body_mass"
    HEIGHT = "height"


READ_CAPABILITIES: frozenset[Capability] = frozenset(Capability)

WRITE_CAPABILITIES: frozenset[Capability] = frozenset(
    {
        Capability.BLOOD_GLUCOSE,
        Capability.ACTIVE_ENERGY,
        Capability.WORKOUT,
        Capability.DIETARY_CARBOHYDRATES,
        Capability.DIETARY_FAT,
        Capability.DIETARY_PROTEIN,
    }
)


class AuthorizationStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    NOT_DETERMINED = "not_determined"


class GlucoseUnit(str, Enum):
    MG_DL = "mg/dL"
    MMOL_L = "mmol/L"


class ProviderError(Exception):
    """Raised when a provider query, authorization or save fails."""


class ProviderUnavailableError(ProviderError):
    """Raised when the device has no health-data provider."""


@dataclass(frozen=True)
class ProviderSample:
    """One quantity sample as the provider stores it."""

    sample_type: Capability
    value: float
    unit: str
    start: datetime
    end: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderWorkout:
    """One workout as the provider stores it."""

    activity: str
    start: datetime
    end: datetime
    duration_s: float
    total_energy_kcal: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


ProviderItem = ProviderSample | ProviderWorkout


def to_mg_dl(value: float, unit: str) -> float:
    """Convert a glucose concentration to mg/dL.

    Raises:
        ValueError: If the unit is not a known glucose unit.
    """
    parsed = GlucoseUnit(unit)
    if parsed is GlucoseUnit.MMOL_L:
        return value * MG_DL_PER_MMOL_L
    return value


def from_mg_dl(value: float, unit: GlucoseUnit) -> float:
    if unit is GlucoseUnit.MMOL_L:
        return value / MG_DL_PER_MMOL_L
    return value


class HealthProvider(ABC):
    """Abstract external health-data provider.

    Query and save methods raise ``ProviderError`` on failure.
    """

    glucose_unit: GlucoseUnit = GlucoseUnit.MG_DL

    @abstractmethod
    def is_available(self) -> bool:
        """Return whether health data is available on this device."""

    @abstractmethod
    async def authorization_status(
        self, capability: Capability
    ) -> AuthorizationStatus:
        """Return the current grant for ``capability``."""

    @abstractmethod
    async def request_authorization(
        self,
        read: frozenset[Capability],
        write: frozenset[Capability],
    ) -> bool:
        """Ask the user to grant access; returns whether access was granted."""

    @abstractmethod
    async def query_samples(
        self,
        sample_type: Capability,
        start: datetime | None,
        end: datetime | None,
        *,
        ascending: bool = True,
        limit: int | None = None,
    ) -> list[ProviderSample]:
        """Return samples whose start time is within ``[start, end]``."""

    @abstractmethod
    async def query_workouts(
        self,
        start: datetime | None,
        end: datetime | None,
        *,
        ascending: bool = True,
    ) -> list[ProviderWorkout]:
        """Return workouts whose start time is within ``[start, end]``."""

    @abstractmethod
    async def save(self, items: Sequence[ProviderItem]) -> None:
        """Persist samples or workouts in the provider."""
