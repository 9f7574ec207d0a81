"""Proveedor de salud respaldado por un directorio de exportación JSON."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from dateutil import parser as date_parser
from dateutil import tz

from reverseit.providers.base import (
    AuthorizationStatus,
    Capability,
    GlucoseUnit,
    HealthProvider,
    ProviderError,
    ProviderItem,
    ProviderSample,
    ProviderUnavailableError,
    ProviderWorkout,
)

logger = logging.getLogger(__name__)

_LOCAL_TZ = tz.tzlocal()

EXPORT_FILE = "export.json"
GRANTS_FILE = "grants.json"
OUTBOX_FILE = "outbox.json"


@dataclass(frozen=True)
class JsonExportPaths:
    """Paths for a health export directory."""

    root: Path

    @property
    def export_file(self) -> Path:
        return self.root / EXPORT_FILE

    @property
    def grants_file(self) -> Path:
        return self.root / GRANTS_FILE

    @property
    def outbox_file(self) -> Path:
        return self.root / OUTBOX_FILE


class JsonExportProvider(HealthProvider):
    """Health provider over a directory holding ``export.json``.

    ``export.json`` is an object keyed by sample type (``blood_glucose``,
    ``workouts``, ...) whose values are lists of items. Grants live in
    ``grants.json`` and pushed items are appended to ``outbox.json``.
    """

    def __init__(
        self, paths: JsonExportPaths, glucose_unit: GlucoseUnit = GlucoseUnit.MG_DL
    ) -> None:
        """Create a provider.

        Args:
            paths: Export directory configuration.
            glucose_unit: Canonical unit for glucose written to the outbox.
        """
        self._paths = paths
        self.glucose_unit = glucose_unit

    def validate(self) -> None:
        """Validate that the export directory exists."""
        if not self._paths.root.exists():
            raise FileNotFoundError(str(self._paths.root))

    def is_available(self) -> bool:
        return self._paths.root.is_dir()

    async def authorization_status(
        self, capability: Capability
    ) -> AuthorizationStatus:
        grants = await asyncio.to_thread(self._load_grants)
        if capability.value in grants.get("granted", []):
            return AuthorizationStatus.GRANTED
        if capability.value in grants.get("denied", []):
            return AuthorizationStatus.DENIED
        return AuthorizationStatus.NOT_DETERMINED

    async def request_authorization(
        self,
        read: frozenset[Capability],
        write: frozenset[Capability],
    ) -> bool:
        self._require_available()
        granted = sorted(c.value for c in read | write)
        await asyncio.to_thread(
            _write_json, self._paths.grants_file, {"granted": granted, "denied": []}
        )
        logger.info("Granted %d capabilities in %s", len(granted), self._paths.root)
        return True

    async def query_samples(
        self,
        sample_type: Capability,
        start: datetime | None,
        end: datetime | None,
        *,
        ascending: bool = True,
        limit: int | None = None,
    ) -> list[ProviderSample]:
        self._require_available()
        export = await asyncio.to_thread(self._load_export)
        out: list[ProviderSample] = []
        for item in _items(export, sample_type.value):
            sample = _item_to_sample(sample_type, item)
            if sample is not None and _within(sample.start, start, end):
                out.append(sample)
        out.sort(key=lambda s: s.start, reverse=not ascending)
        if limit is not None:
            out = out[:limit]
        return out

    async def query_workouts(
        self,
        start: datetime | None,
        end: datetime | None,
        *,
        ascending: bool = True,
    ) -> list[ProviderWorkout]:
        self._require_available()
        export = await asyncio.to_thread(self._load_export)
        out: list[ProviderWorkout] = []
        for item in _items(export, "workouts"):
            workout = _item_to_workout(item)
            if workout is not None and _within(workout.start, start, end):
                out.append(workout)
        out.sort(key=lambda w: w.start, reverse=not ascending)
        return out

    async def save(self, items: Sequence[ProviderItem]) -> None:
        self._require_available()
        await asyncio.to_thread(self._append_outbox, [_serialize(i) for i in items])

    def _require_available(self) -> None:
        if not self.is_available():
            raise ProviderUnavailableError(str(self._paths.root))

    def _load_export(self) -> dict[str, Any]:
        path = self._paths.export_file
        if not path.exists():
            return {}
        raw = _read_json(path)
        if not isinstance(raw, dict):
            raise ProviderError(f"{path} must contain a JSON object")
        return raw

    def _load_grants(self) -> dict[str, Any]:
        path = self._paths.grants_file
        if not path.exists():
            return {}
        raw = _read_json(path)
        return raw if isinstance(raw, dict) else {}

    def _append_outbox(self, payload: list[dict[str, Any]]) -> None:
        path = self._paths.outbox_file
        existing: Any = _read_json(path) if path.exists() else []
        if not isinstance(existing, list):
            raise ProviderError(f"{path} must contain a JSON list")
        _write_json(path, existing + payload)


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ProviderError(f"Cannot read {path}: {exc}") from exc


def _write_json(path: Path, payload: Any) -> None:
    try:
        path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")
    except OSError as exc:
        raise ProviderError(f"Cannot write {path}: {exc}") from exc


def _items(export: dict[str, Any], key: str) -> list[dict[str, Any]]:
    raw = export.get(key, [])
    if not isinstance(raw, list):
        raise ProviderError(f"'{key}' must be a list")
    return [item for item in raw if isinstance(item, dict)]


def _within(value: datetime, start: datetime | None, end: datetime | None) -> bool:
    if start is not None and value < start:
        return False
    if end is not None and value > end:
        return False
    return True


def _item_to_sample(
    sample_type: Capability, item: dict[str, Any]
) -> ProviderSample | None:
    """Convierte un ítem en ProviderSample; None si falta el valor o la fecha."""
    if item.get("mg/dL") is not None:
        value, unit = item["mg/dL"], GlucoseUnit.MG_DL.value
    elif item.get("mmol/L") is not None:
        value, unit = item["mmol/L"], GlucoseUnit.MMOL_L.value
    elif item.get("value") is not None:
        value, unit = item["value"], str(item.get("unit", ""))
    else:
        return None
    try:
        raw_ts = item.get("timestamp") or item.get("start")
        start = _parse_timestamp(raw_ts, item.get("epoch"))
        end_raw = item.get("end")
        end = _parse_timestamp(end_raw, None) if end_raw else start
        number = float(value)
    except (TypeError, ValueError, OverflowError, OSError):
        return None
    metadata = item.get("metadata")
    return ProviderSample(
        sample_type=sample_type,
        value=number,
        unit=unit,
        start=start,
        end=end,
        metadata=metadata if isinstance(metadata, dict) else {},
    )


def _item_to_workout(item: dict[str, Any]) -> ProviderWorkout | None:
    energy = item.get("total_energy_kcal")
    try:
        start = _parse_timestamp(item.get("start"), item.get("epoch"))
        duration = float(item["duration_s"])
        total_energy = float(energy) if energy is not None else None
    except (KeyError, TypeError, ValueError, OverflowError, OSError):
        return None
    end_raw = item.get("end")
    try:
        end = _parse_timestamp(end_raw, None) if end_raw else None
    except (TypeError, ValueError):
        end = None
    metadata = item.get("metadata")
    return ProviderWorkout(
        activity=str(item.get("activity", "other")),
        start=start,
        end=end or start + timedelta(seconds=duration),
        duration_s=duration,
        total_energy_kcal=total_energy,
        metadata=metadata if isinstance(metadata, dict) else {},
    )


def _parse_timestamp(ts_str: Any, epoch: Any) -> datetime:
    """Parses device ("YYYY/MM/DD HH:MM"), ISO 8601 or epoch timestamps."""
    if isinstance(ts_str, str) and ts_str.strip():
        try:
            dt = datetime.strptime(ts_str, "%Y/%m/%d %H:%M")
        except ValueError:
            dt = date_parser.isoparse(ts_str)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=_LOCAL_TZ)
        return dt

    if epoch is not None:
        return datetime.fromtimestamp(int(epoch), tz=_LOCAL_TZ)

    raise ValueError("Missing timestamp and epoch")


def _serialize(item: ProviderItem) -> dict[str, Any]:
    if isinstance(item, ProviderWorkout):
        return {
            "kind": "workout",
            "activity": item.activity,
            "start": item.start.isoformat(),
            "end": item.end.isoformat(),
            "duration_s": item.duration_s,
            "total_energy_kcal": item.total_energy_kcal,
            "metadata": item.metadata,
        }
    return {
        "kind": item.sample_type.value,
        "value": item.value,
        "unit": item.unit,
        "start": item.start.isoformat(),
        "end": item.end.isoformat(),
        "metadata": item.metadata,
    }
