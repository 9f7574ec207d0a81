"""CLI para registrar glucosa, comidas y ejercicio y sincronizar con el proveedor."""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path

from dateutil import parser as date_parser
from dateutil import tz

from reverseit.metrics import (
    activity_level,
    average_glucose_impact,
    bmi,
    bmi_category,
    diabetes_duration,
    estimated_calories,
    exercise_goal_progress,
    glucose_status,
    is_in_default_range,
    is_in_range,
    macro_percentages,
    meal_period,
)
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
from reverseit.providers.json_export import JsonExportPaths, JsonExportProvider
from reverseit.report import ReportLayout, write_glucose_xlsx
from reverseit.storage import AppConfig, SQLiteStore, StoreError
from reverseit.summary import (
    daily_glucose_summary,
    daily_totals,
    glucose_frame,
    glucose_progress,
    on_track_with_carbs,
    on_track_with_exercise,
)
from reverseit.sync import ImportResult, PushResult, SyncCoordinator

_LOCAL_TZ = tz.tzlocal()
_BASE_DIR = Path.home() / ".reverseit"

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed argparse namespace.
    """
    parser = argparse.ArgumentParser(
        description="Registro de diabetes tipo 2 con sincronización de salud."
    )
    parser.add_argument(
        "--db",
        default=str(_BASE_DIR / "reverseit.sqlite3"),
        help="Base SQLite (default: ~/.reverseit/reverseit.sqlite3).",
    )
    parser.add_argument(
        "--log-dir",
        default=str(_BASE_DIR / "logs"),
        help="Directorio de logs (default: ~/.reverseit/logs).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    cfg = sub.add_parser("config", help="Show or change saved settings.")
    cfg.add_argument("--provider-root", help="Health export directory.")
    cfg.add_argument("--export-dir", help="Directory for XLSX reports.")
    cfg.add_argument("--window-days", type=int, help="Default import window.")
    cfg.add_argument(
        "--sync",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Push new records to the provider by default.",
    )

    prof = sub.add_parser("profile", help="Create or update the profile.")
    prof.add_argument("--name")
    prof.add_argument("--age", type=int)
    prof.add_argument("--weight", type=float, help="Body mass in kg.")
    prof.add_argument("--height", type=float, help="Height in cm.")
    prof.add_argument("--diagnosed", help="Diagnosis date (YYYY-MM-DD).")
    prof.add_argument("--target-min", type=float)
    prof.add_argument("--target-max", type=float)
    prof.add_argument("--carbs", type=int, help="Daily carbohydrate target (g).")
    prof.add_argument("--exercise-minutes", type=int)

    sub.add_parser("authorize", help="Request provider access.")
    sub.add_parser("status", help="Show provider authorization and latest glucose.")

    imp = sub.add_parser("import", help="Import recent provider samples.")
    imp.add_argument("--days", type=int, help="Lookback window in days.")
    imp.add_argument(
        "--skip-existing",
        action="store_true",
        help="Do not import samples already stored locally.",
    )

    glu = sub.add_parser("log-glucose", help="Log a glucose reading (mg/dL).")
    glu.add_argument("value", type=float)
    glu.add_argument(
        "--context",
        choices=[c.value for c in ReadingContext],
        default=ReadingContext.RANDOM.value,
    )
    glu.add_argument("--note")
    _add_common_log_args(glu)

    food = sub.add_parser("log-food", help="Log a meal.")
    food.add_argument("name")
    food.add_argument("--carbs", type=float, default=0.0)
    food.add_argument("--protein", type=float, default=0.0)
    food.add_argument("--fat", type=float, default=0.0)
    food.add_argument("--calories", type=float, help="Default: derived from macros.")
    food.add_argument(
        "--meal", choices=[m.value for m in MealType], default=MealType.SNACK.value
    )
    food.add_argument("--note")
    _add_common_log_args(food)

    exe = sub.add_parser("log-exercise", help="Log an exercise session.")
    exe.add_argument("activity")
    exe.add_argument("--minutes", type=float, required=True)
    exe.add_argument(
        "--intensity",
        choices=[i.value for i in Intensity],
        default=Intensity.MODERATE.value,
    )
    exe.add_argument("--calories", type=float, help="Actual calories burned.")
    exe.add_argument("--note")
    _add_common_log_args(exe)

    summ = sub.add_parser("summary", help="Show progress and daily totals.")
    summ.add_argument("--days", type=int, default=30)

    exp = sub.add_parser("export", help="Write the glucose log to XLSX.")
    exp.add_argument("--out", help="Output file.")

    sub.add_parser("cleanup", help="Delete glucose readings older than 3 months.")

    reset = sub.add_parser("reset", help="Delete all local data.")
    reset.add_argument("--yes", action="store_true", help="Confirm the reset.")

    return parser.parse_args(argv)


def _add_common_log_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--at", help="Timestamp (default: now).")
    parser.add_argument(
        "--sync",
        action="store_true",
        help="Push to the provider even if sync is disabled in config.",
    )


def configure_logging(log_dir: Path) -> None:
    """Rotating file handler: 5 MB max, keep 3 backups."""
    log_dir.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger("reverseit")
    root.setLevel(logging.DEBUG)
    if any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        return
    handler = RotatingFileHandler(
        str(log_dir / "reverseit.log"),
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
    )
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    root.addHandler(handler)


def _warn_missing_provider(config: AppConfig) -> None:
    provider = JsonExportProvider(JsonExportPaths(root=Path(config.provider_root)))
    try:
        provider.validate()
    except FileNotFoundError as exc:
        print(f"Warning: provider directory not found: {exc}")


def build_coordinator(store: SQLiteStore, config: AppConfig) -> SyncCoordinator:
    root = Path(config.provider_root) if config.provider_root else _BASE_DIR / "health"
    provider = JsonExportProvider(JsonExportPaths(root=root))
    return SyncCoordinator(provider, store)


def main(argv: list[str] | None = None) -> int:
    """Run the CLI.

    Returns:
        Exit code (0 on success).
    """
    ns = parse_args(argv)
    configure_logging(Path(ns.log_dir).expanduser())
    with SQLiteStore(Path(ns.db).expanduser()) as store:
        handler = _COMMANDS[ns.command]
        try:
            return handler(ns, store)
        except StoreError as exc:
            logger.error("Store error in %s: %s", ns.command, exc)
            print(f"Error: {exc}")
            return 1


def _cmd_config(ns: argparse.Namespace, store: SQLiteStore) -> int:
    config = store.load_config()
    changes: dict[str, object] = {}
    if ns.provider_root is not None:
        changes["provider_root"] = str(Path(ns.provider_root).expanduser().resolve())
    if ns.export_dir is not None:
        changes["export_dir"] = str(Path(ns.export_dir).expanduser().resolve())
    if ns.window_days is not None:
        changes["import_window_days"] = ns.window_days
    if ns.sync is not None:
        changes["sync_enabled"] = ns.sync
    if changes:
        config = replace(config, **changes)
        store.save_config(config)
        if ns.provider_root is not None:
            _warn_missing_provider(config)
    print(f"provider_root: {config.provider_root or '-'}")
    print(f"export_dir: {config.export_dir or '-'}")
    print(f"import_window_days: {config.import_window_days}")
    print(f"sync_enabled: {config.sync_enabled}")
    return 0


def _cmd_profile(ns: argparse.Namespace, store: SQLiteStore) -> int:
    profile = store.load_profile() or Profile()
    changes: dict[str, object] = {
        "onboarding_completed": True,
        "last_updated": datetime.now(tz=_LOCAL_TZ),
    }
    for attr, field_name in (
        ("name", "name"),
        ("age", "age"),
        ("weight", "weight_kg"),
        ("height", "height_cm"),
        ("target_min", "target_glucose_min"),
        ("target_max", "target_glucose_max"),
        ("carbs", "target_daily_carbs"),
        ("exercise_minutes", "target_daily_exercise_minutes"),
    ):
        value = getattr(ns, attr)
        if value is not None:
            changes[field_name] = value
    if ns.diagnosed:
        changes["diagnosis_date"] = date_parser.parse(ns.diagnosed).date()
    saved = store.save_profile(replace(profile, **changes))

    value = bmi(saved)
    print(f"OK: profile '{saved.name}' saved")
    print(
        f"Target range: {saved.target_glucose_min:.0f}-"
        f"{saved.target_glucose_max:.0f} mg/dL"
    )
    if value > 0:
        print(f"BMI: {value:.1f} ({bmi_category(value)})")
    print(f"Diabetes duration: {diabetes_duration(saved.diagnosis_date)}")
    return 0


def _cmd_authorize(ns: argparse.Namespace, store: SQLiteStore) -> int:
    coordinator = build_coordinator(store, store.load_config())
    result = asyncio.run(coordinator.request_authorization())
    if result.granted:
        print("OK: health access granted")
        return 0
    print("Health access denied. Check the provider export directory.")
    if result.error is not None:
        print(f"Cause: {result.error}")
    return 1


def _cmd_status(ns: argparse.Namespace, store: SQLiteStore) -> int:
    coordinator = build_coordinator(store, store.load_config())

    async def _status() -> float | None:
        await coordinator.check_authorization_status()
        return await coordinator.latest_glucose()

    latest = asyncio.run(_status())
    print(f"Authorized: {coordinator.authorized}")
    if latest is not None:
        status = glucose_status(latest).value
        print(f"Latest provider glucose: {latest:.0f} mg/dL ({status})")
    return 0


def _cmd_import(ns: argparse.Namespace, store: SQLiteStore) -> int:
    config = store.load_config()
    coordinator = build_coordinator(store, config)
    days = ns.days if ns.days is not None else config.import_window_days

    async def _import() -> ImportResult:
        await coordinator.check_authorization_status()
        return await coordinator.import_recent(days, skip_existing=ns.skip_existing)

    result = asyncio.run(_import())
    if not coordinator.authorized:
        print("Import skipped: health access not granted (run 'authorize').")
        return 0
    print(f"Glucose: {_outcome(result.glucose_imported)} ({result.glucose_count})")
    print(f"Workouts: {_outcome(result.exercise_imported)} ({result.exercise_count})")
    return 0 if result.success else 1


def _cmd_log_glucose(ns: argparse.Namespace, store: SQLiteStore) -> int:
    reading = GlucoseSample(
        value=ns.value,
        timestamp=_parse_at(ns.at),
        context=ReadingContext(ns.context),
        note=ns.note,
    )
    store.insert(reading)
    linked = store.link_recent_meals(reading)
    store.save()
    print(f"OK: {reading.value:.0f} mg/dL ({glucose_status(reading.value).value})")
    profile = store.load_profile()
    if profile is not None:
        in_range = is_in_range(
            reading.value, profile.target_glucose_min, profile.target_glucose_max
        )
    else:
        in_range = is_in_default_range(reading.value)
    print(f"In target range: {'yes' if in_range else 'no'}")
    if linked:
        print(f"Linked to {linked} recent meal(s)")
    return _maybe_push(ns, store, reading)


def _cmd_log_food(ns: argparse.Namespace, store: SQLiteStore) -> int:
    meal = FoodSample(
        name=ns.name,
        carbs_g=ns.carbs,
        protein_g=ns.protein,
        fat_g=ns.fat,
        calories=ns.calories,
        meal_type=MealType(ns.meal),
        timestamp=_parse_at(ns.at),
        note=ns.note,
    )
    store.insert(meal)
    store.save()
    carbs_pct, protein_pct, fat_pct = macro_percentages(meal)
    print(
        f"OK: {meal.name} {meal.calories:.0f} kcal "
        f"(carbs {carbs_pct:.0f}%, protein {protein_pct:.0f}%, fat {fat_pct:.0f}%)"
    )
    print(f"Meal period: {meal_period(meal.timestamp.astimezone(_LOCAL_TZ))}")
    return _maybe_push(ns, store, meal)


def _cmd_log_exercise(ns: argparse.Namespace, store: SQLiteStore) -> int:
    session = ExerciseSample(
        activity=ns.activity,
        duration_s=ns.minutes * 60,
        start=_parse_at(ns.at),
        intensity=Intensity(ns.intensity),
        calories_burned=ns.calories,
        note=ns.note,
    )
    store.insert(session)
    store.save()
    print(
        f"OK: {session.activity} {session.duration_minutes:.0f} min "
        f"~{estimated_calories(session):.0f} kcal"
    )
    target = (store.load_profile() or Profile()).target_daily_exercise_minutes
    progress = exercise_goal_progress(session, target)
    print(f"Level: {activity_level(session).value}, daily goal {progress * 100:.0f}%")
    return _maybe_push(ns, store, session)


def _maybe_push(ns: argparse.Namespace, store: SQLiteStore, record: Record) -> int:
    """Push a just-saved record; failures never undo the local insert."""
    config = store.load_config()
    if not (ns.sync or config.sync_enabled):
        return 0
    coordinator = build_coordinator(store, config)

    async def _push() -> PushResult | None:
        if not await coordinator.check_authorization_status():
            return None
        return await coordinator.push(record)

    result = asyncio.run(_push())
    if result is None:
        print("Sync skipped: health access not granted.")
        return 0
    if not result.success:
        print(f"Saved locally, but sync failed: {result.error}")
        return 1
    if result.noop:
        print("Nothing to sync.")
    else:
        print(f"Synced ({result.writes} item(s))")
    return 0


def _cmd_summary(ns: argparse.Namespace, store: SQLiteStore) -> int:
    profile = store.load_profile() or Profile()
    now = datetime.now(tz=_LOCAL_TZ)
    readings = store.fetch(GlucoseSample, start=now - timedelta(days=ns.days), end=now)
    progress = glucose_progress(readings, profile, days=ns.days, now=now)
    print(
        f"Last {progress.days_analyzed} days: {progress.total_readings} readings, "
        f"{progress.in_range_percentage:.0f}% in range, "
        f"avg {progress.average_reading:.0f} mg/dL - {progress.status.value}"
    )

    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    meals = store.fetch(FoodSample, start=start_of_day, end=now)
    totals = daily_totals(
        meals,
        store.fetch(ExerciseSample, start=start_of_day, end=now),
        now.date(),
    )
    carbs_flag = "on track" if on_track_with_carbs(totals, profile) else "over target"
    exercise_flag = (
        "on track" if on_track_with_exercise(totals, profile) else "below target"
    )
    print(f"Today carbs: {totals.carbs_g:.0f} g ({carbs_flag})")
    print(f"Today exercise: {totals.exercise_seconds / 60:.0f} min ({exercise_flag})")
    for meal in meals:
        impact = average_glucose_impact(meal, readings)
        if impact is not None:
            print(f"After {meal.name}: avg {impact:.0f} mg/dL within 2 h")

    daily = daily_glucose_summary(glucose_frame(readings))
    if not daily.empty:
        print(daily.tail(7).to_string(index=False))
    return 0


def _cmd_export(ns: argparse.Namespace, store: SQLiteStore) -> int:
    config = store.load_config()
    if ns.out:
        out_path = Path(ns.out).expanduser()
    else:
        out_dir = Path(config.export_dir) if config.export_dir else Path.cwd()
        ts = datetime.now(tz=_LOCAL_TZ).strftime("%Y-%m-%d_%H-%M-%S")
        out_path = out_dir / f"glucose_log_{ts}.xlsx"
    frame = glucose_frame(store.fetch(GlucoseSample))
    write_glucose_xlsx(frame, out_path, ReportLayout())
    print(f"OK: {len(frame)} readings")
    print(f"OK: Output: {out_path}")
    return 0


def _cmd_cleanup(ns: argparse.Namespace, store: SQLiteStore) -> int:
    removed = store.cleanup_old_data()
    print(f"OK: removed {removed} old glucose reading(s)")
    return 0


def _cmd_reset(ns: argparse.Namespace, store: SQLiteStore) -> int:
    if not ns.yes:
        print("Refusing to reset without --yes")
        return 1
    store.reset_all_data()
    print("OK: all local data deleted")
    return 0


def _outcome(ok: bool) -> str:
    return "OK" if ok else "FAILED"


def _parse_at(raw: str | None) -> datetime:
    if not raw:
        return datetime.now(tz=_LOCAL_TZ)
    parsed = date_parser.parse(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_LOCAL_TZ)
    return parsed


_COMMANDS = {
    "config": _cmd_config,
    "profile": _cmd_profile,
    "authorize": _cmd_authorize,
    "status": _cmd_status,
    "import": _cmd_import,
    "log-glucose": _cmd_log_glucose,
    "log-food": _cmd_log_food,
    "log-exercise": _cmd_log_exercise,
    "summary": _cmd_summary,
    "export": _cmd_export,
    "cleanup": _cmd_cleanup,
    "reset": _cmd_reset,
}
