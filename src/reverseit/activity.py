"""Tablas de tipos de actividad: proveedor <-> etiquetas locales."""

from __future__ import annotations

from enum import Enum


class ActivityKind(str, Enum):
    """Known activity kinds; values are the provider's canonical identifiers."""

    WALKING = "walking"
    RUNNING = "running"
    CYCLING = "cycling"
    SWIMMING = "swimming"
    YOGA = "yoga"
    HIIT = "high_intensity_interval_training"
    STRENGTH = "traditional_strength_training"
    PILATES = "pilates"
    DANCE = "dance"
    HIKING = "hiking"
    TENNIS = "tennis"
    BASKETBALL = "basketball"
    SOCCER = "soccer"
    ROWING = "rowing"
    ELLIPTICAL = "elliptical"
    OTHER = "other"


OTHER_LABEL = "Other Exercise"

ACTIVITY_LABELS: dict[ActivityKind, str] = {
    ActivityKind.WALKING: "Walking",
    ActivityKind.RUNNING: "Running",
    ActivityKind.CYCLING: "Cycling",
    ActivityKind.SWIMMING: "Swimming",
    ActivityKind.YOGA: "Yoga",
    ActivityKind.HIIT: "HIIT",
    ActivityKind.STRENGTH: "Weight Training",
    ActivityKind.PILATES: "Pilates",
    ActivityKind.DANCE: "Dance",
    ActivityKind.HIKING: "Hiking",
    ActivityKind.TENNIS: "Tennis",
    ActivityKind.BASKETBALL: "Basketball",
    ActivityKind.SOCCER: "Soccer",
    ActivityKind.ROWING: "Rowing",
    ActivityKind.ELLIPTICAL: "Elliptical",
}

# Order matters: first match wins.
_KEYWORDS: tuple[tuple[tuple[str, ...], ActivityKind], ...] = (
    (("walk",), ActivityKind.WALKING),
    (("run", "jog"), ActivityKind.RUNNING),
    (("bike", "cycle"), ActivityKind.CYCLING),
    (("swim",), ActivityKind.SWIMMING),
    (("yoga",), ActivityKind.YOGA),
    (("hiit",), ActivityKind.HIIT),
    (("weight", "gym"), ActivityKind.STRENGTH),
    (("pilates",), ActivityKind.PILATES),
    (("dance",), ActivityKind.DANCE),
    (("hike", "hiking"), ActivityKind.HIKING),
    (("tennis",), ActivityKind.TENNIS),
    (("basketball",), ActivityKind.BASKETBALL),
    (("soccer", "football"), ActivityKind.SOCCER),
    (("row",), ActivityKind.ROWING),
    (("elliptical",), ActivityKind.ELLIPTICAL),
)


def resolve_activity(text: str) -> ActivityKind:
    """Resolve a free-text activity label by substring keyword match."""
    lowered = text.lower()
    for keywords, kind in _KEYWORDS:
        if any(word in lowered for word in keywords):
            return kind
    return ActivityKind.OTHER


def activity_from_provider(identifier: str) -> ActivityKind:
    """Map a provider activity identifier; unknown identifiers map to OTHER."""
    try:
        return ActivityKind(identifier.strip().lower())
    except ValueError:
        return ActivityKind.OTHER


def label_for(kind: ActivityKind) -> str:
    return ACTIVITY_LABELS.get(kind, OTHER_LABEL)
