from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class _Missing:
    """Marker for a property whose payload entry carried no ``value`` key."""

    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

RESPONSE_TIME_KEY = "responseTime"
RESPONSE_TIME_NAME = "Response time"


@dataclass(frozen=True)
class Property:
    name: str
    value: Any = MISSING
    watch_for_change: bool = True


@dataclass(frozen=True)
class MonitoredService:
    id: int
    application_type: str
    source_id: int
    # Key of the service's entry in the gateway's aggregated response; None when the source row is gone.
    source_name: str | None
    is_alive: bool = False
    is_alive_transition_at: datetime | None = None
    last_notified_transition: bool = True
    last_snapshot: dict[str, Property] | None = None
    is_active: bool = True


@dataclass(frozen=True)
class FetchResult:
    reachable: bool
    properties: dict[str, Property] | None
    response_time_ms: float
    error: str | None = None


@dataclass(frozen=True)
class SnapshotDiff:
    added: dict[str, Property] = field(default_factory=dict)
    modified: dict[str, Property] = field(default_factory=dict)
    # key -> last known display name; the value no longer exists.
    removed: dict[str, str] = field(default_factory=dict)
    retained: dict[str, Property] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.modified or self.removed)


def response_time_property(response_time_ms: float) -> Property:
    return Property(
        name=RESPONSE_TIME_NAME,
        value=f"{float(response_time_ms):.1f}ms",
        watch_for_change=False,
    )
