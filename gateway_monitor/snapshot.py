from __future__ import annotations

import json
from typing import Any, Mapping

from gateway_monitor.models import (
    MISSING,
    RESPONSE_TIME_KEY,
    Property,
    SnapshotDiff,
    response_time_property,
)


def values_equal(a: Any, b: Any) -> bool:
    """
    Structural equality over the value shapes a health payload can carry:
    scalars, ordered sequences and keyed maps. bool never equals a number.
    """
    if a is MISSING or b is MISSING:
        return a is b

    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b

    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return float(a) == float(b)

    if isinstance(a, Mapping) and isinstance(b, Mapping):
        if set(a.keys()) != set(b.keys()):
            return False
        return all(values_equal(a[k], b[k]) for k in a)

    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if len(a) != len(b):
            return False
        return all(values_equal(x, y) for x, y in zip(a, b))

    if isinstance(a, (Mapping, list, tuple)) or isinstance(b, (Mapping, list, tuple)):
        return False

    if a is None or b is None:
        return a is b

    return type(a) is type(b) and a == b


def diff_snapshot(
    previous: Mapping[str, Property] | None,
    current: Mapping[str, Property],
    *,
    response_time_ms: float,
) -> SnapshotDiff:
    prev = previous or {}

    added: dict[str, Property] = {}
    modified: dict[str, Property] = {}
    retained: dict[str, Property] = {}

    for key, prop in current.items():
        if key not in prev:
            added[key] = prop
            continue
        if prop.watch_for_change and prop.value is not MISSING and not values_equal(prop.value, prev[key].value):
            modified[key] = prop
            continue
        retained[key] = prop

    removed = {key: prop.name for key, prop in prev.items() if key not in current}

    # Payload parsing drops any upstream responseTime key, so this entry is always last and unique.
    retained[RESPONSE_TIME_KEY] = response_time_property(response_time_ms)

    return SnapshotDiff(added=added, modified=modified, removed=removed, retained=retained)


def unreachable_diff(*, response_time_ms: float) -> SnapshotDiff:
    return SnapshotDiff(retained={RESPONSE_TIME_KEY: response_time_property(response_time_ms)})


def snapshots_equal(a: Mapping[str, Property] | None, b: Mapping[str, Property] | None) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if list(a.keys()) != list(b.keys()):
        return False
    for key, prop in a.items():
        other = b[key]
        if prop.name != other.name or prop.watch_for_change != other.watch_for_change:
            return False
        if not values_equal(prop.value, other.value):
            return False
    return True


def snapshot_to_json(snapshot: Mapping[str, Property] | None) -> str | None:
    if snapshot is None:
        return None
    out: dict[str, dict[str, Any]] = {}
    for key, prop in snapshot.items():
        entry: dict[str, Any] = {"name": prop.name, "watchForChange": bool(prop.watch_for_change)}
        if prop.value is not MISSING:
            entry["value"] = prop.value
        out[key] = entry
    return json.dumps(out, ensure_ascii=False)


def snapshot_from_json(raw: Any) -> dict[str, Property] | None:
    """
    Best-effort decode of a stored snapshot.
    Malformed entries are skipped so a partial write never blocks a service.
    """
    if raw is None:
        return None
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if not isinstance(raw, dict):
        return None

    out: dict[str, Property] = {}
    for key, entry in raw.items():
        if not isinstance(key, str) or not key or not isinstance(entry, dict):
            continue
        name = entry.get("name")
        if not isinstance(name, str) or not name:
            name = key
        watch = entry.get("watchForChange", True)
        out[key] = Property(
            name=name,
            value=entry["value"] if "value" in entry else MISSING,
            watch_for_change=watch if isinstance(watch, bool) else True,
        )
    return out
