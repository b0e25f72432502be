from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterable, Mapping

from gateway_monitor.availability import format_duration
from gateway_monitor.models import MISSING, Property, SnapshotDiff


RETAINED_MARKER = "-"
ADDED_MARKER = "+"
MODIFIED_MARKER = "~"
REMOVED_MARKER = "x"

REPORT_TITLE = "📌 SERVICE MONITOR 📌"

# (bucket attribute, section title) in the order sections appear in the report.
SECTIONS: tuple[tuple[str, str], ...] = (
    ("online", "🟢 ONLINE"),
    ("offline", "🔴 OFFLINE"),
    ("added", "🆕 ADDED PROPERTIES"),
    ("modified", "✏️ MODIFIED PROPERTIES"),
    ("removed", "🗑️ REMOVED PROPERTIES"),
)


@dataclass(frozen=True)
class ServiceOutcome:
    service_id: int
    application_type: str
    is_alive: bool
    summary: str | None = None
    added: str | None = None
    modified: str | None = None
    removed: str | None = None


@dataclass
class Report:
    online: list[str] = field(default_factory=list)
    offline: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    total: int = 0

    def is_empty(self) -> bool:
        return not (self.online or self.offline or self.added or self.modified or self.removed)


def format_value(value: Any) -> str:
    if value is MISSING:
        return "n/a"
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, separators=(", ", ": "))
    except (TypeError, ValueError):
        return str(value)


def _header(application_type: str) -> str:
    return f"[{application_type}]"


def _property_lines(marker: str, props: Mapping[str, Property]) -> list[str]:
    return [f"{marker} {prop.name}: {format_value(prop.value)}" for prop in props.values()]


def render_summary(application_type: str, diff: SnapshotDiff, *, since: timedelta | None) -> str:
    lines = [_header(application_type)]
    if since is not None:
        lines.append(f"Since: {format_duration(since)}")
    lines.extend(_property_lines(RETAINED_MARKER, diff.retained))
    return "\n".join(lines)


def render_added(application_type: str, diff: SnapshotDiff) -> str | None:
    if not diff.added:
        return None
    return "\n".join([_header(application_type), *_property_lines(ADDED_MARKER, diff.added)])


def render_modified(application_type: str, diff: SnapshotDiff) -> str | None:
    if not diff.modified:
        return None
    return "\n".join([_header(application_type), *_property_lines(MODIFIED_MARKER, diff.modified)])


def render_removed(application_type: str, diff: SnapshotDiff) -> str | None:
    if not diff.removed:
        return None
    lines = [_header(application_type)]
    lines.extend(f"{REMOVED_MARKER} {name}" for name in diff.removed.values())
    return "\n".join(lines)


def build_report(outcomes: Iterable[ServiceOutcome | None], *, total: int) -> Report:
    report = Report(total=int(total))
    for outcome in outcomes:
        if outcome is None:
            continue
        if outcome.summary:
            (report.online if outcome.is_alive else report.offline).append(outcome.summary)
        if outcome.added:
            report.added.append(outcome.added)
        if outcome.modified:
            report.modified.append(outcome.modified)
        if outcome.removed:
            report.removed.append(outcome.removed)
    return report


def render_report(report: Report, *, host: str) -> str | None:
    if report.is_empty():
        return None

    parts = [REPORT_TITLE]
    for attr, title in SECTIONS:
        blocks: list[str] = getattr(report, attr)
        if not blocks:
            continue
        parts.append(f"{title} ({len(blocks)})\n\n" + "\n\n".join(blocks))

    parts.append(f"🌐 Host: {host}\n📊 Total evaluated: {report.total}")
    return "\n\n".join(parts)
