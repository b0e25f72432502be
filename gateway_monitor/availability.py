from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


@dataclass(frozen=True)
class AvailabilityDecision:
    is_alive: bool
    transition_at: datetime | None
    previous_transition_at: datetime | None
    transitioned: bool
    # State unchanged, but the last transition was never announced.
    pending: bool

    @property
    def reportable(self) -> bool:
        return self.transitioned or self.pending

    def since(self, now: datetime) -> timedelta | None:
        """
        Duration announced next to the service header.

        On a flip this is how long the previous state lasted; otherwise it is
        the time spent in the current state.
        """
        anchor = self.previous_transition_at if self.transitioned else self.transition_at
        if anchor is None:
            return None
        return now - anchor


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def decide_availability(
    *,
    is_alive: bool,
    transition_at: datetime | None,
    notified: bool,
    reachable: bool,
    now: datetime,
) -> AvailabilityDecision:
    if bool(reachable) != bool(is_alive):
        return AvailabilityDecision(
            is_alive=bool(reachable),
            transition_at=now,
            previous_transition_at=transition_at,
            transitioned=True,
            pending=False,
        )

    return AvailabilityDecision(
        is_alive=bool(is_alive),
        transition_at=transition_at,
        previous_transition_at=transition_at,
        transitioned=False,
        pending=not notified,
    )


def format_duration(delta: timedelta) -> str:
    seconds = max(0, int(delta.total_seconds()))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, rem = divmod(rem, 60)
    if days:
        return f"{days}d {hours:02}h {minutes:02}m"
    if hours:
        return f"{hours}h {minutes:02}m"
    return f"{minutes}m {rem:02}s"
