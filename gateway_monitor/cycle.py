from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol

import structlog

from gateway_monitor.availability import decide_availability, utc_now
from gateway_monitor.errors import DeliveryFailure, PersistenceFailure
from gateway_monitor.gateway_client import GatewayClient, GatewayConfig
from gateway_monitor.models import FetchResult, MonitoredService
from gateway_monitor.notify import Notifier
from gateway_monitor.report import (
    Report,
    ServiceOutcome,
    build_report,
    render_added,
    render_modified,
    render_removed,
    render_report,
    render_summary,
)
from gateway_monitor.settings import MonitorSettings
from gateway_monitor.snapshot import diff_snapshot, snapshots_equal, unreachable_diff
from gateway_monitor.store import ServiceStore


logger = structlog.get_logger(__name__)


class HealthFetcher(Protocol):
    async def fetch(self, service: MonitoredService) -> FetchResult: ...


@dataclass(frozen=True)
class CycleResult:
    periodic: bool
    evaluated: int
    failed: int
    report: Report
    text: str | None
    delivered: bool
    elapsed_seconds: float


class Monitor:
    """Runs check cycles: fetch, diff, decide, persist and report every active service."""

    def __init__(
        self,
        settings: MonitorSettings,
        store: ServiceStore,
        notifier: Notifier,
        *,
        gateway_factory: Callable[[], GatewayClient] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.store = store
        self.notifier = notifier
        self._gateway_factory = gateway_factory or (lambda: GatewayClient(GatewayConfig.from_settings(settings)))
        self._clock = clock
        self._cycle_lock = asyncio.Lock()

    async def evaluate_service(
        self,
        service: MonitoredService,
        fetcher: HealthFetcher,
        *,
        periodic: bool = False,
    ) -> ServiceOutcome | None:
        fetched = await fetcher.fetch(service)
        now = self._clock()

        decision = decide_availability(
            is_alive=service.is_alive,
            transition_at=service.is_alive_transition_at,
            notified=service.last_notified_transition,
            reachable=fetched.reachable,
            now=now,
        )

        if fetched.reachable and fetched.properties is not None:
            diff = diff_snapshot(service.last_snapshot, fetched.properties, response_time_ms=fetched.response_time_ms)
            next_snapshot = dict(fetched.properties)
        else:
            diff = unreachable_diff(response_time_ms=fetched.response_time_ms)
            # Only a failed check keeps the last good snapshot.
            next_snapshot = None if fetched.reachable else service.last_snapshot

        if decision.reportable or diff.has_changes or not snapshots_equal(next_snapshot, service.last_snapshot):
            await asyncio.to_thread(
                self.store.persist_state,
                service.id,
                is_alive=decision.is_alive,
                transition_at=decision.transition_at,
                snapshot=next_snapshot,
            )

        if not (periodic or decision.reportable or diff.has_changes):
            return None

        summary = None
        if periodic or decision.reportable:
            summary = render_summary(service.application_type, diff, since=decision.since(now))

        if decision.transitioned:
            logger.info(
                "Availability changed",
                service_id=service.id,
                application_type=service.application_type,
                is_alive=decision.is_alive,
            )

        return ServiceOutcome(
            service_id=service.id,
            application_type=service.application_type,
            is_alive=decision.is_alive,
            summary=summary,
            added=render_added(service.application_type, diff),
            modified=render_modified(service.application_type, diff),
            removed=render_removed(service.application_type, diff),
        )

    async def _safe_evaluate(
        self,
        service: MonitoredService,
        fetcher: HealthFetcher,
        semaphore: asyncio.Semaphore,
        *,
        periodic: bool,
    ) -> tuple[ServiceOutcome | None, bool]:
        """Returns (outcome, ok); a failed service never aborts the cycle."""
        async with semaphore:
            try:
                return await self.evaluate_service(service, fetcher, periodic=periodic), True
            except PersistenceFailure as exc:
                logger.warning(
                    "Failed to persist service state; dropping it from this report",
                    service_id=service.id,
                    application_type=service.application_type,
                    error=str(exc),
                )
            except Exception as exc:
                logger.exception(
                    "Service evaluation crashed",
                    service_id=service.id,
                    application_type=service.application_type,
                    error=f"{type(exc).__name__}: {exc}",
                )
        return None, False

    async def _deliver(self, text: str) -> bool:
        try:
            await self.notifier.deliver(text)
            return True
        except DeliveryFailure as exc:
            logger.warning("Report delivery failed", error=str(exc))
        except Exception as exc:
            logger.exception("Report delivery crashed", error=f"{type(exc).__name__}: {exc}")
        return False

    async def run_cycle(self, *, periodic: bool = False) -> CycleResult:
        async with self._cycle_lock:
            return await self._run_cycle(periodic=periodic)

    async def _run_cycle(self, *, periodic: bool) -> CycleResult:
        started = time.monotonic()
        logger.info("Running check cycle", periodic=periodic)

        try:
            services = await asyncio.to_thread(self.store.list_active_services)
        except PersistenceFailure as exc:
            logger.error("Failed to load active services", error=str(exc))
            services = []

        results: list[tuple[ServiceOutcome | None, bool]] = []
        if services:
            semaphore = asyncio.Semaphore(self.settings.check_concurrency)
            async with self._gateway_factory() as gateway:
                results = await asyncio.gather(
                    *(self._safe_evaluate(s, gateway, semaphore, periodic=periodic) for s in services)
                )
        outcomes = [outcome for outcome, _ok in results]
        failed = sum(1 for _outcome, ok in results if not ok)

        report = build_report(outcomes, total=len(services))
        text = render_report(report, host=self.settings.report_host)

        delivered = False
        if text is not None:
            delivered = await self._deliver(text)

        elapsed = time.monotonic() - started
        reported = sum(1 for o in outcomes if o is not None)
        logger.info(
            "Cycle complete",
            periodic=periodic,
            evaluated=len(services),
            reported=reported,
            failed=failed,
            delivered=delivered,
            elapsed_seconds=round(elapsed, 3),
        )
        return CycleResult(
            periodic=periodic,
            evaluated=len(services),
            failed=failed,
            report=report,
            text=text,
            delivered=delivered,
            elapsed_seconds=elapsed,
        )
