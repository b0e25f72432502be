from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from gateway_monitor.cycle import Monitor
from gateway_monitor.errors import DeliveryFailure, PersistenceFailure
from gateway_monitor.models import FetchResult, MonitoredService, Property
from gateway_monitor.settings import MonitorSettings
from gateway_monitor.store import ServiceStore


NOW = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)
T0 = NOW - timedelta(hours=2)


class _FakeGateway:
    """Stands in for GatewayClient; results are keyed by service id."""

    def __init__(self, results: dict[int, FetchResult]) -> None:
        self.results = results
        self.fetched: list[int] = []
        self.entered = 0
        self.exited = 0

    async def __aenter__(self) -> "_FakeGateway":
        self.entered += 1
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.exited += 1

    async def fetch(self, service: MonitoredService) -> FetchResult:
        self.fetched.append(service.id)
        result = self.results[service.id]
        if isinstance(result, Exception):
            raise result
        return result


class _RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.texts: list[str] = []

    async def deliver(self, text: str) -> None:
        self.texts.append(text)
        if self.fail:
            raise DeliveryFailure("chat unavailable")


class _FlakyStore(ServiceStore):
    def __init__(self, db_path: str, broken_ids: set[int]) -> None:
        super().__init__(db_path)
        self.broken_ids = broken_ids

    def persist_state(self, service_id: int, **kwargs) -> None:
        if service_id in self.broken_ids:
            raise PersistenceFailure(f"disk full service_id={service_id}")
        super().persist_state(service_id, **kwargs)


def _settings() -> MonitorSettings:
    return MonitorSettings(
        report_host="10.0.0.5",
        gateway={"base_url": "http://gw.local"},
        notifier={"kind": "none"},
        check_concurrency=3,
    )


def _ok(props: dict[str, Property], ms: float = 5.0) -> FetchResult:
    return FetchResult(reachable=True, properties=props, response_time_ms=ms)


def _down(ms: float = 60000.0) -> FetchResult:
    return FetchResult(reachable=False, properties=None, response_time_ms=ms, error="fetch_failure: timeout")


def _seed(
    store: ServiceStore,
    app_type: str,
    *,
    is_alive: bool,
    snapshot: dict[str, Property] | None,
    transition_at: datetime = T0,
) -> int:
    src = store.register_source(f"{app_type}-source")
    sid = store.register_service(application_type=app_type, source_id=src)
    store.persist_state(sid, is_alive=is_alive, transition_at=transition_at, snapshot=snapshot)
    return sid


def _mark_unannounced(store: ServiceStore, service_id: int) -> None:
    conn = sqlite3.connect(store.db_path)
    try:
        conn.execute("UPDATE monitored_services SET is_alive_transition_notified=0 WHERE id=?", (service_id,))
        conn.commit()
    finally:
        conn.close()


def _version(value: str) -> dict[str, Property]:
    return {
        "version": Property(name="Version", value=value),
        "db": Property(name="Database", value="ok"),
    }


@pytest.fixture()
def store(tmp_path: Path) -> ServiceStore:
    s = ServiceStore(str(tmp_path / "monitor.db"))
    s.ensure_schema()
    return s


def _monitor(store: ServiceStore, gateway: _FakeGateway, notifier: _RecordingNotifier) -> Monitor:
    return Monitor(_settings(), store, notifier, gateway_factory=lambda: gateway, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_steady_services_send_nothing(store: ServiceStore) -> None:
    ids = [_seed(store, f"svc{i}", is_alive=True, snapshot=_version("1.0")) for i in range(5)]
    gateway = _FakeGateway({sid: _ok(_version("1.0")) for sid in ids})
    notifier = _RecordingNotifier()

    result = await _monitor(store, gateway, notifier).run_cycle()

    assert result.evaluated == 5
    assert result.failed == 0
    assert result.text is None
    assert result.delivered is False
    assert notifier.texts == []
    assert sorted(gateway.fetched) == ids
    assert gateway.entered == gateway.exited == 1


@pytest.mark.asyncio
async def test_service_going_down_is_reported_offline(store: ServiceStore) -> None:
    sid = _seed(store, "billing", is_alive=True, snapshot=_version("1.0"))
    gateway = _FakeGateway({sid: _down()})
    notifier = _RecordingNotifier()

    result = await _monitor(store, gateway, notifier).run_cycle()

    assert result.delivered is True
    assert len(notifier.texts) == 1
    text = notifier.texts[0]
    assert "🔴 OFFLINE (1)" in text
    assert "ONLINE" not in text
    assert "[billing]\nSince: 2h 00m\n- Response time: 60000.0ms" in text
    assert text.endswith("🌐 Host: 10.0.0.5\n📊 Total evaluated: 1")

    svc = store.get_service(sid)
    assert svc is not None
    assert svc.is_alive is False
    assert svc.is_alive_transition_at == NOW
    assert svc.last_notified_transition is True
    # Last good snapshot survives an outage.
    assert svc.last_snapshot is not None and svc.last_snapshot["version"].value == "1.0"


@pytest.mark.asyncio
async def test_recovery_reports_since_and_modified_properties(store: ServiceStore) -> None:
    sid = _seed(store, "billing", is_alive=False, snapshot=_version("1.0"))
    gateway = _FakeGateway({sid: _ok(_version("1.1"))})
    notifier = _RecordingNotifier()

    result = await _monitor(store, gateway, notifier).run_cycle()

    assert result.report.online == ["[billing]\nSince: 2h 00m\n- Database: ok\n- Response time: 5.0ms"]
    assert result.report.modified == ["[billing]\n~ Version: 1.1"]
    assert result.text is not None
    assert "🟢 ONLINE (1)" in result.text
    assert "✏️ MODIFIED PROPERTIES (1)" in result.text

    svc = store.get_service(sid)
    assert svc is not None
    assert svc.is_alive is True
    assert svc.is_alive_transition_at == NOW
    assert svc.last_snapshot is not None and svc.last_snapshot["version"].value == "1.1"


@pytest.mark.asyncio
async def test_property_change_without_flip_only_reports_change(store: ServiceStore) -> None:
    sid = _seed(store, "billing", is_alive=True, snapshot=_version("1.0"))
    props = _version("1.0")
    props["region"] = Property(name="Region", value="eu-west")
    del props["db"]
    gateway = _FakeGateway({sid: _ok(props)})
    notifier = _RecordingNotifier()

    result = await _monitor(store, gateway, notifier).run_cycle()

    assert result.report.online == []
    assert result.report.added == ["[billing]\n+ Region: eu-west"]
    assert result.report.removed == ["[billing]\nx Database"]
    svc = store.get_service(sid)
    assert svc is not None
    assert svc.is_alive_transition_at == T0
    assert svc.last_snapshot is not None and list(svc.last_snapshot) == ["version", "region"]


@pytest.mark.asyncio
async def test_persist_failure_drops_only_that_service(tmp_path: Path) -> None:
    flaky = _FlakyStore(str(tmp_path / "monitor.db"), broken_ids=set())
    flaky.ensure_schema()
    good = _seed(flaky, "good", is_alive=False, snapshot=None)
    bad = _seed(flaky, "bad", is_alive=False, snapshot=None)
    flaky.broken_ids.add(bad)

    gateway = _FakeGateway({good: _ok({}), bad: _ok({})})
    notifier = _RecordingNotifier()

    result = await _monitor(flaky, gateway, notifier).run_cycle()

    assert result.evaluated == 2
    assert result.failed == 1
    assert len(result.report.online) == 1
    assert result.report.online[0].startswith("[good]")
    assert result.text is not None and "📊 Total evaluated: 2" in result.text

    # The broken service keeps its old state and is re-announced next cycle.
    svc = flaky.get_service(bad)
    assert svc is not None and svc.is_alive is False


@pytest.mark.asyncio
async def test_crashing_fetch_does_not_abort_cycle(store: ServiceStore) -> None:
    a = _seed(store, "a", is_alive=False, snapshot=None)
    b = _seed(store, "b", is_alive=False, snapshot=None)
    gateway = _FakeGateway({a: RuntimeError("boom"), b: _ok({})})
    notifier = _RecordingNotifier()

    result = await _monitor(store, gateway, notifier).run_cycle()

    assert result.failed == 1
    assert [block.splitlines()[0] for block in result.report.online] == ["[b]"]


@pytest.mark.asyncio
async def test_periodic_cycle_lists_every_service(store: ServiceStore) -> None:
    up = _seed(store, "up", is_alive=True, snapshot=_version("1.0"))
    down = _seed(store, "down", is_alive=False, snapshot=None)
    gateway = _FakeGateway({up: _ok(_version("1.0")), down: _down()})
    notifier = _RecordingNotifier()

    result = await _monitor(store, gateway, notifier).run_cycle(periodic=True)

    assert result.periodic is True
    assert result.report.online == ["[up]\nSince: 2h 00m\n- Version: 1.0\n- Database: ok\n- Response time: 5.0ms"]
    assert result.report.offline == ["[down]\nSince: 2h 00m\n- Response time: 60000.0ms"]
    assert result.report.added == result.report.modified == result.report.removed == []
    assert len(notifier.texts) == 1

    # A digest does not move transition times.
    svc = store.get_service(up)
    assert svc is not None and svc.is_alive_transition_at == T0


@pytest.mark.asyncio
async def test_unannounced_state_is_reported_once(store: ServiceStore) -> None:
    sid = _seed(store, "billing", is_alive=False, snapshot=None)
    _mark_unannounced(store, sid)
    gateway = _FakeGateway({sid: _down()})
    notifier = _RecordingNotifier()
    monitor = _monitor(store, gateway, notifier)

    first = await monitor.run_cycle()
    assert first.report.offline == ["[billing]\nSince: 2h 00m\n- Response time: 60000.0ms"]

    second = await monitor.run_cycle()
    assert second.text is None
    assert len(notifier.texts) == 1

    svc = store.get_service(sid)
    assert svc is not None
    assert svc.last_notified_transition is True
    assert svc.is_alive_transition_at == T0


@pytest.mark.asyncio
async def test_inactive_services_are_skipped(store: ServiceStore) -> None:
    sid = _seed(store, "retired", is_alive=True, snapshot=None)
    store.set_service_active(sid, False)
    gateway = _FakeGateway({})
    notifier = _RecordingNotifier()

    result = await _monitor(store, gateway, notifier).run_cycle(periodic=True)

    assert result.evaluated == 0
    assert result.text is None
    assert gateway.fetched == []
    assert gateway.entered == 0


@pytest.mark.asyncio
async def test_delivery_failure_is_contained(store: ServiceStore) -> None:
    sid = _seed(store, "billing", is_alive=True, snapshot=None)
    gateway = _FakeGateway({sid: _down()})
    notifier = _RecordingNotifier(fail=True)

    result = await _monitor(store, gateway, notifier).run_cycle()

    assert result.text is not None
    assert result.delivered is False
    # State was committed before delivery was attempted.
    svc = store.get_service(sid)
    assert svc is not None and svc.is_alive is False


@pytest.mark.asyncio
async def test_overlapping_cycles_run_one_at_a_time(store: ServiceStore) -> None:
    sid = _seed(store, "billing", is_alive=True, snapshot=None)
    active = 0
    peak = 0

    class _SlowGateway(_FakeGateway):
        async def fetch(self, service: MonitoredService) -> FetchResult:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return await super().fetch(service)

    gateway = _SlowGateway({sid: _ok({})})
    monitor = _monitor(store, gateway, _RecordingNotifier())

    await asyncio.gather(monitor.run_cycle(), monitor.run_cycle(), monitor.run_cycle())

    assert peak == 1
    assert len(gateway.fetched) == 3


def _counter(count: int, label: str) -> dict[str, Property]:
    return {
        "count": Property(name="Count", value=count),
        "label": Property(name="Label", value=label, watch_for_change=False),
    }


@pytest.mark.asyncio
async def test_recovery_with_watched_and_unwatched_changes(store: ServiceStore) -> None:
    sid = _seed(store, "billing", is_alive=False, snapshot=_counter(3, "y"))
    gateway = _FakeGateway({sid: _ok(_counter(5, "x"))})
    notifier = _RecordingNotifier()

    result = await _monitor(store, gateway, notifier).run_cycle()

    assert result.report.online == ["[billing]\nSince: 2h 00m\n- Label: x\n- Response time: 5.0ms"]
    assert result.report.modified == ["[billing]\n~ Count: 5"]
    assert result.report.offline == result.report.added == result.report.removed == []

    svc = store.get_service(sid)
    assert svc is not None
    assert svc.is_alive is True
    assert svc.last_snapshot is not None
    assert svc.last_snapshot["count"].value == 5
    assert svc.last_snapshot["label"].value == "x"


@pytest.mark.asyncio
async def test_unwatched_drift_is_stored_silently(store: ServiceStore) -> None:
    sid = _seed(store, "billing", is_alive=True, snapshot=_counter(3, "y"))
    gateway = _FakeGateway({sid: _ok(_counter(3, "x"))})
    notifier = _RecordingNotifier()
    monitor = _monitor(store, gateway, notifier)

    assert await monitor.evaluate_service(store.get_service(sid), gateway) is None

    result = await monitor.run_cycle()
    assert result.text is None
    assert notifier.texts == []

    svc = store.get_service(sid)
    assert svc is not None
    assert svc.last_snapshot is not None and svc.last_snapshot["label"].value == "x"
    assert svc.is_alive_transition_at == T0


@pytest.mark.asyncio
async def test_unreachable_result_is_never_diffed(store: ServiceStore) -> None:
    sid = _seed(store, "billing", is_alive=True, snapshot=_version("1.0"))
    leaked = FetchResult(reachable=False, properties=_version("9.9"), response_time_ms=5.0)
    gateway = _FakeGateway({sid: leaked})
    notifier = _RecordingNotifier()

    result = await _monitor(store, gateway, notifier).run_cycle()

    assert result.report.offline == ["[billing]\nSince: 2h 00m\n- Response time: 5.0ms"]
    assert result.report.modified == result.report.added == result.report.removed == []

    svc = store.get_service(sid)
    assert svc is not None
    assert svc.is_alive is False
    assert svc.last_snapshot is not None and svc.last_snapshot["version"].value == "1.0"


@pytest.mark.asyncio
async def test_reachable_without_properties_clears_snapshot(store: ServiceStore) -> None:
    sid = _seed(store, "billing", is_alive=True, snapshot=_version("1.0"))
    gateway = _FakeGateway({sid: FetchResult(reachable=True, properties=None, response_time_ms=5.0)})
    notifier = _RecordingNotifier()

    result = await _monitor(store, gateway, notifier).run_cycle()

    assert result.text is None
    svc = store.get_service(sid)
    assert svc is not None
    assert svc.is_alive is True
    assert svc.last_snapshot is None

    # With the snapshot cleared, the next full payload is all additions.
    gateway.results[sid] = _ok(_version("1.0"))
    again = await _monitor(store, gateway, notifier).run_cycle()
    assert again.report.added == ["[billing]\n+ Version: 1.0\n+ Database: ok"]
