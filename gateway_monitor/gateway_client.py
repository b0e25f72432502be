from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx
import structlog

from gateway_monitor.errors import FetchFailure, PayloadShapeError, UpstreamDataMissing
from gateway_monitor.models import MISSING, RESPONSE_TIME_KEY, FetchResult, MonitoredService, Property
from gateway_monitor.settings import MonitorSettings


logger = structlog.get_logger(__name__)

AUTHENTICATION_PATH = "/api/v1/get/authentication"
API_DATA_MAP_PATH = "/api/v1/get/api-data-map"


@dataclass(frozen=True)
class GatewayConfig:
    base_url: str
    username: str
    password: str
    timeout_seconds: float = 60.0
    token_refresh_skew_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: MonitorSettings) -> "GatewayConfig":
        return cls(
            base_url=settings.gateway.base_url,
            username=settings.gateway.username,
            password=settings.gateway.password,
            timeout_seconds=float(settings.request_timeout_seconds),
            token_refresh_skew_seconds=float(settings.gateway.token_refresh_skew_seconds),
        )

    def url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}{path}"


def parse_token_response(data: Any) -> tuple[str, float]:
    """
    Token endpoint returns: {"data": {"token": "<jwt>", "expiresIn": <seconds>}}
    """
    inner = data.get("data") if isinstance(data, dict) else None
    if not isinstance(inner, dict):
        raise PayloadShapeError("Unexpected authentication response (missing data object)")
    token = inner.get("token")
    if not isinstance(token, str) or not token:
        raise PayloadShapeError("Unexpected authentication response (missing token)")
    try:
        expires_in = float(inner.get("expiresIn") or 0.0)
    except (TypeError, ValueError):
        expires_in = 0.0
    return token, max(0.0, expires_in)


def parse_monitor_properties(monitor: Any) -> dict[str, Property]:
    if not isinstance(monitor, dict):
        raise PayloadShapeError("monitor payload is not an object")

    props: dict[str, Property] = {}
    for key, entry in monitor.items():
        if not isinstance(key, str) or not key:
            raise PayloadShapeError(f"monitor key is not a string: {key!r}")
        if key == RESPONSE_TIME_KEY:
            # Latency is measured on our side; never trust an upstream value for it.
            continue
        if not isinstance(entry, dict):
            raise PayloadShapeError(f"monitor entry {key!r} is not an object")
        name = entry.get("name", key)
        if not isinstance(name, str) or not name.strip():
            raise PayloadShapeError(f"monitor entry {key!r} has no usable name")
        watch = entry.get("watchForChange", True)
        if not isinstance(watch, bool):
            raise PayloadShapeError(f"monitor entry {key!r} has a non-boolean watchForChange")
        props[key] = Property(
            name=name,
            value=entry["value"] if "value" in entry else MISSING,
            watch_for_change=watch,
        )
    return props


def parse_gateway_response(body: Any, *, source_name: str | None) -> tuple[bool, dict[str, Property] | None]:
    """
    Gateway returns: {"status": true, "data": {"<source name>": {"status": bool, "monitor": {...}}}}

    Returns (reachable, properties). Raises on anything that must degrade to unreachable.
    """
    if not isinstance(body, dict):
        raise PayloadShapeError("gateway response is not an object")
    if not body.get("status"):
        raise FetchFailure("gateway reported status=false")
    if not source_name:
        raise UpstreamDataMissing("service has no registered source")

    data = body.get("data")
    if not isinstance(data, dict):
        raise PayloadShapeError("gateway response has no data object")

    sub = data.get(source_name)
    if sub is None:
        raise UpstreamDataMissing(f"gateway response has no entry for source {source_name!r}")
    if not isinstance(sub, dict):
        raise PayloadShapeError(f"entry for source {source_name!r} is not an object")

    monitor = sub.get("monitor")
    # A sub-resource that reports itself down carries no trustworthy properties.
    if not sub.get("status", monitor is not None):
        return False, None
    if monitor is None:
        return True, None

    return True, parse_monitor_properties(monitor)


class GatewayClient:
    """
    Authenticated client for the API gateway.

    One instance lives for one check cycle; its bearer token is cached on the
    instance and shared by every service fetched in that cycle.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    async def __aenter__(self) -> "GatewayClient":
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"User-Agent": "gateway-monitor"},
                timeout=self.config.timeout_seconds,
            )
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GatewayClient used outside of its context manager")
        return self._client

    def _token_valid(self) -> bool:
        return self._token is not None and self._clock() < self._token_expires_at

    async def _authenticate(self) -> str:
        resp = await self.client.get(
            self.config.url(AUTHENTICATION_PATH),
            auth=(self.config.username, self.config.password),
            timeout=self.config.timeout_seconds,
        )
        resp.raise_for_status()
        token, expires_in = parse_token_response(resp.json())
        self._token = token
        self._token_expires_at = self._clock() + max(0.0, expires_in - self.config.token_refresh_skew_seconds)
        logger.debug("Gateway token refreshed", expires_in=expires_in)
        return token

    async def get_token(self, *, force: bool = False) -> str:
        async with self._token_lock:
            if not force and self._token is not None and self._token_valid():
                return self._token
            return await self._authenticate()

    async def fetch_api_data_map(self, source_id: int) -> Any:
        payload = {"filterMap": {"id": source_id}}
        token = await self.get_token()
        for attempt in range(2):
            resp = await self.client.post(
                self.config.url(API_DATA_MAP_PATH),
                headers={"Authorization": f"Bearer {token}"},
                json=payload,
                timeout=self.config.timeout_seconds,
            )
            if resp.status_code == 401 and attempt == 0:
                token = await self.get_token(force=True)
                continue
            resp.raise_for_status()
            return resp.json()
        raise FetchFailure("gateway rejected a freshly issued token")

    async def fetch(self, service: MonitoredService) -> FetchResult:
        """Fetch and classify one service's health. Never raises."""
        started = time.perf_counter()
        body: Any = None
        error: str | None = None
        try:
            body = await self.fetch_api_data_map(service.source_id)
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError, FetchFailure, ValueError) as exc:
            error = f"fetch_failure: {type(exc).__name__}: {exc}"
        elapsed_ms = float(round((time.perf_counter() - started) * 1000.0))

        if error is None:
            try:
                reachable, properties = parse_gateway_response(body, source_name=service.source_name)
                return FetchResult(reachable=reachable, properties=properties, response_time_ms=elapsed_ms)
            except PayloadShapeError as exc:
                error = f"payload_shape: {exc}"
            except UpstreamDataMissing as exc:
                error = f"upstream_data_missing: {exc}"
            except FetchFailure as exc:
                error = f"fetch_failure: {exc}"

        logger.info(
            "Service unreachable",
            service_id=service.id,
            application_type=service.application_type,
            error=error,
            elapsed_ms=elapsed_ms,
        )
        return FetchResult(reachable=False, properties=None, response_time_ms=elapsed_ms, error=error)
