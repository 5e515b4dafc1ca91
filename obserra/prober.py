"""Async HTTP prober for actuator endpoints.

Every call returns a :class:`ProbeResult`; transport errors, timeouts,
non-2xx answers and unparseable bodies are folded into ``ok=False`` with a
:class:`~obserra.errors.ProbeFailure` attached, so callers never need a
``try`` around a probe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from obserra.errors import ProbeFailure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

MEMORY_USED = "jvm.memory.used"
MEMORY_MAX = "jvm.memory.max"
CPU_USAGE = "process.cpu.usage"
HTTP_REQUESTS = "http.server.requests"
TRACKED_METRICS = (MEMORY_USED, MEMORY_MAX, CPU_USAGE)


@dataclass
class ProbeResult:
    ok: bool
    status_code: int | None = None
    data: Any = None
    error: ProbeFailure | None = None

    @classmethod
    def failure(cls, url: str, reason: str, status_code: int | None = None) -> ProbeResult:
        return cls(
            ok=False,
            status_code=status_code,
            error=ProbeFailure(url, reason, status_code),
        )


def build_url(base_url: str, path: str | None = None) -> str:
    """Join *base_url* and a sub-path with exactly one slash between them."""
    base = base_url.rstrip("/")
    if not path:
        return base
    return f"{base}/{path.lstrip('/')}"


def measurement(payload: Any, statistic: str | None = None) -> float:
    """Return a measurement value from a ``/metrics/{name}`` payload.

    With *statistic* (``"COUNT"``, ``"VALUE"`` …) the matching entry is used,
    otherwise the first one.  Missing or malformed data yields ``0.0``.
    """
    if not isinstance(payload, Mapping):
        return 0.0
    for entry in payload.get("measurements") or []:
        if not isinstance(entry, Mapping):
            continue
        if statistic and entry.get("statistic") != statistic:
            continue
        try:
            return float(entry.get("value") or 0)
        except (TypeError, ValueError):
            return 0.0
    return 0.0


def extract_version(info: Any) -> str:
    """``build.version`` from an info payload, else ``version``, else ``"unknown"``."""
    if not isinstance(info, Mapping):
        return "unknown"
    build = info.get("build")
    if isinstance(build, Mapping) and build.get("version"):
        return str(build["version"])
    if info.get("version"):
        return str(info["version"])
    return "unknown"


class ActuatorProber:
    """Issues actuator requests over one shared :class:`httpx.AsyncClient`.

    Pass *client* to supply a preconfigured client (tests use one built on
    :class:`httpx.MockTransport`).  Call :meth:`aclose` (or use as an async
    context manager) when done.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout = timeout
        self._client: httpx.AsyncClient = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ActuatorProber:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # Generic requests
    # ------------------------------------------------------------------ #

    async def get_json(self, url: str) -> ProbeResult:
        return await self._request("GET", url)

    async def get_text(self, url: str) -> ProbeResult:
        return await self._request("GET", url, as_text=True, headers={"Accept": "text/plain"})

    async def post_json(self, url: str, payload: Mapping[str, Any] | None = None) -> ProbeResult:
        return await self._request("POST", url, payload=dict(payload or {}))

    # ------------------------------------------------------------------ #
    # Actuator endpoints
    # ------------------------------------------------------------------ #

    async def health(self, instance: Mapping[str, Any]) -> ProbeResult:
        return await self.get_json(build_url(instance["base_url"], instance.get("health_path") or "/health"))

    async def info(self, instance: Mapping[str, Any]) -> ProbeResult:
        return await self.get_json(build_url(instance["base_url"], instance.get("info_path") or "/info"))

    async def logfile(self, instance: Mapping[str, Any]) -> ProbeResult:
        return await self.get_text(build_url(instance["base_url"], instance.get("logs_path") or "/logfile"))

    async def metrics(self, instance: Mapping[str, Any]) -> ProbeResult:
        """Fetch the metric names, then the tracked metrics and HTTP error count.

        ``data`` is ``{"names": [...], "measurements": {name: payload},
        "error_count": int}``.  Only the names listing must succeed; missing
        individual metrics are left out of ``measurements``.
        """
        base = build_url(instance["base_url"], instance.get("metrics_path") or "/metrics")
        listing = await self.get_json(base)
        if not listing.ok:
            return listing
        names = listing.data.get("names", []) if isinstance(listing.data, Mapping) else []

        measurements: dict[str, Any] = {}
        for name in TRACKED_METRICS:
            if names and name not in names:
                continue
            result = await self.get_json(build_url(base, name))
            if result.ok:
                measurements[name] = result.data
            else:
                logger.debug("Metric %s unavailable: %s", name, result.error)

        error_count = 0
        if not names or HTTP_REQUESTS in names:
            error_count = await self._http_error_count(base)

        return ProbeResult(
            ok=True,
            status_code=listing.status_code,
            data={"names": names, "measurements": measurements, "error_count": error_count},
        )

    async def loggers(self, instance: Mapping[str, Any]) -> ProbeResult:
        return await self.get_json(build_url(instance["base_url"], "/loggers"))

    async def set_logger_level(
        self, instance: Mapping[str, Any], logger_name: str, level: str
    ) -> ProbeResult:
        url = build_url(instance["base_url"], f"/loggers/{logger_name}")
        return await self.post_json(url, {"configuredLevel": level})

    async def restart(self, instance: Mapping[str, Any]) -> ProbeResult:
        """Ask the instance to restart, falling back to ``/refresh`` on 404."""
        result = await self.post_json(build_url(instance["base_url"], "/restart"))
        if result.status_code == 404:
            logger.info("Restart endpoint missing on %s, trying refresh", instance["base_url"])
            result = await self.post_json(build_url(instance["base_url"], "/refresh"))
        return result

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    async def _http_error_count(self, metrics_url: str) -> int:
        """Sum request counts over every 4xx/5xx ``status`` tag value."""
        url = build_url(metrics_url, HTTP_REQUESTS)
        overview = await self.get_json(url)
        if not overview.ok or not isinstance(overview.data, Mapping):
            return 0
        total = 0
        for tag in overview.data.get("availableTags") or []:
            if not isinstance(tag, Mapping) or tag.get("tag") != "status":
                continue
            for value in tag.get("values") or []:
                if not str(value).startswith(("4", "5")):
                    continue
                result = await self._request("GET", url, params={"tag": f"status:{value}"})
                if result.ok:
                    total += int(measurement(result.data, "COUNT"))
        return total

    async def _request(
        self,
        method: str,
        url: str,
        *,
        payload: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        as_text: bool = False,
    ) -> ProbeResult:
        try:
            response = await self._client.request(
                method, url, json=payload, params=params, headers=headers
            )
        except httpx.TimeoutException as exc:
            logger.debug("%s %s timed out: %s", method, url, exc)
            return ProbeResult.failure(url, "timeout")
        except httpx.HTTPError as exc:
            logger.debug("%s %s failed: %s", method, url, exc)
            return ProbeResult.failure(url, f"unreachable: {exc}")

        if not response.is_success:
            return ProbeResult.failure(
                url, f"HTTP {response.status_code}", status_code=response.status_code
            )
        if as_text:
            return ProbeResult(ok=True, status_code=response.status_code, data=response.text)
        if not response.content:
            return ProbeResult(ok=True, status_code=response.status_code, data=None)
        try:
            data = response.json()
        except ValueError:
            return ProbeResult.failure(
                url, "response body is not JSON", status_code=response.status_code
            )
        return ProbeResult(ok=True, status_code=response.status_code, data=data)
