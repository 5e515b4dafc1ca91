"""REST API router for Obserra.

Read access to the registry (instances, metrics, logs), on-demand health
checks and collection, direct registration, logger-level control and
per-instance config properties.  Responses use the
camelCase field names dashboard clients expect.

Mount with ``app.include_router(router)`` after :func:`bind`-ing an
:class:`ApiContext`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from fastapi import APIRouter, Body, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from obserra.collector import MetricsCollector
from obserra.config import LogsConfig
from obserra.discovery.direct import DirectRegistrar
from obserra.errors import NotFoundError, RegistrationValidationError
from obserra.loggers import AVAILABLE_LEVELS, LoggerBridge
from obserra.models import ConfigPropertyData, PropertyType
from obserra.prober import ActuatorProber
from obserra.registry import InstanceRegistry
from obserra.scheduler import HealthScheduler

router = APIRouter(prefix="/api", tags=["services"])

TREND_WINDOW = 10


@dataclass
class ApiContext:
    registry: InstanceRegistry
    prober: ActuatorProber
    registrar: DirectRegistrar | None = None
    loggers: LoggerBridge | None = None
    collector: MetricsCollector | None = None
    scheduler: HealthScheduler | None = None
    logs: LogsConfig = field(default_factory=LogsConfig)

    def __post_init__(self) -> None:
        if self.registrar is None:
            self.registrar = DirectRegistrar(self.registry)
        if self.loggers is None:
            self.loggers = LoggerBridge(self.registry, self.prober)
        if self.collector is None:
            self.collector = MetricsCollector(self.registry, self.prober)
        if self.scheduler is None:
            self.scheduler = HealthScheduler(self.registry, self.prober, collector=self.collector)


_context: ApiContext | None = None


def bind(context: ApiContext | None) -> None:
    global _context
    _context = context


# ── Helpers ───────────────────────────────────────────────────────

def _ctx() -> ApiContext:
    if _context is None:
        raise RuntimeError("API context not bound; call obserra.api.bind() first")
    return _context


def _registry() -> InstanceRegistry:
    return _ctx().registry


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _out(row: Mapping[str, Any]) -> dict[str, Any]:
    return {_camel(k): v for k, v in row.items()}


def _instance(instance_id: int) -> dict[str, Any]:
    row = _registry().get(instance_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Service not found")
    return row


def metrics_summary(samples: list[Mapping[str, Any]]) -> dict[str, Any]:
    """Current values plus oldest-to-newest trends from newest-first *samples*."""
    chronological = list(reversed(samples))
    latest = samples[0] if samples else None
    memory_trend = [
        (s["memory_used"] / s["memory_max"] * 100) if s["memory_max"] else 0.0
        for s in chronological
    ]
    return {
        "memory": {
            "used": round(latest["memory_used"]) if latest else 0,
            "max": round(latest["memory_max"]) if latest else 0,
            "trend": memory_trend,
        },
        "cpu": {
            "used": latest["cpu_usage"] if latest else 0,
            "max": 1,
            "trend": [s["cpu_usage"] * 100 for s in chronological],
        },
        "errors": {
            "count": sum(s["error_count"] for s in samples),
            "trend": [s["error_count"] for s in chronological],
        },
    }


# ══════════════════════════════════════════════════════════════════
# SERVICES
# ══════════════════════════════════════════════════════════════════

@router.get("/services")
async def list_services():
    registry = _registry()
    services = []
    for row in registry.list():
        summary = metrics_summary(registry.list_metrics(row["id"], TREND_WINDOW))
        services.append({**_out(row), **summary})
    return services


@router.get("/services/{instance_id}")
async def get_service(instance_id: int):
    row = _instance(instance_id)
    summary = metrics_summary(_registry().list_metrics(instance_id, TREND_WINDOW))
    return {**_out(row), "metrics": summary}


@router.delete("/services/{instance_id}")
async def delete_service(instance_id: int):
    try:
        _registry().delete(instance_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Service not found")
    return {"ok": True}


@router.get("/services/{instance_id}/metrics")
async def service_metrics(instance_id: int, limit: int = Query(100, ge=1, le=10000)):
    _instance(instance_id)
    return [_out(row) for row in _registry().list_metrics(instance_id, limit)]


@router.get("/services/{instance_id}/logs")
async def service_logs(instance_id: int, limit: int | None = Query(None, ge=1, le=10000)):
    _instance(instance_id)
    limit = limit or _ctx().logs.recent_limit
    return [_out(row) for row in _registry().list_logs(instance_id, limit)]


@router.post("/services/{instance_id}/health-check")
async def trigger_health_check(instance_id: int):
    row = _instance(instance_id)
    await _ctx().scheduler.check_instance(row)
    row = _instance(instance_id)
    return {"id": row["id"], "name": row["name"], "status": row["status"], "lastSeen": row["last_seen"]}


@router.post("/services/{instance_id}/collect-metrics")
async def trigger_metrics_collection(instance_id: int):
    row = _instance(instance_id)
    sample = await _ctx().collector.collect_metrics(row)
    if sample is None:
        raise HTTPException(status_code=502, detail="Could not collect metrics from service")
    return _out(sample)


@router.post("/services/{instance_id}/collect-logs")
async def trigger_logs_collection(instance_id: int):
    row = _instance(instance_id)
    if await _ctx().collector.collect_logs(row) is None:
        raise HTTPException(status_code=502, detail="Could not read logfile from service")
    return [_out(r) for r in _registry().list_logs(instance_id, _ctx().logs.recent_limit)]


@router.post("/services/{instance_id}/restart")
async def restart_service(instance_id: int):
    row = _instance(instance_id)
    result = await _ctx().prober.restart(row)
    if not result.ok:
        raise HTTPException(
            status_code=502,
            detail={
                "message": f"Restart of {row['name']} failed",
                "statusCode": result.status_code,
                "reason": result.error.reason if result.error else None,
            },
        )
    return {"ok": True, "message": f"Restart requested for {row['name']}"}


# ══════════════════════════════════════════════════════════════════
# REGISTRATION
# ══════════════════════════════════════════════════════════════════

@router.post("/register", status_code=201)
async def register(payload: dict[str, Any] = Body(...)):
    try:
        row = _ctx().registrar.register(payload)
    except RegistrationValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "id": row["id"],
        "name": row["name"],
        "status": row["status"],
        "source": row["source"],
        "appId": row["app_id"],
    }


@router.delete("/unregister/{app_id}")
async def unregister(app_id: str):
    try:
        _ctx().registrar.unregister(app_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"ok": True}


# ══════════════════════════════════════════════════════════════════
# LOGGERS
# ══════════════════════════════════════════════════════════════════

class LoggerLevelRequest(BaseModel):
    level: str


@router.get("/loggers/levels")
async def logger_levels():
    return {"levels": AVAILABLE_LEVELS}


@router.get("/services/{instance_id}/loggers")
async def service_loggers(instance_id: int):
    row = _instance(instance_id)
    loggers = await _ctx().loggers.list_loggers(row)
    if loggers is None:
        raise HTTPException(status_code=502, detail="Could not read loggers from service")
    return {
        "loggers": [info.to_dict() for info in loggers.values()],
        "levels": AVAILABLE_LEVELS,
    }


@router.post("/services/{instance_id}/loggers/{logger_name}")
async def set_service_logger(instance_id: int, logger_name: str, req: LoggerLevelRequest):
    row = _instance(instance_id)
    try:
        ok = await _ctx().loggers.set_logger_level(row, logger_name, req.level)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if not ok:
        raise HTTPException(status_code=502, detail="Service rejected the logger level change")
    return {"ok": True, "logger": logger_name, "level": req.level.upper()}


# ══════════════════════════════════════════════════════════════════
# CONFIG PROPERTIES
# ══════════════════════════════════════════════════════════════════

class ConfigPropertyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str
    value: str
    type: PropertyType = PropertyType.STRING
    description: str | None = None
    source: str = "application.properties"
    is_active: bool = Field(True, alias="isActive")


class ConfigPropertyUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str | None = None
    value: str | None = None
    type: PropertyType | None = None
    description: str | None = None
    source: str | None = None
    is_active: bool | None = Field(None, alias="isActive")


@router.get("/services/{instance_id}/config")
async def list_config(instance_id: int):
    _instance(instance_id)
    return [_out(row) for row in _registry().list_config(instance_id)]


@router.post("/services/{instance_id}/config", status_code=201)
async def create_config(instance_id: int, req: ConfigPropertyRequest):
    _instance(instance_id)
    row = _registry().create_config(instance_id, ConfigPropertyData(**req.model_dump()))
    return _out(row)


@router.get("/services/{instance_id}/config/{property_id}")
async def get_config(instance_id: int, property_id: int):
    try:
        return _out(_registry().get_config(instance_id, property_id))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.put("/services/{instance_id}/config/{property_id}")
async def update_config(instance_id: int, property_id: int, req: ConfigPropertyUpdate):
    fields = req.model_dump(exclude_none=True)
    try:
        return _out(_registry().update_config(instance_id, property_id, **fields))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.delete("/services/{instance_id}/config/{property_id}")
async def delete_config(instance_id: int, property_id: int):
    try:
        _registry().delete_config(instance_id, property_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"ok": True}


# ══════════════════════════════════════════════════════════════════
# SETTINGS
# ══════════════════════════════════════════════════════════════════

@router.get("/settings")
async def settings():
    logs = _ctx().logs
    return {
        "logs": {
            "recentLimit": logs.recent_limit,
            "websocketEnabled": logs.websocket_enabled,
            "refreshInterval": logs.refresh_interval,
        }
    }
