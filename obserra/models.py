"""Core value types shared across the registry, discovery and scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class InstanceStatus(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    WARNING = "WARNING"
    UNKNOWN = "UNKNOWN"


class DiscoverySource(str, Enum):
    """How an instance entered the registry."""

    PLATFORM = "platform"
    DIRECT = "direct"


class LoggerLevel(str, Enum):
    """Runtime log levels accepted by the actuator loggers endpoint, in order."""

    OFF = "OFF"
    ERROR = "ERROR"
    WARN = "WARN"
    INFO = "INFO"
    DEBUG = "DEBUG"
    TRACE = "TRACE"


class PropertyType(str, Enum):
    STRING = "STRING"
    NUMBER = "NUMBER"
    BOOLEAN = "BOOLEAN"
    ARRAY = "ARRAY"
    MAP = "MAP"
    JSON = "JSON"
    YAML = "YAML"


_KNOWN_STATUSES = {"UP", "DOWN", "WARNING"}


def normalize_status(raw: Any) -> InstanceStatus:
    """Map an upstream health word onto :class:`InstanceStatus`.

    Matching is case-insensitive; anything other than UP/DOWN/WARNING
    (including ``OUT_OF_SERVICE``, empty or non-string values) is UNKNOWN.
    """
    if not isinstance(raw, str):
        return InstanceStatus.UNKNOWN
    word = raw.strip().upper()
    if word in _KNOWN_STATUSES:
        return InstanceStatus(word)
    return InstanceStatus.UNKNOWN


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime | None = None) -> str:
    """Fixed-width ISO-8601 UTC string, so stored values compare lexically."""
    value = value or utcnow()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


# ──────────────────────────────────────────────────────────────────
# Identity
# ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Identity:
    """Registry identity: a direct ``app_id`` or a ``(workload, namespace)`` pair."""

    app_id: str | None = None
    workload_name: str | None = None
    namespace: str = "default"

    def __post_init__(self) -> None:
        if bool(self.app_id) == bool(self.workload_name):
            raise ValueError("Identity needs exactly one of app_id or workload_name")

    @classmethod
    def direct(cls, app_id: str) -> Identity:
        return cls(app_id=app_id)

    @classmethod
    def platform(cls, workload_name: str, namespace: str = "default") -> Identity:
        return cls(workload_name=workload_name, namespace=namespace or "default")

    @property
    def is_direct(self) -> bool:
        return self.app_id is not None


# ──────────────────────────────────────────────────────────────────
# Records written into the registry
# ──────────────────────────────────────────────────────────────────

@dataclass
class InstanceData:
    """Mutable fields of an instance, as supplied to ``upsert_by_identity``."""

    name: str
    base_url: str
    source: DiscoverySource
    namespace: str = "default"
    version: str = "unknown"
    status: InstanceStatus = InstanceStatus.UNKNOWN
    cluster_dns: str | None = None
    pod_name: str | None = None
    host: str | None = None
    port: int | None = None
    context_path: str = ""
    health_path: str = "/health"
    info_path: str = "/info"
    metrics_path: str = "/metrics"
    logs_path: str = "/logfile"
    config_path: str = "/env"
    health_check_interval: int = 30
    auto_register: bool = False


@dataclass
class MetricSample:
    memory_used: float = 0.0
    memory_max: float = 0.0
    cpu_usage: float = 0.0
    error_count: int = 0
    metric_data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime | None = None


@dataclass
class LogLine:
    message: str
    level: str = "INFO"
    timestamp: datetime | None = None


@dataclass
class ConfigPropertyData:
    key: str
    value: str
    type: PropertyType = PropertyType.STRING
    description: str | None = None
    source: str = "application.properties"
    is_active: bool = True


@dataclass
class LoggerInfo:
    """One entry of an instance's runtime logger configuration."""

    name: str
    effective_level: LoggerLevel | None = None
    configured_level: LoggerLevel | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "configuredLevel": self.configured_level.value if self.configured_level else None,
            "effectiveLevel": self.effective_level.value if self.effective_level else None,
        }
