"""Configuration for Obserra: loaded from YAML, overridden by environment.

File lookup order: ``$CONFIG_PATH``, then ``$CONFIG_MAP_PATH`` (a mounted
ConfigMap), then ``./config.yaml``.  A missing file means defaults.  Keys are
grouped in sections mirroring the dataclasses below; unknown keys are
ignored.  Intervals and timeouts are in seconds except
``logs.refresh_interval``, which is handed to dashboard clients in
milliseconds.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "./config.yaml"


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class KubernetesConfig:
    enabled: bool = False
    required: bool = False  # refuse to start when the cluster is unreachable
    kubeconfig: str | None = None  # None → in-cluster config, then ~/.kube/config
    namespace: str | None = None  # None → all namespaces
    service_discovery_interval: int = 60


@dataclass
class ActuatorConfig:
    default_port: int = 8080
    base_path: str = "/actuator"
    management_port_annotation: str = "spring-boot/management-port"
    management_context_path_annotation: str = "spring-boot/management-context-path"


@dataclass
class HealthCheckConfig:
    interval: int = 30
    timeout: float = 5.0
    max_down_age: int = 300  # DOWN instances unseen for longer stop being probed


@dataclass
class RetentionConfig:
    days: int = 7
    max_entries: int = 1000


@dataclass
class MetricsConfig:
    retention: RetentionConfig = field(default_factory=RetentionConfig)


@dataclass
class LoggingConfig:
    level: str = "info"


@dataclass
class LogsConfig:
    recent_limit: int = 10
    websocket_enabled: bool = True
    refresh_interval: int = 5000


@dataclass
class ObserraConfig:
    """Top-level configuration tree."""

    server: ServerConfig = field(default_factory=ServerConfig)
    kubernetes: KubernetesConfig = field(default_factory=KubernetesConfig)
    actuator: ActuatorConfig = field(default_factory=ActuatorConfig)
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    logs: LogsConfig = field(default_factory=LogsConfig)
    data_dir: str | None = None  # None → in-memory registry

    @classmethod
    def load(cls, path: str | Path) -> ObserraConfig:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"Config at {path} must be a mapping, got {type(data).__name__}")
            logger.info("Configuration loaded from %s", path)
            return cls.from_dict(data)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ObserraConfig:
        return _build(cls, data)

    @classmethod
    def resolve(cls, env: Mapping[str, str] | None = None) -> ObserraConfig:
        """Load from the first configured file location, then apply env overrides."""
        env = os.environ if env is None else env
        path = env.get("CONFIG_PATH") or env.get("CONFIG_MAP_PATH") or DEFAULT_CONFIG_FILE
        config = cls.load(path)
        config.apply_env(env)
        return config

    def apply_env(self, env: Mapping[str, str]) -> None:
        for name, (section, attr, cast) in _ENV_OVERRIDES.items():
            raw = env.get(name)
            if raw is None or raw == "":
                continue
            target = self
            for part in section:
                target = getattr(target, part)
            try:
                setattr(target, attr, cast(raw))
            except ValueError:
                logger.warning("Ignoring invalid value for %s: %r", name, raw)

    @property
    def database_path(self) -> str:
        if self.data_dir:
            return str(Path(self.data_dir) / "obserra.db")
        return ":memory:"


def _build(cls: type, data: Mapping[str, Any]) -> Any:
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        default = f.default_factory() if callable(f.default_factory) else None
        if is_dataclass(default) and isinstance(value, Mapping):
            value = _build(type(default), value)
        kwargs[f.name] = value
    unknown = set(data) - {f.name for f in fields(cls)}
    if unknown:
        logger.debug("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return cls(**kwargs)


def _as_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(raw)


_ENV_OVERRIDES: dict[str, tuple[tuple[str, ...], str, Callable[[str], Any]]] = {
    "SERVER_HOST": (("server",), "host", str),
    "SERVER_PORT": (("server",), "port", int),
    "KUBERNETES_ENABLED": (("kubernetes",), "enabled", _as_bool),
    "KUBERNETES_REQUIRED": (("kubernetes",), "required", _as_bool),
    "KUBERNETES_KUBECONFIG": (("kubernetes",), "kubeconfig", str),
    "KUBERNETES_NAMESPACE": (("kubernetes",), "namespace", str),
    "KUBERNETES_SERVICE_DISCOVERY_INTERVAL": (("kubernetes",), "service_discovery_interval", int),
    "ACTUATOR_DEFAULT_PORT": (("actuator",), "default_port", int),
    "ACTUATOR_BASE_PATH": (("actuator",), "base_path", str),
    "ACTUATOR_MANAGEMENT_PORT_ANNOTATION": (("actuator",), "management_port_annotation", str),
    "ACTUATOR_MANAGEMENT_CONTEXT_PATH_ANNOTATION": (
        ("actuator",),
        "management_context_path_annotation",
        str,
    ),
    "HEALTH_CHECK_INTERVAL": (("health_check",), "interval", int),
    "HEALTH_CHECK_TIMEOUT": (("health_check",), "timeout", float),
    "HEALTH_CHECK_MAX_DOWN_AGE": (("health_check",), "max_down_age", int),
    "METRICS_RETENTION_DAYS": (("metrics", "retention"), "days", int),
    "METRICS_MAX_ENTRIES": (("metrics", "retention"), "max_entries", int),
    "LOGGING_LEVEL": (("logging",), "level", str),
    "LOGS_RECENT_LIMIT": (("logs",), "recent_limit", int),
    "LOGS_WEBSOCKET_ENABLED": (("logs",), "websocket_enabled", _as_bool),
    "LOGS_REFRESH_INTERVAL": (("logs",), "refresh_interval", int),
    "OBSERRA_DATA_DIR": ((), "data_dir", str),
}
