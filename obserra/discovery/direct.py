"""Direct registration: instances that announce themselves over HTTP."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Mapping

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from obserra.errors import InstanceNotFoundError, RegistrationValidationError
from obserra.models import DiscoverySource, Identity, InstanceData, InstanceStatus
from obserra.registry import InstanceRegistry

logger = logging.getLogger(__name__)


class RegistrationRequest(BaseModel):
    """Registration payload; accepts camelCase keys as sent by client agents."""

    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    actuator_url: str | None = Field(None, alias="actuatorUrl")
    app_id: str | None = Field(None, alias="appId")
    version: str | None = None
    health_check_path: str = Field("/health", alias="healthCheckPath")
    info_path: str = Field("/info", alias="infoPath")
    metrics_path: str = Field("/metrics", alias="metricsPath")
    logs_path: str = Field("/logfile", alias="logsPath")
    config_path: str = Field("/env", alias="configPath")
    host_address: str | None = Field(None, alias="hostAddress")
    port: int | None = None
    context_path: str | None = Field(None, alias="contextPath")
    auto_register: bool = Field(False, alias="autoRegister")
    health_check_interval: int = Field(30, alias="healthCheckInterval")


def parse_actuator_url(url: str) -> tuple[str, int]:
    """Return ``(host, port)`` of an http(s) URL, defaulting the port by scheme."""
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as exc:
        raise RegistrationValidationError(f"Invalid actuatorUrl {url!r}: {exc}") from exc
    if parsed.scheme not in ("http", "https"):
        raise RegistrationValidationError(f"actuatorUrl must be http or https, got {url!r}")
    if not parsed.host:
        raise RegistrationValidationError(f"actuatorUrl has no host: {url!r}")
    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    return parsed.host, port


class DirectRegistrar:
    """Creates, updates and removes directly registered instances."""

    def __init__(self, registry: InstanceRegistry) -> None:
        self._registry = registry

    def register(self, request: RegistrationRequest | Mapping[str, Any]) -> dict[str, Any]:
        """Register (or re-register) an instance.

        A known ``app_id`` updates the existing record in place; otherwise a
        new record is created under the supplied or a fresh UUID ``app_id``.
        The status always restarts at ``UNKNOWN`` until the next probe.

        Raises:
            RegistrationValidationError: missing fields, bad URL or bad values.
        """
        if not isinstance(request, RegistrationRequest):
            try:
                request = RegistrationRequest.model_validate(request)
            except ValidationError as exc:
                raise RegistrationValidationError(_describe(exc)) from exc

        if not request.name or not request.name.strip():
            raise RegistrationValidationError("name is required")
        if not request.actuator_url or not request.actuator_url.strip():
            raise RegistrationValidationError("actuatorUrl is required")
        if request.health_check_interval <= 0:
            raise RegistrationValidationError("healthCheckInterval must be positive")

        actuator_url = request.actuator_url.strip()
        host, port = parse_actuator_url(actuator_url)
        app_id = request.app_id or str(uuid.uuid4())
        existing = self._registry.get_by_app_id(app_id)

        data = InstanceData(
            name=request.name.strip(),
            base_url=actuator_url.rstrip("/"),
            source=DiscoverySource.DIRECT,
            version=request.version or "unknown",
            status=InstanceStatus.UNKNOWN,
            host=request.host_address or host,
            port=request.port or port,
            context_path=request.context_path or "",
            health_path=request.health_check_path,
            info_path=request.info_path,
            metrics_path=request.metrics_path,
            logs_path=request.logs_path,
            config_path=request.config_path,
            health_check_interval=request.health_check_interval,
            auto_register=request.auto_register,
        )
        row = self._registry.upsert_by_identity(Identity.direct(app_id), data)
        if existing is None:
            logger.info("Registered %s (appId=%s) at %s", row["name"], app_id, row["base_url"])
        else:
            logger.info("Updated registration of %s (appId=%s)", row["name"], app_id)
        return row

    def unregister(self, app_id: str) -> None:
        """Remove the instance registered under *app_id* with all its history."""
        row = self._registry.get_by_app_id(app_id)
        if row is None:
            raise InstanceNotFoundError(f"No instance registered with appId {app_id}")
        self._registry.delete(row["id"])
        logger.info("Unregistered %s (appId=%s)", row["name"], app_id)


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts) or "invalid registration request"
