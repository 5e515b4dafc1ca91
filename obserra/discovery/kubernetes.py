"""Kubernetes access for platform discovery.

:class:`PlatformClient` is the capability the discovery cycle depends on.
:class:`KubernetesPlatform` talks to a real cluster through the official
client (blocking calls run in the default executor);
:class:`DisconnectedPlatform` is used when no cluster is configured and simply
reports nothing.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import urllib3
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException

from obserra.config import KubernetesConfig
from obserra.errors import DiscoveryTransportError, PlatformUnavailableError

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (ApiException, urllib3.exceptions.HTTPError, OSError)
_VERIFY_TIMEOUT = 5


@dataclass
class PlatformPort:
    port: int
    name: str | None = None


@dataclass
class PlatformEndpoint:
    """A Service: stable network name in front of a set of pods."""

    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    selector: dict[str, str] | None = None
    ports: list[PlatformPort] = field(default_factory=list)


@dataclass
class PlatformWorkload:
    """A Pod."""

    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    pod_ip: str | None = None


class PlatformClient(abc.ABC):
    """What platform discovery needs from the orchestrator."""

    connected: bool = False

    @abc.abstractmethod
    async def list_endpoints(self) -> list[PlatformEndpoint]:
        """Services in scope, with labels, selector and ports."""
        raise NotImplementedError

    @abc.abstractmethod
    async def list_workloads(self) -> list[PlatformWorkload]:
        """Pods in scope, with labels, annotations and IP."""
        raise NotImplementedError


class DisconnectedPlatform(PlatformClient):
    """No cluster available; every listing is empty."""

    async def list_endpoints(self) -> list[PlatformEndpoint]:
        return []

    async def list_workloads(self) -> list[PlatformWorkload]:
        return []


class KubernetesPlatform(PlatformClient):
    """Lists Services and Pods through ``CoreV1Api``.

    Args:
        core_api:  A ``kubernetes.client.CoreV1Api`` (or compatible mock).
        namespace: Restrict listings to one namespace; ``None`` for all.
    """

    connected = True

    def __init__(self, core_api: Any, namespace: str | None = None) -> None:
        self._core_api = core_api
        self.namespace = namespace

    @classmethod
    def from_config(cls, kubeconfig: str | None = None, namespace: str | None = None) -> KubernetesPlatform:
        """Load cluster credentials: explicit kubeconfig, else in-cluster, else ``~/.kube/config``."""
        try:
            if kubeconfig:
                k8s_config.load_kube_config(config_file=kubeconfig)
                logger.info("Loaded kubeconfig from %s", kubeconfig)
            else:
                try:
                    k8s_config.load_incluster_config()
                    logger.info("Loaded in-cluster Kubernetes config")
                except k8s_config.ConfigException:
                    k8s_config.load_kube_config()
                    logger.info("Loaded kubeconfig")
        except (k8s_config.ConfigException, OSError) as exc:
            raise PlatformUnavailableError(f"No Kubernetes config available: {exc}") from exc
        return cls(k8s_client.CoreV1Api(), namespace=namespace)

    async def verify(self) -> None:
        """Make one cheap call so an unreachable API server fails fast."""
        await self._call(
            lambda: self._core_api.get_api_resources(_request_timeout=_VERIFY_TIMEOUT)
        )

    async def list_endpoints(self) -> list[PlatformEndpoint]:
        if self.namespace:
            result = await self._call(lambda: self._core_api.list_namespaced_service(self.namespace))
        else:
            result = await self._call(self._core_api.list_service_for_all_namespaces)
        return [_to_endpoint(item) for item in result.items or []]

    async def list_workloads(self) -> list[PlatformWorkload]:
        if self.namespace:
            result = await self._call(lambda: self._core_api.list_namespaced_pod(self.namespace))
        else:
            result = await self._call(self._core_api.list_pod_for_all_namespaces)
        return [_to_workload(item) for item in result.items or []]

    async def _call(self, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except _TRANSPORT_ERRORS as exc:
            raise DiscoveryTransportError(f"Kubernetes API call failed: {exc}") from exc


async def connect_platform(config: KubernetesConfig) -> PlatformClient:
    """Return the platform client for *config*.

    Raises:
        PlatformUnavailableError: discovery is enabled and required but the
            cluster cannot be reached.
    """
    if not config.enabled:
        logger.info("Kubernetes discovery disabled")
        return DisconnectedPlatform()
    try:
        platform = KubernetesPlatform.from_config(config.kubeconfig, config.namespace)
        await platform.verify()
    except DiscoveryTransportError as exc:
        if config.required:
            raise PlatformUnavailableError(str(exc)) from exc
        logger.warning("Kubernetes unavailable, running without platform discovery: %s", exc)
        return DisconnectedPlatform()
    logger.info("Connected to Kubernetes (namespace=%s)", config.namespace or "all")
    return platform


def _to_endpoint(item: Any) -> PlatformEndpoint:
    meta = item.metadata
    spec = item.spec
    ports = [
        PlatformPort(port=int(p.port), name=p.name)
        for p in (getattr(spec, "ports", None) or [])
        if p.port is not None
    ]
    return PlatformEndpoint(
        name=meta.name,
        namespace=meta.namespace or "default",
        labels=dict(meta.labels or {}),
        selector=dict(spec.selector) if getattr(spec, "selector", None) else None,
        ports=ports,
    )


def _to_workload(item: Any) -> PlatformWorkload:
    meta = item.metadata
    status = getattr(item, "status", None)
    return PlatformWorkload(
        name=meta.name,
        namespace=meta.namespace or "default",
        labels=dict(meta.labels or {}),
        annotations=dict(meta.annotations or {}),
        pod_ip=getattr(status, "pod_ip", None),
    )
