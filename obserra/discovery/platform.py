"""Platform discovery: finds actuator-enabled workloads in the cluster.

Each cycle lists Services and Pods, keeps the Spring Boot looking ones,
probes their health/info endpoints and upserts the result into the
registry.  Services are matched to pods through their selector; pods that
pass the same label or name check but sit behind no matching Service are
handled in a second pass by pod IP.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from obserra.config import ActuatorConfig
from obserra.discovery.kubernetes import PlatformClient, PlatformEndpoint, PlatformWorkload
from obserra.errors import DiscoveryTransportError
from obserra.models import (
    DiscoverySource,
    Identity,
    InstanceData,
    InstanceStatus,
    normalize_status,
    to_timestamp,
)
from obserra.prober import ActuatorProber, extract_version
from obserra.registry import InstanceRegistry

logger = logging.getLogger(__name__)

SPRING_BOOT_LABELS: dict[str, str] = {
    "app.k8s.io/part-of": "spring-boot",
    "app": "spring-boot",
    "spring-boot": "true",
}
ACTUATOR_PORT_NAME = "actuator"
_NAME_LABELS = ("app.k8s.io/name", "app")


def has_spring_boot_label(labels: Mapping[str, str]) -> bool:
    return any(labels.get(key) == value for key, value in SPRING_BOOT_LABELS.items())


def looks_like_spring_boot(name: str) -> bool:
    lowered = name.lower()
    return (
        "spring" in lowered
        or "boot" in lowered
        or lowered.endswith("-service")
        or lowered.endswith("-svc")
    )


def is_candidate(name: str, labels: Mapping[str, str]) -> bool:
    """Spring Boot label, or a name that looks like a Spring Boot service."""
    return has_spring_boot_label(labels) or looks_like_spring_boot(name)


def selector_matches(selector: Mapping[str, str] | None, labels: Mapping[str, str]) -> bool:
    if not selector:
        return False
    return all(labels.get(key) == value for key, value in selector.items())


def display_name(labels: Mapping[str, str], fallback: str) -> str:
    for key in _NAME_LABELS:
        if labels.get(key) and labels[key] != SPRING_BOOT_LABELS.get(key):
            return labels[key]
    return fallback


def normalize_context_path(path: str | None) -> str:
    if not path:
        return ""
    path = path.strip().rstrip("/")
    if path and not path.startswith("/"):
        path = "/" + path
    return path


class PlatformDiscovery:
    """Periodic platform scan feeding the registry.

    Args:
        registry:              Target registry.
        prober:                Shared actuator prober.
        platform:              Connected or disconnected platform client.
        actuator:              Port / context-path conventions.
        interval:              Seconds between cycles.
        health_check_interval: Interval stored on newly discovered instances.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        prober: ActuatorProber,
        platform: PlatformClient,
        actuator: ActuatorConfig | None = None,
        interval: int = 60,
        health_check_interval: int = 30,
    ) -> None:
        self._registry = registry
        self._prober = prober
        self._platform = platform
        self.actuator = actuator or ActuatorConfig()
        self.interval = interval
        self.health_check_interval = health_check_interval
        self._running = False
        self._task: asyncio.Task | None = None
        self._last_cycle: dict[str, int] | None = None

    async def start(self) -> None:
        if self._running:
            logger.warning("Platform discovery is already running")
            return
        if not self._platform.connected:
            logger.info("Platform discovery not started: no cluster connection")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Platform discovery started (interval=%ds)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Platform discovery stopped")

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_cycle(self) -> dict[str, int] | None:
        return self._last_cycle

    async def run_cycle(self) -> dict[str, int]:
        """Run one discovery pass.

        Returns: ``{endpoints, workloads, registered, errors}``
        """
        stats = {"endpoints": 0, "workloads": 0, "registered": 0, "errors": 0}
        try:
            endpoints = await self._platform.list_endpoints()
            workloads = await self._platform.list_workloads()
        except DiscoveryTransportError as exc:
            logger.warning("Platform listing failed, retrying next cycle: %s", exc)
            stats["errors"] += 1
            self._last_cycle = stats
            return stats

        represented: set[tuple[str, str]] = set()

        for endpoint in endpoints:
            if not is_candidate(endpoint.name, endpoint.labels):
                continue
            stats["endpoints"] += 1
            try:
                pods = [
                    pod
                    for pod in workloads
                    if pod.namespace == endpoint.namespace
                    and selector_matches(endpoint.selector, pod.labels)
                ]
                if not pods:
                    logger.debug("Service %s/%s has no matching pods", endpoint.namespace, endpoint.name)
                    continue
                represented.update((pod.namespace, pod.name) for pod in pods)
                await self._discover_endpoint(endpoint, pods[0])
                stats["registered"] += 1
            except Exception:
                logger.exception("Failed to process service %s/%s", endpoint.namespace, endpoint.name)
                stats["errors"] += 1

        for pod in workloads:
            if (pod.namespace, pod.name) in represented or not is_candidate(pod.name, pod.labels):
                continue
            stats["workloads"] += 1
            try:
                await self._discover_workload(pod)
                stats["registered"] += 1
            except Exception:
                logger.exception("Failed to process pod %s/%s", pod.namespace, pod.name)
                stats["errors"] += 1

        self._last_cycle = stats
        return stats

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def management_port(self, pod: PlatformWorkload, endpoint: PlatformEndpoint | None = None) -> int:
        annotated = pod.annotations.get(self.actuator.management_port_annotation)
        if annotated:
            try:
                return int(annotated)
            except ValueError:
                logger.warning("Ignoring bad management port %r on pod %s", annotated, pod.name)
        if endpoint is not None:
            for port in endpoint.ports:
                if port.name == ACTUATOR_PORT_NAME:
                    return port.port
        return self.actuator.default_port

    def context_path(self, pod: PlatformWorkload) -> str:
        annotated = pod.annotations.get(self.actuator.management_context_path_annotation)
        return normalize_context_path(annotated or self.actuator.base_path)

    async def _discover_endpoint(self, endpoint: PlatformEndpoint, pod: PlatformWorkload) -> None:
        port = self.management_port(pod, endpoint)
        context = self.context_path(pod)
        cluster_dns = f"{endpoint.name}.{endpoint.namespace}.svc.cluster.local"
        base = InstanceData(
            name=display_name(endpoint.labels, endpoint.name),
            base_url=f"http://{cluster_dns}:{port}{context}",
            source=DiscoverySource.PLATFORM,
            namespace=endpoint.namespace,
            cluster_dns=cluster_dns,
            pod_name=pod.name,
            host=cluster_dns,
            port=port,
            context_path=context,
            health_check_interval=self.health_check_interval,
        )
        await self._probe_and_upsert(Identity.platform(endpoint.name, endpoint.namespace), base)

    async def _discover_workload(self, pod: PlatformWorkload) -> None:
        port = self.management_port(pod)
        context = self.context_path(pod)
        host = pod.pod_ip or pod.name
        base = InstanceData(
            name=display_name(pod.labels, pod.name),
            base_url=f"http://{host}:{port}{context}",
            source=DiscoverySource.PLATFORM,
            namespace=pod.namespace,
            pod_name=pod.name,
            host=host,
            port=port,
            context_path=context,
            health_check_interval=self.health_check_interval,
        )
        await self._probe_and_upsert(Identity.platform(pod.name, pod.namespace), base)

    async def _probe_and_upsert(self, identity: Identity, data: InstanceData) -> dict[str, Any]:
        """Probe *data*'s endpoints and upsert the outcome.

        When the stored record was updated after the probe started, only the
        descriptive fields are refreshed; status, version and ``last_seen``
        keep the newer values.
        """
        observed_at = to_timestamp()
        probe_target = {"base_url": data.base_url, "health_path": data.health_path, "info_path": data.info_path}
        health = await self._prober.health(probe_target)
        if health.ok:
            info = await self._prober.info(probe_target)
            raw_status = health.data.get("status") if isinstance(health.data, Mapping) else None
            data.status = normalize_status(raw_status)
            data.version = extract_version(info.data) if info.ok else "unknown"
        else:
            data.status = InstanceStatus.DOWN
            data.version = "unknown"

        existing = self._registry.get_by_workload(identity.workload_name or "", identity.namespace)
        if existing is not None and existing["last_updated"] > observed_at:
            data.status = InstanceStatus(existing["status"])
            data.version = existing["version"]
            logger.debug("Keeping newer status of %s; discovery result is stale", data.name)
            return self._registry.upsert_by_identity(identity, data)

        row = self._registry.upsert_by_identity(identity, data)
        if health.ok:
            self._registry.touch_last_seen(row["id"])
            logger.debug("Discovered %s at %s (%s)", data.name, data.base_url, data.status.value)
        else:
            logger.info("Discovered %s at %s but health probe failed: %s", data.name, data.base_url, health.error)
        return row

    async def _loop(self) -> None:
        while self._running:
            try:
                stats = await self.run_cycle()
                logger.info(
                    "Discovery cycle complete: %d services, %d pods, %d registered, %d errors",
                    stats["endpoints"],
                    stats["workloads"],
                    stats["registered"],
                    stats["errors"],
                )
            except Exception:
                logger.exception("Discovery cycle failed")
            await asyncio.sleep(self.interval)
