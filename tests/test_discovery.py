"""Tests for platform discovery: candidate selection, URL derivation, Kubernetes client."""

from __future__ import annotations

import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from kubernetes.client.rest import ApiException

from obserra.config import ActuatorConfig, KubernetesConfig
from obserra.discovery.kubernetes import (
    DisconnectedPlatform,
    KubernetesPlatform,
    PlatformClient,
    PlatformEndpoint,
    PlatformPort,
    PlatformWorkload,
    connect_platform,
)
from obserra.discovery.platform import (
    PlatformDiscovery,
    display_name,
    has_spring_boot_label,
    is_candidate,
    looks_like_spring_boot,
    normalize_context_path,
    selector_matches,
)
from obserra.errors import DiscoveryTransportError, PlatformUnavailableError
from obserra.models import DiscoverySource, Identity, InstanceData, InstanceStatus, to_timestamp
from obserra.prober import ProbeResult


class FakePlatform(PlatformClient):
    connected = True

    def __init__(self, endpoints=None, workloads=None, error=None):
        self.endpoints = endpoints or []
        self.workloads = workloads or []
        self.error = error

    async def list_endpoints(self):
        if self.error:
            raise self.error
        return self.endpoints

    async def list_workloads(self):
        return self.workloads


def _healthy(version="1.2.3"):
    return {
        "/actuator/health": {"status": "UP"},
        "/actuator/info": {"build": {"version": version}},
    }


def _orders_endpoint(**kwargs):
    defaults = dict(name="orders-service", namespace="shop", selector={"app": "orders"})
    defaults.update(kwargs)
    return PlatformEndpoint(**defaults)


def _orders_pod(**kwargs):
    defaults = dict(name="orders-7d9f", namespace="shop", labels={"app": "orders"}, pod_ip="10.1.2.3")
    defaults.update(kwargs)
    return PlatformWorkload(**defaults)


class TestCandidateRules:
    @pytest.mark.parametrize(
        "labels, expected",
        [
            ({"app.k8s.io/part-of": "spring-boot"}, True),
            ({"app": "spring-boot"}, True),
            ({"spring-boot": "true"}, True),
            ({"spring-boot": "false"}, False),
            ({"app": "orders"}, False),
            ({}, False),
        ],
    )
    def test_spring_boot_labels(self, labels, expected):
        assert has_spring_boot_label(labels) is expected

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("orders-service", True),
            ("billing-svc", True),
            ("spring-petclinic", True),
            ("BootApp", True),
            ("postgres", False),
            ("service-mesh", False),
        ],
    )
    def test_name_heuristics(self, name, expected):
        assert looks_like_spring_boot(name) is expected

    def test_candidate_by_label_or_name(self):
        assert is_candidate("postgres", {"spring-boot": "true"}) is True
        assert is_candidate("spring-petclinic-5f6", {}) is True
        assert is_candidate("postgres-0", {"app": "postgres"}) is False

    def test_selector_matching(self):
        assert selector_matches({"app": "orders"}, {"app": "orders", "tier": "web"}) is True
        assert selector_matches({"app": "orders", "tier": "db"}, {"app": "orders"}) is False
        assert selector_matches(None, {"app": "orders"}) is False
        assert selector_matches({}, {"app": "orders"}) is False

    def test_display_name(self):
        assert display_name({"app.k8s.io/name": "Orders"}, "orders-service") == "Orders"
        assert display_name({"app": "orders"}, "orders-service") == "orders"
        assert display_name({"app": "spring-boot"}, "orders-service") == "orders-service"
        assert display_name({}, "orders-service") == "orders-service"

    def test_normalize_context_path(self):
        assert normalize_context_path("manage/") == "/manage"
        assert normalize_context_path("/actuator") == "/actuator"
        assert normalize_context_path(None) == ""


class TestRunCycle:
    async def test_endpoint_discovered_and_probed(self, registry, make_prober):
        seen_hosts = []
        routes = _healthy()

        def route(path):
            def handler(request):
                seen_hosts.append((request.url.host, request.url.port))
                return httpx.Response(200, json=routes[path])
            return handler

        prober = make_prober({path: route(path) for path in routes})
        platform = FakePlatform([_orders_endpoint()], [_orders_pod()])
        discovery = PlatformDiscovery(registry, prober, platform)

        stats = await discovery.run_cycle()

        assert stats == {"endpoints": 1, "workloads": 0, "registered": 1, "errors": 0}
        row = registry.get_by_workload("orders-service", "shop")
        assert row["base_url"] == "http://orders-service.shop.svc.cluster.local:8080/actuator"
        assert row["cluster_dns"] == "orders-service.shop.svc.cluster.local"
        assert row["pod_name"] == "orders-7d9f"
        assert row["status"] == "UP"
        assert row["version"] == "1.2.3"
        assert row["source"] == "platform"
        assert row["last_seen"] is not None
        assert seen_hosts[0] == ("orders-service.shop.svc.cluster.local", 8080)

    async def test_failed_probe_registers_down(self, registry, make_prober):
        platform = FakePlatform([_orders_endpoint()], [_orders_pod()])
        discovery = PlatformDiscovery(registry, make_prober({}), platform)
        await discovery.run_cycle()
        row = registry.get_by_workload("orders-service", "shop")
        assert row["status"] == "DOWN"
        assert row["version"] == "unknown"
        assert row["last_seen"] is None

    async def test_management_port_annotation_wins(self, registry, make_prober):
        pod = _orders_pod(annotations={"spring-boot/management-port": "9090"})
        endpoint = _orders_endpoint(ports=[PlatformPort(port=8081, name="actuator")])
        discovery = PlatformDiscovery(registry, make_prober(_healthy()), FakePlatform([endpoint], [pod]))
        await discovery.run_cycle()
        assert registry.get_by_workload("orders-service")["port"] == 9090

    async def test_actuator_named_port_before_default(self, registry, make_prober):
        endpoint = _orders_endpoint(ports=[PlatformPort(port=80, name="http"), PlatformPort(port=8081, name="actuator")])
        discovery = PlatformDiscovery(registry, make_prober(_healthy()), FakePlatform([endpoint], [_orders_pod()]))
        await discovery.run_cycle()
        assert registry.get_by_workload("orders-service")["port"] == 8081

    async def test_context_path_annotation_and_configured_default(self, registry, make_prober):
        pod = _orders_pod(annotations={"spring-boot/management-context-path": "/manage"})
        prober = make_prober({"/manage/health": {"status": "UP"}, "/manage/info": {}})
        discovery = PlatformDiscovery(
            registry, prober, FakePlatform([_orders_endpoint()], [pod]),
            actuator=ActuatorConfig(default_port=8181, base_path="/ignored"),
        )
        await discovery.run_cycle()
        row = registry.get_by_workload("orders-service")
        assert row["base_url"] == "http://orders-service.shop.svc.cluster.local:8181/manage"
        assert row["status"] == "UP"
        assert row["version"] == "unknown"

    async def test_pods_in_other_namespaces_do_not_match(self, registry, make_prober):
        pod = _orders_pod(namespace="other")
        discovery = PlatformDiscovery(registry, make_prober(_healthy()), FakePlatform([_orders_endpoint()], [pod]))
        stats = await discovery.run_cycle()
        assert stats["registered"] == 0
        assert registry.list() == []

    async def test_skips_non_candidates_and_selectorless_endpoints(self, registry, make_prober):
        endpoints = [
            PlatformEndpoint(name="postgres", namespace="shop", selector={"app": "orders"}),
            _orders_endpoint(selector=None),
        ]
        discovery = PlatformDiscovery(registry, make_prober(_healthy()), FakePlatform(endpoints, [_orders_pod()]))
        await discovery.run_cycle()
        assert registry.list() == []

    async def test_secondary_pass_uses_pod_ip(self, registry, make_prober):
        pod = PlatformWorkload(
            name="batch-5c6d", namespace="jobs", labels={"spring-boot": "true"}, pod_ip="10.0.0.5"
        )
        discovery = PlatformDiscovery(registry, make_prober(_healthy()), FakePlatform([], [pod]))
        stats = await discovery.run_cycle()
        assert stats["workloads"] == 1
        row = registry.get_by_workload("batch-5c6d", "jobs")
        assert row["base_url"] == "http://10.0.0.5:8080/actuator"
        assert row["cluster_dns"] is None
        assert row["status"] == "UP"

    async def test_secondary_pass_falls_back_to_pod_name(self, registry, make_prober):
        pod = PlatformWorkload(name="batch-5c6d", namespace="jobs", labels={"app": "spring-boot"})
        discovery = PlatformDiscovery(registry, make_prober({}), FakePlatform([], [pod]))
        await discovery.run_cycle()
        assert registry.get_by_workload("batch-5c6d")["base_url"] == "http://batch-5c6d:8080/actuator"

    async def test_secondary_pass_accepts_spring_boot_looking_names(self, registry, make_prober):
        pods = [
            PlatformWorkload(name="spring-petclinic-5f6", namespace="demo", pod_ip="10.0.0.7"),
            PlatformWorkload(name="postgres-0", namespace="demo", labels={"app": "postgres"}),
        ]
        discovery = PlatformDiscovery(registry, make_prober(_healthy()), FakePlatform([], pods))
        stats = await discovery.run_cycle()
        assert stats["workloads"] == 1
        assert [r["workload_name"] for r in registry.list()] == ["spring-petclinic-5f6"]

    async def test_newer_write_during_discovery_is_kept(self, registry, make_prober):
        seeded = registry.upsert_by_identity(
            Identity.platform("orders-service", "shop"),
            InstanceData(
                name="orders",
                base_url="http://old-host:8080/actuator",
                source=DiscoverySource.PLATFORM,
                namespace="shop",
                version="2.0",
            ),
        )

        def health(request):
            time.sleep(0.002)
            registry.apply_probe_result(
                seeded["id"], status=InstanceStatus.UP, observed_at=to_timestamp(), seen=True
            )
            return httpx.Response(503)

        platform = FakePlatform([_orders_endpoint()], [_orders_pod()])
        discovery = PlatformDiscovery(registry, make_prober({"/actuator/health": health}), platform)

        await discovery.run_cycle()

        row = registry.get(seeded["id"])
        assert row["status"] == "UP"
        assert row["version"] == "2.0"
        assert row["last_seen"] is not None
        assert row["base_url"] == "http://orders-service.shop.svc.cluster.local:8080/actuator"

    async def test_older_record_is_overwritten_by_discovery(self, registry, make_prober):
        seeded = registry.upsert_by_identity(
            Identity.platform("orders-service", "shop"),
            InstanceData(
                name="orders",
                base_url="http://old-host:8080/actuator",
                source=DiscoverySource.PLATFORM,
                namespace="shop",
                status=InstanceStatus.UP,
            ),
        )
        platform = FakePlatform([_orders_endpoint()], [_orders_pod()])
        await PlatformDiscovery(registry, make_prober({}), platform).run_cycle()
        assert registry.get(seeded["id"])["status"] == "DOWN"

    async def test_pods_behind_endpoint_are_not_reprocessed(self, registry, make_prober):
        pod = _orders_pod(labels={"app": "orders", "spring-boot": "true"})
        discovery = PlatformDiscovery(registry, make_prober(_healthy()), FakePlatform([_orders_endpoint()], [pod]))
        await discovery.run_cycle()
        assert [r["workload_name"] for r in registry.list()] == ["orders-service"]

    async def test_rediscovery_does_not_duplicate(self, registry, make_prober):
        discovery = PlatformDiscovery(
            registry, make_prober(_healthy()), FakePlatform([_orders_endpoint()], [_orders_pod()])
        )
        await discovery.run_cycle()
        await discovery.run_cycle()
        assert len(registry.list()) == 1

    async def test_listing_failure_is_logged_not_raised(self, registry, make_prober):
        platform = FakePlatform(error=DiscoveryTransportError("api server gone"))
        discovery = PlatformDiscovery(registry, make_prober({}), platform)
        stats = await discovery.run_cycle()
        assert stats["errors"] == 1
        assert discovery.last_cycle == stats

    async def test_candidate_error_does_not_abort_cycle(self, registry):
        prober = MagicMock()
        prober.health = AsyncMock(side_effect=[RuntimeError("boom"), ProbeResult(ok=True, data={"status": "UP"})])
        prober.info = AsyncMock(return_value=ProbeResult(ok=True, data={"version": "3.0"}))
        endpoints = [
            _orders_endpoint(),
            _orders_endpoint(name="billing-service", selector={"app": "billing"}),
        ]
        pods = [_orders_pod(), _orders_pod(name="billing-1", labels={"app": "billing"})]
        discovery = PlatformDiscovery(registry, prober, FakePlatform(endpoints, pods))

        stats = await discovery.run_cycle()

        assert stats["errors"] == 1
        assert stats["registered"] == 1
        assert registry.get_by_workload("billing-service")["version"] == "3.0"

    async def test_start_is_noop_when_disconnected(self, registry, make_prober):
        discovery = PlatformDiscovery(registry, make_prober({}), DisconnectedPlatform())
        await discovery.start()
        assert discovery.running is False
        await discovery.stop()


def _service(name, namespace, selector=None, labels=None, ports=()):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, labels=labels),
        spec=SimpleNamespace(selector=selector, ports=[SimpleNamespace(name=n, port=p) for n, p in ports]),
    )


def _pod(name, namespace, labels=None, annotations=None, pod_ip=None):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, labels=labels, annotations=annotations),
        status=SimpleNamespace(pod_ip=pod_ip),
    )


class TestKubernetesPlatform:
    async def test_lists_all_namespaces(self):
        core = MagicMock()
        core.list_service_for_all_namespaces.return_value = SimpleNamespace(items=[
            _service("orders-service", "shop", {"app": "orders"}, {"tier": "web"}, [("actuator", 8081)]),
        ])
        core.list_pod_for_all_namespaces.return_value = SimpleNamespace(items=[
            _pod("orders-1", "shop", {"app": "orders"}, {"spring-boot/management-port": "9090"}, "10.0.0.1"),
        ])
        platform = KubernetesPlatform(core)

        endpoints = await platform.list_endpoints()
        workloads = await platform.list_workloads()

        assert endpoints == [PlatformEndpoint(
            name="orders-service", namespace="shop", labels={"tier": "web"},
            selector={"app": "orders"}, ports=[PlatformPort(port=8081, name="actuator")],
        )]
        assert workloads[0].pod_ip == "10.0.0.1"
        assert workloads[0].annotations == {"spring-boot/management-port": "9090"}

    async def test_namespace_restricts_listing(self):
        core = MagicMock()
        core.list_namespaced_service.return_value = SimpleNamespace(items=[])
        core.list_namespaced_pod.return_value = SimpleNamespace(items=[_pod("p", "shop")])
        platform = KubernetesPlatform(core, namespace="shop")

        assert await platform.list_endpoints() == []
        workloads = await platform.list_workloads()

        core.list_namespaced_service.assert_called_once_with("shop")
        core.list_namespaced_pod.assert_called_once_with("shop")
        assert workloads[0].labels == {}

    async def test_api_errors_become_transport_errors(self):
        core = MagicMock()
        core.list_service_for_all_namespaces.side_effect = ApiException(status=403, reason="Forbidden")
        with pytest.raises(DiscoveryTransportError):
            await KubernetesPlatform(core).list_endpoints()

    def test_platform_client_is_abstract(self):
        with pytest.raises(TypeError):
            PlatformClient()

    async def test_disconnected_platform_is_empty(self):
        platform = DisconnectedPlatform()
        assert platform.connected is False
        assert await platform.list_endpoints() == []
        assert await platform.list_workloads() == []


class TestConnectPlatform:
    async def test_disabled_is_disconnected(self):
        platform = await connect_platform(KubernetesConfig(enabled=False))
        assert isinstance(platform, DisconnectedPlatform)

    async def test_unreachable_and_required_raises(self):
        with patch.object(
            KubernetesPlatform, "from_config", side_effect=PlatformUnavailableError("no config")
        ):
            with pytest.raises(PlatformUnavailableError):
                await connect_platform(KubernetesConfig(enabled=True, required=True))

    async def test_unreachable_and_optional_falls_back(self):
        with patch.object(
            KubernetesPlatform, "from_config", side_effect=PlatformUnavailableError("no config")
        ):
            platform = await connect_platform(KubernetesConfig(enabled=True, required=False))
        assert isinstance(platform, DisconnectedPlatform)

    async def test_verified_connection(self):
        core = MagicMock()
        with patch.object(KubernetesPlatform, "from_config", return_value=KubernetesPlatform(core, "shop")):
            platform = await connect_platform(KubernetesConfig(enabled=True, namespace="shop"))
        assert isinstance(platform, KubernetesPlatform)
        assert platform.connected is True
        core.get_api_resources.assert_called_once()

    async def test_verify_failure_when_required(self):
        core = MagicMock()
        core.get_api_resources.side_effect = OSError("connection refused")
        with patch.object(KubernetesPlatform, "from_config", return_value=KubernetesPlatform(core)):
            with pytest.raises(PlatformUnavailableError):
                await connect_platform(KubernetesConfig(enabled=True, required=True))
