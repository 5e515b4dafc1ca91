"""Tests for direct registration via DirectRegistrar."""

from __future__ import annotations

import uuid

import pytest

from obserra.discovery.direct import DirectRegistrar, RegistrationRequest, parse_actuator_url
from obserra.errors import InstanceNotFoundError, RegistrationValidationError
from obserra.models import InstanceStatus


@pytest.fixture
def registrar(registry):
    return DirectRegistrar(registry)


class TestParseActuatorUrl:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("http://orders:8080/actuator", ("orders", 8080)),
            ("http://orders/actuator", ("orders", 80)),
            ("https://orders.example.com/actuator", ("orders.example.com", 443)),
        ],
    )
    def test_host_and_port(self, url, expected):
        assert parse_actuator_url(url) == expected

    @pytest.mark.parametrize("url", ["ftp://orders/actuator", "orders:8080", "http://"])
    def test_rejects_bad_urls(self, url):
        with pytest.raises(RegistrationValidationError):
            parse_actuator_url(url)


class TestRegister:
    def test_generates_app_id(self, registrar, registry):
        row = registrar.register({"name": "orders", "actuatorUrl": "http://orders:8080/actuator"})
        assert uuid.UUID(row["app_id"])
        assert row["status"] == "UNKNOWN"
        assert row["source"] == "direct"
        assert row["host"] == "orders"
        assert row["port"] == 8080
        assert row["health_path"] == "/health"
        assert row["logs_path"] == "/logfile"
        assert row["health_check_interval"] == 30
        assert len(registry.list()) == 1

    def test_accepts_model_and_snake_case(self, registrar):
        request = RegistrationRequest(
            name="billing",
            actuator_url="https://billing/manage/",
            app_id="billing-1",
            health_check_path="/status",
            host_address="10.0.0.9",
            port=9443,
            auto_register=True,
        )
        row = registrar.register(request)
        assert row["app_id"] == "billing-1"
        assert row["base_url"] == "https://billing/manage"
        assert row["health_path"] == "/status"
        assert row["host"] == "10.0.0.9"
        assert row["port"] == 9443
        assert row["auto_register"] is True

    def test_reregistration_updates_in_place(self, registrar, registry):
        first = registrar.register({"name": "orders", "actuatorUrl": "http://orders:8080/actuator", "appId": "a1"})
        registry.set_status(first["id"], InstanceStatus.UP)
        second = registrar.register({
            "name": "orders", "actuatorUrl": "http://orders:9090/actuator", "appId": "a1", "version": "2.0",
        })
        assert second["id"] == first["id"]
        assert second["port"] == 9090
        assert second["version"] == "2.0"
        assert second["status"] == "UNKNOWN"
        assert len(registry.list()) == 1

    @pytest.mark.parametrize(
        "payload, fragment",
        [
            ({"actuatorUrl": "http://orders:8080/actuator"}, "name"),
            ({"name": "  ", "actuatorUrl": "http://orders:8080/actuator"}, "name"),
            ({"name": "orders"}, "actuatorUrl"),
            ({"name": "orders", "actuatorUrl": "not a url"}, "actuatorUrl"),
            ({"name": "orders", "actuatorUrl": "http://o/a", "healthCheckInterval": 0}, "healthCheckInterval"),
            ({"name": "orders", "actuatorUrl": "http://o/a", "port": "eighty"}, "port"),
        ],
    )
    def test_validation_failures(self, registrar, registry, payload, fragment):
        with pytest.raises(RegistrationValidationError) as excinfo:
            registrar.register(payload)
        assert fragment in str(excinfo.value)
        assert registry.list() == []


class TestUnregister:
    def test_removes_instance(self, registrar, registry):
        registrar.register({"name": "orders", "actuatorUrl": "http://orders:8080/actuator", "appId": "a1"})
        registrar.unregister("a1")
        assert registry.get_by_app_id("a1") is None

    def test_unknown_app_id(self, registrar):
        with pytest.raises(InstanceNotFoundError):
            registrar.unregister("missing")
