"""pytest configuration and shared fixtures for Obserra tests."""

from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest

from obserra.db import connect, init_db, set_db_path
from obserra.prober import ActuatorProber
from obserra.registry import InstanceRegistry

Route = Any  # dict/list → JSON body, str → text body, httpx.Response, or callable(request)


def actuator_transport(routes: dict[str, Route]) -> httpx.MockTransport:
    """Serve canned actuator responses keyed by ``"METHOD /path"`` or ``"/path"``."""

    def handler(request: httpx.Request) -> httpx.Response:
        target = routes.get(f"{request.method} {request.url.path}", routes.get(request.url.path))
        if target is None:
            return httpx.Response(404, json={"error": "not found"})
        if isinstance(target, httpx.Response):
            return target
        if callable(target):
            return target(request)
        if isinstance(target, str):
            return httpx.Response(200, text=target)
        return httpx.Response(200, json=target)

    return httpx.MockTransport(handler)


@pytest.fixture
def db_conn(tmp_path):
    db_path = tmp_path / "obserra.db"
    init_db(db_path)
    conn = connect(db_path)
    yield conn
    conn.close()
    set_db_path(":memory:")


@pytest.fixture
def registry(db_conn):
    return InstanceRegistry(db_conn)


@pytest.fixture
def make_prober() -> Callable[[dict[str, Route]], ActuatorProber]:
    def _make(routes: dict[str, Route]) -> ActuatorProber:
        client = httpx.AsyncClient(transport=actuator_transport(routes), timeout=1.0)
        return ActuatorProber(timeout=1.0, client=client)

    return _make
