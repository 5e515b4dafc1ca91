"""Obserra: live registry and health monitor for actuator-enabled services.

Discovers running application instances (Kubernetes scan or direct
registration), probes their actuator endpoints on a schedule and keeps a
bounded history of metrics and logs for each.

Quickstart::

    from obserra.db import get_db, init_db
    from obserra.registry import InstanceRegistry

    init_db(":memory:")
    registry = InstanceRegistry(get_db())
    registry.list()

Run the server with::

    python -m obserra.server
"""

__version__ = "1.0.0"
