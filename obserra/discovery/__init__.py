"""obserra.discovery: how instances enter the registry.

Exports:
    PlatformDiscovery    periodic Kubernetes scan (Services, then bare Pods)
    DirectRegistrar      self-registration by client agents
    RegistrationRequest  validated registration payload
    connect_platform     build the connected or disconnected platform client
"""

from __future__ import annotations

from obserra.discovery.direct import DirectRegistrar, RegistrationRequest
from obserra.discovery.kubernetes import (
    DisconnectedPlatform,
    KubernetesPlatform,
    PlatformClient,
    connect_platform,
)
from obserra.discovery.platform import PlatformDiscovery

__all__ = [
    "DirectRegistrar",
    "DisconnectedPlatform",
    "KubernetesPlatform",
    "PlatformClient",
    "PlatformDiscovery",
    "RegistrationRequest",
    "connect_platform",
]
