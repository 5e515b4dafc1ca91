"""Error hierarchy for Obserra."""

from __future__ import annotations


class ObserraError(Exception):
    """Base error for all Obserra failures."""


class ProbeFailure(ObserraError):
    """An outbound actuator call failed (timeout, refused, non-2xx, bad body).

    Never raised past the prober; carried inside a ``ProbeResult``.
    """

    def __init__(self, url: str, reason: str, status_code: int | None = None) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason
        self.status_code = status_code


class DiscoveryTransportError(ObserraError):
    """The platform API itself could not be reached during a discovery cycle."""


class PlatformUnavailableError(DiscoveryTransportError):
    """Platform discovery is mandatory but no cluster connection could be made."""


class RegistrationValidationError(ObserraError, ValueError):
    """A direct registration request is missing fields or has a bad URL."""


class NotFoundError(ObserraError, KeyError):
    """Base for unknown-id lookups surfaced to API callers."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class InstanceNotFoundError(NotFoundError):
    """No instance with the given id / appId."""


class ConfigPropertyNotFoundError(NotFoundError):
    """No config property with the given id on that instance."""
