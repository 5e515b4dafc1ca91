"""Runtime logger levels of monitored instances, via the actuator ``/loggers`` endpoint."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from obserra.models import LoggerInfo, LoggerLevel
from obserra.prober import ActuatorProber
from obserra.registry import InstanceRegistry

logger = logging.getLogger(__name__)

AVAILABLE_LEVELS: list[str] = [level.value for level in LoggerLevel]


def parse_level(value: Any) -> LoggerLevel | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return LoggerLevel(value.upper())
    except ValueError:
        return None


def validate_level(level: str | LoggerLevel) -> LoggerLevel:
    """Return *level* as a :class:`LoggerLevel`; raises ``ValueError`` otherwise."""
    if isinstance(level, LoggerLevel):
        return level
    parsed = parse_level(level)
    if parsed is None:
        raise ValueError(f"Invalid log level {level!r}; expected one of {', '.join(AVAILABLE_LEVELS)}")
    return parsed


class LoggerBridge:
    """Reads and changes logger levels on instances.

    Instances may be passed as registry rows or as integer handles.
    """

    def __init__(self, registry: InstanceRegistry, prober: ActuatorProber) -> None:
        self._registry = registry
        self._prober = prober

    async def list_loggers(self, instance: Mapping[str, Any] | int) -> dict[str, LoggerInfo] | None:
        row = self._resolve(instance)
        result = await self._prober.loggers(row)
        if not result.ok:
            logger.warning("Could not read loggers of %s: %s", row["name"], result.error)
            return None
        entries = result.data.get("loggers") if isinstance(result.data, Mapping) else None
        if not isinstance(entries, Mapping):
            logger.warning("Unexpected loggers payload from %s", row["name"])
            return None
        loggers: dict[str, LoggerInfo] = {}
        for name, entry in entries.items():
            entry = entry if isinstance(entry, Mapping) else {}
            loggers[name] = LoggerInfo(
                name=name,
                effective_level=parse_level(entry.get("effectiveLevel")),
                configured_level=parse_level(entry.get("configuredLevel")),
            )
        return loggers

    async def set_logger_level(
        self,
        instance: Mapping[str, Any] | int,
        logger_name: str,
        level: str | LoggerLevel,
    ) -> bool:
        """Set *logger_name* to *level*; ``False`` if the instance refused or was unreachable."""
        parsed = validate_level(level)
        if not logger_name:
            raise ValueError("Logger name is required")
        row = self._resolve(instance)
        result = await self._prober.set_logger_level(row, logger_name, parsed.value)
        if not result.ok:
            logger.warning(
                "Could not set %s to %s on %s: %s", logger_name, parsed.value, row["name"], result.error
            )
            return False
        logger.info("Set logger %s to %s on %s", logger_name, parsed.value, row["name"])
        return True

    def _resolve(self, instance: Mapping[str, Any] | int) -> Mapping[str, Any]:
        if isinstance(instance, Mapping):
            return instance
        return self._registry.require(instance)
