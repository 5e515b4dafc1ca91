"""Metric and log collection for healthy instances.

Runs after a successful health probe: pulls the actuator metrics into a
:class:`~obserra.models.MetricSample` and tails the logfile endpoint,
appending only lines not seen on the previous pass.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Mapping

from obserra.models import LogLine, MetricSample
from obserra.prober import CPU_USAGE, MEMORY_MAX, MEMORY_USED, ActuatorProber, measurement
from obserra.registry import InstanceRegistry

logger = logging.getLogger(__name__)

DEFAULT_TAIL_LINES = 100
_BYTES_PER_MB = 1024 * 1024

LOG_PATTERN = re.compile(
    r"(\d{4}-\d{2}-\d{2}\s\d{2}:\d{2}:\d{2}\.\d{3})\s+(ERROR|WARN|INFO|DEBUG|TRACE)\s+\[(.*?)\]\s(.+)"
)
_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def _level(word: str) -> str:
    return "WARNING" if word == "WARN" else word


def _guess_level(line: str) -> str:
    upper = line.upper()
    if "ERROR" in upper:
        return "ERROR"
    if "WARN" in upper:
        return "WARNING"
    if "DEBUG" in upper:
        return "DEBUG"
    if "TRACE" in upper:
        return "TRACE"
    return "INFO"


def parse_log_line(line: str) -> LogLine:
    """Parse one logfile line; unmatched lines keep their text with a guessed level."""
    match = LOG_PATTERN.match(line)
    if match is None:
        return LogLine(message=line.strip(), level=_guess_level(line))
    stamp, level, thread, message = match.groups()
    try:
        timestamp: datetime | None = datetime.strptime(stamp, _TIMESTAMP_FORMAT)
    except ValueError:
        timestamp = None
    return LogLine(message=f"[{thread}] {message}", level=_level(level), timestamp=timestamp)


def new_lines(lines: list[str], last_seen: str | None) -> list[str]:
    """Return the lines after the last occurrence of *last_seen*.

    When *last_seen* is unknown or no longer in the tail every line is new.
    """
    if last_seen is None:
        return lines
    for index in range(len(lines) - 1, -1, -1):
        if lines[index] == last_seen:
            return lines[index + 1:]
    return lines


def parse_log_lines(lines: list[str], previous: datetime | None = None) -> list[LogLine]:
    """Parse consecutive logfile lines.

    Lines without a timestamp of their own (stack-trace frames, wrapped
    messages) take the timestamp of the line before them, so they sort next
    to the entry they belong to.  *previous* seeds the first line.
    """
    parsed: list[LogLine] = []
    for raw in lines:
        line = parse_log_line(raw)
        if line.timestamp is None:
            line.timestamp = previous
        else:
            previous = line.timestamp
        parsed.append(line)
    return parsed


def to_metric_sample(data: Mapping[str, Any]) -> MetricSample:
    """Turn the payload of :meth:`ActuatorProber.metrics` into a sample."""
    values = data.get("measurements") or {}
    memory_used = measurement(values.get(MEMORY_USED)) / _BYTES_PER_MB
    memory_max = measurement(values.get(MEMORY_MAX)) / _BYTES_PER_MB
    cpu_usage = measurement(values.get(CPU_USAGE))
    error_count = int(data.get("error_count") or 0)
    return MetricSample(
        memory_used=memory_used,
        memory_max=memory_max,
        cpu_usage=cpu_usage,
        error_count=error_count,
        metric_data={
            "memory": {"used": memory_used, "max": memory_max},
            "cpu": {"usage": cpu_usage},
            "errors": error_count,
            "raw": dict(values),
        },
    )


class MetricsCollector:
    """Collects metrics and new log lines for one instance at a time.

    Args:
        registry:   Where samples and log lines are appended.
        prober:     Shared actuator prober.
        tail_lines: How many trailing logfile lines are considered per pass.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        prober: ActuatorProber,
        tail_lines: int = DEFAULT_TAIL_LINES,
    ) -> None:
        self._registry = registry
        self._prober = prober
        self.tail_lines = tail_lines
        self._cursors: dict[int, str] = {}
        self._stamps: dict[int, datetime] = {}

    async def collect(self, instance: Mapping[str, Any]) -> list[dict[str, Any]]:
        """Collect both; returns the log rows appended on this pass."""
        await self.collect_metrics(instance)
        return await self.collect_logs(instance) or []

    async def collect_metrics(self, instance: Mapping[str, Any]) -> dict[str, Any] | None:
        result = await self._prober.metrics(instance)
        if not result.ok:
            logger.debug("No metrics for %s: %s", instance["name"], result.error)
            return None
        return self._registry.append_metric(instance["id"], to_metric_sample(result.data))

    async def collect_logs(self, instance: Mapping[str, Any]) -> list[dict[str, Any]] | None:
        """Append unseen logfile lines; ``None`` when the logfile is unavailable."""
        result = await self._prober.logfile(instance)
        if not result.ok or not isinstance(result.data, str):
            logger.debug("No logfile for %s: %s", instance["name"], result.error)
            return None

        lines = [line for line in result.data.splitlines() if line.strip()]
        lines = lines[-self.tail_lines:]
        if not lines:
            return []

        instance_id = instance["id"]
        fresh = new_lines(lines, self._cursors.get(instance_id))
        self._cursors[instance_id] = lines[-1]
        if not fresh:
            return []
        parsed = parse_log_lines(fresh, self._stamps.get(instance_id))
        if parsed[-1].timestamp is not None:
            self._stamps[instance_id] = parsed[-1].timestamp
        rows = self._registry.append_logs(instance_id, parsed)
        logger.debug("Stored %d log lines for %s", len(rows), instance["name"])
        return rows

    def retain(self, instance_ids: set[int]) -> None:
        """Drop logfile cursors of instances no longer in the registry."""
        for instance_id in set(self._cursors) - instance_ids:
            del self._cursors[instance_id]
        for instance_id in set(self._stamps) - instance_ids:
            del self._stamps[instance_id]
