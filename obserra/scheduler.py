"""Health scheduler: periodic probing of every registered instance."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Mapping

from obserra.collector import MetricsCollector
from obserra.models import InstanceStatus, from_timestamp, normalize_status, to_timestamp, utcnow
from obserra.notify import LogBroadcaster
from obserra.prober import ActuatorProber, extract_version
from obserra.registry import InstanceRegistry

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL = 30
DEFAULT_MAX_DOWN_AGE = 300


def is_due(instance: Mapping[str, Any], now: datetime, max_down_age: int = DEFAULT_MAX_DOWN_AGE) -> bool:
    """Whether *instance* should be probed at *now*.

    Never-seen instances are always due.  DOWN instances unseen for longer
    than *max_down_age* seconds are skipped until rediscovered or
    re-registered.  Everything else is due once its own interval elapsed.
    """
    last_seen = from_timestamp(instance.get("last_seen"))
    if last_seen is None:
        return True
    if instance.get("status") == InstanceStatus.DOWN.value:
        if now - last_seen > timedelta(seconds=max_down_age):
            return False
    interval = int(instance.get("health_check_interval") or DEFAULT_TICK_INTERVAL)
    return now >= last_seen + timedelta(seconds=interval)


class HealthScheduler:
    """Runs health ticks and, for healthy instances, metric/log collection.

    Args:
        registry:     Instance registry.
        prober:       Shared actuator prober.
        collector:    Metric/log collector; ``None`` disables collection.
        broadcaster:  Receives newly collected log lines.
        interval:     Seconds between ticks.
        max_down_age: See :func:`is_due`.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        prober: ActuatorProber,
        collector: MetricsCollector | None = None,
        broadcaster: LogBroadcaster | None = None,
        interval: int = DEFAULT_TICK_INTERVAL,
        max_down_age: int = DEFAULT_MAX_DOWN_AGE,
    ) -> None:
        self._registry = registry
        self._prober = prober
        self._collector = collector
        self._broadcaster = broadcaster
        self.interval = interval
        self.max_down_age = max_down_age
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._running:
            logger.warning("Health scheduler is already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Health scheduler started (interval=%ds)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Health scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    def select_due(self, now: datetime | None = None) -> list[dict[str, Any]]:
        now = now or utcnow()
        instances = self._registry.list()
        if self._collector is not None:
            self._collector.retain({row["id"] for row in instances})
        return [row for row in instances if is_due(row, now, self.max_down_age)]

    async def run_tick(self, now: datetime | None = None) -> dict[str, int]:
        """Probe every due instance concurrently.

        Returns: ``{checked, up, down, stale}``
        """
        due = self.select_due(now)
        stats = {"checked": len(due), "up": 0, "down": 0, "stale": 0}
        if not due:
            return stats
        results = await asyncio.gather(
            *(self.check_instance(row) for row in due), return_exceptions=True
        )
        for row, result in zip(due, results):
            if isinstance(result, BaseException):
                logger.error("Health check of %s raised: %s", row["name"], result)
                stats["down"] += 1
            elif result is None:
                stats["stale"] += 1
            elif result == InstanceStatus.DOWN:
                stats["down"] += 1
            else:
                stats["up"] += 1
        return stats

    async def check_instance(self, instance: Mapping[str, Any]) -> InstanceStatus | None:
        """Probe one instance and record the outcome.

        Returns the recorded status, or ``None`` when the result was dropped
        because the record changed while the probe was in flight.
        """
        observed_at = to_timestamp()
        health = await self._prober.health(instance)

        if not health.ok:
            written = self._registry.apply_probe_result(
                instance["id"], status=InstanceStatus.DOWN, observed_at=observed_at
            )
            if not written:
                return None
            if instance.get("status") != InstanceStatus.DOWN.value:
                logger.warning("%s is DOWN: %s", instance["name"], health.error)
            return InstanceStatus.DOWN

        raw_status = health.data.get("status") if isinstance(health.data, Mapping) else None
        status = normalize_status(raw_status)
        info = await self._prober.info(instance)
        version = extract_version(info.data) if info.ok else None
        if version == "unknown":
            version = None
        written = self._registry.apply_probe_result(
            instance["id"], status=status, observed_at=observed_at, version=version, seen=True
        )
        if not written:
            return None
        if instance.get("status") != status.value:
            logger.info("%s status %s -> %s", instance["name"], instance.get("status"), status.value)

        if self._collector is not None:
            try:
                rows = await self._collector.collect(instance)
            except Exception:
                logger.exception("Collection failed for %s", instance["name"])
                rows = []
            if rows and self._broadcaster is not None:
                await self._broadcaster.publish(instance["id"], rows)
        return status

    async def _loop(self) -> None:
        while self._running:
            try:
                stats = await self.run_tick()
                if stats["checked"]:
                    logger.debug(
                        "Health tick: %d checked, %d up, %d down, %d stale",
                        stats["checked"],
                        stats["up"],
                        stats["down"],
                        stats["stale"],
                    )
            except Exception:
                logger.exception("Health tick failed")
            await asyncio.sleep(self.interval)
