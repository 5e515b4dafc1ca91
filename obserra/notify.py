"""WebSocket push of newly collected log lines.

  Client → Server:
    {"type": "subscribe", "serviceId": N}    one instance
    {"type": "subscribe"}                    every instance
    {"type": "unsubscribe", "serviceId": N}  drop one (no id: drop all)

  Server → Client:
    {"type": "logs", "serviceId": N, "logs": [...]}
    {"type": "subscribed" | "unsubscribed", "serviceId": N | None}
    {"type": "error", "detail": "..."}

Mount with ``app.add_api_websocket_route("/ws", broadcaster.ws_handler)``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Iterable, Mapping

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


def log_message(instance_id: int, rows: Iterable[Mapping[str, Any]]) -> dict[str, Any]:
    return {
        "type": "logs",
        "serviceId": instance_id,
        "logs": [
            {
                "id": row.get("id"),
                "serviceId": instance_id,
                "timestamp": row.get("timestamp"),
                "level": row.get("level"),
                "message": row.get("message"),
            }
            for row in rows
        ],
    }


class LogSubscriber:
    """One connected dashboard client and what it listens to."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.connected_at = time.time()
        self.topics: set[int] = set()
        self.everything = False

    def wants(self, instance_id: int) -> bool:
        return self.everything or instance_id in self.topics

    async def send(self, message: dict[str, Any]) -> None:
        await self.websocket.send_json(message)


class LogBroadcaster:
    """Connection registry fanning log batches out to interested subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[LogSubscriber] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def add(self, websocket: WebSocket) -> LogSubscriber:
        subscriber = LogSubscriber(websocket)
        self._subscribers.append(subscriber)
        return subscriber

    def remove(self, subscriber: LogSubscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def handle_message(self, subscriber: LogSubscriber, message: Any) -> dict[str, Any]:
        """Apply a client control message; returns the reply to send back."""
        if not isinstance(message, Mapping):
            return {"type": "error", "detail": "Expected a JSON object"}
        msg_type = message.get("type")
        raw_id = message.get("serviceId")
        instance_id: int | None = None
        if raw_id is not None:
            try:
                instance_id = int(raw_id)
            except (TypeError, ValueError):
                return {"type": "error", "detail": f"Invalid serviceId {raw_id!r}"}

        if msg_type == "subscribe":
            if instance_id is None:
                subscriber.everything = True
            else:
                subscriber.topics.add(instance_id)
            return {"type": "subscribed", "serviceId": instance_id}
        if msg_type == "unsubscribe":
            if instance_id is None:
                subscriber.everything = False
                subscriber.topics.clear()
            else:
                subscriber.topics.discard(instance_id)
            return {"type": "unsubscribed", "serviceId": instance_id}
        return {"type": "error", "detail": f"Unknown message type {msg_type!r}"}

    async def publish(self, instance_id: int, rows: list[Mapping[str, Any]]) -> int:
        """Send *rows* to every subscriber of *instance_id*; returns deliveries."""
        if not rows:
            return 0
        message = log_message(instance_id, rows)
        delivered = 0
        for subscriber in list(self._subscribers):
            if not subscriber.wants(instance_id):
                continue
            try:
                await subscriber.send(message)
                delivered += 1
            except Exception as exc:
                logger.info("Dropping log subscriber after send failure: %s", exc)
                self.remove(subscriber)
        return delivered

    async def ws_handler(self, websocket: WebSocket) -> None:
        await websocket.accept()
        subscriber = self.add(websocket)
        logger.info("Log subscriber connected (%d total)", self.subscriber_count)
        try:
            async for message in websocket.iter_json():
                await subscriber.send(self.handle_message(subscriber, message))
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("Error in log subscriber WebSocket")
        finally:
            self.remove(subscriber)
            logger.info("Log subscriber disconnected (%d left)", self.subscriber_count)
