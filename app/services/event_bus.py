# app/services/event_bus.py
"""
Outbound event queue for best-effort fan-out.

Services call ``publish`` which only enqueues; a background worker forwards
events to the transport (MQTT in production). A full queue or a failing
transport drops the event with a log line and never reaches the caller.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

from fastapi.encoders import jsonable_encoder

from app.models.common_models import utcnow

logger = logging.getLogger(__name__)

# event names
NEW_COMMAND = "new-command"
COMMAND_RESULT = "command-result"
HEARTBEAT_RECEIVED = "heartbeat-received"
DEVICE_ONLINE = "device-online"
DEVICE_OFFLINE = "device-offline"
DEVICE_LINKED = "device-linked"
NEW_ALERT = "new-alert"
LOCATION_UPDATE = "location-update"


def parent_channel(parent_id: str) -> str:
    return f"parents/{parent_id}/events"


def device_channel(device_id: str) -> str:
    return f"devices/{device_id}/commands"


class EventTransport(Protocol):
    async def send(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


class LogTransport:
    """Used when no broker is configured."""

    async def send(self, topic: str, payload: Dict[str, Any]) -> None:
        logger.info("[EVENT] %s <- %s", topic, payload.get("event"))


class EventBus:
    def __init__(self, transport: EventTransport, maxsize: int = 1000):
        self.transport = transport
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._worker_task: Optional[asyncio.Task] = None

    def publish(self, channel: str, event: str, data: Dict[str, Any]) -> bool:
        message = {
            "event": event,
            "data": jsonable_encoder(data),
            "timestamp": utcnow().isoformat(),
        }
        try:
            self._queue.put_nowait((channel, message))
            return True
        except asyncio.QueueFull:
            logger.warning("Event queue full, dropping '%s' for %s", event, channel)
            return False

    async def _deliver(self, channel: str, message: Dict[str, Any]) -> None:
        try:
            await self.transport.send(channel, message)
        except Exception:
            logger.error("Failed to deliver '%s' to %s", message.get("event"), channel, exc_info=True)

    async def _worker(self) -> None:
        while True:
            channel, message = await self._queue.get()
            try:
                await self._deliver(channel, message)
            finally:
                self._queue.task_done()

    async def start(self) -> None:
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._worker())
            logger.info("Event bus worker started.")

    async def stop(self) -> None:
        await self.flush()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
        self._worker_task = None
        logger.info("Event bus worker stopped.")

    async def flush(self) -> None:
        """Deliver everything currently queued, inline."""
        while True:
            try:
                channel, message = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._deliver(channel, message)
            finally:
                self._queue.task_done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()
