# app/mqtt/mqtt_client.py
"""
MQTT bridge.

Outbound: implements the event transport, so events queued on the EventBus
are published to ``parents/{id}/events`` and ``devices/{id}/commands``.

Inbound: devices may use MQTT instead of HTTP for the hot path:
    devices/{deviceId}/heartbeat                     HeartbeatRequest body (deviceId optional)
    devices/{deviceId}/commands/{commandId}/ack      empty body
    devices/{deviceId}/commands/{commandId}/result   CommandResultReport body
Every inbound message gets an answer on ``devices/{deviceId}/response``.
Broker credentials authenticate devices on this path.
"""
import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional, Set, Union

import aiomqtt
from pydantic import ValidationError

from app.core.config import settings
from app.core.errors import DispatchError
from app.models.command_models import CommandResultReport
from app.models.device_models import HeartbeatRequest

logger = logging.getLogger(__name__)

RECONNECT_INTERVAL_SECONDS = 5
DEVICE_TOPICS = ("devices/+/heartbeat", "devices/+/commands/+/ack", "devices/+/commands/+/result")


def response_topic(device_id: str) -> str:
    return f"devices/{device_id}/response"


class AsyncMQTTClient:
    def __init__(
        self,
        hostname: str,
        port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id_prefix: str = "dispatch_backend_",
    ):
        self.hostname = hostname
        self.port = port
        self.username = username
        self.password = password
        self.identifier = f"{client_id_prefix}{uuid.uuid4()}"
        self.client: Optional[aiomqtt.Client] = None
        self.presence = None
        self.dispatch = None
        self._main_task: Optional[asyncio.Task] = None
        self._handlers: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls) -> "AsyncMQTTClient":
        return cls(
            hostname=settings.MQTT_BROKER_HOST,
            port=settings.MQTT_BROKER_PORT,
            username=settings.MQTT_USERNAME,
            password=settings.MQTT_PASSWORD,
            client_id_prefix=settings.MQTT_CLIENT_ID_PREFIX,
        )

    def bind(self, presence, dispatch) -> None:
        """Attach the services inbound device messages are routed to."""
        self.presence = presence
        self.dispatch = dispatch

    async def connect(self) -> None:
        if self._main_task and not self._main_task.done():
            logger.info("MQTT client is already running.")
            return
        self._main_task = asyncio.create_task(self._main_loop())

    async def _main_loop(self) -> None:
        while True:
            logger.info("Connecting to MQTT broker %s:%s...", self.hostname, self.port)
            try:
                async with aiomqtt.Client(
                    hostname=self.hostname,
                    port=self.port,
                    username=self.username,
                    password=self.password,
                    identifier=self.identifier,
                ) as client:
                    self.client = client
                    logger.info("Connected to MQTT broker.")
                    if self.presence is not None:
                        for topic in DEVICE_TOPICS:
                            await client.subscribe(topic, qos=1)
                        logger.info("Subscribed to device topics.")
                    async for message in client.messages:
                        self._spawn(self.handle_message(message.topic.value, message.payload))
            except aiomqtt.MqttError as e:
                logger.warning("MQTT connection lost (%s); retrying in %ss", e, RECONNECT_INTERVAL_SECONDS)
            finally:
                self.client = None
            await asyncio.sleep(RECONNECT_INTERVAL_SECONDS)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._handlers.add(task)
        task.add_done_callback(self._handlers.discard)

    async def handle_message(self, topic: str, payload: Union[bytes, str, None]) -> None:
        parts = topic.split("/")
        if len(parts) < 3 or parts[0] != "devices":
            logger.warning("Ignoring message on unexpected topic %s", topic)
            return
        device_id = parts[1]

        try:
            raw = payload.decode() if isinstance(payload, bytes) else (payload or "")
            body: Dict[str, Any] = json.loads(raw) if raw.strip() else {}
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Failed to decode payload from topic %s: %s", topic, e)
            await self._respond(device_id, topic, error="InvalidPayload", detail=str(e))
            return
        if not isinstance(body, dict):
            logger.warning("Non-object payload on topic %s", topic)
            await self._respond(device_id, topic, error="InvalidPayload", detail="Payload must be a JSON object")
            return

        try:
            if parts[2] == "heartbeat" and len(parts) == 3:
                data = await self._handle_heartbeat(device_id, body)
            elif parts[2] == "commands" and len(parts) == 5 and parts[4] == "ack":
                command = await self.dispatch.acknowledge(parts[3], device_id=device_id)
                data = {"commandId": command.id, "status": command.status}
            elif parts[2] == "commands" and len(parts) == 5 and parts[4] == "result":
                report = CommandResultReport.model_validate(body)
                outcome = await self.dispatch.report_result(
                    parts[3], report.success, report.message, report.errorCode, report.data, device_id=device_id
                )
                data = outcome.model_dump()
            else:
                logger.warning("No handler for topic %s", topic)
                return
        except ValidationError as e:
            await self._respond(device_id, topic, error="InvalidPayload", detail=str(e))
            return
        except DispatchError as e:
            logger.info("Device %s request on %s rejected: %s", device_id, topic, e.detail)
            await self._respond(device_id, topic, error=e.kind, detail=e.detail)
            return

        await self._respond(device_id, topic, data=data)

    async def _handle_heartbeat(self, device_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        request = HeartbeatRequest.model_validate({**body, "deviceId": device_id})
        response = await self.presence.record_heartbeat(
            device_id, request.batteryLevel, request.isCharging, request.telemetry()
        )
        return response.model_dump()

    async def _respond(
        self,
        device_id: str,
        topic: str,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        message: Dict[str, Any] = {"topic": topic, "success": error is None}
        if error is None:
            message["data"] = data
        else:
            message.update(error=error, detail=detail)
        await self.send(response_topic(device_id), message)

    async def send(self, topic: str, payload: Union[str, dict, list], qos: int = 1) -> None:
        if self.client is None:
            logger.warning("MQTT client not connected. Dropping message for %s", topic)
            return
        message_str = json.dumps(payload, default=str) if isinstance(payload, (dict, list)) else str(payload)
        try:
            await self.client.publish(topic, message_str, qos=qos)
            logger.debug("Published to %s", topic)
        except aiomqtt.MqttError as e:
            logger.error("Failed to publish to %s: %s", topic, e)

    async def disconnect(self) -> None:
        if self._main_task and not self._main_task.done():
            self._main_task.cancel()
            try:
                await self._main_task
            except asyncio.CancelledError:
                pass
        self._main_task = None
        logger.info("MQTT client disconnected.")
