# app/services/dispatch_service.py
import logging
from typing import Any, Dict, List, Optional

from app.core.errors import Forbidden, NotFound
from app.db.device_repository import DeviceRepository
from app.models.command_models import (
    CommandHistoryPage,
    CommandInDB,
    CommandPriority,
    CommandResultOutcome,
    CommandStatus,
    CommandSummary,
)
from app.models.device_models import DeviceInDB, DeviceStatus
from app.services.alert_service import AlertEmitter
from app.services.command_store import CommandStore
from app.services.event_bus import COMMAND_RESULT, NEW_COMMAND, EventBus, device_channel, parent_channel

logger = logging.getLogger(__name__)


class DispatchProtocol:
    """
    Pull / acknowledge / result exchange between devices and the command store,
    plus the parent-side issue, cancel and retry actions.

    Device-facing calls take the authenticated ``device_id``; a command that
    belongs to another device is reported as NotFound.
    """

    def __init__(
        self,
        store: CommandStore,
        devices: DeviceRepository,
        events: EventBus,
        alerts: AlertEmitter,
        escalate_failures: bool = True,
    ):
        self.store = store
        self.devices = devices
        self.events = events
        self.alerts = alerts
        self.escalate_failures = escalate_failures

    async def _device_for_parent(self, device_id: str, parent_id: str) -> DeviceInDB:
        device = await self.devices.get(device_id)
        if device is None or device.status == DeviceStatus.DELETED.value:
            raise NotFound("Device not found")
        if device.parentId != str(parent_id):
            raise Forbidden("Device belongs to another account")
        return device

    # --- device side ---

    async def pull_pending(self, device_id: str) -> List[CommandInDB]:
        handed_out = []
        for command in await self.store.list_eligible(device_id):
            sent = await self.store.mark_sent(command)
            if sent is not None:
                handed_out.append(sent)
        if handed_out:
            logger.info("Device %s pulled %s command(s)", device_id, len(handed_out))
        return handed_out

    async def acknowledge(self, command_id: str, device_id: Optional[str] = None) -> CommandInDB:
        return await self.store.acknowledge(command_id, device_id)

    async def mark_executing(self, command_id: str, device_id: Optional[str] = None) -> CommandInDB:
        return await self.store.mark_executing(command_id, device_id)

    async def report_result(
        self,
        command_id: str,
        success: bool,
        message: Optional[str] = None,
        error_code: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        device_id: Optional[str] = None,
    ) -> CommandResultOutcome:
        command, ignored = await self.store.record_result(
            command_id, success, message, error_code, data, device_id=device_id
        )
        outcome = CommandResultOutcome(
            commandId=command.id,
            status=command.status,
            retryCount=command.retryCount,
            nextRetryAt=command.nextRetryAt,
            ignored=ignored,
        )
        if ignored or command.status == CommandStatus.PENDING.value:
            return outcome

        self.events.publish(parent_channel(command.parentId), COMMAND_RESULT, {
            "commandId": command.id,
            "deviceId": command.deviceId,
            "type": command.type,
            "status": command.status,
            "success": success,
            "message": message,
            "timestamp": command.updatedAt,
        })
        if command.status == CommandStatus.FAILED.value and self.escalate_failures:
            await self.alerts.command_failed(command)
        return outcome

    # --- parent side ---

    async def issue(
        self,
        device_id: str,
        parent_id: str,
        command_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: str = CommandPriority.NORMAL.value,
    ) -> CommandInDB:
        await self._device_for_parent(device_id, parent_id)
        command = await self.store.create(device_id, parent_id, command_type, payload, priority)
        self._announce(command)
        return command

    def _announce(self, command: CommandInDB) -> None:
        self.events.publish(
            device_channel(command.deviceId), NEW_COMMAND, CommandSummary.from_command(command).model_dump()
        )

    async def cancel(self, command_id: str, parent_id: str) -> CommandInDB:
        return await self.store.cancel(command_id, parent_id)

    async def retry(self, command_id: str, parent_id: str) -> CommandInDB:
        original = await self.store.get(command_id)
        if original.parentId != str(parent_id):
            raise NotFound("Command not found")
        try:
            await self._device_for_parent(original.deviceId, parent_id)
        except Forbidden:
            raise NotFound("Command not found") from None
        command = await self.store.clone_failed(command_id, parent_id)
        logger.info("Command %s re-issued as %s", command_id, command.id)
        self._announce(command)
        return command

    async def history(
        self,
        device_id: str,
        parent_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> CommandHistoryPage:
        device = await self.devices.get(device_id)
        if device is None or device.parentId != str(parent_id):
            raise NotFound("Device not found")
        return await self.store.history(device_id, parent_id, status, page, limit)
