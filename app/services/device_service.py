# app/services/device_service.py
import logging
from datetime import datetime
from typing import Callable, List, Optional

from app.core.errors import AlreadyExists, NotFound
from app.core.security import generate_device_token, hash_device_token, verify_device_token
from app.db.device_repository import DeviceRepository
from app.models.command_models import CommandPriority, CommandType
from app.models.common_models import utcnow
from app.models.device_models import (
    DeviceInDB,
    DeviceLinkRequest,
    DeviceLinkResponse,
    DevicePublic,
    DeviceSettings,
    DeviceSettingsUpdate,
    DeviceStatus,
)
from app.services.dispatch_service import DispatchProtocol
from app.services.event_bus import DEVICE_LINKED, EventBus, parent_channel

logger = logging.getLogger(__name__)


class DeviceService:
    def __init__(
        self,
        devices: DeviceRepository,
        dispatch: DispatchProtocol,
        events: EventBus,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.devices = devices
        self.dispatch = dispatch
        self.events = events
        self.clock = clock

    async def link(self, parent_id: str, request: DeviceLinkRequest) -> DeviceLinkResponse:
        if await self.devices.get(request.deviceId) is not None:
            raise AlreadyExists("Device is already linked to an account")

        token = generate_device_token()
        now = self.clock()
        device = DeviceInDB(
            deviceId=request.deviceId,
            deviceName=request.deviceName or f"Child Device - {request.deviceId[-4:]}",
            parentId=str(parent_id),
            # until the child registers the parent stands in
            childId=request.childId or str(parent_id),
            androidVersion=request.androidVersion,
            appVersion=request.appVersion,
            deviceTokenHash=hash_device_token(token),
            createdAt=now,
            updatedAt=now,
        )
        await self.devices.insert(device)
        logger.info("Device %s linked to parent %s", device.deviceId, parent_id)

        public = DevicePublic.from_device(device, self.clock())
        self.events.publish(parent_channel(device.parentId), DEVICE_LINKED, public.model_dump())
        return DeviceLinkResponse(device=public, deviceToken=token)

    async def authenticate(self, device_id: str, token: str) -> Optional[DeviceInDB]:
        """The device record if ``token`` matches, else None. Deleted devices never authenticate."""
        device = await self.devices.get(device_id)
        if device is None or device.status == DeviceStatus.DELETED.value:
            return None
        if not verify_device_token(token, device.deviceTokenHash):
            return None
        return device

    async def list_devices(self, parent_id: str) -> List[DevicePublic]:
        now = self.clock()
        return [DevicePublic.from_device(d, now) for d in await self.devices.list_for_parent(parent_id)]

    async def get_device(self, device_id: str, parent_id: str) -> DeviceInDB:
        device = await self.devices.get_for_parent(device_id, parent_id)
        if device is None:
            raise NotFound("Device not found")
        return device

    async def update_settings(self, device_id: str, parent_id: str, update: DeviceSettingsUpdate) -> DeviceInDB:
        device = await self.get_device(device_id, parent_id)
        changes = update.model_dump(exclude_none=True)
        settings = DeviceSettings.model_validate({**device.settings.model_dump(), **changes})
        updated = await self.devices.update_for_parent(
            device_id, parent_id, {"settings": settings.model_dump(), "updatedAt": self.clock()}
        )
        if updated is None:
            raise NotFound("Device not found")

        if changes:
            await self.dispatch.issue(
                device_id, parent_id, CommandType.UPDATE_SETTINGS.value, changes, CommandPriority.HIGH.value
            )
        return updated

    async def set_blocked(self, device_id: str, parent_id: str, blocked: bool) -> DeviceInDB:
        await self.get_device(device_id, parent_id)
        updated = await self.devices.update_for_parent(
            device_id, parent_id, {"isBlocked": blocked, "updatedAt": self.clock()}
        )
        if updated is None:
            raise NotFound("Device not found")

        command_type = CommandType.LOCK_DEVICE if blocked else CommandType.UNLOCK_DEVICE
        reason = "Blocked by parent" if blocked else "Unblocked by parent"
        await self.dispatch.issue(
            device_id, parent_id, command_type.value, {"reason": reason}, CommandPriority.HIGH.value
        )
        logger.info("Device %s %s by parent %s", device_id, "blocked" if blocked else "unblocked", parent_id)
        return updated

    async def delete(self, device_id: str, parent_id: str) -> None:
        await self.get_device(device_id, parent_id)
        updated = await self.devices.update_for_parent(device_id, parent_id, {
            "status": DeviceStatus.DELETED.value,
            "isOnline": False,
            "updatedAt": self.clock(),
        })
        if updated is None:
            raise NotFound("Device not found")
        logger.info("Device %s removed by parent %s", device_id, parent_id)
