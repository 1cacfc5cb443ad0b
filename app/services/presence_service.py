# app/services/presence_service.py
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from app.core.errors import NotFound
from app.db.device_repository import DeviceRepository
from app.models.command_models import CommandSummary
from app.models.common_models import utcnow
from app.models.device_models import DeviceInDB, HeartbeatResponse, HeartbeatTelemetry
from app.services.alert_service import AlertEmitter
from app.services.command_store import CommandStore
from app.services.event_bus import (
    DEVICE_OFFLINE,
    DEVICE_ONLINE,
    HEARTBEAT_RECEIVED,
    EventBus,
    parent_channel,
)

logger = logging.getLogger(__name__)


class PresenceTracker:
    """
    Keeps ``isOnline`` as a cache over heartbeat timestamps.

    The offline sweep only flips a device whose ``lastHeartbeat`` is still the
    value the sweep read, so a heartbeat landing mid-sweep always wins.
    """

    def __init__(
        self,
        devices: DeviceRepository,
        store: CommandStore,
        events: EventBus,
        alerts: AlertEmitter,
        clock: Callable[[], datetime] = utcnow,
        offline_threshold: timedelta = timedelta(minutes=15),
        sweep_batch_size: int = 500,
    ):
        self.devices = devices
        self.store = store
        self.events = events
        self.alerts = alerts
        self.clock = clock
        self.offline_threshold = offline_threshold
        self.sweep_batch_size = sweep_batch_size

    async def record_heartbeat(
        self,
        device_id: str,
        battery_level: int,
        is_charging: bool,
        telemetry: Optional[HeartbeatTelemetry] = None,
    ) -> HeartbeatResponse:
        now = self.clock()
        extra = telemetry.model_dump(exclude_none=True) if telemetry else {}
        before = await self.devices.record_heartbeat(device_id, now, battery_level, is_charging, extra)
        if before is None:
            raise NotFound("Device not registered")

        channel = parent_channel(before.parentId)
        self.events.publish(channel, HEARTBEAT_RECEIVED, {
            "deviceId": device_id,
            "batteryLevel": battery_level,
            "isCharging": is_charging,
            "timestamp": now,
        })
        if not before.isOnline:
            logger.info("Device %s is back online", device_id)
            self.events.publish(channel, DEVICE_ONLINE, {"deviceId": device_id, "timestamp": now})

        await self._check_battery(before, battery_level, is_charging)

        # listed only; the pull endpoint does the pending -> sent handoff
        pending = await self.store.list_eligible(device_id)
        return HeartbeatResponse(
            requiresAction=bool(pending),
            pendingCommands=[CommandSummary.from_command(c) for c in pending],
        )

    async def _check_battery(self, device: DeviceInDB, battery_level: int, is_charging: bool) -> None:
        """One low_battery alert per episode; the episode ends on charging or recovery above the threshold."""
        is_low = battery_level <= device.settings.maxBatteryAlert and not is_charging
        try:
            if is_low:
                if await self.devices.set_low_battery_flag(device.deviceId, expected=False, value=True):
                    await self.alerts.low_battery(device, battery_level)
            elif device.lowBatteryAlertActive:
                await self.devices.set_low_battery_flag(device.deviceId, expected=True, value=False)
        except Exception:
            logger.error("Low battery check failed for device %s", device.deviceId, exc_info=True)

    async def detect_offline_devices(self, threshold: Optional[timedelta] = None) -> int:
        threshold = threshold or self.offline_threshold
        now = self.clock()
        stale = await self.devices.find_stale_online(now - threshold, self.sweep_batch_size)

        transitions = 0
        for device in stale:
            flipped = await self.devices.mark_offline_if_unchanged(device.deviceId, device.lastHeartbeat, now)
            if not flipped:
                continue
            transitions += 1
            logger.info("Device %s marked offline (last heartbeat %s)", device.deviceId, device.lastHeartbeat)
            self.events.publish(parent_channel(device.parentId), DEVICE_OFFLINE, {
                "deviceId": device.deviceId,
                "lastHeartbeat": device.lastHeartbeat,
                "timestamp": now,
            })
            await self.alerts.device_offline(device, threshold, now)

        if transitions:
            logger.info("Offline sweep: %s device(s) went offline", transitions)
        return transitions
