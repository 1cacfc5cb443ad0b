# app/services/location_service.py
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from app.core.errors import NotFound
from app.db.device_repository import DeviceRepository
from app.db.location_repository import LocationRepository
from app.models.common_models import utcnow
from app.models.device_models import DeviceInDB
from app.models.location_models import LocationHistory, LocationInDB, LocationPublic, LocationReport, LocationStats
from app.services.event_bus import LOCATION_UPDATE, EventBus, parent_channel

logger = logging.getLogger(__name__)


class LocationService:
    def __init__(
        self,
        devices: DeviceRepository,
        locations: LocationRepository,
        events: EventBus,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.devices = devices
        self.locations = locations
        self.events = events
        self.clock = clock

    async def report(self, device: DeviceInDB, report: LocationReport) -> LocationInDB:
        now = self.clock()
        location = LocationInDB(
            **report.model_dump(),
            parentId=device.parentId,
            timestamp=now,
            createdAt=now,
            updatedAt=now,
        )
        await self.locations.insert(location)
        await self.devices.set_location(device.deviceId, {
            "latitude": report.latitude,
            "longitude": report.longitude,
            "accuracy": report.accuracy,
            "timestamp": now,
        }, now)

        self.events.publish(parent_channel(device.parentId), LOCATION_UPDATE, {
            "deviceId": device.deviceId,
            "latitude": report.latitude,
            "longitude": report.longitude,
            "accuracy": report.accuracy,
            "timestamp": now,
        })
        return location

    async def _check_owner(self, device_id: str, parent_id: str) -> None:
        device = await self.devices.get(device_id)
        if device is None or device.parentId != str(parent_id):
            raise NotFound("Device not found")

    async def history(self, device_id: str, parent_id: str, hours: int = 24, limit: int = 100) -> LocationHistory:
        await self._check_owner(device_id, parent_id)
        since = self.clock() - timedelta(hours=hours)
        found = await self.locations.history(device_id, parent_id, since, limit)
        return LocationHistory(count=len(found), locations=[LocationPublic.from_location(l) for l in found])

    async def current(self, device_id: str, parent_id: str) -> LocationPublic:
        await self._check_owner(device_id, parent_id)
        location = await self.locations.latest(device_id, parent_id)
        if location is None:
            raise NotFound("No location data found")
        return LocationPublic.from_location(location)

    async def stats(self, device_id: str, parent_id: str, days: int = 7) -> LocationStats:
        """Per-day report count and average accuracy over the last ``days`` days, oldest day first."""
        await self._check_owner(device_id, parent_id)
        since = self.clock() - timedelta(days=days)
        return LocationStats(days=days, stats=await self.locations.daily_stats(device_id, parent_id, since))

    async def delete_history(self, device_id: str, parent_id: str, older_than_days: Optional[int] = None) -> int:
        await self._check_owner(device_id, parent_id)
        before = self.clock() - timedelta(days=older_than_days) if older_than_days is not None else None
        deleted = await self.locations.delete_for_device(device_id, parent_id, before)
        logger.info("Deleted %s location record(s) for device %s", deleted, device_id)
        return deleted
