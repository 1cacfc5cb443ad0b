# app/db/device_repository.py
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.core.errors import AlreadyExists
from app.db.mongodb_utils import get_device_collection
from app.db.store_errors import translate_store_errors
from app.models.device_models import DeviceInDB, DeviceStatus

DELETED = DeviceStatus.DELETED.value
ACTIVE = DeviceStatus.ACTIVE.value


class DeviceRepository(Protocol):
    async def insert(self, device: DeviceInDB) -> DeviceInDB:
        ...

    async def get(self, device_id: str) -> Optional[DeviceInDB]:
        """Any status, including soft-deleted."""
        ...

    async def get_for_parent(self, device_id: str, parent_id: str) -> Optional[DeviceInDB]:
        """Active device owned by ``parent_id``."""
        ...

    async def list_for_parent(self, parent_id: str) -> List[DeviceInDB]:
        ...

    async def record_heartbeat(
        self, device_id: str, at: datetime, battery_level: int, is_charging: bool, telemetry: Dict[str, Any]
    ) -> Optional[DeviceInDB]:
        """Atomically store a heartbeat. Returns the device as it was *before* the write."""
        ...

    async def find_stale_online(self, cutoff: datetime, limit: int) -> List[DeviceInDB]:
        ...

    async def mark_offline_if_unchanged(self, device_id: str, seen_heartbeat: Optional[datetime], at: datetime) -> bool:
        """Flip to offline only if still online with the exact lastHeartbeat the caller read."""
        ...

    async def set_low_battery_flag(self, device_id: str, expected: bool, value: bool) -> bool:
        ...

    async def update_for_parent(self, device_id: str, parent_id: str, updates: Dict[str, Any]) -> Optional[DeviceInDB]:
        """Update a non-deleted device owned by ``parent_id``; returns the updated record."""
        ...

    async def set_location(self, device_id: str, location: Dict[str, Any], at: datetime) -> None:
        ...


class MongoDeviceRepository:
    def __init__(self, collection=None):
        self._collection = collection

    @property
    def collection(self):
        return self._collection if self._collection is not None else get_device_collection()

    @translate_store_errors
    async def insert(self, device: DeviceInDB) -> DeviceInDB:
        try:
            await self.collection.insert_one(device.to_document())
        except DuplicateKeyError as e:
            raise AlreadyExists("Device is already linked to an account") from e
        return device

    @translate_store_errors
    async def get(self, device_id: str) -> Optional[DeviceInDB]:
        doc = await self.collection.find_one({"deviceId": device_id})
        if doc:
            return DeviceInDB(**doc)
        return None

    @translate_store_errors
    async def get_for_parent(self, device_id: str, parent_id: str) -> Optional[DeviceInDB]:
        doc = await self.collection.find_one({"deviceId": device_id, "parentId": str(parent_id), "status": ACTIVE})
        if doc:
            return DeviceInDB(**doc)
        return None

    @translate_store_errors
    async def list_for_parent(self, parent_id: str) -> List[DeviceInDB]:
        cursor = self.collection.find({"parentId": str(parent_id), "status": ACTIVE}).sort("createdAt", 1)
        return [DeviceInDB(**doc) async for doc in cursor]

    @translate_store_errors
    async def record_heartbeat(
        self, device_id: str, at: datetime, battery_level: int, is_charging: bool, telemetry: Dict[str, Any]
    ) -> Optional[DeviceInDB]:
        update_doc = {
            **telemetry,
            "lastHeartbeat": at,
            "isOnline": True,
            "batteryLevel": battery_level,
            "isCharging": is_charging,
            "updatedAt": at,
        }
        doc = await self.collection.find_one_and_update(
            {"deviceId": device_id, "status": {"$ne": DELETED}},
            {"$set": update_doc},
            return_document=ReturnDocument.BEFORE,
        )
        if doc:
            return DeviceInDB(**doc)
        return None

    @translate_store_errors
    async def find_stale_online(self, cutoff: datetime, limit: int) -> List[DeviceInDB]:
        cursor = self.collection.find(
            {"isOnline": True, "lastHeartbeat": {"$lt": cutoff}, "status": {"$ne": DELETED}}
        ).limit(limit)
        return [DeviceInDB(**doc) async for doc in cursor]

    @translate_store_errors
    async def mark_offline_if_unchanged(self, device_id: str, seen_heartbeat: Optional[datetime], at: datetime) -> bool:
        result = await self.collection.update_one(
            {"deviceId": device_id, "isOnline": True, "lastHeartbeat": seen_heartbeat},
            {"$set": {"isOnline": False, "updatedAt": at}},
        )
        return result.modified_count == 1

    @translate_store_errors
    async def set_low_battery_flag(self, device_id: str, expected: bool, value: bool) -> bool:
        # a missing field counts as False for devices stored before the flag existed
        expected_filter: Any = True if expected else {"$ne": True}
        result = await self.collection.update_one(
            {"deviceId": device_id, "lowBatteryAlertActive": expected_filter},
            {"$set": {"lowBatteryAlertActive": value}},
        )
        return result.modified_count == 1

    @translate_store_errors
    async def update_for_parent(self, device_id: str, parent_id: str, updates: Dict[str, Any]) -> Optional[DeviceInDB]:
        doc = await self.collection.find_one_and_update(
            {"deviceId": device_id, "parentId": str(parent_id), "status": {"$ne": DELETED}},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            return DeviceInDB(**doc)
        return None

    @translate_store_errors
    async def set_location(self, device_id: str, location: Dict[str, Any], at: datetime) -> None:
        await self.collection.update_one(
            {"deviceId": device_id},
            {"$set": {"location": location, "updatedAt": at}},
        )


class InMemoryDeviceRepository:
    def __init__(self):
        self._devices: Dict[str, DeviceInDB] = {}
        self._lock = asyncio.Lock()

    def _replace(self, device: DeviceInDB, updates: Dict[str, Any]) -> DeviceInDB:
        updated = DeviceInDB.model_validate({**device.model_dump(), **updates})
        self._devices[updated.deviceId] = updated
        return updated

    async def insert(self, device: DeviceInDB) -> DeviceInDB:
        async with self._lock:
            if device.deviceId in self._devices:
                raise AlreadyExists("Device is already linked to an account")
            self._devices[device.deviceId] = device.model_copy(deep=True)
        return device

    async def get(self, device_id: str) -> Optional[DeviceInDB]:
        device = self._devices.get(device_id)
        return device.model_copy(deep=True) if device else None

    async def get_for_parent(self, device_id: str, parent_id: str) -> Optional[DeviceInDB]:
        device = self._devices.get(device_id)
        if device and device.parentId == str(parent_id) and device.status == ACTIVE:
            return device.model_copy(deep=True)
        return None

    async def list_for_parent(self, parent_id: str) -> List[DeviceInDB]:
        devices = [d for d in self._devices.values() if d.parentId == str(parent_id) and d.status == ACTIVE]
        devices.sort(key=lambda d: d.createdAt)
        return [d.model_copy(deep=True) for d in devices]

    async def record_heartbeat(
        self, device_id: str, at: datetime, battery_level: int, is_charging: bool, telemetry: Dict[str, Any]
    ) -> Optional[DeviceInDB]:
        async with self._lock:
            device = self._devices.get(device_id)
            if device is None or device.status == DELETED:
                return None
            before = device.model_copy(deep=True)
            self._replace(device, {
                **telemetry,
                "lastHeartbeat": at,
                "isOnline": True,
                "batteryLevel": battery_level,
                "isCharging": is_charging,
                "updatedAt": at,
            })
            return before

    async def find_stale_online(self, cutoff: datetime, limit: int) -> List[DeviceInDB]:
        stale = [
            d for d in self._devices.values()
            if d.isOnline and d.lastHeartbeat is not None and d.lastHeartbeat < cutoff and d.status != DELETED
        ]
        return [d.model_copy(deep=True) for d in stale[:limit]]

    async def mark_offline_if_unchanged(self, device_id: str, seen_heartbeat: Optional[datetime], at: datetime) -> bool:
        async with self._lock:
            device = self._devices.get(device_id)
            if device is None or not device.isOnline or device.lastHeartbeat != seen_heartbeat:
                return False
            self._replace(device, {"isOnline": False, "updatedAt": at})
            return True

    async def set_low_battery_flag(self, device_id: str, expected: bool, value: bool) -> bool:
        async with self._lock:
            device = self._devices.get(device_id)
            if device is None or device.lowBatteryAlertActive != expected:
                return False
            self._replace(device, {"lowBatteryAlertActive": value})
            return True

    async def update_for_parent(self, device_id: str, parent_id: str, updates: Dict[str, Any]) -> Optional[DeviceInDB]:
        async with self._lock:
            device = self._devices.get(device_id)
            if device is None or device.parentId != str(parent_id) or device.status == DELETED:
                return None
            return self._replace(device, updates).model_copy(deep=True)

    async def set_location(self, device_id: str, location: Dict[str, Any], at: datetime) -> None:
        async with self._lock:
            device = self._devices.get(device_id)
            if device is not None:
                self._replace(device, {"location": location, "updatedAt": at})
