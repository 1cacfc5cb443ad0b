# app/db/location_repository.py
import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from app.db.mongodb_utils import get_location_collection
from app.db.store_errors import translate_store_errors
from app.models.common_models import ensure_utc
from app.models.location_models import LocationDayStats, LocationInDB

DAY_FORMAT = "%Y-%m-%d"


class LocationRepository(Protocol):
    async def insert(self, location: LocationInDB) -> LocationInDB:
        ...

    async def history(self, device_id: str, parent_id: str, since: datetime, limit: int) -> List[LocationInDB]:
        ...

    async def latest(self, device_id: str, parent_id: str) -> Optional[LocationInDB]:
        ...

    async def daily_stats(self, device_id: str, parent_id: str, since: datetime) -> List[LocationDayStats]:
        ...

    async def delete_for_device(self, device_id: str, parent_id: str, before: Optional[datetime] = None) -> int:
        """Delete the device's locations, only those older than ``before`` when given."""
        ...


class MongoLocationRepository:
    def __init__(self, collection=None):
        self._collection = collection

    @property
    def collection(self):
        return self._collection if self._collection is not None else get_location_collection()

    @translate_store_errors
    async def insert(self, location: LocationInDB) -> LocationInDB:
        await self.collection.insert_one(location.to_document())
        return location

    @translate_store_errors
    async def history(self, device_id: str, parent_id: str, since: datetime, limit: int) -> List[LocationInDB]:
        cursor = (
            self.collection.find({"deviceId": device_id, "parentId": str(parent_id), "timestamp": {"$gte": since}})
            .sort("timestamp", -1)
            .limit(limit)
        )
        return [LocationInDB(**doc) async for doc in cursor]

    @translate_store_errors
    async def latest(self, device_id: str, parent_id: str) -> Optional[LocationInDB]:
        doc = await self.collection.find_one(
            {"deviceId": device_id, "parentId": str(parent_id)}, sort=[("timestamp", -1)]
        )
        if doc:
            return LocationInDB(**doc)
        return None

    @translate_store_errors
    async def daily_stats(self, device_id: str, parent_id: str, since: datetime) -> List[LocationDayStats]:
        pipeline = [
            {"$match": {"deviceId": device_id, "parentId": str(parent_id), "timestamp": {"$gte": since}}},
            {"$group": {
                "_id": {"$dateToString": {"format": DAY_FORMAT, "date": "$timestamp"}},
                "count": {"$sum": 1},
                "avgAccuracy": {"$avg": "$accuracy"},
            }},
            {"$sort": {"_id": 1}},
        ]
        return [
            LocationDayStats(date=row["_id"], count=row["count"], avgAccuracy=row["avgAccuracy"])
            async for row in self.collection.aggregate(pipeline)
        ]

    @translate_store_errors
    async def delete_for_device(self, device_id: str, parent_id: str, before: Optional[datetime] = None) -> int:
        query = {"deviceId": device_id, "parentId": str(parent_id)}
        if before is not None:
            query["timestamp"] = {"$lt": before}
        result = await self.collection.delete_many(query)
        return result.deleted_count


class InMemoryLocationRepository:
    def __init__(self):
        self._locations: Dict[str, LocationInDB] = {}
        self._lock = asyncio.Lock()

    def _for_device(self, device_id: str, parent_id: str) -> List[LocationInDB]:
        found = [l for l in self._locations.values() if l.deviceId == device_id and l.parentId == str(parent_id)]
        found.sort(key=lambda l: l.timestamp, reverse=True)
        return found

    async def insert(self, location: LocationInDB) -> LocationInDB:
        async with self._lock:
            self._locations[location.id] = location.model_copy(deep=True)
        return location

    async def history(self, device_id: str, parent_id: str, since: datetime, limit: int) -> List[LocationInDB]:
        recent = [l for l in self._for_device(device_id, parent_id) if l.timestamp >= since]
        return [l.model_copy(deep=True) for l in recent[:limit]]

    async def latest(self, device_id: str, parent_id: str) -> Optional[LocationInDB]:
        found = self._for_device(device_id, parent_id)
        return found[0].model_copy(deep=True) if found else None

    async def daily_stats(self, device_id: str, parent_id: str, since: datetime) -> List[LocationDayStats]:
        by_day: Dict[str, List[LocationInDB]] = defaultdict(list)
        for location in self._for_device(device_id, parent_id):
            if location.timestamp >= since:
                by_day[ensure_utc(location.timestamp).strftime(DAY_FORMAT)].append(location)

        stats = []
        for day in sorted(by_day):
            # $avg skips missing values; an all-missing day averages to None
            accuracies = [l.accuracy for l in by_day[day] if l.accuracy is not None]
            stats.append(LocationDayStats(
                date=day,
                count=len(by_day[day]),
                avgAccuracy=sum(accuracies) / len(accuracies) if accuracies else None,
            ))
        return stats

    async def delete_for_device(self, device_id: str, parent_id: str, before: Optional[datetime] = None) -> int:
        async with self._lock:
            doomed = [
                l.id for l in self._for_device(device_id, parent_id)
                if before is None or l.timestamp < before
            ]
            for location_id in doomed:
                del self._locations[location_id]
        return len(doomed)
