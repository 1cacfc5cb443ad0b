# app/db/alert_repository.py
import asyncio
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from pymongo import ReturnDocument

from app.db.mongodb_utils import get_alert_collection
from app.db.store_errors import translate_store_errors
from app.models.alert_models import AlertInDB, AlertStats

# filters accepted by list_for_parent
ALERT_FILTER_FIELDS = ("type", "severity", "isRead", "deviceId")


class AlertRepository(Protocol):
    async def insert(self, alert: AlertInDB) -> AlertInDB:
        ...

    async def get_for_parent(self, alert_id: str, parent_id: str) -> Optional[AlertInDB]:
        ...

    async def list_for_parent(
        self, parent_id: str, filters: Dict[str, Any], skip: int = 0, limit: int = 50
    ) -> Tuple[List[AlertInDB], int]:
        ...

    async def update_for_parent(self, alert_id: str, parent_id: str, updates: Dict[str, Any]) -> Optional[AlertInDB]:
        ...

    async def mark_read_many(self, alert_ids: Iterable[str], parent_id: str) -> int:
        ...

    async def delete_for_parent(self, alert_id: str, parent_id: str) -> bool:
        ...

    async def set_flags(self, alert_id: str, flags: Dict[str, bool]) -> None:
        ...

    async def count_unread(self, parent_id: str) -> int:
        ...

    async def stats(self, parent_id: str, since: datetime) -> AlertStats:
        ...

    async def delete_older_than(self, cutoff: datetime, severities: Iterable[str]) -> int:
        ...


def _clean_filters(filters: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in filters.items() if k in ALERT_FILTER_FIELDS and v is not None}


class MongoAlertRepository:
    def __init__(self, collection=None):
        self._collection = collection

    @property
    def collection(self):
        return self._collection if self._collection is not None else get_alert_collection()

    @translate_store_errors
    async def insert(self, alert: AlertInDB) -> AlertInDB:
        await self.collection.insert_one(alert.to_document())
        return alert

    @translate_store_errors
    async def get_for_parent(self, alert_id: str, parent_id: str) -> Optional[AlertInDB]:
        doc = await self.collection.find_one({"_id": str(alert_id), "parentId": str(parent_id)})
        if doc:
            return AlertInDB(**doc)
        return None

    @translate_store_errors
    async def list_for_parent(
        self, parent_id: str, filters: Dict[str, Any], skip: int = 0, limit: int = 50
    ) -> Tuple[List[AlertInDB], int]:
        query = {"parentId": str(parent_id), **_clean_filters(filters)}
        cursor = self.collection.find(query).sort("createdAt", -1).skip(skip).limit(limit)
        alerts = [AlertInDB(**doc) async for doc in cursor]
        total = await self.collection.count_documents(query)
        return alerts, total

    @translate_store_errors
    async def update_for_parent(self, alert_id: str, parent_id: str, updates: Dict[str, Any]) -> Optional[AlertInDB]:
        doc = await self.collection.find_one_and_update(
            {"_id": str(alert_id), "parentId": str(parent_id)},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            return AlertInDB(**doc)
        return None

    @translate_store_errors
    async def mark_read_many(self, alert_ids: Iterable[str], parent_id: str) -> int:
        result = await self.collection.update_many(
            {"_id": {"$in": [str(a) for a in alert_ids]}, "parentId": str(parent_id), "isRead": False},
            {"$set": {"isRead": True}},
        )
        return result.modified_count

    @translate_store_errors
    async def delete_for_parent(self, alert_id: str, parent_id: str) -> bool:
        result = await self.collection.delete_one({"_id": str(alert_id), "parentId": str(parent_id)})
        return result.deleted_count == 1

    @translate_store_errors
    async def set_flags(self, alert_id: str, flags: Dict[str, bool]) -> None:
        await self.collection.update_one({"_id": str(alert_id)}, {"$set": flags})

    @translate_store_errors
    async def count_unread(self, parent_id: str) -> int:
        return await self.collection.count_documents({"parentId": str(parent_id), "isRead": False})

    @translate_store_errors
    async def stats(self, parent_id: str, since: datetime) -> AlertStats:
        match = {"$match": {"parentId": str(parent_id), "createdAt": {"$gte": since}}}
        stats = AlertStats()
        async for row in self.collection.aggregate([
            match,
            {"$group": {"_id": {"severity": "$severity", "type": "$type"},
                        "count": {"$sum": 1},
                        "unread": {"$sum": {"$cond": [{"$eq": ["$isRead", False]}, 1, 0]}}}},
        ]):
            severity, alert_type = row["_id"]["severity"], row["_id"]["type"]
            stats.total += row["count"]
            stats.unread += row["unread"]
            stats.bySeverity[severity] = stats.bySeverity.get(severity, 0) + row["count"]
            stats.byType[alert_type] = stats.byType.get(alert_type, 0) + row["count"]
        return stats

    @translate_store_errors
    async def delete_older_than(self, cutoff: datetime, severities: Iterable[str]) -> int:
        result = await self.collection.delete_many(
            {"createdAt": {"$lt": cutoff}, "severity": {"$in": list(severities)}}
        )
        return result.deleted_count


class InMemoryAlertRepository:
    def __init__(self):
        self._alerts: Dict[str, AlertInDB] = {}
        self._lock = asyncio.Lock()

    def _owned(self, alert_id: str, parent_id: str) -> Optional[AlertInDB]:
        alert = self._alerts.get(str(alert_id))
        if alert and alert.parentId == str(parent_id):
            return alert
        return None

    async def insert(self, alert: AlertInDB) -> AlertInDB:
        async with self._lock:
            self._alerts[alert.id] = alert.model_copy(deep=True)
        return alert

    async def get_for_parent(self, alert_id: str, parent_id: str) -> Optional[AlertInDB]:
        alert = self._owned(alert_id, parent_id)
        return alert.model_copy(deep=True) if alert else None

    async def list_for_parent(
        self, parent_id: str, filters: Dict[str, Any], skip: int = 0, limit: int = 50
    ) -> Tuple[List[AlertInDB], int]:
        wanted = _clean_filters(filters)
        matches = [
            a for a in self._alerts.values()
            if a.parentId == str(parent_id) and all(getattr(a, k) == v for k, v in wanted.items())
        ]
        matches.sort(key=lambda a: a.createdAt, reverse=True)
        return [a.model_copy(deep=True) for a in matches[skip:skip + limit]], len(matches)

    async def update_for_parent(self, alert_id: str, parent_id: str, updates: Dict[str, Any]) -> Optional[AlertInDB]:
        async with self._lock:
            alert = self._owned(alert_id, parent_id)
            if alert is None:
                return None
            updated = AlertInDB.model_validate({**alert.model_dump(), **updates})
            self._alerts[updated.id] = updated
            return updated.model_copy(deep=True)

    async def mark_read_many(self, alert_ids: Iterable[str], parent_id: str) -> int:
        modified = 0
        async with self._lock:
            for alert_id in alert_ids:
                alert = self._owned(alert_id, parent_id)
                if alert and not alert.isRead:
                    self._alerts[alert.id] = alert.model_copy(update={"isRead": True})
                    modified += 1
        return modified

    async def delete_for_parent(self, alert_id: str, parent_id: str) -> bool:
        async with self._lock:
            if self._owned(alert_id, parent_id) is None:
                return False
            del self._alerts[str(alert_id)]
            return True

    async def set_flags(self, alert_id: str, flags: Dict[str, bool]) -> None:
        async with self._lock:
            alert = self._alerts.get(str(alert_id))
            if alert is not None:
                self._alerts[alert.id] = alert.model_copy(update=flags)

    async def count_unread(self, parent_id: str) -> int:
        return sum(1 for a in self._alerts.values() if a.parentId == str(parent_id) and not a.isRead)

    async def stats(self, parent_id: str, since: datetime) -> AlertStats:
        recent = [a for a in self._alerts.values() if a.parentId == str(parent_id) and a.createdAt >= since]
        return AlertStats(
            total=len(recent),
            unread=sum(1 for a in recent if not a.isRead),
            bySeverity=dict(Counter(a.severity for a in recent)),
            byType=dict(Counter(a.type for a in recent)),
        )

    async def delete_older_than(self, cutoff: datetime, severities: Iterable[str]) -> int:
        severities = set(severities)
        async with self._lock:
            doomed = [k for k, a in self._alerts.items() if a.createdAt < cutoff and a.severity in severities]
            for key in doomed:
                del self._alerts[key]
        return len(doomed)
