# app/db/command_repository.py
"""
Command persistence.

Every mutation after insert goes through ``compare_and_set``: the write only
lands if the stored ``version`` still equals the version the caller read, and
it bumps ``version`` by one. Callers re-read and retry on a miss.
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pymongo import ReturnDocument

from app.db.mongodb_utils import get_command_collection
from app.db.store_errors import translate_store_errors
from app.models.command_models import (
    CommandInDB,
    DELIVERABLE_STATUSES,
    NON_TERMINAL_STATUSES,
    CommandStatus,
)


class CommandRepository(Protocol):
    async def insert(self, command: CommandInDB) -> CommandInDB:
        ...

    async def get(self, command_id: str) -> Optional[CommandInDB]:
        ...

    async def find_eligible(self, device_id: str, now: datetime, limit: int = 100) -> List[CommandInDB]:
        """Deliverable commands for a device, highest priority first, oldest first within a priority."""
        ...

    async def compare_and_set(
        self, command_id: str, expected_version: int, updates: Dict[str, Any]
    ) -> Optional[CommandInDB]:
        """Apply ``updates`` iff the stored version matches. Returns the new record or None."""
        ...

    async def expire_overdue(self, now: datetime, limit: int = 500) -> int:
        ...

    async def list_for_device(
        self,
        device_id: str,
        parent_id: str,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[CommandInDB], int]:
        ...


def _eligibility_filter(device_id: str, now: datetime) -> Dict[str, Any]:
    return {
        "deviceId": device_id,
        "status": {"$in": list(DELIVERABLE_STATUSES)},
        "expiresAt": {"$gt": now},
        "$or": [{"nextRetryAt": None}, {"nextRetryAt": {"$lte": now}}],
    }


class MongoCommandRepository:
    def __init__(self, collection=None):
        self._collection = collection

    @property
    def collection(self):
        return self._collection if self._collection is not None else get_command_collection()

    @translate_store_errors
    async def insert(self, command: CommandInDB) -> CommandInDB:
        await self.collection.insert_one(command.to_document())
        return command

    @translate_store_errors
    async def get(self, command_id: str) -> Optional[CommandInDB]:
        doc = await self.collection.find_one({"_id": str(command_id)})
        if doc:
            return CommandInDB(**doc)
        return None

    @translate_store_errors
    async def find_eligible(self, device_id: str, now: datetime, limit: int = 100) -> List[CommandInDB]:
        cursor = (
            self.collection.find(_eligibility_filter(device_id, now))
            .sort([("priorityRank", -1), ("createdAt", 1)])
            .limit(limit)
        )
        return [CommandInDB(**doc) async for doc in cursor]

    @translate_store_errors
    async def compare_and_set(
        self, command_id: str, expected_version: int, updates: Dict[str, Any]
    ) -> Optional[CommandInDB]:
        doc = await self.collection.find_one_and_update(
            {"_id": str(command_id), "version": expected_version},
            {"$set": updates, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            return CommandInDB(**doc)
        return None

    @translate_store_errors
    async def expire_overdue(self, now: datetime, limit: int = 500) -> int:
        overdue = {"status": {"$in": list(NON_TERMINAL_STATUSES)}, "expiresAt": {"$lte": now}}
        ids = [doc["_id"] async for doc in self.collection.find(overdue, {"_id": 1}).limit(limit)]
        if not ids:
            return 0
        # status re-checked so a command finishing concurrently is not overwritten
        result = await self.collection.update_many(
            {"_id": {"$in": ids}, **overdue},
            {"$set": {"status": CommandStatus.EXPIRED.value, "updatedAt": now}, "$inc": {"version": 1}},
        )
        return result.modified_count

    @translate_store_errors
    async def list_for_device(
        self,
        device_id: str,
        parent_id: str,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[CommandInDB], int]:
        query: Dict[str, Any] = {"deviceId": device_id, "parentId": str(parent_id)}
        if status:
            query["status"] = status
        cursor = self.collection.find(query).sort("createdAt", -1).skip(skip).limit(limit)
        commands = [CommandInDB(**doc) async for doc in cursor]
        total = await self.collection.count_documents(query)
        return commands, total


class InMemoryCommandRepository:
    """Dict-backed repository with the same conditional-update contract; used for local runs and tests."""

    def __init__(self):
        self._commands: Dict[str, CommandInDB] = {}
        self._lock = asyncio.Lock()

    async def insert(self, command: CommandInDB) -> CommandInDB:
        async with self._lock:
            self._commands[command.id] = command.model_copy(deep=True)
        return command

    async def get(self, command_id: str) -> Optional[CommandInDB]:
        command = self._commands.get(str(command_id))
        return command.model_copy(deep=True) if command else None

    async def find_eligible(self, device_id: str, now: datetime, limit: int = 100) -> List[CommandInDB]:
        eligible = [
            c for c in self._commands.values()
            if c.deviceId == device_id
            and c.status in DELIVERABLE_STATUSES
            and c.expiresAt > now
            and (c.nextRetryAt is None or c.nextRetryAt <= now)
        ]
        eligible.sort(key=lambda c: (-c.priorityRank, c.createdAt))
        return [c.model_copy(deep=True) for c in eligible[:limit]]

    async def compare_and_set(
        self, command_id: str, expected_version: int, updates: Dict[str, Any]
    ) -> Optional[CommandInDB]:
        async with self._lock:
            current = self._commands.get(str(command_id))
            if current is None or current.version != expected_version:
                return None
            merged = {**current.model_dump(), **updates, "version": current.version + 1}
            updated = CommandInDB.model_validate(merged)
            self._commands[updated.id] = updated
            return updated.model_copy(deep=True)

    async def expire_overdue(self, now: datetime, limit: int = 500) -> int:
        expired = 0
        async with self._lock:
            for command_id, command in list(self._commands.items()):
                if expired >= limit:
                    break
                if command.status in NON_TERMINAL_STATUSES and command.expiresAt <= now:
                    self._commands[command_id] = command.model_copy(update={
                        "status": CommandStatus.EXPIRED.value,
                        "updatedAt": now,
                        "version": command.version + 1,
                    })
                    expired += 1
        return expired

    async def list_for_device(
        self,
        device_id: str,
        parent_id: str,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[CommandInDB], int]:
        matches = [
            c for c in self._commands.values()
            if c.deviceId == device_id and c.parentId == str(parent_id) and (not status or c.status == status)
        ]
        matches.sort(key=lambda c: c.createdAt, reverse=True)
        return [c.model_copy(deep=True) for c in matches[skip:skip + limit]], len(matches)
