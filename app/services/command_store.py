# app/services/command_store.py
"""
Command lifecycle over a CommandRepository.

    pending -> sent -> delivered -> executing -> completed | failed
    failed result with retries left -> pending (retryCount + 1, backoff 2^retryCount s)
    pending | sent -> expired (cancel), any non-terminal -> expired (deadline sweep)

Records are treated as values: every change is computed from the state that was
read and written back with ``compare_and_set``. A version conflict re-reads and
re-evaluates the guard, so a late ack racing a result report cannot leave
``status`` and ``retryCount`` out of step.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from app.core.errors import Expired, InvalidPayload, InvalidState, NotFound, TransientStoreFailure
from app.db.command_repository import CommandRepository
from app.models.command_models import (
    DELIVERABLE_STATUSES,
    PRIORITY_RANK,
    CommandHistoryPage,
    CommandInDB,
    CommandPriority,
    CommandPublic,
    CommandStatus,
    ExecutionResult,
    parse_payload,
)
from app.models.common_models import utcnow

logger = logging.getLogger(__name__)

# mutate() returns the fields to change, or None to leave the record untouched
Mutation = Callable[[CommandInDB], Optional[Dict[str, Any]]]


class CommandStore:
    def __init__(
        self,
        repo: CommandRepository,
        clock: Callable[[], datetime] = utcnow,
        max_retries: int = 5,
        conflict_retries: int = 3,
        default_ttl: timedelta = timedelta(hours=24),
        critical_ttl: timedelta = timedelta(hours=168),
    ):
        self.repo = repo
        self.clock = clock
        self.max_retries = max_retries
        self.conflict_retries = conflict_retries
        self.default_ttl = default_ttl
        self.critical_ttl = critical_ttl

    def _ttl_for(self, priority: str) -> timedelta:
        if priority == CommandPriority.CRITICAL.value:
            return self.critical_ttl
        return self.default_ttl

    def is_eligible(self, command: CommandInDB, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        return (
            command.status in DELIVERABLE_STATUSES
            and now < command.expiresAt
            and (command.nextRetryAt is None or now >= command.nextRetryAt)
        )

    async def _transition(
        self, command_id: str, mutate: Mutation, current: Optional[CommandInDB] = None
    ) -> Tuple[CommandInDB, bool]:
        """Apply ``mutate`` under compare-and-set. Returns (record, changed)."""
        for attempt in range(self.conflict_retries + 1):
            if current is None:
                current = await self.repo.get(command_id)
                if current is None:
                    raise NotFound("Command not found")
            updates = mutate(current)
            if updates is None:
                return current, False
            updates["updatedAt"] = self.clock()
            updated = await self.repo.compare_and_set(current.id, current.version, updates)
            if updated is not None:
                return updated, True
            logger.debug("Version conflict on command %s (attempt %s)", command_id, attempt + 1)
            current = None
        raise TransientStoreFailure(f"Command {command_id} is being modified concurrently, try again")

    async def create(
        self,
        device_id: str,
        parent_id: str,
        command_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: str = CommandPriority.NORMAL.value,
    ) -> CommandInDB:
        try:
            typed = parse_payload(command_type, payload)
        except ValidationError as e:
            raise InvalidPayload(f"Invalid payload for {command_type}: {e.errors(include_url=False)}")
        except ValueError:
            raise InvalidPayload(f"Unknown command type '{command_type}'") from None
        try:
            priority = CommandPriority(priority).value
        except ValueError:
            raise InvalidPayload(f"Unknown priority '{priority}'") from None
        now = self.clock()
        command = CommandInDB(
            deviceId=device_id,
            parentId=str(parent_id),
            type=command_type,
            payload=typed.model_dump(exclude_none=True),
            priority=priority,
            priorityRank=PRIORITY_RANK[priority],
            status=CommandStatus.PENDING,
            expiresAt=now + self._ttl_for(priority),
            createdAt=now,
            updatedAt=now,
        )
        await self.repo.insert(command)
        logger.info("Command %s (%s, %s) created for device %s", command.id, command.type, priority, device_id)
        return command

    async def get(self, command_id: str) -> CommandInDB:
        command = await self.repo.get(command_id)
        if command is None:
            raise NotFound("Command not found")
        return command

    async def list_eligible(self, device_id: str, limit: int = 100) -> List[CommandInDB]:
        return await self.repo.find_eligible(device_id, self.clock(), limit)

    async def mark_sent(self, command: CommandInDB) -> Optional[CommandInDB]:
        """
        pending -> sent for a command picked by a pull. A command that is already
        ``sent`` is handed out again unchanged. Returns None when the command
        stopped being deliverable since it was read.
        """
        now = self.clock()

        def mutate(current: CommandInDB) -> Optional[Dict[str, Any]]:
            if current.status == CommandStatus.PENDING.value and self.is_eligible(current, now):
                return {"status": CommandStatus.SENT.value, "sentAt": now}
            return None

        updated, _ = await self._transition(command.id, mutate, current=command)
        if not self.is_eligible(updated, now):
            return None
        return updated

    def _owned_by_device(self, current: CommandInDB, device_id: Optional[str]) -> None:
        if device_id is not None and current.deviceId != device_id:
            raise NotFound("Command not found")

    async def acknowledge(self, command_id: str, device_id: Optional[str] = None) -> CommandInDB:
        now = self.clock()

        def mutate(current: CommandInDB) -> Optional[Dict[str, Any]]:
            self._owned_by_device(current, device_id)
            if current.is_terminal:
                raise NotFound("Command not found or already finished")
            if now >= current.expiresAt:
                raise Expired("Command has expired")
            if current.status != CommandStatus.SENT.value:
                raise InvalidState(f"Cannot acknowledge a command in status '{current.status}'")
            return {"status": CommandStatus.DELIVERED.value, "deliveredAt": now}

        updated, _ = await self._transition(command_id, mutate)
        logger.info("Command %s acknowledged by device %s", command_id, updated.deviceId)
        return updated

    async def mark_executing(self, command_id: str, device_id: Optional[str] = None) -> CommandInDB:
        now = self.clock()

        def mutate(current: CommandInDB) -> Optional[Dict[str, Any]]:
            self._owned_by_device(current, device_id)
            if current.is_terminal:
                raise NotFound("Command not found or already finished")
            if now >= current.expiresAt:
                raise Expired("Command has expired")
            if current.status == CommandStatus.EXECUTING.value:
                return None
            if current.status not in (CommandStatus.SENT.value, CommandStatus.DELIVERED.value):
                raise InvalidState(f"Cannot start a command in status '{current.status}'")
            return {"status": CommandStatus.EXECUTING.value}

        updated, _ = await self._transition(command_id, mutate)
        return updated

    async def record_result(
        self,
        command_id: str,
        success: bool,
        message: Optional[str] = None,
        error_code: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        device_id: Optional[str] = None,
    ) -> Tuple[CommandInDB, bool]:
        """
        Terminal or retry transition for a reported outcome.

        Returns (command, ignored). A result for a command that is already
        terminal (completed, failed, expired or cancelled) is accepted without
        changing it and reported as ignored. So is a repeated failure report for
        a command already waiting out its backoff: it has not been redelivered,
        so it cannot have failed again.
        """
        now = self.clock()
        result = ExecutionResult(success=success, message=message, errorCode=error_code, timestamp=now, data=data)

        def mutate(current: CommandInDB) -> Optional[Dict[str, Any]]:
            self._owned_by_device(current, device_id)
            if current.is_terminal:
                return None
            if not success and current.status == CommandStatus.PENDING.value and current.nextRetryAt is not None:
                return None
            updates: Dict[str, Any] = {"executionResult": result.model_dump()}
            if success:
                updates.update(status=CommandStatus.COMPLETED.value, executedAt=now, failureReason=None)
            elif current.retryCount < self.max_retries:
                retry_count = current.retryCount + 1
                updates.update(
                    status=CommandStatus.PENDING.value,
                    retryCount=retry_count,
                    nextRetryAt=now + timedelta(seconds=2 ** retry_count),
                    failureReason=message or error_code,
                )
            else:
                updates.update(
                    status=CommandStatus.FAILED.value,
                    executedAt=now,
                    nextRetryAt=None,
                    failureReason=message or error_code,
                )
            return updates

        updated, changed = await self._transition(command_id, mutate)
        if not changed:
            logger.info("Ignoring result for command %s in status '%s'", command_id, updated.status)
        elif updated.status == CommandStatus.PENDING.value:
            logger.info(
                "Command %s failed, retry %s/%s scheduled at %s",
                command_id, updated.retryCount, self.max_retries, updated.nextRetryAt,
            )
        else:
            logger.info("Command %s finished with status '%s'", command_id, updated.status)
        return updated, not changed

    async def cancel(self, command_id: str, parent_id: str) -> CommandInDB:
        now = self.clock()

        def mutate(current: CommandInDB) -> Optional[Dict[str, Any]]:
            if current.parentId != str(parent_id):
                raise NotFound("Command not found")
            if current.status not in DELIVERABLE_STATUSES:
                raise InvalidState(f"Cannot cancel a command in status '{current.status}'")
            return {"status": CommandStatus.EXPIRED.value, "cancelledAt": now}

        updated, _ = await self._transition(command_id, mutate)
        logger.info("Command %s cancelled by parent %s", command_id, parent_id)
        return updated

    async def clone_failed(self, command_id: str, parent_id: str) -> CommandInDB:
        """New pending command copying a terminally failed one; the old record is left as is."""
        original = await self.repo.get(command_id)
        if original is None or original.parentId != str(parent_id):
            raise NotFound("Command not found")
        if original.status != CommandStatus.FAILED.value:
            raise NotFound("No failed command with this id")
        return await self.create(
            original.deviceId, original.parentId, original.type, original.payload, original.priority
        )

    async def expire_overdue(self, limit: int = 500) -> int:
        expired = await self.repo.expire_overdue(self.clock(), limit)
        if expired:
            logger.info("Expired %s overdue commands", expired)
        return expired

    async def history(
        self,
        device_id: str,
        parent_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> CommandHistoryPage:
        commands, total = await self.repo.list_for_device(
            device_id, parent_id, status, skip=(page - 1) * limit, limit=limit
        )
        return CommandHistoryPage(
            count=len(commands),
            total=total,
            page=page,
            pages=math.ceil(total / limit) if limit else 0,
            commands=[CommandPublic.model_validate(c, from_attributes=True) for c in commands],
        )
