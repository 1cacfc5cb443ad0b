# app/models/command_models.py
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.common_models import BaseDBModel, PyObjectId


class CommandType(str, Enum):
    LOCK_DEVICE = "lock_device"
    UNLOCK_DEVICE = "unlock_device"
    SHOW_MESSAGE = "show_message"
    PLAY_SOUND = "play_sound"
    VIBRATE = "vibrate"
    TAKE_SCREENSHOT = "take_screenshot"
    GET_LOCATION = "get_location"
    ENABLE_APP = "enable_app"
    DISABLE_APP = "disable_app"
    SET_TIME_LIMIT = "set_time_limit"
    UPDATE_SETTINGS = "update_settings"
    FACTORY_RESET = "factory_reset"


class CommandPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


# Stored alongside the priority string; sorting the string itself would be alphabetical
PRIORITY_RANK: Dict[str, int] = {
    CommandPriority.LOW.value: 0,
    CommandPriority.NORMAL.value: 1,
    CommandPriority.HIGH.value: 2,
    CommandPriority.CRITICAL.value: 3,
}


class CommandStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


DELIVERABLE_STATUSES = (CommandStatus.PENDING.value, CommandStatus.SENT.value)
TERMINAL_STATUSES = (CommandStatus.COMPLETED.value, CommandStatus.FAILED.value, CommandStatus.EXPIRED.value)
NON_TERMINAL_STATUSES = (
    CommandStatus.PENDING.value,
    CommandStatus.SENT.value,
    CommandStatus.DELIVERED.value,
    CommandStatus.EXECUTING.value,
)


# --- Payloads: one schema per command type ---

class CommandPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class LockDevicePayload(CommandPayload):
    reason: Optional[str] = Field(None, max_length=200)
    message: Optional[str] = Field(None, max_length=500)


class UnlockDevicePayload(CommandPayload):
    reason: Optional[str] = Field(None, max_length=200)


class ShowMessagePayload(CommandPayload):
    message: str = Field(min_length=1, max_length=500)
    title: Optional[str] = Field(None, max_length=100)
    durationSeconds: Optional[int] = Field(None, ge=1, le=3600)


class PlaySoundPayload(CommandPayload):
    sound: Optional[str] = None
    durationSeconds: int = Field(10, ge=1, le=300)
    volume: Optional[int] = Field(None, ge=0, le=100)


class VibratePayload(CommandPayload):
    durationMs: int = Field(1000, ge=100, le=60000)


class TakeScreenshotPayload(CommandPayload):
    quality: Optional[Literal["low", "medium", "high"]] = None


class GetLocationPayload(CommandPayload):
    highAccuracy: bool = False


class AppTogglePayload(CommandPayload):
    packageName: str = Field(min_length=1, max_length=255)
    appName: Optional[str] = None


class SetTimeLimitPayload(CommandPayload):
    dailyLimitMinutes: int = Field(ge=0, le=1440)
    packageName: Optional[str] = None


class UpdateSettingsPayload(CommandPayload):
    heartbeatInterval: Optional[int] = Field(None, ge=60, le=3600)
    maxBatteryAlert: Optional[int] = Field(None, ge=5, le=50)
    enableTamperProtection: Optional[bool] = None
    enableScreenshot: Optional[bool] = None
    enableLocation: Optional[bool] = None
    enableNotificationMonitoring: Optional[bool] = None
    enableCallMonitoring: Optional[bool] = None
    enableSMSMonitoring: Optional[bool] = None


class FactoryResetPayload(CommandPayload):
    confirm: bool = False

    @field_validator("confirm")
    @classmethod
    def must_confirm(cls, v: bool) -> bool:
        if not v:
            raise ValueError("factory_reset requires confirm=true")
        return v


PAYLOAD_MODELS: Dict[str, Type[CommandPayload]] = {
    CommandType.LOCK_DEVICE.value: LockDevicePayload,
    CommandType.UNLOCK_DEVICE.value: UnlockDevicePayload,
    CommandType.SHOW_MESSAGE.value: ShowMessagePayload,
    CommandType.PLAY_SOUND.value: PlaySoundPayload,
    CommandType.VIBRATE.value: VibratePayload,
    CommandType.TAKE_SCREENSHOT.value: TakeScreenshotPayload,
    CommandType.GET_LOCATION.value: GetLocationPayload,
    CommandType.ENABLE_APP.value: AppTogglePayload,
    CommandType.DISABLE_APP.value: AppTogglePayload,
    CommandType.SET_TIME_LIMIT.value: SetTimeLimitPayload,
    CommandType.UPDATE_SETTINGS.value: UpdateSettingsPayload,
    CommandType.FACTORY_RESET.value: FactoryResetPayload,
}


def parse_payload(command_type: str, data: Optional[Dict[str, Any]]) -> CommandPayload:
    """Validate raw payload data against the schema for ``command_type``. Raises pydantic.ValidationError."""
    model = PAYLOAD_MODELS[CommandType(command_type).value]
    return model.model_validate(data or {})


# --- Command records ---

class ExecutionResult(BaseModel):
    success: bool
    message: Optional[str] = None
    errorCode: Optional[str] = None
    timestamp: datetime
    data: Optional[Dict[str, Any]] = None


class CommandInDB(BaseDBModel):
    deviceId: str
    parentId: str
    type: CommandType
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: CommandPriority = CommandPriority.NORMAL
    priorityRank: int = PRIORITY_RANK[CommandPriority.NORMAL.value]
    status: CommandStatus = CommandStatus.PENDING
    retryCount: int = Field(default=0, ge=0)
    nextRetryAt: Optional[datetime] = None
    expiresAt: datetime
    executionResult: Optional[ExecutionResult] = None
    failureReason: Optional[str] = None
    sentAt: Optional[datetime] = None
    deliveredAt: Optional[datetime] = None
    executedAt: Optional[datetime] = None
    cancelledAt: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def typed_payload(self) -> CommandPayload:
        return parse_payload(self.type, self.payload)


class CommandSummary(BaseModel):
    """What a device sees when pulling or on a heartbeat."""
    id: PyObjectId
    type: CommandType
    payload: Dict[str, Any]
    priority: CommandPriority
    createdAt: datetime

    @classmethod
    def from_command(cls, command: CommandInDB) -> "CommandSummary":
        return cls(
            id=command.id,
            type=command.type,
            payload=command.payload,
            priority=command.priority,
            createdAt=command.createdAt,
        )


class CommandPublic(BaseModel):
    """Parent-facing view of a command."""
    model_config = ConfigDict(from_attributes=True)

    id: PyObjectId
    deviceId: str
    type: CommandType
    payload: Dict[str, Any]
    priority: CommandPriority
    status: CommandStatus
    retryCount: int
    nextRetryAt: Optional[datetime] = None
    expiresAt: datetime
    executionResult: Optional[ExecutionResult] = None
    failureReason: Optional[str] = None
    createdAt: datetime
    sentAt: Optional[datetime] = None
    deliveredAt: Optional[datetime] = None
    executedAt: Optional[datetime] = None


# --- Request bodies ---

class CommandIssueRequest(BaseModel):
    deviceId: str = Field(min_length=1)
    type: CommandType
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: CommandPriority = CommandPriority.NORMAL


class CommandResultReport(BaseModel):
    success: bool
    message: Optional[str] = Field(None, max_length=1000)
    errorCode: Optional[str] = Field(None, max_length=100)
    data: Optional[Dict[str, Any]] = None


class PendingCommandsResponse(BaseModel):
    success: bool = True
    commands: List[CommandSummary]


class CommandResultOutcome(BaseModel):
    commandId: PyObjectId
    status: CommandStatus
    retryCount: int
    nextRetryAt: Optional[datetime] = None
    ignored: bool = False


class CommandHistoryPage(BaseModel):
    count: int
    total: int
    page: int
    pages: int
    commands: List[CommandPublic]
