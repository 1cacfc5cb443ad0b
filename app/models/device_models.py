# app/models/device_models.py
from enum import Enum
from typing import List, Optional
from datetime import datetime, timedelta
from pydantic import BaseModel, ConfigDict, Field

from app.models.common_models import BaseDBModel, PyObjectId, ensure_utc, utcnow
from app.models.command_models import CommandSummary


class DeviceStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class NetworkType(str, Enum):
    WIFI = "wifi"
    CELLULAR = "cellular"
    UNKNOWN = "unknown"


class DeviceSettings(BaseModel):
    heartbeatInterval: int = Field(default=300, ge=60, le=3600, description="seconds")
    maxBatteryAlert: int = Field(default=20, ge=5, le=50, description="percent")
    enableTamperProtection: bool = True
    enableScreenshot: bool = False
    enableLocation: bool = False
    enableNotificationMonitoring: bool = False
    enableCallMonitoring: bool = False
    enableSMSMonitoring: bool = False


class DeviceSettingsUpdate(BaseModel):
    heartbeatInterval: Optional[int] = Field(None, ge=60, le=3600)
    maxBatteryAlert: Optional[int] = Field(None, ge=5, le=50)
    enableTamperProtection: Optional[bool] = None
    enableScreenshot: Optional[bool] = None
    enableLocation: Optional[bool] = None
    enableNotificationMonitoring: Optional[bool] = None
    enableCallMonitoring: Optional[bool] = None
    enableSMSMonitoring: Optional[bool] = None


class DeviceLocation(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    address: Optional[str] = None
    timestamp: Optional[datetime] = None # 位置上报时间


class StorageInfo(BaseModel):
    total: Optional[int] = None
    free: Optional[int] = None


class UsageStats(BaseModel):
    screenTime: int = 0
    dataUsage: int = 0
    lastSync: Optional[datetime] = None


class DeviceBase(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    deviceName: str = Field(default="Child Device", max_length=100)
    isOnline: bool = Field(default=False)
    lastHeartbeat: Optional[datetime] = None
    batteryLevel: int = Field(default=0, ge=0, le=100)
    isCharging: bool = False
    androidVersion: Optional[str] = None
    appVersion: Optional[str] = None
    deviceModel: Optional[str] = None
    networkType: NetworkType = NetworkType.UNKNOWN
    signalStrength: int = Field(default=-1, ge=-1, le=100)
    storageInfo: Optional[StorageInfo] = None
    isBlocked: bool = False
    settings: DeviceSettings = Field(default_factory=DeviceSettings)
    location: Optional[DeviceLocation] = None
    usageStats: UsageStats = Field(default_factory=UsageStats)
    status: DeviceStatus = DeviceStatus.ACTIVE


class DeviceInDB(BaseDBModel, DeviceBase):
    deviceId: str = Field(description="externally assigned, unique")
    parentId: str
    childId: str
    lowBatteryAlertActive: bool = False
    deviceTokenHash: Optional[str] = None


class DevicePublic(DeviceBase):
    id: PyObjectId
    deviceId: str
    parentId: str
    childId: str
    createdAt: datetime
    isOffline: bool = True

    @classmethod
    def from_device(cls, device: DeviceInDB, now: Optional[datetime] = None) -> "DevicePublic":
        """``isOffline``: no heartbeat within two heartbeat intervals of ``now``."""
        now = now or utcnow()
        offline = True
        if device.lastHeartbeat:
            threshold = timedelta(seconds=device.settings.heartbeatInterval * 2)
            offline = now - ensure_utc(device.lastHeartbeat) > threshold
        data = device.model_dump(exclude={"deviceTokenHash", "lowBatteryAlertActive"})
        return cls.model_validate({**data, "isOffline": offline})


# --- Request / response bodies ---

class DeviceLinkRequest(BaseModel):
    deviceId: str = Field(min_length=4, max_length=128)
    deviceName: Optional[str] = Field(None, max_length=100)
    childId: Optional[str] = None
    androidVersion: Optional[str] = None
    appVersion: Optional[str] = None


class DeviceLinkResponse(BaseModel):
    device: DevicePublic
    deviceToken: str = Field(description="shown once; the device presents it as X-Device-Token")


class DeviceBlockRequest(BaseModel):
    blocked: bool


class HeartbeatTelemetry(BaseModel):
    """Optional fields a device may attach to a heartbeat."""
    model_config = ConfigDict(use_enum_values=True)

    androidVersion: Optional[str] = None
    appVersion: Optional[str] = None
    deviceModel: Optional[str] = None
    networkType: Optional[NetworkType] = None
    signalStrength: Optional[int] = Field(None, ge=-1, le=100)
    storageInfo: Optional[StorageInfo] = None
    usageStats: Optional[UsageStats] = None


class HeartbeatRequest(HeartbeatTelemetry):
    deviceId: str
    batteryLevel: int = Field(ge=0, le=100)
    isCharging: bool = False

    def telemetry(self) -> HeartbeatTelemetry:
        return HeartbeatTelemetry.model_validate(
            self.model_dump(exclude={"deviceId", "batteryLevel", "isCharging"})
        )


class HeartbeatResponse(BaseModel):
    success: bool = True
    message: str = "Heartbeat received"
    requiresAction: bool
    pendingCommands: List[CommandSummary]
