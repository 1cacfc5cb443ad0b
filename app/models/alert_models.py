# app/models/alert_models.py
from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from app.models.common_models import BaseDBModel, PyObjectId


class AlertType(str, Enum):
    TAMPER_ATTEMPT = "tamper_attempt"
    UNINSTALL_ATTEMPT = "uninstall_attempt"
    SETTINGS_ACCESS = "settings_access"
    DEVICE_OFFLINE = "device_offline"
    LOW_BATTERY = "low_battery"
    GEOFENCE_BREACH = "geofence_breach"
    APP_USAGE = "app_usage"
    NOTIFICATION = "notification"
    CALL = "call"
    SMS = "sms"
    WEBSITE_VISIT = "website_visit"
    SCREENSHOT = "screenshot"
    COMMAND_FAILED = "command_failed"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertBase(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    deviceId: str
    parentId: str
    type: AlertType
    message: str = Field(max_length=500)
    severity: AlertSeverity = AlertSeverity.MEDIUM
    data: Dict[str, Any] = Field(default_factory=dict)


class AlertInDB(BaseDBModel, AlertBase):
    isRead: bool = False
    isResolved: bool = False
    resolvedAt: Optional[datetime] = None
    resolvedBy: Optional[str] = None
    acknowledged: bool = False
    acknowledgedAt: Optional[datetime] = None
    pushSent: bool = False
    emailSent: bool = False
    smsSent: bool = False


class AlertPublic(AlertInDB):
    id: PyObjectId  # 返回 "id" 而不是 "_id"

    @classmethod
    def from_alert(cls, alert: AlertInDB) -> "AlertPublic":
        return cls.model_validate(alert.model_dump())


class DeviceAlertReport(BaseModel):
    """Alert raised by the child device itself."""
    model_config = ConfigDict(use_enum_values=True)

    deviceId: str
    type: AlertType
    message: str = Field(min_length=1, max_length=500)
    severity: AlertSeverity = AlertSeverity.MEDIUM
    data: Dict[str, Any] = Field(default_factory=dict)


class MarkAlertsReadRequest(BaseModel):
    alertIds: List[PyObjectId] = Field(min_length=1)


class AlertPage(BaseModel):
    count: int
    total: int
    page: int
    pages: int
    alerts: List[AlertPublic]


class AlertStats(BaseModel):
    total: int = 0
    unread: int = 0
    bySeverity: Dict[str, int] = Field(default_factory=dict)
    byType: Dict[str, int] = Field(default_factory=dict)
