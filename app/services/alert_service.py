# app/services/alert_service.py
import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from app.core.errors import NotFound
from app.db.alert_repository import AlertRepository
from app.models.alert_models import (
    AlertInDB,
    AlertPage,
    AlertPublic,
    AlertSeverity,
    AlertStats,
    AlertType,
    DeviceAlertReport,
)
from app.models.command_models import CommandInDB, CommandPriority
from app.models.common_models import utcnow
from app.models.device_models import DeviceInDB
from app.services.event_bus import NEW_ALERT, EventBus, parent_channel
from app.services.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

PUSH_SEVERITIES = (AlertSeverity.HIGH.value, AlertSeverity.CRITICAL.value)
LOW_BATTERY_CRITICAL_LEVEL = 10
# retention sweep keeps high/critical alerts
PURGEABLE_SEVERITIES = (AlertSeverity.LOW.value, AlertSeverity.MEDIUM.value)


class AlertEmitter:
    """
    Turns system and device events into Alert records and hands them to the
    notification fan-out.

    ``emit`` never raises: the alert insert is isolated with its own error
    handling, and notification delivery runs as a background task so the
    caller's state transition is never held up or rolled back by it.
    """

    def __init__(
        self,
        alerts: AlertRepository,
        notifier: NotificationDispatcher,
        events: EventBus,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.alerts = alerts
        self.notifier = notifier
        self.events = events
        self.clock = clock
        self._tasks: Set[asyncio.Task] = set()

    async def emit(
        self,
        *,
        device_id: str,
        parent_id: str,
        alert_type: str,
        message: str,
        severity: str = AlertSeverity.MEDIUM.value,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[AlertInDB]:
        now = self.clock()
        alert = AlertInDB(
            deviceId=device_id,
            parentId=str(parent_id),
            type=alert_type,
            message=message[:500],
            severity=severity,
            data=data or {},
            createdAt=now,
            updatedAt=now,
        )
        try:
            await self.alerts.insert(alert)
        except Exception:
            logger.exception("Failed to store %s alert for device %s", alert_type, device_id)
            return None

        logger.info("Alert created: %s (%s) for device %s", alert.type, alert.severity, device_id)
        self.events.publish(parent_channel(alert.parentId), NEW_ALERT, AlertPublic.from_alert(alert).model_dump())
        self._spawn(self._notify(alert))
        return alert

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight notification tasks (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _notify(self, alert: AlertInDB) -> None:
        title = f"Alert: {alert.type.replace('_', ' ')}"
        flags: Dict[str, bool] = {}
        try:
            if alert.severity in PUSH_SEVERITIES and not alert.pushSent:
                if await self.notifier.send_push(alert.parentId, title, alert.message, {"alertId": alert.id}):
                    flags["pushSent"] = True
            if alert.severity == AlertSeverity.CRITICAL.value:
                if not alert.emailSent and await self.notifier.send_email(
                    alert.parentId,
                    f"CRITICAL ALERT: {alert.type.replace('_', ' ')}",
                    alert.message,
                    f"<h2>Critical Alert</h2><p>{alert.message}</p>",
                ):
                    flags["emailSent"] = True
                if self.notifier.sms_url and not alert.smsSent:
                    if await self.notifier.send_sms(alert.parentId, alert.message):
                        flags["smsSent"] = True
            if flags:
                await self.alerts.set_flags(alert.id, flags)
        except Exception:
            logger.exception("Error sending notifications for alert %s", alert.id)

    # --- rules ---

    async def device_offline(self, device: DeviceInDB, threshold: timedelta, offline_since: datetime) -> Optional[AlertInDB]:
        minutes = int(threshold.total_seconds() // 60)
        return await self.emit(
            device_id=device.deviceId,
            parent_id=device.parentId,
            alert_type=AlertType.DEVICE_OFFLINE.value,
            message=f"Device {device.deviceName} has been offline for more than {minutes} minutes",
            severity=AlertSeverity.MEDIUM.value,
            data={"lastHeartbeat": device.lastHeartbeat, "offlineSince": offline_since},
        )

    async def low_battery(self, device: DeviceInDB, battery_level: int) -> Optional[AlertInDB]:
        severity = AlertSeverity.CRITICAL if battery_level <= LOW_BATTERY_CRITICAL_LEVEL else AlertSeverity.MEDIUM
        return await self.emit(
            device_id=device.deviceId,
            parent_id=device.parentId,
            alert_type=AlertType.LOW_BATTERY.value,
            message=f"Low battery alert: {battery_level}% remaining",
            severity=severity.value,
            data={"batteryLevel": battery_level},
        )

    async def command_failed(self, command: CommandInDB) -> Optional[AlertInDB]:
        urgent = command.priority in (CommandPriority.HIGH.value, CommandPriority.CRITICAL.value)
        return await self.emit(
            device_id=command.deviceId,
            parent_id=command.parentId,
            alert_type=AlertType.COMMAND_FAILED.value,
            message=(
                f"Command '{command.type}' failed on device {command.deviceId} "
                f"after {command.retryCount} retries: {command.failureReason or 'unknown error'}"
            ),
            severity=AlertSeverity.HIGH.value if urgent else AlertSeverity.MEDIUM.value,
            data={
                "commandId": command.id,
                "commandType": command.type,
                "retryCount": command.retryCount,
                "failureReason": command.failureReason,
            },
        )

    async def device_reported(self, device: DeviceInDB, report: DeviceAlertReport) -> Optional[AlertInDB]:
        return await self.emit(
            device_id=device.deviceId,
            parent_id=device.parentId,
            alert_type=report.type,
            message=report.message,
            severity=report.severity,
            data=report.data,
        )


class AlertService:
    """Parent-side alert actions: listing, read/resolve/acknowledge, stats, retention."""

    def __init__(self, alerts: AlertRepository, clock: Callable[[], datetime] = utcnow):
        self.alerts = alerts
        self.clock = clock

    async def list_alerts(
        self,
        parent_id: str,
        *,
        alert_type: Optional[str] = None,
        severity: Optional[str] = None,
        is_read: Optional[bool] = None,
        device_id: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> AlertPage:
        filters = {"type": alert_type, "severity": severity, "isRead": is_read, "deviceId": device_id}
        alerts, total = await self.alerts.list_for_parent(parent_id, filters, skip=(page - 1) * limit, limit=limit)
        return AlertPage(
            count=len(alerts),
            total=total,
            page=page,
            pages=math.ceil(total / limit) if limit else 0,
            alerts=[AlertPublic.from_alert(a) for a in alerts],
        )

    async def get_alert(self, alert_id: str, parent_id: str) -> AlertInDB:
        alert = await self.alerts.get_for_parent(alert_id, parent_id)
        if not alert:
            raise NotFound("Alert not found")
        return alert

    async def _update(self, alert_id: str, parent_id: str, updates: Dict[str, Any]) -> AlertInDB:
        alert = await self.alerts.update_for_parent(alert_id, parent_id, {**updates, "updatedAt": self.clock()})
        if not alert:
            raise NotFound("Alert not found")
        return alert

    async def mark_read(self, alert_id: str, parent_id: str) -> AlertInDB:
        return await self._update(alert_id, parent_id, {"isRead": True})

    async def mark_many_read(self, alert_ids: List[str], parent_id: str) -> int:
        return await self.alerts.mark_read_many(alert_ids, parent_id)

    async def resolve(self, alert_id: str, parent_id: str) -> AlertInDB:
        existing = await self.get_alert(alert_id, parent_id)
        if existing.isResolved:
            return existing
        return await self._update(alert_id, parent_id, {
            "isResolved": True,
            "resolvedAt": self.clock(),
            "resolvedBy": str(parent_id),
        })

    async def acknowledge(self, alert_id: str, parent_id: str) -> AlertInDB:
        existing = await self.get_alert(alert_id, parent_id)
        if existing.acknowledged:
            return existing
        return await self._update(alert_id, parent_id, {"acknowledged": True, "acknowledgedAt": self.clock()})

    async def delete(self, alert_id: str, parent_id: str) -> None:
        if not await self.alerts.delete_for_parent(alert_id, parent_id):
            raise NotFound("Alert not found")

    async def stats(self, parent_id: str, days: int = 7) -> AlertStats:
        return await self.alerts.stats(parent_id, self.clock() - timedelta(days=days))

    async def unread_count(self, parent_id: str) -> int:
        return await self.alerts.count_unread(parent_id)

    async def purge_old(self, retention_days: int) -> int:
        deleted = await self.alerts.delete_older_than(
            self.clock() - timedelta(days=retention_days), PURGEABLE_SEVERITIES
        )
        logger.info("Cleaned up %s old alerts", deleted)
        return deleted
