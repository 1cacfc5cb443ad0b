# app/services/container.py
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from app.core.config import settings
from app.db.alert_repository import InMemoryAlertRepository, MongoAlertRepository
from app.db.command_repository import InMemoryCommandRepository, MongoCommandRepository
from app.db.device_repository import InMemoryDeviceRepository, MongoDeviceRepository
from app.db.location_repository import InMemoryLocationRepository, MongoLocationRepository
from app.models.common_models import utcnow
from app.services.alert_service import AlertEmitter, AlertService
from app.services.command_store import CommandStore
from app.services.device_service import DeviceService
from app.services.dispatch_service import DispatchProtocol
from app.services.event_bus import EventBus, EventTransport, LogTransport
from app.services.location_service import LocationService
from app.services.notification_service import NotificationDispatcher
from app.services.presence_service import PresenceTracker
from app.services.scheduler import MaintenanceScheduler

logger = logging.getLogger(__name__)


class Services:
    """Everything a request handler or background job needs, wired once at startup."""

    def __init__(
        self,
        backend: str,
        transport: EventTransport,
        notifier: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ):
        if backend == "memory":
            self.device_repo = InMemoryDeviceRepository()
            self.command_repo = InMemoryCommandRepository()
            self.alert_repo = InMemoryAlertRepository()
            self.location_repo = InMemoryLocationRepository()
        else:
            self.device_repo = MongoDeviceRepository()
            self.command_repo = MongoCommandRepository()
            self.alert_repo = MongoAlertRepository()
            self.location_repo = MongoLocationRepository()

        self.clock = clock
        self.events = EventBus(transport, maxsize=settings.EVENT_QUEUE_MAXSIZE)
        self.notifier = notifier
        self.store = CommandStore(
            self.command_repo,
            clock=clock,
            max_retries=settings.COMMAND_MAX_RETRIES,
            conflict_retries=settings.STORE_CONFLICT_RETRIES,
            default_ttl=timedelta(hours=settings.COMMAND_DEFAULT_TTL_HOURS),
            critical_ttl=timedelta(hours=settings.COMMAND_CRITICAL_TTL_HOURS),
        )
        self.alert_emitter = AlertEmitter(self.alert_repo, notifier, self.events, clock=clock)
        self.alert_service = AlertService(self.alert_repo, clock=clock)
        self.dispatch = DispatchProtocol(
            self.store,
            self.device_repo,
            self.events,
            self.alert_emitter,
            escalate_failures=settings.ESCALATE_COMMAND_FAILURES,
        )
        self.presence = PresenceTracker(
            self.device_repo,
            self.store,
            self.events,
            self.alert_emitter,
            clock=clock,
            offline_threshold=timedelta(minutes=settings.OFFLINE_THRESHOLD_MINUTES),
            sweep_batch_size=settings.OFFLINE_SWEEP_BATCH_SIZE,
        )
        self.devices = DeviceService(self.device_repo, self.dispatch, self.events, clock=clock)
        self.locations = LocationService(self.device_repo, self.location_repo, self.events, clock=clock)
        self.scheduler = self._build_scheduler()

    def _build_scheduler(self) -> MaintenanceScheduler:
        scheduler = MaintenanceScheduler()
        scheduler.add_job(
            "offline-sweep", self.presence.detect_offline_devices, settings.OFFLINE_SWEEP_INTERVAL_SECONDS
        )
        scheduler.add_job(
            "command-expiry",
            lambda: self.store.expire_overdue(settings.OFFLINE_SWEEP_BATCH_SIZE),
            settings.COMMAND_EXPIRY_SWEEP_INTERVAL_SECONDS,
        )
        scheduler.add_job(
            "alert-retention",
            lambda: self.alert_service.purge_old(settings.ALERT_RETENTION_DAYS),
            settings.ALERT_RETENTION_SWEEP_INTERVAL_SECONDS,
        )
        return scheduler

    async def start(self) -> None:
        await self.events.start()
        if settings.SCHEDULER_ENABLED:
            self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.alert_emitter.drain()
        await self.events.stop()


def build_services(
    transport: Optional[EventTransport] = None,
    notifier: Optional[NotificationDispatcher] = None,
    clock: Callable[[], datetime] = utcnow,
    backend: Optional[str] = None,
) -> Services:
    backend = backend or settings.STORE_BACKEND
    logger.info("Building services on the '%s' backend", backend)
    return Services(
        backend=backend,
        transport=transport or LogTransport(),
        notifier=notifier or NotificationDispatcher.from_settings(),
        clock=clock,
    )
