"""Alert emitter rules, notification fan-out and parent alert actions."""
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from app.core.errors import NotFound, TransientStoreFailure
from app.db.alert_repository import InMemoryAlertRepository
from app.services.alert_service import AlertEmitter, AlertService
from app.services.event_bus import NEW_ALERT, EventBus, parent_channel
from app.services.notification_service import NotificationDispatcher
from conftest import OTHER_PARENT_ID, PARENT_ID, RecordingTransport

DEVICE = "device-1"


def recording_dispatcher(status_code: int = 200, sms: bool = False):
    """NotificationDispatcher backed by an httpx MockTransport; returns (dispatcher, requests)."""
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.url.path, json.loads(request.content)))
        return httpx.Response(status_code, json={"ok": status_code < 400})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    dispatcher = NotificationDispatcher(
        push_url="https://gateway.test/push",
        email_url="https://gateway.test/email",
        sms_url="https://gateway.test/sms" if sms else None,
        client=client,
    )
    return dispatcher, requests


def make_emitter(clock, notifier, repo=None):
    repo = repo or InMemoryAlertRepository()
    transport = RecordingTransport()
    emitter = AlertEmitter(repo, notifier, EventBus(transport), clock=clock)
    return emitter, repo, transport


async def emit(emitter, severity, parent_id=PARENT_ID, alert_type="tamper_attempt"):
    return await emitter.emit(
        device_id=DEVICE, parent_id=parent_id, alert_type=alert_type, message="Something happened", severity=severity
    )


class TestNotificationRules:
    @pytest.mark.asyncio
    async def test_critical_goes_to_push_and_email(self, clock):
        notifier, requests = recording_dispatcher()
        emitter, repo, _ = make_emitter(clock, notifier)

        alert = await emit(emitter, "critical")
        await emitter.drain()

        assert [path for path, _ in requests] == ["/push", "/email"]
        assert requests[0][1]["userId"] == PARENT_ID
        stored = await repo.get_for_parent(alert.id, PARENT_ID)
        assert (stored.pushSent, stored.emailSent, stored.smsSent) == (True, True, False)

    @pytest.mark.asyncio
    async def test_high_goes_to_push_only(self, clock):
        notifier, requests = recording_dispatcher()
        emitter, repo, _ = make_emitter(clock, notifier)

        alert = await emit(emitter, "high")
        await emitter.drain()

        assert [path for path, _ in requests] == ["/push"]
        stored = await repo.get_for_parent(alert.id, PARENT_ID)
        assert (stored.pushSent, stored.emailSent) == (True, False)

    @pytest.mark.asyncio
    async def test_medium_and_low_are_not_pushed(self, clock):
        notifier, requests = recording_dispatcher()
        emitter, _, _ = make_emitter(clock, notifier)

        await emit(emitter, "medium")
        await emit(emitter, "low")
        await emitter.drain()
        assert requests == []

    @pytest.mark.asyncio
    async def test_sms_only_with_gateway(self, clock):
        notifier, requests = recording_dispatcher(sms=True)
        emitter, repo, _ = make_emitter(clock, notifier)

        alert = await emit(emitter, "critical")
        await emitter.drain()

        assert [path for path, _ in requests] == ["/push", "/email", "/sms"]
        assert (await repo.get_for_parent(alert.id, PARENT_ID)).smsSent is True

    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_flags_unset(self, clock):
        notifier, requests = recording_dispatcher(status_code=502)
        emitter, repo, _ = make_emitter(clock, notifier)

        alert = await emit(emitter, "critical")
        await emitter.drain()

        assert len(requests) == 2
        stored = await repo.get_for_parent(alert.id, PARENT_ID)
        assert (stored.pushSent, stored.emailSent) == (False, False)

    @pytest.mark.asyncio
    async def test_already_sent_flags_are_not_resent(self, clock):
        notifier = AsyncMock(spec=NotificationDispatcher)
        notifier.sms_url = None
        emitter, repo, _ = make_emitter(clock, notifier)
        alert = await emit(emitter, "critical")
        await emitter.drain()
        notifier.reset_mock()

        await emitter._notify(alert.model_copy(update={"pushSent": True, "emailSent": True}))
        notifier.send_push.assert_not_awaited()
        notifier.send_email.assert_not_awaited()


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_notifier_exception_is_swallowed(self, clock):
        notifier = AsyncMock(spec=NotificationDispatcher)
        notifier.sms_url = None
        notifier.send_push.side_effect = RuntimeError("gateway exploded")
        emitter, repo, _ = make_emitter(clock, notifier)

        alert = await emit(emitter, "critical")
        await emitter.drain()

        assert alert is not None
        assert (await repo.get_for_parent(alert.id, PARENT_ID)).pushSent is False

    @pytest.mark.asyncio
    async def test_store_failure_returns_none(self, clock):
        repo = InMemoryAlertRepository()
        repo.insert = AsyncMock(side_effect=TransientStoreFailure("mongo down"))
        notifier = AsyncMock(spec=NotificationDispatcher)
        emitter, _, transport = make_emitter(clock, notifier, repo=repo)

        assert await emit(emitter, "critical") is None
        notifier.send_push.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_new_alert_event(self, clock):
        emitter, _, transport = make_emitter(clock, NotificationDispatcher())
        alert = await emit(emitter, "low")
        await emitter.events.flush()

        [(topic, message)] = transport.events(NEW_ALERT)
        assert topic == parent_channel(PARENT_ID)
        assert message["data"]["id"] == alert.id


class TestAlertService:
    @pytest.fixture
    def repo(self):
        return InMemoryAlertRepository()

    @pytest.fixture
    def emitter(self, repo, clock):
        return make_emitter(clock, NotificationDispatcher(), repo=repo)[0]

    @pytest.fixture
    def service(self, repo, clock):
        return AlertService(repo, clock=clock)

    @pytest.mark.asyncio
    async def test_list_filters_and_pagination(self, emitter, service, clock):
        for i in range(3):
            await emit(emitter, "low")
            clock.advance(seconds=1)
        await emit(emitter, "high", alert_type="uninstall_attempt")
        await emit(emitter, "high", parent_id=OTHER_PARENT_ID)

        page = await service.list_alerts(PARENT_ID, limit=2)
        assert (page.total, page.count, page.pages) == (4, 2, 2)
        assert page.alerts[0].type == "uninstall_attempt"

        high = await service.list_alerts(PARENT_ID, severity="high")
        assert high.total == 1

    @pytest.mark.asyncio
    async def test_read_resolve_acknowledge(self, emitter, service, clock):
        alert = await emit(emitter, "medium")
        assert await service.unread_count(PARENT_ID) == 1

        assert (await service.mark_read(alert.id, PARENT_ID)).isRead is True
        assert await service.unread_count(PARENT_ID) == 0

        resolved = await service.resolve(alert.id, PARENT_ID)
        assert resolved.isResolved is True
        assert resolved.resolvedAt == clock()
        assert resolved.resolvedBy == PARENT_ID

        acknowledged = await service.acknowledge(alert.id, PARENT_ID)
        assert acknowledged.acknowledged is True

    @pytest.mark.asyncio
    async def test_mark_many_read_only_touches_own_alerts(self, emitter, service):
        mine = await emit(emitter, "low")
        theirs = await emit(emitter, "low", parent_id=OTHER_PARENT_ID)

        assert await service.mark_many_read([mine.id, theirs.id], PARENT_ID) == 1
        assert await service.unread_count(OTHER_PARENT_ID) == 1

    @pytest.mark.asyncio
    async def test_foreign_alert_is_not_found(self, emitter, service):
        theirs = await emit(emitter, "low", parent_id=OTHER_PARENT_ID)
        with pytest.raises(NotFound):
            await service.get_alert(theirs.id, PARENT_ID)
        with pytest.raises(NotFound):
            await service.delete(theirs.id, PARENT_ID)

    @pytest.mark.asyncio
    async def test_stats(self, emitter, service, clock):
        await emit(emitter, "low")
        clock.advance(days=10)
        await emit(emitter, "critical")
        await emit(emitter, "critical", alert_type="uninstall_attempt")

        stats = await service.stats(PARENT_ID, days=7)
        assert stats.total == 2
        assert stats.unread == 2
        assert stats.bySeverity == {"critical": 2}
        assert stats.byType == {"tamper_attempt": 1, "uninstall_attempt": 1}

    @pytest.mark.asyncio
    async def test_retention_keeps_serious_alerts(self, emitter, service, clock):
        old_low = await emit(emitter, "low")
        old_high = await emit(emitter, "high")
        clock.advance(days=91)
        fresh = await emit(emitter, "low")

        assert await service.purge_old(90) == 1
        with pytest.raises(NotFound):
            await service.get_alert(old_low.id, PARENT_ID)
        assert (await service.get_alert(old_high.id, PARENT_ID)).id == old_high.id
        assert (await service.get_alert(fresh.id, PARENT_ID)).id == fresh.id
