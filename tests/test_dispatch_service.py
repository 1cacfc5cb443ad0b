from datetime import timedelta

import pytest

from app.core.errors import Forbidden, InvalidPayload, NotFound
from app.models.alert_models import AlertType
from app.models.command_models import CommandStatus
from app.services.event_bus import COMMAND_RESULT, NEW_COMMAND, device_channel, parent_channel
from conftest import OTHER_PARENT_ID, PARENT_ID

DEVICE = "device-1"


class TestIssue:
    @pytest.mark.asyncio
    async def test_issue_creates_pending_and_notifies_device(self, services, transport, add_device):
        await add_device(DEVICE)
        command = await services.dispatch.issue(DEVICE, PARENT_ID, "lock_device", {"reason": "bedtime"}, "critical")

        assert command.status == CommandStatus.PENDING.value
        await services.events.flush()
        [(topic, message)] = transport.events(NEW_COMMAND)
        assert topic == device_channel(DEVICE)
        assert message["data"]["id"] == command.id
        assert message["data"]["priority"] == "critical"

    @pytest.mark.asyncio
    async def test_unknown_device(self, services):
        with pytest.raises(NotFound):
            await services.dispatch.issue("nope", PARENT_ID, "vibrate", {}, "normal")

    @pytest.mark.asyncio
    async def test_deleted_device(self, services, add_device):
        await add_device(DEVICE, status="deleted")
        with pytest.raises(NotFound):
            await services.dispatch.issue(DEVICE, PARENT_ID, "vibrate", {}, "normal")

    @pytest.mark.asyncio
    async def test_device_of_another_parent(self, services, add_device):
        await add_device(DEVICE, parent_id=OTHER_PARENT_ID)
        with pytest.raises(Forbidden):
            await services.dispatch.issue(DEVICE, PARENT_ID, "vibrate", {}, "normal")

    @pytest.mark.asyncio
    async def test_bad_payload(self, services, add_device):
        await add_device(DEVICE)
        with pytest.raises(InvalidPayload):
            await services.dispatch.issue(DEVICE, PARENT_ID, "set_time_limit", {"dailyLimitMinutes": -1}, "normal")


class TestPull:
    @pytest.mark.asyncio
    async def test_pull_marks_sent_and_is_repeatable(self, services, add_device):
        await add_device(DEVICE)
        command = await services.dispatch.issue(DEVICE, PARENT_ID, "vibrate", {}, "normal")

        first = await services.dispatch.pull_pending(DEVICE)
        second = await services.dispatch.pull_pending(DEVICE)

        assert [c.id for c in first] == [command.id]
        assert [c.id for c in second] == [command.id]
        assert second[0].status == CommandStatus.SENT.value

    @pytest.mark.asyncio
    async def test_pull_publishes_nothing(self, services, transport, add_device):
        await add_device(DEVICE)
        await services.dispatch.issue(DEVICE, PARENT_ID, "vibrate", {}, "normal")
        await services.events.flush()
        transport.sent.clear()

        await services.dispatch.pull_pending(DEVICE)
        await services.events.flush()
        assert transport.sent == []


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_critical_lock_fails_once_and_is_rescheduled(self, services, clock, add_device):
        await add_device(DEVICE)
        low = await services.dispatch.issue(DEVICE, PARENT_ID, "show_message", {"message": "hi"}, "low")
        clock.advance(seconds=1)
        normal = await services.dispatch.issue(DEVICE, PARENT_ID, "vibrate", {}, "normal")
        clock.advance(seconds=1)
        lock = await services.dispatch.issue(DEVICE, PARENT_ID, "lock_device", {}, "critical")

        pulled = await services.dispatch.pull_pending(DEVICE)
        assert [c.id for c in pulled] == [lock.id, normal.id, low.id]

        await services.dispatch.acknowledge(lock.id, device_id=DEVICE)
        outcome = await services.dispatch.report_result(
            lock.id, False, "device admin disabled", device_id=DEVICE
        )

        assert outcome.status == CommandStatus.PENDING.value
        assert outcome.retryCount == 1
        assert outcome.nextRetryAt == clock() + timedelta(seconds=2)
        assert outcome.ignored is False

    @pytest.mark.asyncio
    async def test_success_publishes_result_to_parent(self, services, transport, add_device):
        await add_device(DEVICE)
        command = await services.dispatch.issue(DEVICE, PARENT_ID, "get_location", {}, "normal")
        await services.dispatch.pull_pending(DEVICE)
        await services.dispatch.acknowledge(command.id, device_id=DEVICE)
        await services.dispatch.mark_executing(command.id, device_id=DEVICE)
        outcome = await services.dispatch.report_result(command.id, True, "located", device_id=DEVICE)

        assert outcome.status == CommandStatus.COMPLETED.value
        await services.events.flush()
        [(topic, message)] = transport.events(COMMAND_RESULT)
        assert topic == parent_channel(PARENT_ID)
        assert message["data"]["commandId"] == command.id
        assert message["data"]["success"] is True
        assert message["data"]["message"] == "located"

    @pytest.mark.asyncio
    async def test_retry_transition_publishes_no_result(self, services, transport, add_device):
        await add_device(DEVICE)
        command = await services.dispatch.issue(DEVICE, PARENT_ID, "vibrate", {}, "normal")
        await services.dispatch.pull_pending(DEVICE)
        await services.dispatch.report_result(command.id, False, "busy", device_id=DEVICE)

        await services.events.flush()
        assert transport.events(COMMAND_RESULT) == []

    @pytest.mark.asyncio
    async def test_final_failure_escalates_to_alert(self, services, clock, add_device):
        await add_device(DEVICE)
        command = await services.dispatch.issue(DEVICE, PARENT_ID, "lock_device", {}, "critical")
        for _ in range(6):
            clock.advance(seconds=64)
            await services.dispatch.pull_pending(DEVICE)
            outcome = await services.dispatch.report_result(command.id, False, "no admin", device_id=DEVICE)
        assert outcome.status == CommandStatus.FAILED.value

        await services.alert_emitter.drain()
        page = await services.alert_service.list_alerts(PARENT_ID, alert_type=AlertType.COMMAND_FAILED.value)
        assert page.total == 1
        alert = page.alerts[0]
        assert alert.severity == "high"
        assert alert.data["commandId"] == command.id
        assert alert.pushSent is True


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_creates_new_command(self, services, clock, transport, add_device):
        await add_device(DEVICE)
        original = await services.dispatch.issue(DEVICE, PARENT_ID, "set_time_limit", {"dailyLimitMinutes": 90}, "high")
        for _ in range(6):
            clock.advance(seconds=64)
            await services.dispatch.pull_pending(DEVICE)
            await services.dispatch.report_result(original.id, False, "denied", device_id=DEVICE)

        clone = await services.dispatch.retry(original.id, PARENT_ID)
        assert clone.id != original.id
        assert clone.retryCount == 0
        assert clone.type == original.type
        assert clone.payload == original.payload == {"dailyLimitMinutes": 90}
        assert clone.priority == original.priority
        assert clone.deviceId == original.deviceId

        await services.events.flush()
        assert [m["data"]["id"] for _, m in transport.events(NEW_COMMAND)] == [original.id, clone.id]

    @pytest.mark.asyncio
    async def test_retry_of_non_failed_command(self, services, add_device):
        await add_device(DEVICE)
        command = await services.dispatch.issue(DEVICE, PARENT_ID, "vibrate", {}, "normal")
        with pytest.raises(NotFound):
            await services.dispatch.retry(command.id, PARENT_ID)

    @pytest.mark.asyncio
    async def test_retry_by_other_parent(self, services, add_device):
        await add_device(DEVICE)
        command = await services.dispatch.issue(DEVICE, PARENT_ID, "vibrate", {}, "normal")
        with pytest.raises(NotFound):
            await services.dispatch.retry(command.id, OTHER_PARENT_ID)


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_newest_first_with_filter(self, services, clock, add_device):
        await add_device(DEVICE)
        first = await services.dispatch.issue(DEVICE, PARENT_ID, "vibrate", {}, "normal")
        clock.advance(seconds=1)
        second = await services.dispatch.issue(DEVICE, PARENT_ID, "play_sound", {}, "normal")
        await services.dispatch.cancel(first.id, PARENT_ID)

        page = await services.dispatch.history(DEVICE, PARENT_ID)
        assert [c.id for c in page.commands] == [second.id, first.id]
        assert page.total == 2

        expired = await services.dispatch.history(DEVICE, PARENT_ID, status=CommandStatus.EXPIRED.value)
        assert [c.id for c in expired.commands] == [first.id]

    @pytest.mark.asyncio
    async def test_history_of_foreign_device(self, services, add_device):
        await add_device(DEVICE, parent_id=OTHER_PARENT_ID)
        with pytest.raises(NotFound):
            await services.dispatch.history(DEVICE, PARENT_ID)
