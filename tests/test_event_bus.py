import asyncio
from datetime import datetime

import pytest

from app.services.event_bus import NEW_ALERT, EventBus, parent_channel
from app.services.scheduler import MaintenanceScheduler
from conftest import PARENT_ID, RecordingTransport


class ExplodingTransport:
    def __init__(self):
        self.calls = 0

    async def send(self, topic, payload):
        self.calls += 1
        raise ConnectionError("broker went away")


class TestEventBus:
    @pytest.mark.asyncio
    async def test_publish_is_queued_until_flushed(self):
        transport = RecordingTransport()
        bus = EventBus(transport)

        assert bus.publish(parent_channel(PARENT_ID), NEW_ALERT, {"at": datetime(2024, 3, 1)}) is True
        assert bus.pending == 1
        assert transport.sent == []

        await bus.flush()
        [(topic, message)] = transport.sent
        assert topic == "parents/parent-1/events"
        assert message["event"] == NEW_ALERT
        # data is made JSON-safe on publish
        assert message["data"] == {"at": "2024-03-01T00:00:00"}
        assert bus.pending == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_without_raising(self):
        transport = RecordingTransport()
        bus = EventBus(transport, maxsize=2)

        results = [bus.publish("t", "e", {"n": i}) for i in range(3)]

        assert results == [True, True, False]
        await bus.flush()
        assert [m["data"]["n"] for _, m in transport.sent] == [0, 1]

    @pytest.mark.asyncio
    async def test_failing_transport_is_contained(self):
        transport = ExplodingTransport()
        bus = EventBus(transport)
        bus.publish("t", "e", {})
        bus.publish("t", "e", {})

        await bus.flush()
        assert transport.calls == 2

    @pytest.mark.asyncio
    async def test_worker_delivers_in_background(self):
        transport = RecordingTransport()
        bus = EventBus(transport)
        await bus.start()
        bus.publish("t", "e", {"n": 1})

        for _ in range(10):
            if transport.sent:
                break
            await asyncio.sleep(0)
        await bus.stop()

        assert len(transport.sent) == 1


class TestScheduler:
    @pytest.mark.asyncio
    async def test_run_job_returns_result(self):
        scheduler = MaintenanceScheduler()

        async def sweep():
            return 3

        scheduler.add_job("sweep", sweep, 60)
        assert await scheduler.run_job("sweep") == 3

    @pytest.mark.asyncio
    async def test_failing_job_is_logged_not_raised(self, caplog):
        scheduler = MaintenanceScheduler()

        async def broken():
            raise RuntimeError("store unavailable")

        scheduler.add_job("broken", broken, 60)
        assert await scheduler.run_job("broken") is None
        assert "Maintenance job 'broken' failed" in caplog.text

    @pytest.mark.asyncio
    async def test_loops_keep_running_after_failure(self):
        scheduler = MaintenanceScheduler()
        runs = []

        async def flaky():
            runs.append(len(runs))
            if len(runs) == 1:
                raise RuntimeError("first run fails")

        scheduler.add_job("flaky", flaky, 0)
        scheduler.start()
        for _ in range(50):
            if len(runs) >= 3:
                break
            await asyncio.sleep(0)
        await scheduler.stop()

        assert len(runs) >= 3

    def test_services_register_maintenance_jobs(self, services):
        assert services.scheduler.job_names == ["offline-sweep", "command-expiry", "alert-retention"]

    @pytest.mark.asyncio
    async def test_command_expiry_job(self, services, clock, add_device):
        await add_device("device-1")
        command = await services.dispatch.issue("device-1", PARENT_ID, "vibrate", {}, "normal")
        clock.advance(hours=25)

        assert await services.scheduler.run_job("command-expiry") == 1
        assert (await services.store.get(command.id)).status == "expired"
