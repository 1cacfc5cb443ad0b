from datetime import timedelta

import pytest

from app.core.errors import NotFound
from app.models.alert_models import AlertType
from app.models.device_models import HeartbeatTelemetry
from app.services.event_bus import DEVICE_OFFLINE, DEVICE_ONLINE, HEARTBEAT_RECEIVED
from conftest import PARENT_ID

DEVICE = "device-1"
THRESHOLD = timedelta(minutes=15)


async def alerts_of(services, alert_type):
    await services.alert_emitter.drain()
    page = await services.alert_service.list_alerts(PARENT_ID, alert_type=alert_type)
    return page.alerts


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_heartbeat_updates_device(self, services, clock, add_device):
        await add_device(DEVICE)
        telemetry = HeartbeatTelemetry(appVersion="2.1.0", networkType="wifi", signalStrength=80)

        response = await services.presence.record_heartbeat(DEVICE, 76, True, telemetry)

        assert response.requiresAction is False
        assert response.pendingCommands == []
        device = await services.device_repo.get(DEVICE)
        assert device.isOnline is True
        assert device.lastHeartbeat == clock()
        assert device.batteryLevel == 76
        assert device.isCharging is True
        assert device.appVersion == "2.1.0"
        assert device.networkType == "wifi"

    @pytest.mark.asyncio
    async def test_heartbeat_lists_pending_without_sending(self, services, add_device):
        await add_device(DEVICE)
        command = await services.dispatch.issue(DEVICE, PARENT_ID, "vibrate", {}, "normal")

        response = await services.presence.record_heartbeat(DEVICE, 80, False)

        assert response.requiresAction is True
        assert [c.id for c in response.pendingCommands] == [command.id]
        assert (await services.store.get(command.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_unknown_or_deleted_device(self, services, add_device):
        with pytest.raises(NotFound):
            await services.presence.record_heartbeat("ghost", 50, False)
        await add_device(DEVICE, status="deleted")
        with pytest.raises(NotFound):
            await services.presence.record_heartbeat(DEVICE, 50, False)

    @pytest.mark.asyncio
    async def test_events_published(self, services, transport, add_device):
        await add_device(DEVICE)
        await services.presence.record_heartbeat(DEVICE, 50, False)
        await services.presence.record_heartbeat(DEVICE, 49, False)
        await services.events.flush()

        assert len(transport.events(HEARTBEAT_RECEIVED)) == 2
        # only the first heartbeat found the device offline
        assert len(transport.events(DEVICE_ONLINE)) == 1


class TestLowBattery:
    @pytest.mark.asyncio
    async def test_one_alert_per_episode(self, services, add_device):
        await add_device(DEVICE)
        for level in (19, 15, 12):
            await services.presence.record_heartbeat(DEVICE, level, False)

        alerts = await alerts_of(services, AlertType.LOW_BATTERY.value)
        assert len(alerts) == 1
        assert alerts[0].severity == "medium"
        assert alerts[0].data == {"batteryLevel": 19}

    @pytest.mark.asyncio
    async def test_charging_ends_the_episode(self, services, add_device):
        await add_device(DEVICE)
        await services.presence.record_heartbeat(DEVICE, 18, False)
        await services.presence.record_heartbeat(DEVICE, 18, True)
        await services.presence.record_heartbeat(DEVICE, 8, False)

        alerts = await alerts_of(services, AlertType.LOW_BATTERY.value)
        assert len(alerts) == 2
        assert sorted(a.severity for a in alerts) == ["critical", "medium"]

    @pytest.mark.asyncio
    async def test_threshold_comes_from_device_settings(self, services, add_device):
        await add_device(DEVICE, settings={"maxBatteryAlert": 10})
        await services.presence.record_heartbeat(DEVICE, 15, False)
        assert await alerts_of(services, AlertType.LOW_BATTERY.value) == []

        await services.presence.record_heartbeat(DEVICE, 10, False)
        [alert] = await alerts_of(services, AlertType.LOW_BATTERY.value)
        assert alert.severity == "critical"

    @pytest.mark.asyncio
    async def test_charging_device_never_alerts(self, services, add_device):
        await add_device(DEVICE)
        await services.presence.record_heartbeat(DEVICE, 3, True)
        assert await alerts_of(services, AlertType.LOW_BATTERY.value) == []


class TestOfflineSweep:
    @pytest.mark.asyncio
    async def test_one_alert_per_transition(self, services, clock, transport, add_device):
        await add_device(DEVICE)
        await services.presence.record_heartbeat(DEVICE, 80, False)

        clock.advance(minutes=10)
        assert await services.presence.detect_offline_devices(THRESHOLD) == 0

        clock.advance(minutes=6)
        assert await services.presence.detect_offline_devices(THRESHOLD) == 1
        clock.advance(minutes=5)
        assert await services.presence.detect_offline_devices(THRESHOLD) == 0
        clock.advance(hours=2)
        assert await services.presence.detect_offline_devices(THRESHOLD) == 0

        device = await services.device_repo.get(DEVICE)
        assert device.isOnline is False
        alerts = await alerts_of(services, AlertType.DEVICE_OFFLINE.value)
        assert len(alerts) == 1
        assert alerts[0].severity == "medium"
        await services.events.flush()
        assert len(transport.events(DEVICE_OFFLINE)) == 1

    @pytest.mark.asyncio
    async def test_new_episode_after_coming_back(self, services, clock, add_device):
        await add_device(DEVICE)
        await services.presence.record_heartbeat(DEVICE, 80, False)
        clock.advance(minutes=20)
        await services.presence.detect_offline_devices(THRESHOLD)

        await services.presence.record_heartbeat(DEVICE, 80, False)
        clock.advance(minutes=20)
        assert await services.presence.detect_offline_devices(THRESHOLD) == 1
        assert len(await alerts_of(services, AlertType.DEVICE_OFFLINE.value)) == 2

    @pytest.mark.asyncio
    async def test_fresh_heartbeat_beats_the_sweep(self, services, clock, add_device):
        await add_device(DEVICE)
        await services.presence.record_heartbeat(DEVICE, 80, False)
        clock.advance(minutes=20)

        # the sweep read the device at T1 ...
        [stale] = await services.device_repo.find_stale_online(clock() - THRESHOLD, 10)
        # ... a heartbeat lands at T2 ...
        clock.advance(seconds=1)
        await services.presence.record_heartbeat(DEVICE, 79, False)
        # ... and the flip computed from T1 must not apply
        flipped = await services.device_repo.mark_offline_if_unchanged(DEVICE, stale.lastHeartbeat, clock())

        assert flipped is False
        device = await services.device_repo.get(DEVICE)
        assert device.isOnline is True
        assert device.lastHeartbeat == clock()

    @pytest.mark.asyncio
    async def test_default_threshold(self, services, clock, add_device):
        await add_device(DEVICE)
        await services.presence.record_heartbeat(DEVICE, 80, False)
        clock.advance(minutes=16)
        assert await services.presence.detect_offline_devices() == 1

    @pytest.mark.asyncio
    async def test_never_seen_devices_are_skipped(self, services, clock, add_device):
        await add_device(DEVICE)
        clock.advance(hours=1)
        assert await services.presence.detect_offline_devices(THRESHOLD) == 0
