"""
Shared fixtures.

The environment is pinned before any app module is imported: settings are
read at import time, so tests always run on the in-memory backend with an
HS256 secret and no background scheduler.
"""
import os

os.environ["STORE_BACKEND"] = "memory"
os.environ["ALGORITHM"] = "HS256"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ.pop("MQTT_BROKER_HOST", None)
for gateway in ("PUSH_GATEWAY_URL", "EMAIL_GATEWAY_URL", "SMS_GATEWAY_URL"):
    os.environ.pop(gateway, None)

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Any, Dict, List, Tuple  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.core.security import create_access_token  # noqa: E402
from app.models.device_models import DeviceInDB  # noqa: E402
from app.services.container import build_services  # noqa: E402
from app.services.notification_service import NotificationDispatcher  # noqa: E402

PARENT_ID = "parent-1"
OTHER_PARENT_ID = "parent-2"
T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingTransport:
    """Event transport that keeps everything it is handed."""

    def __init__(self):
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    async def send(self, topic: str, payload: Dict[str, Any]) -> None:
        self.sent.append((topic, payload))

    def events(self, name: str) -> List[Tuple[str, Dict[str, Any]]]:
        return [(topic, payload) for topic, payload in self.sent if payload["event"] == name]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def services(clock, transport):
    return build_services(transport=transport, notifier=NotificationDispatcher(), clock=clock, backend="memory")


@pytest.fixture
def add_device(services, clock):
    """Insert a device straight into the repository."""

    async def _add(device_id: str = "device-1", parent_id: str = PARENT_ID, **fields) -> DeviceInDB:
        device = DeviceInDB(
            deviceId=device_id,
            parentId=parent_id,
            childId="child-1",
            createdAt=clock(),
            updatedAt=clock(),
            **fields,
        )
        await services.device_repo.insert(device)
        return device

    return _add


# --- HTTP ---

@pytest.fixture
def client():
    from app.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def parent_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(PARENT_ID)}"}


@pytest.fixture
def other_parent_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(OTHER_PARENT_ID)}"}


@pytest.fixture
def linked_device(client, parent_headers) -> Dict[str, Any]:
    """Links a device over the API; returns its id and the device auth headers."""
    response = client.post(
        "/api/v1/devices/link",
        json={"deviceId": "pixel-7-0001", "deviceName": "Sam's phone"},
        headers=parent_headers,
    )
    assert response.status_code == 201, response.text
    body = response.json()
    return {
        "deviceId": body["device"]["deviceId"],
        "headers": {"X-Device-Id": body["device"]["deviceId"], "X-Device-Token": body["deviceToken"]},
    }
