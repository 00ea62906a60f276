"""Tests for messaging payloads, inbound parsing and the WebSocket hub.

See Also:
    - backend/geoengine/services/messaging.py for the implementation.
"""

from __future__ import annotations

import asyncio
import datetime
from typing import Any

import fastapi
import pytest

from geoengine.services import messaging

STAMP = datetime.datetime(2024, 5, 1, 8, 30, tzinfo=datetime.UTC)


class FakeWebSocket:
    """Records frames; optionally fails every send."""

    def __init__(self, error: Exception | None = None) -> None:
        self.frames: list[dict[str, Any]] = []
        self.error = error

    async def send_json(self, data: dict[str, Any]) -> None:
        if self.error is not None:
            raise self.error
        self.frames.append(data)


def test_device_position_payload() -> None:
    position = messaging.DevicePosition(
        device_id="d1",
        device_code="truck-1",
        device_name="Truck 1",
        longitude=106.7,
        latitude=10.77,
        timestamp=STAMP,
    )
    assert position.to_payload() == {
        "deviceId": "d1",
        "deviceCode": "truck-1",
        "deviceName": "Truck 1",
        "longitude": 106.7,
        "latitude": 10.77,
        "timestamp": "2024-05-01T08:30:00+00:00",
    }


def test_geofence_event_payload() -> None:
    event = messaging.GeofenceEvent(
        device_id="d1",
        device_code="truck-1",
        geofence_id="g1",
        geofence_name="Depot",
        event_type=messaging.GeofenceEventType.EXIT,
        longitude=106.7,
        latitude=10.77,
        timestamp=STAMP,
    )
    payload = event.to_payload()
    assert payload["eventType"] == "EXIT"
    assert payload["geofenceName"] == "Depot"
    assert payload["timestamp"] == "2024-05-01T08:30:00+00:00"


@pytest.mark.parametrize(
    "coordinates",
    [
        {"lng": 106.7, "lat": 10.77},
        {"longitude": 106.7, "latitude": 10.77},
        {"lng": "106.7", "latitude": "10.77"},
    ],
)
def test_parse_position_payload(coordinates: dict[str, Any]) -> None:
    message = messaging.parse_position_payload(
        {"deviceCode": "truck-1", "coordinates": coordinates}
    )
    assert message == ("truck-1", 106.7, 10.77)


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"coordinates": {"lng": 1, "lat": 2}},
        {"deviceCode": "", "coordinates": {"lng": 1, "lat": 2}},
        {"deviceCode": "truck-1"},
        {"deviceCode": "truck-1", "coordinates": {"lng": 1}},
        {"deviceCode": "truck-1", "coordinates": {"lng": "x", "lat": 2}},
        {"deviceCode": "truck-1", "coordinates": {"lng": True, "lat": 2}},
        {"deviceCode": "truck-1", "coordinates": {"lng": "nan", "lat": 2}},
    ],
)
def test_parse_position_payload_rejects(payload: Any) -> None:
    with pytest.raises(messaging.InvalidPositionMessageError):
        messaging.parse_position_payload(payload)


def test_in_memory_publisher_filters_by_destination() -> None:
    publisher = messaging.InMemoryPublisher()

    async def scenario() -> None:
        await publisher.publish("/topic/a", {"n": 1})
        await publisher.publish("/topic/b", {"n": 2})
        await publisher.publish("/topic/a", {"n": 3})

    asyncio.run(scenario())
    assert publisher.to("/topic/a") == [{"n": 1}, {"n": 3}]


def test_hub_delivers_to_subscribers_of_destination() -> None:
    """Frames reach only sockets subscribed to the destination."""
    hub = messaging.WebSocketHub()
    devices = FakeWebSocket()
    uploads = FakeWebSocket()

    async def scenario() -> None:
        await hub.subscribe("/topic/devices", devices)
        await hub.subscribe("/topic/uploads", uploads)
        await hub.publish("/topic/devices", {"deviceCode": "truck-1"})
        await hub.publish("/topic/nobody", {"ignored": True})

    asyncio.run(scenario())
    assert devices.frames == [
        {
            "destination": "/topic/devices",
            "payload": {"deviceCode": "truck-1"},
        }
    ]
    assert uploads.frames == []


@pytest.mark.parametrize(
    "error",
    [RuntimeError("closed"), fastapi.WebSocketDisconnect(code=1001)],
)
def test_hub_drops_failing_socket(error: Exception) -> None:
    """A socket whose send fails is removed; others still receive."""
    hub = messaging.WebSocketHub()
    healthy = FakeWebSocket()
    broken = FakeWebSocket(error)

    async def scenario() -> None:
        for socket in (healthy, broken):
            await hub.subscribe("/topic/devices", socket)
        await hub.subscribe("/topic/uploads", broken)
        await hub.publish("/topic/devices", {"n": 1})
        await hub.publish("/topic/devices", {"n": 2})

    asyncio.run(scenario())
    assert [f["payload"]["n"] for f in healthy.frames] == [1, 2]
    assert hub.subscriber_count("/topic/devices") == 1
    assert hub.subscriber_count("/topic/uploads") == 0


def test_hub_unsubscribe() -> None:
    hub = messaging.WebSocketHub()
    socket = FakeWebSocket()

    async def scenario() -> None:
        await hub.subscribe("/topic/devices", socket)
        await hub.unsubscribe(socket)
        await hub.publish("/topic/devices", {"n": 1})

    asyncio.run(scenario())
    assert socket.frames == []
    assert hub.subscriber_count("/topic/devices") == 0
