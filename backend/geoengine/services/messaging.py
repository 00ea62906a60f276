"""Push-messaging payloads and publishers for real-time broadcasts.

Messages are addressed by destination name (``/topic/devices``,
``/topic/geofences.{id}``, ...) and carry a JSON-serialisable payload.
``WebSocketHub`` fans messages out to WebSocket clients subscribed to a
destination; ``InMemoryPublisher`` records them for tests.

Example:
    >>> from geoengine.services import messaging
    >>> publisher = messaging.InMemoryPublisher()
    >>> await publisher.publish("/topic/devices", {"deviceCode": "truck-1"})
    >>> publisher.messages
    [('/topic/devices', {'deviceCode': 'truck-1'})]
"""

from __future__ import annotations

import asyncio
import collections
import dataclasses
import enum
import math
from typing import TYPE_CHECKING, Any, NamedTuple, Protocol

import fastapi
from loguru import logger

if TYPE_CHECKING:
    import datetime

DEVICES_TOPIC = "/topic/devices"
GEOFENCES_TOPIC = "/topic/geofences"
UPLOADS_TOPIC = "/topic/uploads"


class PublisherProtocol(Protocol):
    """Protocol interface for the push-messaging transport."""

    async def publish(
        self,
        destination: str,
        payload: dict[str, Any],
    ) -> None: ...


class GeofenceEventType(enum.StrEnum):
    ENTER = "ENTER"
    EXIT = "EXIT"


@dataclasses.dataclass(frozen=True)
class DevicePosition:
    device_id: str
    device_code: str
    device_name: str
    longitude: float
    latitude: float
    timestamp: datetime.datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "deviceCode": self.device_code,
            "deviceName": self.device_name,
            "longitude": self.longitude,
            "latitude": self.latitude,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclasses.dataclass(frozen=True)
class GeofenceEvent:
    """A device crossing a geofence boundary."""

    device_id: str
    device_code: str
    geofence_id: str
    geofence_name: str
    event_type: GeofenceEventType
    longitude: float
    latitude: float
    timestamp: datetime.datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "deviceCode": self.device_code,
            "geofenceId": self.geofence_id,
            "geofenceName": self.geofence_name,
            "eventType": str(self.event_type),
            "longitude": self.longitude,
            "latitude": self.latitude,
            "timestamp": self.timestamp.isoformat(),
        }


class InvalidPositionMessageError(ValueError):
    """Raised when an inbound position message cannot be read."""


class PositionMessage(NamedTuple):
    device_code: str
    longitude: float
    latitude: float


def parse_position_payload(payload: Any) -> PositionMessage:
    """Read ``{deviceCode, coordinates: {lng|longitude, lat|latitude}}``.

    Args:
        payload: Decoded JSON message body.

    Returns:
        The device code and coordinates.

    Raises:
        InvalidPositionMessageError: If a field is missing or not numeric.
    """
    if not isinstance(payload, dict):
        raise InvalidPositionMessageError("Message must be a JSON object")
    code = payload.get("deviceCode")
    if not isinstance(code, str) or not code:
        raise InvalidPositionMessageError("deviceCode is required")
    coordinates = payload.get("coordinates")
    if not isinstance(coordinates, dict):
        raise InvalidPositionMessageError("coordinates are required")
    lng = _first_number(coordinates, "lng", "longitude")
    lat = _first_number(coordinates, "lat", "latitude")
    return PositionMessage(code, lng, lat)


def _first_number(values: dict[str, Any], *keys: str) -> float:
    for key in keys:
        value = values.get(key)
        if value is None:
            continue
        if isinstance(value, bool):
            break
        try:
            number = float(value)
        except (TypeError, ValueError):
            break
        if math.isfinite(number):
            return number
        break
    raise InvalidPositionMessageError(
        f"coordinates.{keys[0]} must be a number"
    )


class InMemoryPublisher(PublisherProtocol):
    def __init__(self) -> None:
        self.messages: list[tuple[str, dict[str, Any]]] = []

    async def publish(
        self,
        destination: str,
        payload: dict[str, Any],
    ) -> None:
        self.messages.append((destination, payload))

    def to(self, destination: str) -> list[dict[str, Any]]:
        """Return the payloads published to one destination, in order."""
        return [p for d, p in self.messages if d == destination]


class WebSocketHub(PublisherProtocol):
    """Fans published messages out to WebSocket subscribers.

    Each frame sent is ``{"destination": ..., "payload": ...}``. Sockets
    whose send fails are dropped from every destination.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, set[fastapi.WebSocket]] = (
            collections.defaultdict(set)
        )
        self._lock = asyncio.Lock()

    async def subscribe(
        self,
        destination: str,
        websocket: fastapi.WebSocket,
    ) -> None:
        async with self._lock:
            self._subscribers[destination].add(websocket)
        logger.debug("WebSocket subscribed to {}", destination)

    async def unsubscribe(self, websocket: fastapi.WebSocket) -> None:
        async with self._lock:
            self._discard(websocket)

    def subscriber_count(self, destination: str) -> int:
        return len(self._subscribers.get(destination, ()))

    async def publish(
        self,
        destination: str,
        payload: dict[str, Any],
    ) -> None:
        async with self._lock:
            targets = list(self._subscribers.get(destination, ()))
        if not targets:
            return
        frame = {"destination": destination, "payload": payload}
        dead = []
        for websocket in targets:
            try:
                await websocket.send_json(frame)
            except (fastapi.WebSocketDisconnect, RuntimeError) as exc:
                logger.warning("Dropping WebSocket subscriber: {}", exc)
                dead.append(websocket)
        if dead:
            async with self._lock:
                for websocket in dead:
                    self._discard(websocket)

    def _discard(self, websocket: fastapi.WebSocket) -> None:
        for destination in list(self._subscribers):
            members = self._subscribers[destination]
            members.discard(websocket)
            if not members:
                del self._subscribers[destination]
