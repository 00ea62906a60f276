"""Device position tracking and geofence crossing detection.

Each update replaces a device's last known position and compares the
previous and new positions against every active geofence:

    ======================  ==========  =========
    previous inside         now inside  event
    ======================  ==========  =========
    no (or no previous)     yes         ENTER
    yes                     no          EXIT
    same as now             same        none
    ======================  ==========  =========

Updates for one device code are serialised by a per-code ``asyncio.Lock``
so that the read, containment check and write happen as one step; other
devices are not blocked. Broadcasting is best effort: a failing publisher
is logged and the stored position stays.

Example:
    >>> tracker = DeviceTracker(stores.devices, stores.geofences, hub)
    >>> result = await tracker.update_position("truck-1", 106.70, 10.77)
    >>> [str(e.event_type) for e in result.events]
    ['ENTER']
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
from typing import TYPE_CHECKING, Any, NamedTuple

from loguru import logger
from shapely import geometry as shapely_geometry

from geoengine.db import models as db_models
from geoengine.services import geometry, messaging

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from geoengine.db import spatial_store


class UnknownDeviceError(LookupError):
    """Raised when a position arrives for a code with no live device."""


class InvalidPositionError(ValueError):
    """Raised for coordinates outside WGS84 bounds."""


class Crossing(NamedTuple):
    geofence: db_models.Geofence
    event_type: messaging.GeofenceEventType


@dataclasses.dataclass
class TrackingResult:
    device: db_models.Device
    previous: shapely_geometry.Point | None
    position: messaging.DevicePosition
    events: list[messaging.GeofenceEvent]


def detect_crossings(
    previous: shapely_geometry.Point | None,
    current: shapely_geometry.Point,
    geofences: Iterable[db_models.Geofence],
) -> list[Crossing]:
    """Compare two positions against each geofence.

    Args:
        previous: Last known position, or None on a device's first update.
        current: New position.
        geofences: Geofences to evaluate, in the order events should be
            reported.

    Returns:
        One crossing per geofence whose containment changed. Without a
        previous position only ENTER crossings are possible.
    """
    crossings = []
    for geofence in geofences:
        was_inside = (
            previous is not None and geofence.geometry.contains(previous)
        )
        is_inside = geofence.geometry.contains(current)
        if is_inside and not was_inside:
            crossings.append(
                Crossing(geofence, messaging.GeofenceEventType.ENTER)
            )
        elif was_inside and not is_inside:
            crossings.append(
                Crossing(geofence, messaging.GeofenceEventType.EXIT)
            )
    return crossings


@dataclasses.dataclass
class _DeviceLock:
    lock: asyncio.Lock = dataclasses.field(default_factory=asyncio.Lock)
    holders: int = 0


class DeviceTracker:
    """Owns the read-check-write cycle of device position updates."""

    def __init__(
        self,
        devices: spatial_store.DeviceRepositoryProtocol,
        geofences: spatial_store.GeofenceRepositoryProtocol,
        publisher: messaging.PublisherProtocol,
    ) -> None:
        self.devices = devices
        self.geofences = geofences
        self.publisher = publisher
        self._locks: dict[str, _DeviceLock] = {}

    async def update_position(
        self,
        code: str,
        lng: float,
        lat: float,
    ) -> TrackingResult:
        """Record a new position and broadcast it with any crossings.

        Args:
            code: Device code.
            lng: Longitude in degrees.
            lat: Latitude in degrees.

        Returns:
            The updated device, its previous position, the broadcast
            position and the crossing events.

        Raises:
            InvalidPositionError: If the point lies outside WGS84 bounds.
            UnknownDeviceError: If no live device has this code.
        """
        point = shapely_geometry.Point(lng, lat)
        if not geometry.is_within_bounds(point):
            raise InvalidPositionError(
                f"Position ({lng}, {lat}) is outside WGS84 bounds"
            )

        async with self._device_lock(code):
            device = await asyncio.to_thread(self.devices.get_by_code, code)
            if device is None:
                raise UnknownDeviceError(f"Device not found: {code}")

            previous = device.last_position
            now = db_models.utcnow()
            device.last_position = point
            device.updated_at = now
            await asyncio.to_thread(self.devices.save_position, device)

            active = await asyncio.to_thread(self.geofences.active)
            crossings = detect_crossings(previous, point, active)

            position = messaging.DevicePosition(
                device_id=device.id,
                device_code=device.code,
                device_name=device.name,
                longitude=lng,
                latitude=lat,
                timestamp=now,
            )
            await self._broadcast_position(position)

            events = [
                messaging.GeofenceEvent(
                    device_id=device.id,
                    device_code=device.code,
                    geofence_id=crossing.geofence.id,
                    geofence_name=crossing.geofence.name,
                    event_type=crossing.event_type,
                    longitude=lng,
                    latitude=lat,
                    timestamp=now,
                )
                for crossing in crossings
            ]
            for event in events:
                logger.info(
                    "Device {} {} geofence {}",
                    event.device_code,
                    event.event_type,
                    event.geofence_name,
                )
                await self._broadcast_event(event)

        return TrackingResult(device, previous, position, events)

    async def handle_message(self, payload: Any) -> TrackingResult:
        """Apply an inbound ``{deviceCode, coordinates}`` message.

        Raises:
            messaging.InvalidPositionMessageError: If the message is
                malformed.
        """
        message = messaging.parse_position_payload(payload)
        return await self.update_position(
            message.device_code, message.longitude, message.latitude
        )

    @contextlib.asynccontextmanager
    async def _device_lock(self, code: str) -> AsyncIterator[None]:
        """Hold the lock of one device code, dropping it when unused.

        Entries are reference counted, so codes that are never seen again
        (unknown devices included) do not accumulate.
        """
        entry = self._locks.get(code)
        if entry is None:
            entry = self._locks[code] = _DeviceLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[code]

    async def _broadcast_position(
        self,
        position: messaging.DevicePosition,
    ) -> None:
        payload = position.to_payload()
        logger.debug(
            "Broadcasting position of {} ({}, {})",
            position.device_code,
            position.longitude,
            position.latitude,
        )
        for destination in (
            messaging.DEVICES_TOPIC,
            f"{messaging.DEVICES_TOPIC}.{position.device_code}",
            f"{messaging.DEVICES_TOPIC}.{position.device_id}",
        ):
            await self._publish(destination, payload)

    async def _broadcast_event(self, event: messaging.GeofenceEvent) -> None:
        payload = event.to_payload()
        for destination in (
            messaging.GEOFENCES_TOPIC,
            f"{messaging.GEOFENCES_TOPIC}.{event.geofence_id}",
            f"{messaging.DEVICES_TOPIC}.{event.device_code}.geofences",
        ):
            await self._publish(destination, payload)

    async def _publish(
        self,
        destination: str,
        payload: dict[str, Any],
    ) -> None:
        try:
            await self.publisher.publish(destination, payload)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to publish to {}", destination)
