"""Device position updates and the WebSocket topic endpoint.

Positions arrive either over HTTP (``POST /api/devices/{code}/position``)
or as JSON messages on an open topic socket, in the form
``{"deviceCode": ..., "coordinates": {"lng": ..., "lat": ...}}``.

A WebSocket client subscribes to one destination per connection:

    ws://host/ws/topics?destination=/topic/devices.truck-1

and receives frames of ``{"destination": ..., "payload": ...}``.
"""

import json
from typing import Any

import fastapi
import pydantic

from geoengine.api import deps
from geoengine.services import messaging, tracker

router = fastapi.APIRouter(prefix="/api/devices", tags=["devices"])
ws_router = fastapi.APIRouter(prefix="/ws", tags=["websocket"])


class PositionUpdate(pydantic.BaseModel):
    longitude: float = pydantic.Field(
        ge=-180.0,
        le=180.0,
        validation_alias=pydantic.AliasChoices("longitude", "lng"),
    )
    latitude: float = pydantic.Field(
        ge=-90.0,
        le=90.0,
        validation_alias=pydantic.AliasChoices("latitude", "lat"),
    )


def _result_payload(result: tracker.TrackingResult) -> dict[str, Any]:
    return {
        "position": result.position.to_payload(),
        "events": [event.to_payload() for event in result.events],
    }


@router.post("/{code}/position")
async def update_position(
    code: str,
    body: PositionUpdate,
    device_tracker: tracker.DeviceTracker = fastapi.Depends(  # noqa: B008
        deps.get_tracker
    ),
) -> dict[str, Any]:
    """Record a device position and report any geofence crossings.

    Args:
        code: Device code.
        body: New coordinates in WGS84 degrees.
        device_tracker: Tracker (injected via FastAPI Depends).

    Returns:
        The broadcast position payload and the crossing events.

    Raises:
        HTTPException: 404 if the device does not exist, 400 if the
            position is outside WGS84 bounds.
    """
    try:
        result = await device_tracker.update_position(
            code, body.longitude, body.latitude
        )
    except tracker.UnknownDeviceError as exc:
        raise fastapi.HTTPException(status_code=404, detail=str(exc)) from exc
    except tracker.InvalidPositionError as exc:
        raise fastapi.HTTPException(status_code=400, detail=str(exc)) from exc
    return _result_payload(result)


@ws_router.websocket("/topics")
async def topic_socket(
    websocket: fastapi.WebSocket,
    destination: str,
    hub: messaging.WebSocketHub = fastapi.Depends(deps.get_hub),  # noqa: B008
    device_tracker: tracker.DeviceTracker = fastapi.Depends(  # noqa: B008
        deps.get_tracker
    ),
) -> None:
    """Stream one destination to the client and accept position messages.

    Malformed inbound messages are answered with ``{"error": ...}`` and
    the connection stays open.
    """
    await websocket.accept()
    await hub.subscribe(destination, websocket)
    try:
        while True:
            text = await websocket.receive_text()
            try:
                await device_tracker.handle_message(json.loads(text))
            except json.JSONDecodeError:
                await websocket.send_json({"error": "Invalid JSON"})
            except (
                messaging.InvalidPositionMessageError,
                tracker.InvalidPositionError,
                tracker.UnknownDeviceError,
            ) as exc:
                await websocket.send_json({"error": str(exc)})
    except fastapi.WebSocketDisconnect:
        pass
    finally:
        await hub.unsubscribe(websocket)
