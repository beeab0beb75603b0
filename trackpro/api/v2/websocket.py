"""
WebSocket Endpoint

Realtime channel for technician devices, dispatch consoles and customer
tracking pages.
Supports:
- Ping/pong heartbeat
- Room subscription (company_{id}, job_{id}, tracking_{code})
- Location updates from technician devices (primary delivery path)
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker
from datetime import datetime, timezone
from typing import Optional
import logging
import json

from trackpro.api.deps import SessionFactory
from trackpro.exceptions import TrackProException
from trackpro.schemas.tracking import LocationUpdate
from trackpro.services.location_ingest_service import LOCATION_EVENT, LocationIngestService
from trackpro.services.websocket_manager import manager

logger = logging.getLogger(__name__)

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    sessions: SessionFactory,
    technician_id: Optional[str] = Query(None, description="Authenticated technician id"),
):
    """
    WebSocket endpoint for live tracking.

    Connection URL: ws://host/api/v2/ws?technician_id=<id>
    Observers (dispatch, customers) may connect without technician_id and
    only subscribe.

    Message Protocol:
    - Client -> Server:
        - {"type": "ping"} - Heartbeat ping
        - {"type": "subscribe", "rooms": ["job_42"]} - Join rooms
        - {"type": "unsubscribe", "rooms": ["job_42"]} - Leave rooms
        - {"type": "location.update", "data": {...}} - Technician location (camelCase)

    - Server -> Client:
        - {"type": "connected", "technician_id": "...", "timestamp": "..."}
        - {"type": "pong", "timestamp": "..."}
        - {"type": "location.ack", "capturedAt": "...", "duplicate": false}
        - {"type": "location.update", "data": {...}, "timestamp": "..."} - Room broadcast
        - {"type": "job.status_changed", "data": {...}, "timestamp": "..."} - Room broadcast
        - {"type": "error", "message": "..."}
    """
    user_id = technician_id or f"observer:{id(websocket)}"
    await manager.connect(websocket, user_id)

    try:
        await websocket.send_json(
            {
                "type": "connected",
                "technician_id": technician_id,
                "timestamp": _now(),
            }
        )

        while True:
            try:
                data = await websocket.receive_json()
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON format"})
                continue

            if not isinstance(data, dict):
                await websocket.send_json({"type": "error", "message": "Expected a JSON object"})
                continue

            message_type = data.get("type")

            if message_type == "ping":
                manager.update_heartbeat(websocket)
                await websocket.send_json({"type": "pong", "timestamp": _now()})

            elif message_type == "subscribe":
                rooms = data.get("rooms", [])
                if isinstance(rooms, list):
                    joined = manager.join(websocket, [str(room) for room in rooms])
                    await websocket.send_json({"type": "subscribed", "rooms": sorted(joined)})

            elif message_type == "unsubscribe":
                rooms = data.get("rooms", [])
                if isinstance(rooms, list):
                    manager.leave(websocket, [str(room) for room in rooms])
                    await websocket.send_json({"type": "unsubscribed", "rooms": rooms})

            elif message_type == LOCATION_EVENT:
                await _handle_location(websocket, sessions, technician_id, data.get("data"))

            else:
                await websocket.send_json(
                    {
                        "type": "error",
                        "message": f"Unknown message type: {message_type}",
                    }
                )

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: user_id={user_id}")
    finally:
        manager.disconnect(websocket)


async def _handle_location(
    websocket: WebSocket,
    sessions: async_sessionmaker,
    technician_id: Optional[str],
    payload,
) -> None:
    """Validate and ingest one location frame in its own short-lived session."""
    if not technician_id:
        await websocket.send_json({"type": "error", "message": "Technician identity required"})
        return

    try:
        update = LocationUpdate.model_validate(payload)
    except ValidationError as e:
        await websocket.send_json(
            {"type": "error", "message": "Invalid location update", "errors": e.errors(include_url=False)}
        )
        return

    try:
        async with sessions() as db:
            service = LocationIngestService(db, manager)
            result = await service.ingest_and_broadcast(technician_id, update)
    except TrackProException as e:
        logger.warning(f"Rejected location update from {technician_id}: {e.detail}")
        await websocket.send_json({"type": "error", "code": e.code.value, "message": e.detail})
        return

    await websocket.send_json(
        {
            "type": "location.ack",
            "jobId": update.job_id,
            "capturedAt": update.captured_at.isoformat(),
            "duplicate": not result.created,
        }
    )


@router.get("/ws/stats")
async def get_websocket_stats():
    """Connection and room statistics for monitoring."""
    return manager.get_connection_stats()
