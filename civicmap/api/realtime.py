"""
WebSocket Router

Live snapshots of the report list and of the caller's profile.

Connect with:
    ws://host/ws/reports
    ws://host/ws/profile?token=<access token>

Messages sent to client:
- reports: full ordered report list, on connect and after every change
- profile: the caller's profile, on connect and after every change
- pong: answer to {"type": "ping"}
"""
import asyncio
import json
import logging
from typing import Any, Callable, Dict, Set

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from ..core.config import settings
from ..domain import errors
from ..domain.models import ReportResponse
from ..domain.services.profile_store import SqlProfileStore
from ..domain.services.report_store import SqlReportStore
from ..domain.services.security import identity_from_token
from ..sync.gateway import marshal_to_loop
from .deps import get_profile_store, get_report_store

router = APIRouter()
logger = logging.getLogger(__name__)


# =============================================================================
# Connection Manager
# =============================================================================


class ConnectionManager:
    """
    Tracks WebSocket connections per channel ("reports", "profile:<uid>").
    """

    def __init__(self):
        # channel -> set of WebSocket connections
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, channel: str):
        """Accept and track a new connection."""
        await websocket.accept()
        self.active_connections.setdefault(channel, set()).add(websocket)

    def disconnect(self, websocket: WebSocket, channel: str):
        """Remove a connection."""
        if channel in self.active_connections:
            self.active_connections[channel].discard(websocket)

            if not self.active_connections[channel]:
                del self.active_connections[channel]

    async def send(self, websocket: WebSocket, channel: str, message: dict) -> bool:
        """Send to one socket; a socket that fails is dropped."""
        try:
            await websocket.send_json(message)
            return True
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info(f"Dropping dead socket on {channel}: {e}")
            self.disconnect(websocket, channel)
            return False

    def connection_count(self, channel: str) -> int:
        return len(self.active_connections.get(channel, ()))


manager = ConnectionManager()


# =============================================================================
# Helpers
# =============================================================================


def reports_message(reports) -> dict:
    return {
        "type": "reports",
        "reports": [
            ReportResponse.from_report(r, settings.CERTIFICATION_THRESHOLD).model_dump(
                mode="json", by_alias=True, exclude_none=True
            )
            for r in reports
        ],
    }


def profile_message(profile) -> dict:
    return {"type": "profile", "profile": profile.model_dump(mode="json", by_alias=True)}


async def _forward(websocket: WebSocket, channel: str, queue: asyncio.Queue, to_message: Callable[[Any], dict]):
    while True:
        snapshot = await queue.get()
        if not await manager.send(websocket, channel, to_message(snapshot)):
            return


async def _receive(websocket: WebSocket, channel: str):
    """Answer pings until the client goes away (raises WebSocketDisconnect)."""
    while True:
        data = await websocket.receive_text()
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            continue
        if isinstance(message, dict) and message.get("type") == "ping":
            await manager.send(websocket, channel, {"type": "pong"})


def _log_failure(task: asyncio.Task, channel: str):
    if not task.cancelled() and task.exception() is not None:
        logger.error(f"WebSocket on {channel} failed: {task.exception()}")


async def _serve(websocket: WebSocket, channel: str, subscribe, to_message: Callable[[Any], dict]):
    """
    Subscribe, then pump snapshots to the socket until either side closes.
    subscribe(listener) runs in a worker thread and returns a Subscription.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    subscription = None

    await manager.connect(websocket, channel)
    try:
        try:
            subscription = await asyncio.to_thread(subscribe, marshal_to_loop(loop, queue.put_nowait))
        except errors.StoreReadError as e:
            logger.error(f"Subscription for {channel} failed: {e}")
            await websocket.close(code=1011, reason="Subscription failed")
            return

        forward = asyncio.ensure_future(_forward(websocket, channel, queue, to_message))
        forward.add_done_callback(lambda task: _log_failure(task, channel))
        try:
            await _receive(websocket, channel)
        except WebSocketDisconnect:
            logger.debug(f"Client left {channel}")
        finally:
            forward.cancel()
    finally:
        # No awaits below: the server may cancel this task right after the disconnect
        if subscription is not None:
            subscription.unsubscribe()
        manager.disconnect(websocket, channel)


# =============================================================================
# WebSocket Endpoints
# =============================================================================


@router.websocket("/reports")
async def reports_socket(websocket: WebSocket, store: SqlReportStore = Depends(get_report_store)):
    await _serve(websocket, "reports", store.subscribe, reports_message)


@router.websocket("/profile")
async def profile_socket(
    websocket: WebSocket,
    token: str = Query(...),
    profiles: SqlProfileStore = Depends(get_profile_store),
):
    identity = identity_from_token(token)
    if identity is None:
        await websocket.close(code=4001, reason="Invalid token")
        return

    await _serve(
        websocket,
        f"profile:{identity.uid}",
        lambda listener: profiles.subscribe(identity.uid, listener),
        profile_message,
    )
