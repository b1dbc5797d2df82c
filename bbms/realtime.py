"""
WebSocket channel for live temperature and alert deltas.

Protocol (JSON text frames):

    client -> {"event": "subscribe_temperature", "deviceId": "<id>"}
    client -> {"event": "unsubscribe_temperature", "deviceId": "<id>"}
    server -> {"event": "subscribed", "deviceId": "<id>"}
    server -> {"event": "subscription_rejected", "deviceId", "kind", "message"}
    server -> {"event": "temperature_update" | "temperature_alert"
               | "temperature_alert_resolved", ...}

The bearer token comes from the ``Authorization`` header or a ``token``
query parameter and is re-verified on every subscribe. A client whose
observer was detached (too slow, or a failed send) is closed with 1011.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool

from bbms.broadcaster import Broadcaster
from bbms.dependencies import get_broadcaster, get_registry
from bbms.errors import AuthorizationError
from bbms.identity import parse_bearer
from bbms.registry import ChannelRegistry, SubscriptionRequest

logger = logging.getLogger(__name__)

router = APIRouter()


def _token_from(websocket: WebSocket) -> Optional[str]:
    return parse_bearer(websocket.headers.get("authorization")) or websocket.query_params.get(
        "token"
    )


async def _handle_message(
    message: dict,
    connection_id: str,
    token: Optional[str],
    registry: ChannelRegistry,
    broadcaster: Broadcaster,
) -> bool:
    """
    Handle one client frame. Returns False once the connection's observer
    has been detached, after which the socket should be closed.
    """
    if not broadcaster.is_attached(connection_id):
        return False

    event = message.get("event")
    device_id = message.get("deviceId")
    if event not in ("subscribe_temperature", "unsubscribe_temperature") or not isinstance(
        device_id, str
    ) or not device_id:
        broadcaster.send_control(
            connection_id,
            {"event": "error", "message": "Expected an event and a deviceId"},
        )
        return True

    if event == "unsubscribe_temperature":
        registry.unsubscribe(connection_id, device_id)
        broadcaster.send_control(
            connection_id, {"event": "unsubscribed", "deviceId": device_id}
        )
        return True

    request = SubscriptionRequest(
        connection_id=connection_id, device_id=device_id, token=token
    )
    try:
        await run_in_threadpool(registry.authorize, request)
    except AuthorizationError as exc:
        logger.info(
            "Rejected subscription of %s to %s: %s", connection_id, device_id, exc.kind
        )
        broadcaster.send_control(
            connection_id,
            {
                "event": "subscription_rejected",
                "deviceId": device_id,
                "kind": exc.kind,
                "message": exc.message,
            },
        )
        return True

    if not broadcaster.is_attached(connection_id):
        # Detached while the token was being verified.
        registry.unsubscribe(connection_id, device_id)
        return False
    broadcaster.send_control(connection_id, {"event": "subscribed", "deviceId": device_id})
    return True


@router.websocket("/ws")
async def temperature_channel(
    websocket: WebSocket,
    registry: ChannelRegistry = Depends(get_registry),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    await websocket.accept()
    connection_id = uuid4().hex
    token = _token_from(websocket)
    broadcaster.attach(connection_id, websocket.send_json)
    logger.info("Realtime client connected: %s", connection_id)
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                broadcaster.send_control(
                    connection_id, {"event": "error", "message": "Invalid JSON"}
                )
                continue
            if not isinstance(message, dict):
                broadcaster.send_control(
                    connection_id, {"event": "error", "message": "Expected an object"}
                )
                continue
            if not await _handle_message(
                message, connection_id, token, registry, broadcaster
            ):
                logger.info("Closing detached realtime client: %s", connection_id)
                await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
                break
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.detach(connection_id)
        logger.info("Realtime client disconnected: %s", connection_id)
