from __future__ import annotations

import asyncio
from typing import Annotated

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from propchat.core.logging import clear_log_context, get_logger
from propchat.realtime.events import InboundFrame, ServerEvent
from propchat.realtime.gateway import RealtimeGateway
from propchat.realtime.hub import ConnectionState
from propchat.security import redact_url_query

router = APIRouter(tags=["ws_messaging"])

logger = get_logger("propchat.api.ws_messaging")


def _gateway(websocket: WebSocket) -> RealtimeGateway:
    gateway = getattr(websocket.app.state, "gateway", None)
    if gateway is None:
        raise RuntimeError("realtime gateway is not configured")
    return gateway


@router.websocket("/ws/messaging")
async def websocket_messaging(
    websocket: WebSocket,
    token: Annotated[str | None, Query()] = None,
    user_type: Annotated[str | None, Query(alias="userType")] = None,
    timeline_id: Annotated[str | None, Query(alias="timelineId")] = None,
) -> None:
    await websocket.accept()
    gateway = _gateway(websocket)
    connection = gateway.open(websocket, timeline_id=timeline_id)
    logger.info("realtime.ws.accepted", url=redact_url_query(str(websocket.url)))
    handshake = asyncio.create_task(
        gateway.authenticate(connection, user_type=user_type, token=token)
    )

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = InboundFrame.model_validate_json(raw)
            except ValidationError:
                await connection.send(
                    ServerEvent.ERROR,
                    {"message": "Invalid WebSocket message format."},
                )
                continue
            await gateway.dispatch(connection, frame.type, frame.payload)
    except WebSocketDisconnect:
        logger.info("realtime.ws.disconnected")
    except Exception:
        if connection.state == ConnectionState.CLOSED:
            logger.info("realtime.ws.closed_by_server")
        else:
            logger.exception("realtime.ws.failed")
    finally:
        if not handshake.done():
            handshake.cancel()
        try:
            await handshake
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("realtime.ws.handshake_failed")
        await gateway.handle_disconnect(connection)
        clear_log_context()
