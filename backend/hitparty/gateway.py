from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from .errors import GameError, ValidationError
from .schemas import parse_command

router = APIRouter(tags=["game"])
logger = logging.getLogger(__name__)


def error_payload(exc: Exception) -> Dict[str, Any]:
    if isinstance(exc, GameError):
        return {"type": "error", "code": exc.code, "message": exc.message}
    return {"type": "error", "code": "internal", "message": "Something went wrong"}


class ConnectionHub:
    """Live websockets keyed by connection id.

    A send to a connection that is gone is logged and dropped so one dead
    socket never stops a broadcast to the others.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._sockets: Dict[str, WebSocket] = {}

    def __len__(self) -> int:
        return len(self._sockets)

    async def register(self, websocket: WebSocket, connection_id: Optional[str] = None) -> str:
        connection_id = connection_id or uuid.uuid4().hex
        async with self._lock:
            self._sockets[connection_id] = websocket
        return connection_id

    async def unregister(self, connection_id: str) -> None:
        async with self._lock:
            self._sockets.pop(connection_id, None)

    async def send(self, connection_id: str, payload: Dict[str, Any]) -> None:
        websocket = self._sockets.get(connection_id)
        if websocket is None:
            logger.debug("[gateway] no socket for %s, dropping %s", connection_id, payload.get("type"))
            return
        try:
            await websocket.send_json(payload)
        except Exception as e:
            logger.warning("[gateway] send to %s failed: %s", connection_id, e)
            await self.unregister(connection_id)


@router.websocket("/ws")
async def ws_game(websocket: WebSocket) -> None:
    """
    One socket per participant. Inbound frames are JSON commands:
      {"type": "create_session"}
      {"type": "join_session", "code": "ABC234", "name": "Ana"}
      {"type": "submit_placement", "index": 1}
      ...
    Errors go back to this socket only as
      {"type": "error", "code": str, "message": str}
    """
    hub: ConnectionHub = websocket.app.state.hub
    service = websocket.app.state.service

    await websocket.accept()
    connection_id = await hub.register(websocket)
    logger.info("[gateway] connection %s opened", connection_id)
    try:
        while True:
            text = await websocket.receive_text()
            try:
                try:
                    raw = json.loads(text)
                except json.JSONDecodeError as e:
                    raise ValidationError("Invalid JSON") from e
                command = parse_command(raw)
                await service.handle(connection_id, command)
            except GameError as e:
                logger.info("[gateway] %s rejected: %s", connection_id, e.message)
                await hub.send(connection_id, error_payload(e))
            except Exception as e:
                logger.error("[gateway] %s: unexpected error", connection_id, exc_info=e)
                await hub.send(connection_id, error_payload(e))
    except WebSocketDisconnect:
        logger.info("[gateway] connection %s closed", connection_id)
    finally:
        await hub.unregister(connection_id)
        await service.disconnect(connection_id)
