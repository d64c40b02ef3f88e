from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from ...domain.chat_models import ErrorEvent, GenerateRequest
from ...services.conversation import ConversationOrchestrator, get_orchestrator


logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


class RealtimeSession:
    """State owned by one WebSocket connection.

    Created on connect and closed on disconnect; closing cancels every
    generation still streaming for this client so no partial answer is
    persisted.
    """

    def __init__(self, websocket: WebSocket, orchestrator: ConversationOrchestrator) -> None:
        self.session_id = uuid.uuid4().hex
        self.websocket = websocket
        self.orchestrator = orchestrator
        self._tasks: Set[asyncio.Task] = set()
        self._send_lock = asyncio.Lock()

    async def send(self, frame: Dict[str, Any]) -> None:
        # Frames from concurrent generations must not interleave mid-write.
        async with self._send_lock:
            await self.websocket.send_json(frame)

    async def send_error(self, message: str, code: str) -> None:
        await self.send(ErrorEvent(error=message, code=code).frame())

    async def handle_generate(self, data: Dict[str, Any]) -> None:
        try:
            request = GenerateRequest.model_validate(data)
        except PydanticValidationError as exc:
            await self.send_error(f"Invalid generate payload: {exc.errors()[0].get('msg', 'invalid')}", "bad_request")
            return

        events = self.orchestrator.generate(request)
        try:
            async for event in events:
                await self.send(event.frame())
        except (WebSocketDisconnect, RuntimeError) as exc:
            logger.info("Realtime session %s lost its client mid-stream: %s", self.session_id, exc)
        finally:
            await events.aclose()

    async def dispatch(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            await self.send_error("Frames must be JSON objects", "bad_request")
            return
        event = frame.get("event")
        data = frame.get("data") or {}
        if event != "generate":
            await self.send_error(f"Unknown event: {event}", "bad_request")
            return
        if not isinstance(data, dict):
            await self.send_error("Event data must be an object", "bad_request")
            return
        task = asyncio.create_task(self.handle_generate(data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def close(self) -> None:
        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()


def _decode(raw: str) -> Optional[Any]:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


@router.websocket("/ws")
async def realtime_endpoint(websocket: WebSocket) -> None:
    await websocket.accept()
    session = RealtimeSession(websocket, get_orchestrator())
    logger.info("Realtime client connected: %s", session.session_id)
    try:
        while True:
            raw = await websocket.receive_text()
            frame = _decode(raw)
            if frame is None:
                await session.send_error("Frames must be valid JSON", "bad_request")
                continue
            await session.dispatch(frame)
    except WebSocketDisconnect:
        logger.info("Realtime client disconnected: %s", session.session_id)
    finally:
        await session.close()
