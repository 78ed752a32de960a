import asyncio
import uuid
from typing import List, Optional, Tuple

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from ..auth.security import user_id_from_token, user_roles_in
from ..db import get_session_factory
from ..errors import TransportError
from ..services import chat_rooms, directory
from ..services.fanout import Subscription, bus, user_topic


router = APIRouter(tags=["events"])
log = structlog.get_logger(__name__)


def authorize_topics(db: Session, user_id: uuid.UUID, requested: List[str]) -> Tuple[List[str], List[str]]:
    """Split requested topics into (allowed, denied) for this user."""
    if not requested:
        return [user_topic(user_id)], []
    allowed: List[str] = []
    denied: List[str] = []
    companies = None
    for topic in requested:
        kind, _, raw = topic.partition(":")
        try:
            target = uuid.UUID(raw)
        except ValueError:
            denied.append(topic)
            continue
        ok = False
        if kind in ("user", "actor"):
            ok = target == user_id
        elif kind == "company":
            ok = bool(user_roles_in(db, user_id, target))
        elif kind == "room":
            ok = chat_rooms.is_participant(db, target, user_id)
        elif kind == "entity":
            if companies is None:
                companies = directory.user_company_ids(db, user_id)
            ok = any(target in directory.company_entity_ids(db, cid) for cid in companies)
        (allowed if ok else denied).append(f"{kind}:{target}")
    return allowed, denied


class _Pump:
    """Forwards bus events to one socket, resubscribing after an overflow."""

    def __init__(self, websocket: WebSocket, topics: List[str]):
        self.websocket = websocket
        self.topics = topics
        self.sub: Subscription = bus.subscribe(topics)

    async def run(self) -> None:
        while True:
            try:
                async for ev in self.sub:
                    await self.websocket.send_json(ev.to_message())
                return
            except TransportError as exc:
                log.info("event_stream_resync", topics=self.topics, reason=exc.message)
                self.sub = bus.subscribe(self.topics)
                # Anything missed must be re-fetched over HTTP
                await self.websocket.send_json({"event": "resync", "data": {"reason": exc.message}})

    def close(self) -> None:
        self.sub.close()


@router.websocket("/ws/events")
async def ws_events(
    websocket: WebSocket,
    token: Optional[str] = None,
    topics: Optional[str] = None,
    session_factory=Depends(get_session_factory),
):
    user_id = user_id_from_token(token)
    if user_id is None:
        await websocket.close(code=4401)
        return

    requested = [t.strip() for t in (topics or "").split(",") if t.strip()]
    db = session_factory()
    try:
        allowed, denied = authorize_topics(db, user_id, requested)
    finally:
        db.close()
    if not allowed:
        await websocket.close(code=4403)
        return

    await websocket.accept()
    pump = _Pump(websocket, allowed)
    await websocket.send_json({"event": "subscribed", "data": {"topics": sorted(allowed), "denied": denied}})
    task = asyncio.create_task(pump.run())
    try:
        while True:
            data = await websocket.receive_text()
            # Accept keep-alives or simple pings; ignore content otherwise
            if data and data.strip().lower() in {"ping", "keepalive"}:
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        pump.close()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            # Socket already gone while an event was being sent
            log.warning("event_stream_closed_with_error", user_id=str(user_id), exc_info=True)
