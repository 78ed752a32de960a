"""
Realtime fan-out of ledger writes.

One process-wide bus replaces per-screen channels: every live surface
(badge, feed, job timeline, chat room) subscribes with a set of topics and
receives only matching events. Records are published after their
transaction commits; rolled-back work publishes nothing.

Delivery is at-least-once. A subscriber that falls behind is dropped with a
TransportError and must re-fetch; re-fetched ids it has already seen are
filtered by `Subscription.accept`.
"""
from __future__ import annotations

import asyncio
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

import structlog
from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import TransportError
from ..models.models import ActivityLog, ChatMessage
from ..schemas.activity import ActivityRecordOut
from ..schemas.chat import ChatMessageOut


log = structlog.get_logger(__name__)

OUTBOX_KEY = "jobsync_outbox"

ACTIVITY_INSERTED = "activity.inserted"
ACTIVITY_UPDATED = "activity.updated"
CHAT_MESSAGE = "chat.message"
ALERT = "alert"


def user_topic(user_id) -> str:
    return f"user:{user_id}"


def actor_topic(user_id) -> str:
    return f"actor:{user_id}"


def entity_topic(entity_id) -> str:
    return f"entity:{entity_id}"


def company_topic(company_id) -> str:
    return f"company:{company_id}"


def room_topic(room_id) -> str:
    return f"room:{room_id}"


@dataclass(frozen=True)
class Event:
    kind: str
    topics: FrozenSet[str]
    data: Dict[str, Any]
    record_id: Optional[str] = None

    def to_message(self) -> dict:
        return {"event": self.kind, "data": self.data}


def record_topics(data: dict) -> FrozenSet[str]:
    topics: Set[str] = {entity_topic(data["entity_id"])}
    if data.get("recipient_user_id"):
        topics.add(user_topic(data["recipient_user_id"]))
    if data.get("actor_user_id"):
        topics.add(actor_topic(data["actor_user_id"]))
    if data.get("company_id"):
        topics.add(company_topic(data["company_id"]))
    return frozenset(topics)


_CLOSED = object()


class Subscription:
    def __init__(
        self,
        bus: "EventBus",
        topics: Iterable[str],
        loop: asyncio.AbstractEventLoop,
        maxsize: int,
        dedupe_window: int,
    ) -> None:
        self.id = str(uuid.uuid4())
        self.topics: FrozenSet[str] = frozenset(topics)
        self.loop = loop
        self.error: Optional[TransportError] = None
        self.closed = False
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._dedupe_window = dedupe_window

    def matches(self, ev: Event) -> bool:
        return bool(self.topics & ev.topics)

    def accept(self, record_id: Optional[str]) -> bool:
        """Remember a record id; False when it was already delivered."""
        if not record_id or self._dedupe_window <= 0:
            return True
        if record_id in self._seen:
            self._seen.move_to_end(record_id)
            return False
        self._seen[record_id] = None
        if len(self._seen) > self._dedupe_window:
            self._seen.popitem(last=False)
        return True

    def _offer(self, ev: Event) -> None:
        # Runs on the subscriber's loop
        if self.closed:
            return
        if ev.kind == ACTIVITY_INSERTED and not self.accept(ev.record_id):
            return
        try:
            self._queue.put_nowait(ev)
        except asyncio.QueueFull:
            log.warning("fanout_overflow", subscription=self.id, topics=sorted(self.topics))
            self._fail(TransportError("Subscriber fell behind; re-fetch required"))

    def _fail(self, exc: TransportError) -> None:
        self.error = exc
        while not self._queue.empty():
            self._queue.get_nowait()
        self.close()

    async def get(self) -> Event:
        item = await self._queue.get()
        if item is _CLOSED:
            raise self.error or TransportError("Subscription closed")
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus.unsubscribe(self)
        try:
            # Wake a consumer blocked in get()
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        try:
            return await self.get()
        except TransportError:
            if self.error is None:
                raise StopAsyncIteration
            raise

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class EventBus:
    def __init__(self, maxsize: int = 256, dedupe_window: int = 1024) -> None:
        self._subscriptions: Set[Subscription] = set()
        self._lock = threading.Lock()
        self._maxsize = maxsize
        self._dedupe_window = dedupe_window
        # user_id -> bool; decides whether a delivered record also raises a user alert
        self.alert_policy: Optional[Callable[[uuid.UUID], bool]] = None

    def subscribe(self, topics: Iterable[str], *, dedupe: bool = True) -> Subscription:
        """Open a subscription bound to the running event loop."""
        loop = asyncio.get_running_loop()
        sub = Subscription(self, topics, loop, self._maxsize, self._dedupe_window if dedupe else 0)
        with self._lock:
            self._subscriptions.add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subscriptions.discard(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, ev: Event) -> int:
        """Deliver to every matching subscriber. Safe to call from any thread."""
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(ev)]
        delivered = 0
        for sub in targets:
            try:
                sub.loop.call_soon_threadsafe(sub._offer, ev)
                delivered += 1
            except RuntimeError:
                # Owning loop is gone; nobody is listening any more
                self.unsubscribe(sub)
        return delivered

    def publish_activity(self, kind: str, data: dict) -> int:
        ev = Event(kind=kind, topics=record_topics(data), data=data, record_id=data.get("id"))
        delivered = self.publish(ev)
        recipient = data.get("recipient_user_id")
        if kind == ACTIVITY_INSERTED and recipient and recipient != data.get("actor_user_id"):
            if self._alert_allowed(recipient):
                self.publish(Event(kind=ALERT, topics=frozenset({user_topic(recipient)}), data=_alert_body(data), record_id=data.get("id")))
        return delivered

    def publish_chat_message(self, data: dict) -> int:
        return self.publish(Event(kind=CHAT_MESSAGE, topics=frozenset({room_topic(data["room_id"])}), data=data, record_id=data.get("id")))

    def _alert_allowed(self, recipient: str) -> bool:
        if self.alert_policy is None:
            return True
        try:
            return bool(self.alert_policy(uuid.UUID(str(recipient))))
        except Exception:
            log.exception("alert_policy_failed", recipient=recipient)
            return False

    def close_all(self) -> None:
        with self._lock:
            subs = list(self._subscriptions)
        for sub in subs:
            sub.close()


def _alert_body(data: dict) -> dict:
    return {
        "title": "JobSync - New Update",
        "body": data.get("notes") or "You have a new notification",
        "record_id": data.get("id"),
        "notification_type": data.get("notification_type"),
    }


# Global singleton bus
bus = EventBus(maxsize=settings.event_queue_size, dedupe_window=settings.event_dedupe_window)


def serialize_record(record: ActivityLog) -> dict:
    return ActivityRecordOut.model_validate(record).model_dump(mode="json")


def serialize_message(message: ChatMessage) -> dict:
    return ChatMessageOut.model_validate(message).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Outbox: snapshot at flush, publish after commit, discard on rollback
# ---------------------------------------------------------------------------


@event.listens_for(Session, "after_flush")
def _collect_outbox(session: Session, flush_context) -> None:
    outbox: List[Tuple[str, dict]] = session.info.setdefault(OUTBOX_KEY, [])
    for obj in session.new:
        if isinstance(obj, ActivityLog):
            outbox.append((ACTIVITY_INSERTED, serialize_record(obj)))
        elif isinstance(obj, ChatMessage):
            outbox.append((CHAT_MESSAGE, serialize_message(obj)))
    for obj in session.dirty:
        if isinstance(obj, ActivityLog) and inspect(obj).attrs.is_read.history.has_changes():
            outbox.append((ACTIVITY_UPDATED, serialize_record(obj)))


@event.listens_for(Session, "after_commit")
def _publish_outbox(session: Session) -> None:
    outbox = session.info.pop(OUTBOX_KEY, None)
    if not outbox:
        return
    for kind, data in outbox:
        if kind == CHAT_MESSAGE:
            bus.publish_chat_message(data)
        else:
            bus.publish_activity(kind, data)


@event.listens_for(Session, "after_rollback")
def _discard_outbox(session: Session) -> None:
    dropped = session.info.pop(OUTBOX_KEY, None)
    if dropped:
        log.info("outbox_discarded", events=len(dropped))
