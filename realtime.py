"""
Real-time routing for Chat App.

SessionRegistry keeps which live sessions listen on which channel. A channel is
a user id (that user's inbox) or a room id. The Dispatcher turns one inbound
event into (channel, event, data) outbounds and delivers them to whatever
sessions are subscribed at that moment.
"""
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional, Set

from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError

from database import is_identity_ref, normalize_identity_ref
from schemas import (
    ChatRequestEvent,
    CreateRoomEvent,
    DeleteChatEvent,
    JoinEvent,
    JoinRoomEvent,
    LeaveRoomEvent,
    ProfileUpdatedEvent,
    RespondRequestEvent,
    SendMessageEvent,
)

logger = logging.getLogger(__name__)

BROADCAST = "*"
LEFT_ROOM_TEXT = "User left the chat"


class Session:
    """One live connection. Transports implement send()."""

    def __init__(self, sid: Optional[str] = None):
        self.sid = sid or uuid.uuid4().hex

    async def send(self, event: str, data: Any) -> None:
        raise NotImplementedError

    def __repr__(self):
        return f"<{type(self).__name__} {self.sid}>"


class Outbound(NamedTuple):
    channel: str
    event: str
    data: Any
    exclude: Optional[str] = None


# -----------------------------
# Session Registry
# -----------------------------

class SessionRegistry:
    def __init__(self, rooms):
        self._rooms = rooms
        self._sessions: Dict[str, Session] = {}
        self._subscriptions: Dict[str, Set[str]] = {}
        self._listeners: Dict[str, Set[str]] = defaultdict(set)

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def connect(self, session: Session) -> None:
        self._sessions[session.sid] = session
        self._subscriptions[session.sid] = set()
        logger.info("Session %s connected", session.sid)

    def subscribe(self, session: Session, channel: str) -> None:
        # a session that disconnected while a lookup was in flight stays gone
        if session.sid not in self._subscriptions:
            return
        self._subscriptions[session.sid].add(channel)
        self._listeners[channel].add(session.sid)

    async def join(self, session: Session, user_id: str) -> Set[str]:
        """Subscribe to the user's inbox and to every room the user is a member of."""
        if not is_identity_ref(user_id):
            logger.warning("Session %s sent join with invalid user id %r", session.sid, user_id)
            return set()
        user_id = normalize_identity_ref(user_id)
        self.subscribe(session, user_id)
        room_ids = await run_in_threadpool(self._rooms.room_ids_for_user, user_id)
        for room_id in room_ids:
            self.subscribe(session, room_id)
        logger.info("Session %s joined as %s (%d rooms)", session.sid, user_id, len(room_ids))
        return self.channels_for(session)

    def join_room(self, session: Session, room_id: str) -> None:
        self.subscribe(session, room_id)

    def disconnect(self, session: Session) -> None:
        channels = self._subscriptions.pop(session.sid, set())
        self._sessions.pop(session.sid, None)
        for channel in channels:
            listeners = self._listeners.get(channel)
            if listeners is None:
                continue
            listeners.discard(session.sid)
            if not listeners:
                del self._listeners[channel]
        logger.info("Session %s disconnected", session.sid)

    def channels_for(self, session: Session) -> Set[str]:
        return set(self._subscriptions.get(session.sid, ()))

    def sessions_for(self, channel: str) -> List[Session]:
        return [self._sessions[sid] for sid in self._listeners.get(channel, ()) if sid in self._sessions]

    def all_sessions(self) -> List[Session]:
        return list(self._sessions.values())


# -----------------------------
# Fan-out Dispatcher
# -----------------------------

class Dispatcher:
    def __init__(self, registry: SessionRegistry, users, rooms, messages):
        self.registry = registry
        self.users = users
        self.rooms = rooms
        self.messages = messages
        self.handlers = {
            "join": (JoinEvent, self.on_join),
            "join_room": (JoinRoomEvent, self.on_join_room),
            "chat_request": (ChatRequestEvent, self.on_chat_request),
            "respond_request": (RespondRequestEvent, self.on_respond_request),
            "create_room": (CreateRoomEvent, self.on_create_room),
            "send_message": (SendMessageEvent, self.on_send_message),
            "leave_room": (LeaveRoomEvent, self.on_leave_room),
            "delete_chat": (DeleteChatEvent, self.on_delete_chat),
            "profile_updated": (ProfileUpdatedEvent, self.on_profile_updated),
        }

    async def handle(self, session: Session, event: str, data: Any) -> List[Outbound]:
        """Validate and run one inbound event. Malformed or failing events yield nothing."""
        entry = self.handlers.get(event)
        if entry is None:
            logger.warning("Dropping unknown event %r from %s", event, session.sid)
            return []
        model, handler = entry
        try:
            payload = model.model_validate(data)
        except ValidationError as exc:
            logger.warning("Dropping %s from %s: %s", event, session.sid, exc.errors(include_url=False))
            return []
        try:
            return await handler(session, payload)
        except Exception:
            logger.exception("Handler for %s from %s failed", event, session.sid)
            return []

    async def deliver(self, outbounds: List[Outbound]) -> int:
        sent = 0
        for out in outbounds:
            if out.channel == BROADCAST:
                targets = [s for s in self.registry.all_sessions() if s.sid != out.exclude]
            else:
                targets = self.registry.sessions_for(out.channel)
            data = jsonable_encoder(out.data)
            for target in targets:
                try:
                    await target.send(out.event, data)
                    sent += 1
                except Exception as exc:
                    logger.warning("Could not deliver %s to %s: %s", out.event, target.sid, exc)
            logger.debug("%s -> %s: %d sessions", out.event, out.channel, len(targets))
        return sent

    async def dispatch(self, session: Session, event: str, data: Any) -> List[Outbound]:
        outbounds = await self.handle(session, event, data)
        await self.deliver(outbounds)
        return outbounds

    # handlers

    async def on_join(self, session, payload: JoinEvent):
        await self.registry.join(session, payload.user_id)
        return []

    async def on_join_room(self, session, payload: JoinRoomEvent):
        self.registry.join_room(session, payload.room_id)
        return []

    async def on_chat_request(self, session, payload: ChatRequestEvent):
        sender = await run_in_threadpool(self.users.get, payload.sender_id)
        if sender is None:
            logger.warning("chat_request from unknown user %s", payload.sender_id)
            return []
        return [Outbound(payload.receiver_id, "incoming_request", {
            "senderId": payload.sender_id,
            "senderName": sender["name"],
            "senderUsername": sender["email"],
        })]

    async def on_respond_request(self, session, payload: RespondRequestEvent):
        return [Outbound(payload.sender_id, "request_result", {
            "accepted": payload.accepted,
            "receiverName": payload.receiver_name,
        })]

    async def on_create_room(self, session, payload: CreateRoomEvent):
        room = await run_in_threadpool(self.rooms.create, payload)
        return [Outbound(member, "room_created", room) for member in room["members"]]

    async def on_send_message(self, session, payload: SendMessageEvent):
        message = await run_in_threadpool(self.messages.append, payload)
        message["senderName"] = payload.sender_name
        outbounds = [Outbound(payload.receiver, "receive_message", message)]
        # the sender's other devices see direct messages too
        if not payload.is_room and payload.sender != payload.receiver:
            outbounds.append(Outbound(payload.sender, "receive_message", message))
        return outbounds

    async def on_leave_room(self, session, payload: LeaveRoomEvent):
        removed = await run_in_threadpool(self.rooms.remove_member, payload.room_id, payload.user_id)
        if not removed:
            logger.info("leave_room ignored: %s is not a member of %s", payload.user_id, payload.room_id)
            return []
        announcement = {
            "type": "system",
            "text": LEFT_ROOM_TEXT,
            "sender": payload.user_id,
            "receiver": payload.room_id,
            "isRoom": True,
            "time": datetime.now(timezone.utc),
        }
        return [
            Outbound(payload.room_id, "receive_message", announcement),
            Outbound(payload.user_id, "left_room", payload.room_id),
        ]

    async def on_delete_chat(self, session, payload: DeleteChatEvent):
        if payload.is_room:
            return []
        deleted = await run_in_threadpool(self.messages.delete_conversation, payload.user_id, payload.target_id)
        logger.info("Cleared %d messages between %s and %s", deleted, payload.user_id, payload.target_id)
        return [Outbound(payload.target_id, "chat_cleared", {"by": payload.user_id})]

    async def on_profile_updated(self, session, payload: ProfileUpdatedEvent):
        return [Outbound(BROADCAST, "contact_updated", payload.to_wire(), exclude=session.sid)]
