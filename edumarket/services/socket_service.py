"""
Socket.IO gateway for real-time conversation traffic.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Set

import socketio
from socketio.exceptions import ConnectionRefusedError

from edumarket.config import get_settings
from edumarket.constants import MessageType, conversation_room, user_room
from edumarket.errors import AuthenticationError, ChatError, NotFoundOrForbidden, ValidationError
from edumarket.security import AuthUser, bearer_from_header, user_from_token
from edumarket.services import conversation_service, message_service
from edumarket.services.presence import PresenceStore
from edumarket.utils.chat_helpers import message_out
from edumarket.utils.dates import utcnow
from edumarket.utils.logger import get_logger

logger = get_logger("socket_service")
settings = get_settings()

Handler = Callable[[str, AuthUser, dict], Awaitable[Any]]


def create_socket_server() -> socketio.AsyncServer:
    """Build the Socket.IO server; a message queue URL enables cross-process fan-out."""
    client_manager = None
    if settings.SOCKETIO_MESSAGE_QUEUE:
        client_manager = socketio.AsyncRedisManager(settings.SOCKETIO_MESSAGE_QUEUE)
    return socketio.AsyncServer(
        cors_allowed_origins=settings.cors_origins or "*",
        async_mode="asgi",
        client_manager=client_manager,
        logger=settings.APP_DEBUG,
        engineio_logger=False,
    )


def _payload(data: Any, key: str = "conversation_id") -> dict:
    """Events carry a dict; a bare string is taken as the conversation id."""
    if isinstance(data, dict):
        return data
    if isinstance(data, str):
        return {key: data}
    return {}


def _require(data: dict, *fields: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")


class RealtimeGateway:
    """Hub for all live connections of this process.

    Connection lifecycle: connect (token verified, presence registered)
    -> join/leave conversation rooms -> disconnect (presence dropped, rooms
    notified). Every event of one connection runs under that connection's
    lock, so a client's events are handled in arrival order.
    """

    def __init__(self, sio: socketio.AsyncServer, presence: PresenceStore) -> None:
        self.sio = sio
        self.presence = presence
        # socketId -> authenticated user
        self.sessions: Dict[str, AuthUser] = {}
        # socketId -> conversation ids joined
        self.socket_rooms: Dict[str, Set[str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def register_handlers(self) -> None:
        self.sio.on("connect", self.connect)
        self.sio.on("disconnect", self.disconnect)
        events: Dict[str, Handler] = {
            "join_conversation": self.join_conversation,
            "leave_conversation": self.leave_conversation,
            "send_message": self.send_message,
            "mark_as_read": self.mark_as_read,
            "typing": self.typing,
            "call_user": self.call_user,
            "answer_call": self.answer_call,
            "end_call": self.end_call,
            "offer": self.offer,
            "answer": self.answer,
            "ice_candidate": self.ice_candidate,
        }
        for event, handler in events.items():
            self.sio.on(event, self.guarded(event, handler))

    # ------------------------ lifecycle ------------------------

    async def connect(self, sid: str, environ: dict, auth: dict | None = None) -> bool:
        """Authenticate the handshake; refused connections never get a session."""
        token = auth.get("token") if isinstance(auth, dict) else None
        if not token and environ:
            token = bearer_from_header(environ.get("HTTP_AUTHORIZATION", ""))
        try:
            user = user_from_token(token)
        except AuthenticationError as e:
            logger.warning(f"Connection rejected for {sid}: {e.message}")
            raise ConnectionRefusedError({"message": e.message, "code": e.code})

        self.sessions[sid] = user
        self.socket_rooms[sid] = set()
        self._locks[sid] = asyncio.Lock()
        await self.presence.register(str(user.id), sid)
        await self.sio.enter_room(sid, user_room(user.id))

        logger.info(f"User connected: {user.id} ({user.role.value}) - Socket: {sid}")
        await self.broadcast_online_users()
        return True

    async def disconnect(self, sid: str, reason: Any = None) -> None:
        lock = self._locks.get(sid)
        if lock is None:
            self.sessions.pop(sid, None)
            self.socket_rooms.pop(sid, None)
            logger.debug(f"Socket disconnected before authentication: {sid}")
            return

        # Wait for the connection's in-flight event so it cannot recreate state afterwards.
        async with lock:
            user = self.sessions.pop(sid, None)
            rooms = self.socket_rooms.pop(sid, set())
            self._locks.pop(sid, None)
            if user is None:
                return
            for conversation_id in rooms:
                await self.sio.leave_room(sid, conversation_room(conversation_id))
                await self.sio.emit(
                    "room_membership",
                    {"conversation_id": conversation_id, "user_id": str(user.id), "action": "left"},
                    room=conversation_room(conversation_id),
                    skip_sid=sid,
                )
            await self.sio.leave_room(sid, user_room(user.id))
            await self.presence.unregister(str(user.id), sid)

        logger.info(f"User disconnected: {user.id} - Socket: {sid}")
        await self.broadcast_online_users()

    async def broadcast_online_users(self) -> None:
        await self.sio.emit("online_users", {"user_ids": await self.presence.online_user_ids()})

    # ------------------------ dispatch ------------------------

    def guarded(self, event: str, handler: Handler) -> Callable[..., Awaitable[Any]]:
        """Serialize a connection's events and turn failures into `error` events."""

        async def wrapper(sid: str, data: Any = None) -> Any:
            lock = self._locks.get(sid)
            if lock is None or sid not in self.sessions:
                await self.emit_error(sid, event, AuthenticationError("Not authenticated"))
                return None
            async with lock:
                user = self.sessions.get(sid)
                if user is None:
                    # disconnected while this event was queued
                    return None
                try:
                    return await handler(sid, user, _payload(data))
                except ChatError as e:
                    logger.info(f"{event} rejected for {sid}: {e.code} {e.message}")
                    await self.emit_error(sid, event, e)
                except Exception as e:
                    logger.error(f"Error handling {event} for {sid}: {e}", exc_info=True)
                    await self.emit_error(sid, event, ChatError())

        wrapper.__name__ = f"on_{event}"
        return wrapper

    async def emit_error(self, sid: str, event: str, error: ChatError) -> None:
        await self.sio.emit(
            "error",
            {"event": event, "message": error.message, "code": error.code},
            room=sid,
        )

    # ------------------------ rooms ------------------------

    async def join_conversation(self, sid: str, user: AuthUser, data: dict) -> None:
        _require(data, "conversation_id")
        conversation = await conversation_service.get_by_id(data["conversation_id"], user.id)
        conversation_id = str(conversation.id)

        rooms = self.socket_rooms.get(sid)
        if rooms is None or sid not in self.sessions:
            return
        if conversation_id not in rooms:
            await self.sio.enter_room(sid, conversation_room(conversation_id))
            rooms.add(conversation_id)
            await self.sio.emit(
                "room_membership",
                {"conversation_id": conversation_id, "user_id": str(user.id), "action": "joined"},
                room=conversation_room(conversation_id),
                skip_sid=sid,
            )
            logger.debug(f"User {user.id} joined conversation {conversation_id}")
        await self.sio.emit("joined_conversation", {"conversation_id": conversation_id}, room=sid)

    async def leave_conversation(self, sid: str, user: AuthUser, data: dict) -> None:
        _require(data, "conversation_id")
        conversation_id = str(data["conversation_id"])

        rooms = self.socket_rooms.get(sid, set())
        if conversation_id in rooms:
            await self.sio.leave_room(sid, conversation_room(conversation_id))
            rooms.discard(conversation_id)
            await self.sio.emit(
                "room_membership",
                {"conversation_id": conversation_id, "user_id": str(user.id), "action": "left"},
                room=conversation_room(conversation_id),
                skip_sid=sid,
            )
        await self.sio.emit("left_conversation", {"conversation_id": conversation_id}, room=sid)

    # ------------------------ messages ------------------------

    async def send_message(self, sid: str, user: AuthUser, data: dict) -> None:
        _require(data, "conversation_id", "content", "sender_id")
        if str(data["sender_id"]) != str(user.id):
            raise NotFoundOrForbidden()

        conversation = await conversation_service.get_by_id(data["conversation_id"], user.id)
        recipient = conversation.other_participant(user.id)
        result = await message_service.append(
            conversation_id=conversation.id,
            sender_id=user.id,
            recipient_id=recipient.user_id,
            content=data["content"],
            message_type=data.get("type") or MessageType.TEXT,
            attachment=data.get("attachment"),
        )

        message_data = message_out(result.message).model_dump(mode="json")
        await self.publish_message(message_data, recipient_id=str(recipient.user_id))
        await self.sio.emit("message_sent", {"message": message_data, "warning": result.warning}, room=sid)

    async def publish_message(self, message_data: dict, *, recipient_id: str) -> None:
        """Fan a stored message out to the room and ping the recipient's live socket."""
        conversation_id = message_data["conversation_id"]
        await self.sio.emit("message_received", {"message": message_data}, room=conversation_room(conversation_id))

        recipient_sid = await self.presence.lookup(recipient_id)
        if recipient_sid:
            await self.sio.emit(
                "message_notification",
                {
                    "conversation_id": conversation_id,
                    "message_id": message_data["id"],
                    "sender_id": message_data["sender"]["id"],
                    "content": message_data["content"],
                    "timestamp": message_data["created_at"],
                },
                room=recipient_sid,
            )

    async def mark_as_read(self, sid: str, user: AuthUser, data: dict) -> None:
        _require(data, "conversation_id")
        conversation = await conversation_service.get_by_id(data["conversation_id"], user.id)
        seen = await message_service.mark_seen(conversation.id, user.id, message_ids=data.get("message_ids"))
        await conversation_service.mark_read(conversation.id, user.id)

        await self.sio.emit(
            "messages_seen",
            {
                "conversation_id": str(conversation.id),
                "user_id": str(user.id),
                "message_ids": data.get("message_ids"),
                "count": seen.modified_count,
                "timestamp": utcnow().isoformat(),
            },
            room=conversation_room(conversation.id),
        )

    async def typing(self, sid: str, user: AuthUser, data: dict) -> None:
        _require(data, "conversation_id")
        conversation_id = str(data["conversation_id"])
        # Joining already proved membership; no storage round trip per keystroke.
        if conversation_id not in self.socket_rooms.get(sid, set()):
            raise NotFoundOrForbidden()
        await self.sio.emit(
            "user_typing",
            {
                "conversation_id": conversation_id,
                "user_id": str(user.id),
                "is_typing": bool(data.get("is_typing", True)),
                "timestamp": utcnow().isoformat(),
            },
            room=conversation_room(conversation_id),
            skip_sid=sid,
        )

    # ------------------------ call signaling ------------------------

    async def _relay_to_peer(self, user: AuthUser, data: dict, event: str, payload: dict) -> None:
        """Forward a signaling message to the other participant's personal room.

        Only members of the conversation may signal; media never passes through here.
        """
        _require(data, "conversation_id")
        conversation = await conversation_service.get_by_id(data["conversation_id"], user.id)
        peer = conversation.other_participant(user.id)
        await self.sio.emit(
            event,
            {"conversation_id": str(conversation.id), "from": str(user.id), **payload},
            room=user_room(peer.user_id),
        )

    async def call_user(self, sid: str, user: AuthUser, data: dict) -> None:
        _require(data, "signal")
        await self._relay_to_peer(user, data, "incoming_call", {"signal": data["signal"], "name": data.get("name")})

    async def answer_call(self, sid: str, user: AuthUser, data: dict) -> None:
        _require(data, "signal")
        await self._relay_to_peer(user, data, "call_accepted", {"signal": data["signal"]})

    async def end_call(self, sid: str, user: AuthUser, data: dict) -> None:
        await self._relay_to_peer(user, data, "call_ended", {})

    async def offer(self, sid: str, user: AuthUser, data: dict) -> None:
        _require(data, "sdp")
        await self._relay_to_peer(user, data, "offer", {"sdp": data["sdp"]})

    async def answer(self, sid: str, user: AuthUser, data: dict) -> None:
        _require(data, "sdp")
        await self._relay_to_peer(user, data, "answer", {"sdp": data["sdp"]})

    async def ice_candidate(self, sid: str, user: AuthUser, data: dict) -> None:
        _require(data, "candidate")
        await self._relay_to_peer(user, data, "ice_candidate", {"candidate": data["candidate"]})


def get_socket_app(sio: socketio.AsyncServer, other_asgi_app=None) -> socketio.ASGIApp:
    """Get Socket.IO ASGI app, optionally wrapping the HTTP app."""
    return socketio.ASGIApp(sio, other_asgi_app=other_asgi_app, socketio_path="socket.io")
