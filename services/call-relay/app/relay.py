from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from fastapi import WebSocket
from fastapi.websockets import WebSocketState

from .logging_config import get_logger
from .protocol import (
    CALL_ACCEPT,
    CALL_END,
    CALL_REJECT,
    CALL_REQUEST,
    ERROR,
    PING,
    PONG,
    REGISTER,
    TRANSLATION,
    TYPING,
    USER_LIST,
    ProtocolError,
    encode_envelope,
    get_str,
    parse_envelope,
)
from .registry import Connection, ConnectionRegistry, Room, RoomRegistry, RoomStatus

logger = get_logger(__name__)

Handler = Callable[[str, dict[str, Any]], list["BroadcastNotification"]]


@dataclass
class BroadcastNotification:
    sockets: list[WebSocket]
    msg_type: str
    payload: dict[str, Any]


def is_open(socket: Any) -> bool:
    return (
        getattr(socket, "client_state", None) == WebSocketState.CONNECTED
        and getattr(socket, "application_state", None) == WebSocketState.CONNECTED
    )


class RelayHub:
    """Routes call signaling and translation text between paired peers.

    All registry reads and writes happen under ``_lock``. Handlers named
    ``*_locked`` mutate state and return the notifications to deliver; those
    are sent once the lock is released, skipping handles that are no longer
    open.
    """

    def __init__(self, pending_call_timeout_sec: float = 0) -> None:
        self._lock = asyncio.Lock()
        self.pending_call_timeout_sec = pending_call_timeout_sec
        self.sockets: dict[str, WebSocket] = {}
        self.connections = ConnectionRegistry()
        self.rooms = RoomRegistry()
        self._handlers: dict[str, Handler] = {
            REGISTER: self._handle_register_locked,
            TRANSLATION: self._handle_translation_locked,
            TYPING: self._handle_typing_locked,
            CALL_REQUEST: self._handle_call_request_locked,
            CALL_ACCEPT: self._handle_call_accept_locked,
            CALL_REJECT: self._handle_call_reject_locked,
            CALL_END: self._handle_call_end_locked,
            PING: self._handle_ping_locked,
        }

    async def connect(self, socket: WebSocket) -> str:
        client_id = uuid.uuid4().hex
        async with self._lock:
            self.sockets[client_id] = socket
        logger.info("Client connected: %s", client_id)
        return client_id

    async def disconnect(self, client_id: str) -> None:
        notifications: list[BroadcastNotification] = []
        async with self._lock:
            self.sockets.pop(client_id, None)
            if client_id in self.connections:
                notifications.extend(self._release_rooms_locked(client_id))
                self.connections.remove(client_id)
                notifications.append(self._user_list_locked())
        logger.info("Client disconnected: %s", client_id)
        await self._flush_notifications(notifications)

    async def handle_message(self, client_id: str, raw_data: str | bytes) -> None:
        try:
            msg_type, payload = parse_envelope(raw_data)
        except ProtocolError as exc:
            logger.warning("Malformed frame from %s: %s", client_id, exc)
            await self._send_error(client_id, "Invalid message format")
            return

        try:
            await self.dispatch(client_id, msg_type, payload)
        except Exception:
            logger.exception("Handler for %s failed on connection %s", msg_type, client_id)
            await self._send_error(client_id, "Internal server error")

    async def dispatch(self, client_id: str, msg_type: str, payload: dict[str, Any]) -> None:
        handler = self._handlers.get(msg_type)
        if handler is None:
            logger.warning("Unknown message type from %s: %s", client_id, msg_type)
            await self._send_error(client_id, f"Unknown message type: {msg_type}")
            return

        logger.debug("Dispatching %s from %s", msg_type, client_id)
        async with self._lock:
            notifications = handler(client_id, payload)
        await self._flush_notifications(notifications)

    async def broadcast_user_list(self) -> None:
        async with self._lock:
            notification = self._user_list_locked()
        await self._flush_notifications([notification])

    def stats(self) -> dict[str, int]:
        return {"clients": len(self.connections), "rooms": len(self.rooms)}

    def _handle_register_locked(self, client_id: str, payload: dict[str, Any]) -> list[BroadcastNotification]:
        socket = self.sockets.get(client_id)
        if socket is None:
            return []

        user_id = get_str(payload, "userId")
        if not user_id:
            logger.warning("Registering connection %s without a userId", client_id)

        notifications: list[BroadcastNotification] = []
        if client_id in self.connections:
            # re-registration starts from a clean call state
            notifications.extend(self._release_rooms_locked(client_id))

        connection = Connection(
            socket=socket,
            user_id=user_id,
            speak_language=get_str(payload, "speakLanguage"),
            listen_language=get_str(payload, "listenLanguage"),
        )
        self.connections.add(client_id, connection)
        logger.info(
            "Registered user: %s (speaks: %s, listens: %s)",
            user_id,
            connection.speak_language,
            connection.listen_language,
        )

        notifications.append(
            BroadcastNotification(
                sockets=[socket],
                msg_type=REGISTER,
                payload={"success": True, "clientId": client_id, "message": "Successfully registered"},
            )
        )
        notifications.append(self._user_list_locked())
        return notifications

    def _handle_translation_locked(self, client_id: str, payload: dict[str, Any]) -> list[BroadcastNotification]:
        connection = self.connections.get(client_id)
        if not connection:
            logger.warning("Dropped translation from unregistered connection %s", client_id)
            return []

        forwarded = {**payload, "forwarded": True}
        if connection.paired:
            partner = self.connections.get(connection.partner_id)
            if not partner:
                return []
            return [BroadcastNotification(sockets=[partner.socket], msg_type=TRANSLATION, payload=forwarded)]

        # unpaired senders reach everyone else
        targets = [other.socket for other_id, other in self.connections.items() if other_id != client_id]
        return [BroadcastNotification(sockets=targets, msg_type=TRANSLATION, payload=forwarded)]

    def _handle_typing_locked(self, client_id: str, payload: dict[str, Any]) -> list[BroadcastNotification]:
        connection = self.connections.get(client_id)
        if not connection or not connection.paired:
            return []

        partner = self.connections.get(connection.partner_id)
        if not partner:
            return []
        return [BroadcastNotification(sockets=[partner.socket], msg_type=TYPING, payload={"userId": connection.user_id})]

    def _handle_call_request_locked(self, client_id: str, payload: dict[str, Any]) -> list[BroadcastNotification]:
        requester = self.connections.get(client_id)
        if not requester:
            return self._error_locked(client_id, "Not registered")
        if requester.paired:
            return self._error_locked(client_id, "Already in a call")

        to = get_str(payload, "to")
        if not to:
            return self._error_locked(client_id, "Target user is required")

        match = self.connections.find_by_user_id(to)
        if not match:
            logger.warning("Call request from %s to unknown user %s", client_id, to)
            return self._error_locked(client_id, "Target user not found")

        target_id, target = match
        if target_id == client_id:
            return self._error_locked(client_id, "Cannot call yourself")

        # a new request replaces an unanswered one
        notifications = self._cancel_outgoing_locked(client_id)
        room_id = uuid.uuid4().hex
        room = self.rooms.create(room_id, caller=client_id, callee=target_id)
        requester.room_id = room_id
        if self.pending_call_timeout_sec > 0:
            room.expiry_task = asyncio.create_task(self._expire_pending_call(room_id))

        from_identity = get_str(payload, "from") or requester.user_id
        logger.info("Call request from %s to %s, room: %s", from_identity, to, room_id)
        notifications.append(
            BroadcastNotification(
                sockets=[target.socket],
                msg_type=CALL_REQUEST,
                payload={"from": from_identity, "roomId": room_id},
            )
        )
        return notifications

    def _handle_call_accept_locked(self, client_id: str, payload: dict[str, Any]) -> list[BroadcastNotification]:
        room_id = get_str(payload, "roomId")
        room = self.rooms.get(room_id)
        if not room or room_id is None:
            logger.warning("Call accept from %s for unknown room %s", client_id, room_id)
            return self._error_locked(client_id, "Room not found")

        caller = self.connections.get(room.caller)
        callee = self.connections.get(room.callee)
        if not caller or not callee:
            return self._error_locked(client_id, "Room is no longer available")
        if caller.room_id not in (None, room_id) or callee.room_id not in (None, room_id):
            return self._error_locked(client_id, "Already in a call")

        room.status = RoomStatus.ACTIVE
        room.cancel_expiry()

        caller.room_id = room_id
        caller.partner_id = room.callee
        callee.room_id = room_id
        callee.partner_id = room.caller

        logger.info("Call accepted in room: %s", room_id)
        return [
            BroadcastNotification(
                sockets=[caller.socket, callee.socket],
                msg_type=CALL_ACCEPT,
                payload={"roomId": room_id},
            )
        ]

    def _handle_call_reject_locked(self, client_id: str, payload: dict[str, Any]) -> list[BroadcastNotification]:
        match = self.rooms.find_by_callee(client_id, status=RoomStatus.PENDING)
        if not match:
            return []

        room_id, room = match
        self.rooms.delete(room_id)
        logger.info("Call rejected in room: %s", room_id)
        return self._reject_caller_locked(room_id, room)

    def _handle_call_end_locked(self, client_id: str, payload: dict[str, Any]) -> list[BroadcastNotification]:
        # the sender's own state is authoritative, payload roomId is informational
        return self._end_call_locked(client_id)

    def _handle_ping_locked(self, client_id: str, payload: dict[str, Any]) -> list[BroadcastNotification]:
        socket = self.sockets.get(client_id)
        if socket is None:
            return []
        return [BroadcastNotification(sockets=[socket], msg_type=PONG, payload={})]

    def _end_call_locked(self, client_id: str) -> list[BroadcastNotification]:
        connection = self.connections.get(client_id)
        if not connection:
            return []
        if not connection.paired:
            return self._cancel_outgoing_locked(client_id)

        room_id = connection.room_id
        notifications: list[BroadcastNotification] = []
        partner = self.connections.get(connection.partner_id)
        if partner:
            notifications.append(BroadcastNotification(sockets=[partner.socket], msg_type=CALL_END, payload={}))
            if partner.room_id == room_id:
                partner.clear_pairing()

        self.rooms.delete(room_id)
        connection.clear_pairing()
        logger.info("Call ended in room: %s", room_id)
        return notifications

    def _cancel_outgoing_locked(self, client_id: str) -> list[BroadcastNotification]:
        connection = self.connections.get(client_id)
        if not connection or connection.room_id is None or connection.partner_id is not None:
            return []

        room_id = connection.room_id
        connection.clear_pairing()
        room = self.rooms.get(room_id)
        if not room or room.caller != client_id or room.status is not RoomStatus.PENDING:
            return []

        self.rooms.delete(room_id)
        logger.info("Call request cancelled in room: %s", room_id)
        callee = self.connections.get(room.callee)
        if not callee:
            return []
        return [BroadcastNotification(sockets=[callee.socket], msg_type=CALL_END, payload={})]

    def _reject_caller_locked(self, room_id: str, room: Room, reason: str | None = None) -> list[BroadcastNotification]:
        caller = self.connections.get(room.caller)
        if not caller:
            return []
        if caller.room_id == room_id:
            caller.clear_pairing()
        payload = {"reason": reason} if reason else {}
        return [BroadcastNotification(sockets=[caller.socket], msg_type=CALL_REJECT, payload=payload)]

    def _release_rooms_locked(self, client_id: str) -> list[BroadcastNotification]:
        notifications = self._end_call_locked(client_id)

        for room_id, room in self.rooms.find_by_member(client_id):
            self.rooms.delete(room_id)
            if room.caller == client_id:
                callee = self.connections.get(room.callee)
                if callee:
                    notifications.append(BroadcastNotification(sockets=[callee.socket], msg_type=CALL_END, payload={}))
                connection = self.connections.get(client_id)
                if connection and connection.room_id == room_id:
                    connection.clear_pairing()
            else:
                notifications.extend(self._reject_caller_locked(room_id, room))
            logger.info("Dropped pending room %s for departing client %s", room_id, client_id)

        return notifications

    def _user_list_locked(self) -> BroadcastNotification:
        users = [
            {
                "userId": connection.user_id,
                "speakLanguage": connection.speak_language,
                "listenLanguage": connection.listen_language,
                "inCall": connection.in_call,
            }
            for connection in self.connections.values()
        ]
        return BroadcastNotification(
            sockets=[connection.socket for connection in self.connections.values()],
            msg_type=USER_LIST,
            payload={"users": users},
        )

    def _error_locked(self, client_id: str, message: str) -> list[BroadcastNotification]:
        socket = self.sockets.get(client_id)
        if socket is None:
            return []
        return [BroadcastNotification(sockets=[socket], msg_type=ERROR, payload={"message": message})]

    async def _expire_pending_call(self, room_id: str) -> None:
        await asyncio.sleep(self.pending_call_timeout_sec)
        notifications: list[BroadcastNotification] = []
        async with self._lock:
            room = self.rooms.get(room_id)
            if not room or room.status is not RoomStatus.PENDING:
                return

            # detach first so deleting the room does not cancel this task
            room.expiry_task = None
            self.rooms.delete(room_id)
            callee = self.connections.get(room.callee)
            if callee:
                notifications.append(BroadcastNotification(sockets=[callee.socket], msg_type=CALL_END, payload={}))
            notifications.extend(self._reject_caller_locked(room_id, room, reason="timeout"))
            logger.info("Pending call expired in room: %s", room_id)

        await self._flush_notifications(notifications)

    async def _send_error(self, client_id: str, message: str) -> None:
        socket = self.sockets.get(client_id)
        if socket is None:
            return
        await self._broadcast([socket], ERROR, {"message": message})

    async def _flush_notifications(self, notifications: list[BroadcastNotification]) -> None:
        for item in notifications:
            await self._broadcast(item.sockets, item.msg_type, item.payload)

    async def _broadcast(self, sockets: list[WebSocket], msg_type: str, payload: dict[str, Any]) -> None:
        targets = [socket for socket in sockets if is_open(socket)]
        if len(targets) < len(sockets):
            logger.debug("Skipped %d closed socket(s) for %s", len(sockets) - len(targets), msg_type)
        if not targets:
            return
        raw_data = encode_envelope(msg_type, payload)
        await asyncio.gather(*(self._send_raw(socket, raw_data) for socket in targets), return_exceptions=True)

    async def _send_raw(self, socket: WebSocket, raw_data: str) -> None:
        try:
            await socket.send_text(raw_data)
        except Exception as exc:
            logger.debug("Send failed, recipient unreachable: %s", exc)
