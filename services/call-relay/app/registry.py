from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator


class RoomStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"


@dataclass
class Connection:
    socket: Any
    user_id: str | None
    speak_language: str | None
    listen_language: str | None
    room_id: str | None = None
    partner_id: str | None = None

    @property
    def in_call(self) -> bool:
        return self.room_id is not None

    @property
    def paired(self) -> bool:
        return self.room_id is not None and self.partner_id is not None

    def clear_pairing(self) -> None:
        self.room_id = None
        self.partner_id = None


@dataclass
class Room:
    caller: str
    callee: str
    status: RoomStatus = RoomStatus.PENDING
    expiry_task: asyncio.Task[None] | None = field(default=None, repr=False, compare=False)

    def cancel_expiry(self) -> None:
        if self.expiry_task:
            self.expiry_task.cancel()
            self.expiry_task = None


class ConnectionRegistry:
    """Registered connections keyed by connection id, in registration order."""

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    def add(self, client_id: str, connection: Connection) -> None:
        self._connections[client_id] = connection

    def get(self, client_id: str | None) -> Connection | None:
        if client_id is None:
            return None
        return self._connections.get(client_id)

    def remove(self, client_id: str) -> Connection | None:
        return self._connections.pop(client_id, None)

    def for_each(self, fn: Callable[[str, Connection], None]) -> None:
        for client_id, connection in list(self._connections.items()):
            fn(client_id, connection)

    def values(self) -> list[Connection]:
        return list(self._connections.values())

    def items(self) -> list[tuple[str, Connection]]:
        return list(self._connections.items())

    def find_by_user_id(self, user_id: str) -> tuple[str, Connection] | None:
        # user ids are not unique; the first registered match wins
        for client_id, connection in self._connections.items():
            if connection.user_id == user_id:
                return client_id, connection
        return None

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._connections))


class RoomRegistry:
    """Live call rooms keyed by room id, in creation order.

    Lookups by member are linear scans, O(rooms) per call.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, Room] = {}

    def create(self, room_id: str, caller: str, callee: str) -> Room:
        room = Room(caller=caller, callee=callee)
        self._rooms[room_id] = room
        return room

    def get(self, room_id: str | None) -> Room | None:
        if room_id is None:
            return None
        return self._rooms.get(room_id)

    def delete(self, room_id: str | None) -> Room | None:
        if room_id is None:
            return None
        room = self._rooms.pop(room_id, None)
        if room:
            room.cancel_expiry()
        return room

    def find_by_callee(self, client_id: str, status: RoomStatus | None = None) -> tuple[str, Room] | None:
        for room_id, room in self._rooms.items():
            if room.callee != client_id:
                continue
            if status is not None and room.status is not status:
                continue
            return room_id, room
        return None

    def find_by_member(self, client_id: str) -> list[tuple[str, Room]]:
        return [
            (room_id, room)
            for room_id, room in self._rooms.items()
            if room.caller == client_id or room.callee == client_id
        ]

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)
