from __future__ import annotations

import sys
from pathlib import Path

SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

from app.registry import Connection, ConnectionRegistry, RoomRegistry, RoomStatus


def _connection(user_id: str) -> Connection:
    return Connection(socket=object(), user_id=user_id, speak_language="en", listen_language="es")


def test_connection_registry_overwrite_and_remove() -> None:
    registry = ConnectionRegistry()
    registry.add("c1", _connection("alice"))
    registry.add("c1", _connection("alice-2"))
    registry.add("c2", _connection("bob"))

    assert len(registry) == 2
    assert registry.get("c1").user_id == "alice-2"
    assert [c.user_id for c in registry.values()] == ["alice-2", "bob"]

    registry.remove("c1")
    registry.remove("does-not-exist")
    assert registry.get("c1") is None
    assert "c2" in registry
    assert len(registry) == 1


def test_connection_registry_for_each_visits_all() -> None:
    registry = ConnectionRegistry()
    registry.add("c1", _connection("alice"))
    registry.add("c2", _connection("bob"))
    seen: list[str] = []
    registry.for_each(lambda client_id, connection: seen.append(f"{client_id}:{connection.user_id}"))
    assert seen == ["c1:alice", "c2:bob"]


def test_find_by_user_id_returns_first_registered_match() -> None:
    registry = ConnectionRegistry()
    registry.add("c1", _connection("shared"))
    registry.add("c2", _connection("shared"))

    match = registry.find_by_user_id("shared")
    assert match is not None
    assert match[0] == "c1"
    assert registry.find_by_user_id("nobody") is None


def test_room_registry_lifecycle() -> None:
    rooms = RoomRegistry()
    room = rooms.create("r1", caller="c1", callee="c2")
    assert room.status is RoomStatus.PENDING
    assert rooms.get("r1") is room
    assert len(rooms) == 1

    assert rooms.delete("r1") is room
    assert rooms.delete("r1") is None
    assert rooms.get("r1") is None
    assert len(rooms) == 0


def test_find_by_callee_first_match_and_status_filter() -> None:
    rooms = RoomRegistry()
    first = rooms.create("r1", caller="c1", callee="target")
    rooms.create("r2", caller="c3", callee="target")

    assert rooms.find_by_callee("target") == ("r1", first)

    first.status = RoomStatus.ACTIVE
    room_id, _ = rooms.find_by_callee("target", status=RoomStatus.PENDING)
    assert room_id == "r2"
    assert rooms.find_by_callee("c1") is None


def test_find_by_member_matches_either_side() -> None:
    rooms = RoomRegistry()
    rooms.create("r1", caller="c1", callee="c2")
    rooms.create("r2", caller="c3", callee="c1")
    rooms.create("r3", caller="c4", callee="c5")

    assert [room_id for room_id, _ in rooms.find_by_member("c1")] == ["r1", "r2"]
