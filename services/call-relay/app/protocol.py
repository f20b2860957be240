from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

REGISTER = "register"
TRANSLATION = "translation"
TYPING = "typing"
CALL_REQUEST = "callRequest"
CALL_ACCEPT = "callAccept"
CALL_REJECT = "callReject"
CALL_END = "callEnd"
PING = "ping"

PONG = "pong"
ERROR = "error"
USER_LIST = "userList"


class ProtocolError(ValueError):
    """Raised for inbound frames that cannot be decoded into an envelope."""


def as_record(value: Any) -> dict[str, Any] | None:
    if isinstance(value, dict):
        return value
    return None


def _normalize_str(candidate: Any) -> str | None:
    if isinstance(candidate, str):
        normalized = candidate.strip()
        return normalized or None
    if isinstance(candidate, int) and not isinstance(candidate, bool):
        return str(candidate)
    return None


def get_str(payload: dict[str, Any] | None, key: str) -> str | None:
    if not payload:
        return None
    return _normalize_str(payload.get(key))


def utc_timestamp() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def make_envelope(msg_type: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "type": msg_type,
        "payload": payload if payload is not None else {},
        "timestamp": utc_timestamp(),
    }


def encode_envelope(msg_type: str, payload: dict[str, Any] | None = None) -> str:
    return json.dumps(make_envelope(msg_type, payload))


def parse_envelope(raw_data: str | bytes) -> tuple[str, dict[str, Any]]:
    if isinstance(raw_data, (bytes, bytearray)):
        try:
            raw_data = raw_data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("frame is not valid UTF-8") from exc

    try:
        msg = json.loads(raw_data)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ProtocolError("frame is not valid JSON") from exc

    if not isinstance(msg, dict):
        raise ProtocolError("frame is not a JSON object")

    msg_type = msg.get("type")
    if not isinstance(msg_type, str) or not msg_type.strip():
        raise ProtocolError("frame has no type")

    raw_payload = msg.get("payload")
    payload = as_record(raw_payload) if raw_payload is not None else {}
    if payload is None:
        raise ProtocolError("payload is not an object")

    return msg_type.strip(), payload
