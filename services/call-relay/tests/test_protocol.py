from __future__ import annotations

import json
import sys
from datetime import datetime
from pathlib import Path

import pytest

SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

from app.protocol import ProtocolError, encode_envelope, get_str, make_envelope, parse_envelope


def test_parse_envelope_returns_type_and_payload() -> None:
    raw = json.dumps({"type": "callAccept", "payload": {"roomId": "r-1"}, "timestamp": "ignored"})
    assert parse_envelope(raw) == ("callAccept", {"roomId": "r-1"})


@pytest.mark.parametrize("raw", ['{"type": "typing"}', '{"type": "typing", "payload": null}'])
def test_parse_envelope_defaults_missing_payload(raw) -> None:
    assert parse_envelope(raw) == ("typing", {})


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2, 3]",
        '"register"',
        '{"payload": {}}',
        '{"type": 42, "payload": {}}',
        '{"type": "   "}',
        '{"type": "register", "payload": ["userId"]}',
    ],
)
def test_parse_envelope_rejects_malformed_frames(raw) -> None:
    with pytest.raises(ProtocolError):
        parse_envelope(raw)


def test_make_envelope_stamps_utc_time() -> None:
    envelope = make_envelope("callEnd")
    assert envelope["type"] == "callEnd"
    assert envelope["payload"] == {}
    assert datetime.fromisoformat(envelope["timestamp"]).utcoffset().total_seconds() == 0


def test_encode_envelope_is_json_text() -> None:
    decoded = json.loads(encode_envelope("typing", {"userId": "alice"}))
    assert decoded["payload"] == {"userId": "alice"}


def test_get_str_normalizes_values() -> None:
    payload = {"a": "  alice ", "b": "   ", "c": 7, "d": True, "e": None}
    assert get_str(payload, "a") == "alice"
    assert get_str(payload, "b") is None
    assert get_str(payload, "c") == "7"
    assert get_str(payload, "d") is None
    assert get_str(payload, "e") is None
    assert get_str(payload, "missing") is None
    assert get_str(None, "a") is None


def test_parse_envelope_accepts_utf8_bytes() -> None:
    assert parse_envelope('{"type": "translation", "payload": {"text": "¿qué?"}}'.encode("utf-8")) == (
        "translation",
        {"text": "¿qué?"},
    )


def test_parse_envelope_rejects_invalid_utf8_bytes() -> None:
    with pytest.raises(ProtocolError):
        parse_envelope(b'\xff{"type": "ping"}')
