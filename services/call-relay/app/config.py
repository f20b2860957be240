from __future__ import annotations

import os
from dataclasses import dataclass


def _parse_origins(value: str) -> list[str]:
    cleaned = [part.strip() for part in value.split(",") if part.strip()]
    return cleaned or ["*"]


def _parse_int(value: str | None, default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Settings:
    host: str
    port: int
    cors_origins: list[str]
    log_level: str
    log_format: str
    pending_call_timeout_sec: int


def load_settings() -> Settings:
    log_format = os.getenv("LOG_FORMAT", "text").strip().lower()
    return Settings(
        host=os.getenv("HOST", "0.0.0.0").strip() or "0.0.0.0",
        port=_parse_int(os.getenv("PORT"), 8080),
        cors_origins=_parse_origins(os.getenv("CORS_ORIGINS", "*")),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        log_format=log_format if log_format in {"text", "json"} else "text",
        pending_call_timeout_sec=max(_parse_int(os.getenv("PENDING_CALL_TIMEOUT_SEC"), 0), 0),
    )


settings = load_settings()
