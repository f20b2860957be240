from __future__ import annotations

from typing import Any

import anyio
import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .logging_config import get_logger, setup_logging
from .relay import RelayHub

setup_logging(log_level=settings.log_level, log_format=settings.log_format)
logger = get_logger(__name__)

app = FastAPI(title="Call Relay", version="0.1.0")
hub = RelayHub(pending_call_timeout_sec=settings.pending_call_timeout_sec)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health() -> dict[str, Any]:
    return {"status": "ok", **hub.stats()}


async def _serve_connection(websocket: WebSocket) -> None:
    await websocket.accept()
    client_id = await hub.connect(websocket)

    try:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break
            if "text" in message and message["text"] is not None:
                await hub.handle_message(client_id, message["text"])
            elif "bytes" in message and message["bytes"] is not None:
                await hub.handle_message(client_id, message["bytes"])
    except WebSocketDisconnect:
        pass
    finally:
        # cleanup must reach the partner even when the connection task is cancelled
        with anyio.CancelScope(shield=True):
            await hub.disconnect(client_id)


@app.websocket("/ws")
async def ws_relay(websocket: WebSocket):
    await _serve_connection(websocket)


@app.websocket("/")
async def ws_root(websocket: WebSocket):
    await _serve_connection(websocket)


def run() -> None:
    logger.info("Relay server listening on ws://%s:%s/ws", settings.host, settings.port)
    logger.info("Health check available at http://%s:%s/health", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
