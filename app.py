from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from signaling import DISCONNECT, SignalingRelay
from peer_relay import ID_TAKEN_CLOSE_CODE, PeerRelay
from constants import ALLOWED_ORIGINS
from logging_config import get_logger, setup_logging
import json
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # All room/identity state lives in this process only
    app.state.relay = SignalingRelay()
    app.state.peer_relay = PeerRelay()
    await app.state.relay.start()
    try:
        yield
    finally:
        await app.state.relay.stop()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


@app.websocket("/ws")
async def signaling_endpoint(websocket: WebSocket):
    """Signaling channel: one session per socket, every frame goes through the coordinator queue."""
    relay: SignalingRelay = websocket.app.state.relay
    await websocket.accept()
    session = relay.register(websocket)
    handle = session.handle

    try:
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for connection {handle}")
                break
            await relay.submit_raw(handle, data)
    except Exception as e:
        logger.error(f"WebSocket error for connection {handle}: {e}", exc_info=True)
    finally:
        # leave is processed by the coordinator exactly once per handle
        await relay.submit(handle, DISCONNECT)


@app.websocket("/peer/{peer_id}")
async def peer_endpoint(peer_id: str, websocket: WebSocket):
    """Direct-connection relay for one peer id."""
    peer_relay: PeerRelay = websocket.app.state.peer_relay
    await websocket.accept()
    if not peer_relay.claim(peer_id, websocket):
        await websocket.close(code=ID_TAKEN_CLOSE_CODE, reason="ID is taken")
        return

    try:
        await websocket.send_json({"type": "open", "id": peer_id})
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                break
            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                logger.warning(f"Malformed frame from peer {peer_id}")
                continue
            await peer_relay.forward(peer_id, frame)
    except Exception as e:
        logger.error(f"Peer relay error for {peer_id}: {e}", exc_info=True)
    finally:
        await peer_relay.release(peer_id, websocket)
