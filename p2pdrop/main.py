from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import Optional
import logging

from .config import Settings
from .credentials import CredentialsError, fetch_upstream_credentials
from .models import (
    FATAL_ERRORS,
    RELAYED_TYPES,
    CredentialsRequest,
    ErrorCode,
    InvalidMessage,
    JoinMessage,
    PingMessage,
    RoomsOverview,
    UnknownMessageType,
    parse_signal,
)
from .websocket_manager import Connection, RoomRegistry

logger = logging.getLogger(__name__)


async def handle_frame(registry: RoomRegistry, connection: Connection, text: str) -> bool:
    """Process one signaling text frame; returns False when the connection must close"""
    try:
        message = parse_signal(text)
    except UnknownMessageType as e:
        logger.warning(f"⚠️ Unknown message type {e.tag!r} from {connection.socket_id}")
        await connection.send_error(ErrorCode.UNKNOWN_TYPE)
        return True
    except InvalidMessage as e:
        logger.warning(f"⚠️ Invalid message from {connection.socket_id}, dropping: {e}")
        await connection.send_error(ErrorCode.INVALID_MESSAGE)
        return True

    logger.info(f"📨 Received {message.type} from {connection.socket_id}")

    if isinstance(message, PingMessage):
        return True

    if isinstance(message, JoinMessage):
        result = registry.join(message.room, message.token, connection)
        if isinstance(result, ErrorCode):
            await connection.send_error(result)
            return result not in FATAL_ERRORS
        await registry.broadcast_room_info(registry.get(result.room_id))
        return True

    if message.type in RELAYED_TYPES:
        await registry.relay(connection, text)
        return True

    # room-info and error only travel server -> client
    logger.warning(f"⚠️ {connection.socket_id} sent server-only message {message.type}")
    await connection.send_error(ErrorCode.INVALID_MESSAGE)
    return True


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the relay application with its own room registry"""
    settings = settings or Settings.from_env()

    app = FastAPI(title="p2pdrop signaling relay", version="1.0.0")
    app.state.settings = settings
    app.state.registry = RoomRegistry(max_members=settings.max_members)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.post("/turn-credentials")
    async def turn_credentials(request: Request, body: Optional[CredentialsRequest] = None):
        """Issue ICE servers for a room"""
        try:
            ice_servers = await fetch_upstream_credentials(request.app.state.settings.turn_credentials_url)
        except CredentialsError as e:
            logger.error(f"❌ Error issuing TURN credentials: {e}")
            return JSONResponse(status_code=500, content={"error": "internal_error"})
        logger.info(f"🧊 Issued {len(ice_servers)} ICE server(s) for room {body.room if body else None}")
        return {"iceServers": ice_servers}

    @app.get("/api/rooms", response_model=RoomsOverview)
    async def rooms(request: Request):
        """Room and connection counts (tokens are never exposed)"""
        return request.app.state.registry.stats()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Signaling endpoint: join a room, then relay negotiation messages"""
        registry: RoomRegistry = websocket.app.state.registry
        await websocket.accept()
        connection = Connection(websocket)
        logger.info(f"🔌 WebSocket connected: {connection.socket_id}")

        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                text = frame.get("text")
                if text is None:
                    logger.warning(f"⚠️ Dropping unexpected binary message from {connection.socket_id}")
                    continue
                if not await handle_frame(registry, connection, text):
                    await websocket.close()
                    break
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"❌ WebSocket error for {connection.socket_id}: {e}")
        finally:
            room = registry.leave(connection)
            if room is not None:
                await registry.broadcast_room_info(room)
            logger.info(f"🔌 WebSocket disconnected: {connection.socket_id}")

    return app


def run(settings: Optional[Settings] = None):
    import uvicorn

    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level.upper())
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


app = create_app()

if __name__ == "__main__":
    run()
