import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

import models
from broadcast import Broadcaster
from config import DATABASE_URL, HEARTBEAT_INTERVAL, HOST, LOG_LEVEL, PORT
from connections import ConnectionManager, short_id
from coordinator import RoomCoordinator
from database import make_engine, make_session_factory
from schemas import event
from storage import Storage

logger = logging.getLogger(__name__)


def frame_text(message: dict) -> str:
    if message.get("text") is not None:
        return message["text"]
    # binary frames carry the same JSON
    return (message.get("bytes") or b"").decode("utf-8", errors="replace")


def create_app(
    database_url: str = DATABASE_URL,
    heartbeat_interval: float = HEARTBEAT_INTERVAL,
    **coordinator_options,
) -> FastAPI:
    engine = make_engine(database_url)
    models.Base.metadata.create_all(bind=engine)

    storage = Storage(make_session_factory(engine))
    manager = ConnectionManager(heartbeat_interval=heartbeat_interval)
    broadcaster = Broadcaster(storage, manager)
    coordinator = RoomCoordinator(storage, broadcaster, **coordinator_options)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        heartbeat = asyncio.create_task(manager.run_heartbeat(), name="heartbeat")
        try:
            yield
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            await manager.close_all()
            await coordinator.drain()
            engine.dispose()

    app = FastAPI(lifespan=lifespan)
    app.state.storage = storage
    app.state.manager = manager
    app.state.coordinator = coordinator

    @app.get("/health")
    async def health():
        return {"status": "ok", "rooms": storage.count_rooms(), "connections": len(manager)}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        connection = await manager.connect(websocket)
        try:
            await connection.send_json(event("connection_established", socketId=connection.id))
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                manager.mark_alive(connection.id)
                await coordinator.handle_message(connection.id, frame_text(message))
        except WebSocketDisconnect:
            pass
        finally:
            logger.info("Client disconnected %s", short_id(connection.id))
            manager.unregister(connection.id)
            await coordinator.disconnect(connection.id)

    return app


logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host=HOST, port=PORT, log_config=None)
