from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from registry import RoomRegistry
from relay import RelayDispatcher
from typing import Optional
import uuid
from logging_config import get_logger, setup_logging
from constants import APP_NAME
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(registry: Optional[RoomRegistry] = None) -> FastAPI:
    """Build the relay application around its own room registry."""
    app = FastAPI(title=APP_NAME)

    # Browser extensions connect from arbitrary origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.state.registry = registry if registry is not None else RoomRegistry()
    app.state.dispatcher = RelayDispatcher(app.state.registry)
    app.include_router(rooms_router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Relay connection. One id per socket; it is the member id inside rooms."""
        dispatcher: RelayDispatcher = websocket.app.state.dispatcher
        connection_id = uuid.uuid4().hex
        await websocket.accept()
        dispatcher.connect(connection_id, websocket)

        message_count = 0
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info(f"WebSocket disconnected normally for connection {connection_id}")
                    break
                message_count += 1
                data = message.get("text")
                if data is None:
                    logger.warning(f"Dropping non-text frame #{message_count} from connection {connection_id}")
                    continue
                logger.debug(f"Received message #{message_count} from connection {connection_id}")
                # Each frame is handled to completion before the next is read
                await dispatcher.handle_text(connection_id, data)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected normally for connection {connection_id}")
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
        finally:
            await dispatcher.disconnect(connection_id)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
