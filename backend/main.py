"""
PeerDrop: FastAPI application entry point.

Starts the Discovery Service and Transfer Manager on startup,
serves the REST API and WebSocket event stream.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT
from discovery.service import DiscoveryService
from events import EventBus
from network.addresses import AddressResolver
from settings import SettingsStore
from transfer.manager import TransferManager
from transfer.receiver import TransferReceiver

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
settings_store = SettingsStore()
event_bus = EventBus()
resolver = AddressResolver()
discovery_service = DiscoveryService(event_bus, resolver=resolver)
transfer_manager = TransferManager(
    event_bus,
    resolver=resolver,
    receiver=TransferReceiver(
        event_bus,
        resolver=resolver,
        receive_dir=settings_store.settings.receive_dir,
    ),
    registry=discovery_service.registry,
)
ws_manager = ConnectionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting PeerDrop services...")

    try:
        discovery_service.device_name = settings_store.settings.device_name
        discovery_service.shared_dir = settings_store.settings.shared_dir

        # Wire up event broadcasting
        event_bus.subscribe(ws_manager.handle_event)

        await transfer_manager.start()
        await discovery_service.start()

        logger.info(
            f"PeerDrop ready, "
            f"API: {API_HOST}:{API_PORT}, "
            f"Receiver port: {transfer_manager.receiver.port}"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        # Shutdown
        logger.info("Shutting down PeerDrop services...")
        event_bus.unsubscribe(ws_manager.handle_event)
        await discovery_service.stop()
        await transfer_manager.stop()


# --- FastAPI app ---
app = FastAPI(
    title="PeerDrop",
    version="1.0.0",
    lifespan=lifespan,
)

# Inject services into routes
init_routes(discovery_service, transfer_manager, settings_store)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
