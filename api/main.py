"""
FastAPI Application — WebSocket queue gateway + health endpoint.

Provides:
- WebSocket endpoint (/ws) for subscribe / unsubscribe / publish and
  asynchronous message delivery, one connection per client
- Health endpoint (/health) reporting the bound provider and live state

The queue provider is selected once from configuration in the lifespan
and injected down: QueueService → SubscriptionMultiplexer → QueueGateway.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from config.logging_setup import configure_logging
from config.settings import Settings, get_settings
from gateway.connections import ConnectionManager
from gateway.multiplexer import SubscriptionMultiplexer
from gateway.queue_gateway import QueueGateway
from queues.factory import create_queue_service
from queues.service import QueueService

logger = structlog.get_logger()


def create_app(
    settings: Optional[Settings] = None,
    queue_service: Optional[QueueService] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: defaults to the loaded settings.yaml + environment.
        queue_service: pre-built facade (tests); otherwise created from
            `settings.queue` when the app starts.
    """
    cfg = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(cfg.logging.level, cfg.logging.json)

        service = queue_service or create_queue_service(cfg.queue)
        await service.connect()

        connections = ConnectionManager()
        multiplexer = SubscriptionMultiplexer(service, connections)
        app.state.queue_service = service
        app.state.connections = connections
        app.state.multiplexer = multiplexer
        app.state.gateway = QueueGateway(multiplexer, connections)

        logger.info("queuebridge_started",
                    app_name=cfg.app_name,
                    provider=service.provider_name)
        yield

        await multiplexer.drain()
        await service.close()
        logger.info("queuebridge_stopped")

    app = FastAPI(
        title=f"{cfg.app_name} API",
        debug=cfg.debug,
        description="Provider-agnostic publish/subscribe over WebSockets",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        state = request.app.state
        return {
            "status": "ok",
            "provider": state.queue_service.provider_name,
            "connections": len(state.connections),
            "subscribed_queues": state.multiplexer.registered_queues(),
        }

    # ══════════════════════════════════════════════════════════
    #  WEBSOCKET — Queue gateway
    # ══════════════════════════════════════════════════════════

    @app.websocket("/ws")
    async def queue_socket(websocket: WebSocket):
        """
        One client connection. Frames are handled in arrival order;
        deliveries are pushed concurrently by the fan-out handlers.
        """
        gateway: QueueGateway = websocket.app.state.gateway
        await websocket.accept()
        connection_id = gateway.connect(websocket)

        try:
            while True:
                raw = await websocket.receive_text()
                await gateway.handle_frame(connection_id, raw)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("websocket_error", connection_id=connection_id, error=str(e))
        finally:
            gateway.disconnect(connection_id)

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    _settings = get_settings()
    uvicorn.run(app, host=_settings.server.host, port=_settings.server.port)
