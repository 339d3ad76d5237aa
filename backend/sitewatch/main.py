"""Main FastAPI application."""
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .database import init_db, close_db, async_session
from .routers import monitoring_router
from .services.scheduler import build_scheduler_service
from .services.target_registry import StorageUnavailableError
from .services.websocket_manager import websocket_manager

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info("Starting SiteWatch")

    await init_db()
    logger.info("Database initialized")

    scheduler = build_scheduler_service(settings, session_factory=async_session, broadcaster=websocket_manager)
    app.state.scheduler = scheduler

    if settings.autostart_scheduler:
        try:
            await scheduler.start()
        except StorageUnavailableError as e:
            logger.error(f"Scheduler not started: {e}")
            raise

    yield

    await scheduler.stop()
    await close_db()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="SiteWatch",
        description="Scheduled uptime, TLS and performance checks with alerting",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(monitoring_router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, owner_id: Optional[int] = None):
        await websocket_manager.connect(websocket, owner_id=owner_id)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.debug(f"Ignoring non-JSON WebSocket message: {raw[:100]}")
                    continue
                if isinstance(message, dict):
                    await websocket_manager.handle_message(websocket, message)
        except WebSocketDisconnect:
            pass
        finally:
            await websocket_manager.disconnect(websocket)

    @app.get("/health")
    async def health_check():
        scheduler = getattr(app.state, "scheduler", None)
        return {
            "status": "healthy",
            "scheduler_running": bool(scheduler and scheduler.running),
        }

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.web_port)
