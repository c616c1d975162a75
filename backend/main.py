# backend/main.py
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from api import routes as api_routes
from core.allocator import DisplayAllocator
from core.config import Settings, settings
from core.errors import LabError
from core.events import EventBus
from core.guacamole_client import create_registrar
from core.image_store import ImageStore
from core.orchestrator import LabOrchestrator
from core.state_manager import NodeRegistry
from core.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


def build_orchestrator(cfg: Settings) -> LabOrchestrator:
    """Wire the lifecycle components together."""
    bus = EventBus()
    create_registrar(cfg).subscribe(bus)
    return LabOrchestrator(
        registry=NodeRegistry(cfg.state_file),
        image_store=ImageStore(cfg),
        allocator=DisplayAllocator(cfg.vnc_base_port, cfg.display_pool_size),
        supervisor=ProcessSupervisor(cfg),
        bus=bus,
        cfg=cfg,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Handle startup and shutdown events.
    """
    cfg: Settings = app.state.settings
    logger.info("Starting up...")
    os.makedirs(cfg.overlay_dir, exist_ok=True)
    os.makedirs(cfg.run_dir, exist_ok=True)
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = build_orchestrator(cfg)
    # Reload the snapshot and adopt VMs that survived the last shutdown
    app.state.orchestrator.recover()
    yield
    logger.info("Shutting down...")
    app.state.orchestrator.shutdown()


def create_app(cfg: Settings | None = None, orchestrator: LabOrchestrator | None = None) -> FastAPI:
    cfg = cfg or settings
    app = FastAPI(
        title="Node Lab API",
        lifespan=lifespan
    )
    app.state.settings = cfg
    app.state.orchestrator = orchestrator

    # --- Add CORS Middleware ---
    # Lets the topology editor talk to this backend from another origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(LabError, api_routes.lab_error_handler)
    app.add_exception_handler(RequestValidationError, api_routes.request_validation_handler)
    app.include_router(api_routes.router)
    return app


logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()

# --- Main entry point for Uvicorn ---
if __name__ == "__main__":
    import uvicorn
    logger.info("Starting Uvicorn server...")
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=3001,
    )
