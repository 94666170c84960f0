"""Main FastAPI application with server/reflector mode switching."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import settings
from .routers import diagnostics_router
from .services.controller import connectivity_controller
from .services.reflector import udp_reflector

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info(f"Starting precall in {settings.mode.upper()} mode")

    if settings.mode == "reflector":
        # Reflector mode: echo relay for the datagram transport
        await udp_reflector.start()
    else:
        logger.info(f"Diagnostics use the {connectivity_controller.transport.name} transport")

    yield

    # Shutdown
    if settings.mode == "reflector":
        udp_reflector.stop()
    else:
        connectivity_controller.transport.disconnect()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Precall",
        description="Pre-call connectivity diagnostics - RTT, loss and throughput over a relay path",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.mode == "server":
        app.include_router(diagnostics_router)

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "mode": settings.mode,
        }

    return app


# Create the application instance
app = create_app()


def run():
    """Console entry point."""
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.web_port)


if __name__ == "__main__":
    run()
