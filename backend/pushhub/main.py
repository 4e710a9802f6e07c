"""Main FastAPI application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from . import __version__
from .config import settings
from .database import init_db, close_db
from .exceptions import NotFoundError, RegistryWriteError, ValidationError
from .routers import devices_router, notifications_router
from .services.dispatcher import dispatch_engine
from .services.gateway import build_gateway

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info(f"Starting pushhub {__version__}")

    await init_db()
    logger.info("Database initialized")

    dispatch_engine.configure(
        gateway=build_gateway(settings),
        concurrency=settings.dispatch_concurrency,
        send_timeout=settings.send_timeout_seconds,
    )

    yield

    await dispatch_engine.close()
    await close_db()
    logger.info("Shutdown complete")


def register_exception_handlers(app: FastAPI):
    """Translate service errors into JSON responses."""

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        logger.warning(f"Validation error on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": exc.message, "field": exc.field},
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(
            status_code=404,
            content={"success": False, "message": str(exc)},
        )

    @app.exception_handler(RegistryWriteError)
    async def registry_write_handler(request: Request, exc: RegistryWriteError):
        logger.error(f"Registry write failed on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=503,
            content={"success": False, "message": "Device registry is temporarily unavailable"},
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "A database error occurred"},
        )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="pushhub",
        description="Device registry and push notification dispatch",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, restrict to your domain
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(notifications_router)
    app.include_router(devices_router)

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "gateway": type(dispatch_engine.gateway).__name__,
        }

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.web_port)
