"""
Narration Playback Backend
FastAPI server driving text-to-speech playback of books
"""

import os
import sys
import argparse
import logging
from pathlib import Path
from typing import List, Optional
from version import __version__

from loguru import logger


LOG_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

# Standard-library loggers routed into loguru, with their minimum level
STDLIB_LOGGERS = {
    "uvicorn": logging.WARNING,
    "uvicorn.error": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sse_starlette": logging.INFO,
}


def resolve_log_level(argv: Optional[List[str]] = None) -> str:
    """
    DEBUG when any of DEBUG=1, LOG_LEVEL=DEBUG or --debug is given, else INFO.
    """
    argv = sys.argv if argv is None else argv
    debug = (
        os.getenv("DEBUG", "0") == "1"
        or os.getenv("LOG_LEVEL", "INFO").upper() == "DEBUG"
        or "--debug" in argv
    )
    return "DEBUG" if debug else "INFO"


class LoguruInterceptHandler(logging.Handler):
    """Forwards standard logging records to loguru, keeping the caller's location."""

    # Printed by uvicorn while SSE streams are torn down on shutdown
    SHUTDOWN_NOISE = (
        "timeout graceful shutdown exceeded",
        "Exception in ASGI application",
        "Cancel",
    )

    def emit(self, record: logging.LogRecord) -> None:
        message = record.getMessage()
        if any(noise in message for noise in self.SHUTDOWN_NOISE):
            return

        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, message)


def configure_logging(log_level: str = "INFO") -> None:
    """
    Single loguru setup for the whole backend.

    Output: HH:MM:SS.mmm | LEVEL | module:function:line - message, on stderr
    and, when LOG_FILE is set, in a rotated log file.
    """
    from config import LOG_FILE, LOG_ROTATION, LOG_RETENTION

    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=log_level, colorize=True)
    if LOG_FILE:
        logger.add(
            LOG_FILE,
            format=LOG_FORMAT,
            level=log_level,
            colorize=False,
            rotation=LOG_ROTATION,
            retention=LOG_RETENTION,
            enqueue=True
        )

    handler = LoguruInterceptHandler()
    logging.basicConfig(handlers=[handler], level=0, force=True)
    for name, level in STDLIB_LOGGERS.items():
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.handlers = [handler]
        stdlib_logger.propagate = False
        stdlib_logger.setLevel(level)


# Before the backend modules are imported, so their first log lines use this format
LOG_LEVEL = resolve_log_level()
configure_logging(log_level=LOG_LEVEL)

import asyncio  # noqa: E402
from contextlib import asynccontextmanager  # noqa: E402
from fastapi import FastAPI, Request  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
import uvicorn  # noqa: E402

sys.path.append(str(Path(__file__).parent))

from api import events, playback, pronunciation  # noqa: E402
from core.exceptions import ApplicationError  # noqa: E402
from core.playback_orchestrator import get_playback_orchestrator, shutdown_playback_orchestrator  # noqa: E402
from db.database import init_database  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle events

    Startup:
    - Initialize database
    - Create the playback orchestrator and forward its notifications via SSE
    - Activate the configured speech provider

    Shutdown:
    - Stop playback, close providers and the task chain
    """
    # ===== STARTUP =====
    logger.debug("Starting Narration Playback API...")

    try:
        init_database()
    except Exception as e:
        logger.error(f"✗ Database initialization failed: {e}")
        raise

    unsubscribers = []
    try:
        orchestrator = get_playback_orchestrator()
        unsubscribers = playback.attach_sse_forwarding(orchestrator)
        await orchestrator.start()
        logger.success(f"✓ Playback ready (provider: {orchestrator.settings.provider_id})")
    except Exception as e:
        logger.error(f"✗ Failed to start playback orchestrator: {e}")
        # Continue anyway - provider is activated again on first play

    logger.debug("✓ Startup complete | API docs at /docs")

    yield

    # ===== SHUTDOWN =====
    logger.info("Shutting down...")

    for unsubscribe in unsubscribers:
        unsubscribe()

    try:
        await shutdown_playback_orchestrator()
        logger.debug("✓ Playback orchestrator closed")
    except asyncio.CancelledError:
        pass  # Expected during shutdown
    except Exception as e:
        logger.warning(f"Error closing playback orchestrator: {e}")

    logger.info("✓ Shutdown complete")


app = FastAPI(
    title="Narration Playback API",
    description="Backend API for text-to-speech narration of books",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",      # Vite dev server
        "http://127.0.0.1:5173",
        "http://localhost:1420",      # Tauri dev server
        "http://127.0.0.1:1420",
        "http://tauri.localhost",
        "https://tauri.localhost",
        "tauri://localhost",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(ApplicationError)
async def application_error_handler(request: Request, exc: ApplicationError):
    """Structured error codes ([CODE]key:value) as HTTP error details."""
    logger.debug(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


app.include_router(playback.router)
app.include_router(events.router)
app.include_router(pronunciation.router)


@app.get("/api/version")
async def get_version():
    return {"version": __version__}


# Raised on the loop when clients drop SSE streams or disconnect mid-response
IGNORED_LOOP_EXCEPTIONS = (ConnectionResetError, asyncio.CancelledError)


def ignore_disconnect_errors(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    if isinstance(context.get("exception"), IGNORED_LOOP_EXCEPTIONS):
        return
    loop.default_exception_handler(context)


async def serve(server: uvicorn.Server) -> None:
    asyncio.get_running_loop().set_exception_handler(ignore_disconnect_errors)
    await server.serve()


def main() -> None:
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Narration Playback Backend")
    parser.add_argument("--port", type=int, default=8765, help="Port to listen on")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--debug", action="store_true",
                        help="Enable DEBUG logging (verbose output for development)")
    args = parser.parse_args()

    logger.debug(f"Logging level: {LOG_LEVEL} | listening on {args.host}:{args.port}")

    server = uvicorn.Server(uvicorn.Config(
        app,
        host=args.host,
        port=args.port,
        log_config=None,
        access_log=False,
        # Open SSE streams would otherwise block shutdown
        timeout_graceful_shutdown=3
    ))

    try:
        asyncio.run(serve(server))
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        logger.info("Server stopped")


if __name__ == "__main__":
    main()
