"""AutoDidact -- FastAPI application entry point."""

import logging
import sys
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from autodidact.api.routers.health import router as health_router
from autodidact.api.routers.tasks import router as tasks_router
from autodidact.api.routers.webhooks import router as webhooks_router
from autodidact.clients import github_client, llm_client
from autodidact.config import VERSION, settings
from autodidact.middleware import RequestIDMiddleware
from autodidact.middleware.access_log import AccessLogMiddleware
from autodidact.middleware.exception_handler import setup_exception_handlers
from autodidact.repos.db import close_pool
from autodidact.repos.task_repo import interrupt_stale_tasks
from autodidact.services import task_service

logger = logging.getLogger(__name__)


class _ColorFormatter(logging.Formatter):
    """ANSI-coloured formatter for terminal output."""

    _COLORS = {
        logging.DEBUG:    "\033[36m",     # cyan
        logging.INFO:     "\033[32m",     # green
        logging.WARNING:  "\033[33m",     # yellow
        logging.ERROR:    "\033[31m",     # red
        logging.CRITICAL: "\033[1;31m",   # bold red
    }
    _RESET = "\033[0m"
    _DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self._COLORS.get(record.levelno, "")
        ts = self.formatTime(record, "%H:%M:%S")
        name = record.name.split(".")[-1][:20]
        text = (
            f"{self._DIM}{ts}{self._RESET} "
            f"{color}{record.levelname:<8s}{self._RESET} "
            f"{self._DIM}[{name:>20s}]{self._RESET} "
            f"{color}{record.getMessage()}{self._RESET}"
        )
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


class _PlainFormatter(logging.Formatter):
    """Same layout without ANSI codes, for the log file."""

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        name = record.name.split(".")[-1][:20]
        text = f"{ts} {record.levelname:<8s} [{name:>20s}] {record.getMessage()}"
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


def configure_logging() -> None:
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(_ColorFormatter())
    handlers: list[logging.Handler] = [stream]

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_path),
            maxBytes=10 * 1024 * 1024,  # 10 MB per file
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(_PlainFormatter())
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # Quiet noisy loggers.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Application lifespan: startup and shutdown hooks."""
    configure_logging()

    if "pytest" not in sys.modules and settings.TASK_STORE != "memory":
        try:
            interrupted = await interrupt_stale_tasks()
            if interrupted:
                logger.warning(
                    "Marked %d task(s) left processing by a previous server session as failed.",
                    interrupted,
                )
        except Exception as exc:
            # The first request will reconnect.
            logger.warning("DB unavailable at startup (%s), will retry on first request.", exc)
    logger.info("AutoDidact %s started (task store: %s)", VERSION, settings.TASK_STORE)
    yield
    # Background runs must unwind before the HTTP clients close.
    await task_service.shutdown_all()
    await github_client.close_client()
    await llm_client.close_client()
    await close_pool()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="AutoDidact",
        version=VERSION,
        description="Instruction-to-commit AI task pipeline",
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )

    setup_exception_handlers(application)

    # Added last runs first: RequestID must wrap the access log.
    application.add_middleware(AccessLogMiddleware)
    application.add_middleware(RequestIDMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-GitHub-Token", "X-Request-ID"],
    )

    application.include_router(health_router)
    application.include_router(tasks_router)
    application.include_router(webhooks_router)
    return application


app = create_app()
