"""FormHook - webhook delivery service for conversational form sessions."""

import logging
import os
import tomllib
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from formhook.db import AsyncSessionLocal, init_db
from formhook.exceptions import (
    DeliveryNotFoundError,
    WebhookInactiveError,
    WebhookNotFoundError,
    WebhookValidationError,
)
from formhook.services import metrics as service_metrics
from formhook.services.scheduler import scheduler_service
from formhook.services.settings_service import SettingsService
from formhook.utils.encryption import is_encryption_configured
from formhook.utils.security import sanitize_log_message

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"
UNKNOWN_VERSION = "0.0.0-dev"
QUIET_PATHS = ("/health", "/metrics")
LOCAL_FRONTEND_ORIGINS = [
    f"http://{host}:{port}" for host in ("localhost", "127.0.0.1") for port in (3000, 5173)
]


class QuietPathsFilter(logging.Filter):
    """Drop Granian access-log lines for health checks and metrics scrapes."""

    def __init__(self, paths) -> None:
        super().__init__()
        self.paths = tuple(paths)

    def filter(self, record: logging.LogRecord) -> bool:
        line = record.getMessage()
        return all(path not in line for path in self.paths)


logging.getLogger("granian.access").addFilter(QuietPathsFilter(QUIET_PATHS))


def read_version(pyproject: Path = PYPROJECT) -> str:
    """Project version as declared in pyproject.toml."""
    try:
        with pyproject.open("rb") as fh:
            return tomllib.load(fh)["project"]["version"]
    except (OSError, KeyError, tomllib.TOMLDecodeError) as e:
        logger.warning(f"Could not read version from {pyproject}: {e}")
        return UNKNOWN_VERSION


def cors_origins_from_env() -> list[str]:
    """``CORS_ORIGINS`` as a list; local dashboard dev servers when unset."""
    raw = os.getenv("CORS_ORIGINS", "").strip()
    if not raw:
        return list(LOCAL_FRONTEND_ORIGINS)
    if raw == "*":
        logger.warning("CORS_ORIGINS is '*'; any site may call the API")
        return ["*"]
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    logger.info(f"CORS origins: {origins}")
    return origins


def _flag(name: str) -> bool:
    return os.getenv(name, "false").lower() == "true"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"FormHook {app.version} starting")

    await init_db()

    if not is_encryption_configured():
        logger.warning(
            "FORMHOOK_ENCRYPTION_KEY is not set; webhooks using bearer, basic or hmac "
            "auth cannot be saved or delivered"
        )

    async with AsyncSessionLocal() as db:
        await SettingsService.init_defaults(db)
        # Attempts cut off by the previous shutdown are still "pending"
        recovered = await scheduler_service.recover(db)
        if recovered:
            logger.info(f"Recovered {recovered} interrupted delivery attempt(s)")

    if _flag("FORMHOOK_TESTING"):
        logger.info("FORMHOOK_TESTING set; retry scheduler not started")
    else:
        await scheduler_service.start()

    try:
        yield
    finally:
        await scheduler_service.stop()
        logger.info("FormHook stopped")


app = FastAPI(
    title="FormHook",
    description="Webhook delivery for conversational form sessions",
    version=read_version(),
    lifespan=lifespan,
)

service_metrics.app_info.info({"version": app.version, "name": "FormHook"})

_origins = cors_origins_from_env()
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    # Browsers refuse credentialed requests against a wildcard origin
    allow_credentials="*" not in _origins,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-User-Id", "Accept"],
)


def _detail(status_code: int, detail) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@app.exception_handler(WebhookValidationError)
async def webhook_validation_handler(request: Request, exc: WebhookValidationError):
    """Report every violated field of a webhook configuration."""
    return _detail(422, [e.to_dict() for e in exc.errors])


@app.exception_handler(WebhookNotFoundError)
@app.exception_handler(DeliveryNotFoundError)
async def not_found_handler(request: Request, exc: Exception):
    return _detail(status.HTTP_404_NOT_FOUND, str(exc))


@app.exception_handler(WebhookInactiveError)
async def inactive_handler(request: Request, exc: WebhookInactiveError):
    return _detail(status.HTTP_409_CONFLICT, str(exc))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Log the full error and answer with a generic 500.

    ``FORMHOOK_DEBUG=true`` echoes the exception back to the caller.
    """
    client_host = request.client.host if request.client else "unknown"
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path} "
        f"from {client_host}: {sanitize_log_message(str(exc))}",
        exc_info=exc,
    )

    if _flag("FORMHOOK_DEBUG"):
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": str(exc), "type": type(exc).__name__, "debug": True},
        )
    return _detail(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error while handling the request",
    )


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "formhook", "version": app.version}


@app.get("/metrics")
async def metrics():
    """Prometheus scrape endpoint; registry gauges are refreshed per scrape."""
    async with AsyncSessionLocal() as db:
        await service_metrics.collect_metrics(db)
    return Response(content=service_metrics.get_metrics(), media_type=service_metrics.get_content_type())


from formhook.api import api_router  # noqa: E402

app.include_router(api_router)


if __name__ == "__main__":
    from granian import Granian
    from granian.constants import Interfaces

    Granian(
        "formhook.main:app",
        address="0.0.0.0",
        port=int(os.getenv("FORMHOOK_PORT", "8790")),
        interface=Interfaces.ASGI,
    ).serve()
