import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from starlette.exceptions import HTTPException as StarletteHTTPException

from agents.booking_agent.service import (
    DEFAULT_RUNNER_CMD,
    REQUIRED_CREDENTIALS,
    BookingAgentService,
    missing_credentials,
)
from routers.booking_agent import create_booking_router
from routers.responses import PrettyJSONResponse, error_response


load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("zeit_trigger")

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8787

HTTP_ERROR_MESSAGES = {
    404: "Not found",
    405: "Method not allowed",
}


@dataclass
class Settings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    trigger_token: str = ""
    dry_run: bool = False
    runner_cmd: str = DEFAULT_RUNNER_CMD
    runner_cwd: str = ""
    webhook_final_url: str = ""


def _parse_port(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid ZEIT_SERVER_PORT=%r; using %s", raw, DEFAULT_PORT)
        return DEFAULT_PORT


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    env_file: Optional[Path] = None,
) -> Settings:
    """Reads the service settings from the environment.

    ``env_file`` is loaded into ``os.environ`` first (existing variables win),
    so the runner credentials it defines reach the child process too.
    """
    if env_file is not None:
        load_dotenv(env_file, override=False)
    env = os.environ if environ is None else environ
    return Settings(
        host=env.get("ZEIT_SERVER_HOST", DEFAULT_HOST) or DEFAULT_HOST,
        port=_parse_port(env.get("ZEIT_SERVER_PORT", str(DEFAULT_PORT)) or str(DEFAULT_PORT)),
        trigger_token=env.get("ZEIT_TRIGGER_TOKEN", ""),
        dry_run=env.get("ZEIT_DRY_RUN", "").strip().lower() == "true",
        runner_cmd=env.get("ZEIT_RUNNER_CMD", DEFAULT_RUNNER_CMD).strip() or DEFAULT_RUNNER_CMD,
        runner_cwd=env.get("ZEIT_RUNNER_CWD", "").strip(),
        webhook_final_url=env.get("ZEIT_WEBHOOK_URL_FINAL", "").strip(),
    )


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[BookingAgentService] = None,
) -> FastAPI:
    """Builds the trigger service app; tests inject settings and a service."""
    settings = settings or load_settings()
    if service is None:
        service = BookingAgentService(
            runner_cmd=settings.runner_cmd,
            runner_cwd=Path(settings.runner_cwd) if settings.runner_cwd else None,
            webhook_final_url=settings.webhook_final_url,
            logger=logging.getLogger("zeit_trigger.booking_agent"),
        )

    # Only the booking routes are served; every other path is a 404.
    app = FastAPI(
        title="ZEIT Trigger",
        default_response_class=PrettyJSONResponse,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        redirect_slashes=False,
    )
    app.include_router(
        create_booking_router(
            service=service,
            trigger_token=settings.trigger_token,
            default_dry_run=settings.dry_run,
        )
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        message = HTTP_ERROR_MESSAGES.get(exc.status_code, str(exc.detail))
        return error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def internal_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(500, "Internal server error", detail=str(exc))

    logger.info(
        "ZEIT trigger initialized (has_token=%s, default_dry_run=%s, runner=%s)",
        bool(settings.trigger_token),
        settings.dry_run,
        settings.runner_cmd,
    )
    return app


SETTINGS = load_settings()
APP = create_app(SETTINGS)


def main() -> None:
    missing = missing_credentials(os.environ)
    if missing:
        logger.warning(
            "Missing runner credentials: %s (only dry runs will be accepted; expected %s)",
            ", ".join(missing),
            ", ".join(REQUIRED_CREDENTIALS),
        )
    logger.info("ZEIT trigger server listening on http://%s:%s", SETTINGS.host, SETTINGS.port)
    uvicorn.run(APP, host=SETTINGS.host, port=SETTINGS.port, log_level="warning")


if __name__ == "__main__":
    main()
