import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request

from agents.booking_agent.service import (
    BookingAgentService,
    MissingCredentialsError,
    RunInProgressError,
    normalize_action,
    parse_dry_run,
)
from routers.auth import ensure_request_authorized
from routers.responses import PrettyJSONResponse, error_response

logger = logging.getLogger("zeit_trigger.booking_router")

INVALID_ACTION_MESSAGE = "Missing or invalid action. Use action=normal or action=mittag."


def create_booking_router(
    service: BookingAgentService,
    trigger_token: str,
    default_dry_run: bool,
) -> APIRouter:
    """Creates the HTTP router for health, status and trigger endpoints."""
    router = APIRouter(
        tags=["booking-agent"],
        default_response_class=PrettyJSONResponse,
        redirect_slashes=False,
    )

    @router.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, **service.get_status()}

    @router.get("/status")
    def status() -> Dict[str, Any]:
        return service.get_status()

    @router.api_route("/trigger", methods=["GET", "POST"])
    def trigger(request: Request):
        """Starts a booking run, or simulates one when dry_run is set."""
        ensure_request_authorized(request, trigger_token, logger)

        action = normalize_action(request.query_params.get("action"))
        if action is None:
            logger.info("Trigger rejected: invalid action %r", request.query_params.get("action"))
            raise HTTPException(status_code=400, detail=INVALID_ACTION_MESSAGE)

        dry_run = parse_dry_run(request.query_params.get("dry_run"), default_dry_run)
        try:
            record = service.trigger(action, dry_run=dry_run)
        except MissingCredentialsError as err:
            raise HTTPException(status_code=400, detail=str(err)) from err
        except RunInProgressError as err:
            return error_response(409, str(err), lastRun=err.last_run)

        body: Dict[str, Any] = {"ok": True, "runId": record["id"]}
        if dry_run:
            body["dryRun"] = True
        logger.info(
            "Trigger accepted on %s (run_id=%s action=%s dry_run=%s)",
            request.url.path,
            record["id"],
            action,
            dry_run,
        )
        return PrettyJSONResponse(status_code=202, content=body)

    return router
