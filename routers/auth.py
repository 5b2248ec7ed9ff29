import hmac
import logging
from typing import Tuple

from fastapi import HTTPException, Request


TOKEN_HEADER = "x-zeit-token"
TOKEN_QUERY_PARAM = "token"


def extract_token(request: Request) -> Tuple[str, str]:
    """Extract the trigger token from header or query (header wins)."""
    header_token = request.headers.get(TOKEN_HEADER, "")
    if header_token:
        return header_token, "header"

    query_token = request.query_params.get(TOKEN_QUERY_PARAM, "")
    if query_token:
        return query_token, "query"

    return "", "missing"


def is_authorized(configured_token: str, provided: str) -> bool:
    if not configured_token:
        return True
    return hmac.compare_digest(provided.encode("utf-8"), configured_token.encode("utf-8"))


def ensure_request_authorized(
    request: Request,
    trigger_token: str,
    logger: logging.Logger,
) -> str:
    """
    Validate the shared trigger token.
    An empty configured token disables auth entirely.
    """
    endpoint = request.url.path
    if not trigger_token:
        return "not_required"

    provided, source = extract_token(request)
    if not is_authorized(trigger_token, provided):
        logger.warning(
            "Unauthorized on %s (source=%s, client=%s)",
            endpoint,
            source,
            request.client.host if request.client else "unknown",
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    logger.debug("Auth OK on %s (source=%s)", endpoint, source)
    return source
