import json
from typing import Any

from fastapi.responses import JSONResponse


class PrettyJSONResponse(JSONResponse):
    """JSON response indented with two spaces, UTF-8 encoded."""

    media_type = "application/json; charset=utf-8"

    def render(self, content: Any) -> bytes:
        return json.dumps(content, ensure_ascii=False, indent=2).encode("utf-8")


def error_response(status_code: int, message: str, **extra: Any) -> PrettyJSONResponse:
    return PrettyJSONResponse(status_code=status_code, content={"error": message, **extra})
