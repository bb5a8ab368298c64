from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence

from fastapi import Request, status
from fastapi.responses import Response

logger = logging.getLogger("uvicorn.error")

ALLOW_METHODS = "POST, GET, OPTIONS, HEAD"
ALLOW_HEADERS = "Content-Type, Authorization, mcp-protocol-version"


class OriginPolicy:
    def __init__(self, allowed_origins: Sequence[str], allow_local_dev: bool = False):
        self.allowed_origins = set(allowed_origins)
        self.allow_local_dev = allow_local_dev

    def allowed_origin_header(self, origin: str | None) -> str | None:
        if self.allow_local_dev:
            return origin or "*"
        if origin and origin in self.allowed_origins:
            return origin
        if "*" in self.allowed_origins:
            return "*"
        return None

    async def apply(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        origin = request.headers.get("origin")
        allow_origin = self.allowed_origin_header(origin)
        if origin and allow_origin is None:
            logger.info("origin_not_allowed origin=%s path=%s", origin, request.url.path)

        if request.method == "OPTIONS":
            response: Response = Response(status_code=status.HTTP_204_NO_CONTENT)
        else:
            response = await call_next(request)

        if allow_origin is not None:
            response.headers["Access-Control-Allow-Origin"] = allow_origin
            response.headers["Access-Control-Allow-Methods"] = ALLOW_METHODS
            response.headers["Access-Control-Allow-Headers"] = ALLOW_HEADERS
            if allow_origin != "*":
                response.headers["Vary"] = "Origin"
        return response
