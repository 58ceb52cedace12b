"""Access log + request id correlation.

The id comes from an upstream X-Request-ID header when the gateway sent a
usable one, otherwise a fresh `req_<12 hex>` is minted. It is stored on
request.state (picked up by the ApiResponse envelope) and echoed back in the
X-Request-ID response header.

    INFO [GET] /api/v1/balances/0xabc/tokens/0xdef → 200 (23ms) req_a1b2c3d4e5f6
"""

import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("tb.request")

_UPSTREAM_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")
_QUIET_PATHS = frozenset({"/health"})


def _request_id(request: Request) -> str:
    upstream = request.headers.get("x-request-id", "")
    if _UPSTREAM_ID_RE.match(upstream):
        return upstream
    return f"req_{uuid.uuid4().hex[:12]}"


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = _request_id(request)
        request.state.request_id = request_id

        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000

        if response.status_code >= 500:
            level = logging.WARNING
        elif request.url.path in _QUIET_PATHS:
            level = logging.DEBUG
        else:
            level = logging.INFO
        logger.log(
            level,
            "[%s] %s → %d (%.0fms) %s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request_id,
        )
        response.headers["X-Request-ID"] = request_id
        return response
