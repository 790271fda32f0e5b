"""Request context middleware using ContextVar.

Takes the request id from the X-Request-ID header (or generates one) and
stores it in a ContextVar so that every log line written while handling the
request, in routers, services or stores, carries it without explicit
parameter passing. The id is echoed back on the response.
"""

import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from core.observability.logging_setup import reset_request_id, set_request_id

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id to the current context for the request's lifetime.

    Priority:
    1. X-Request-ID header (propagated from a gateway or caller)
    2. A fresh random id
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        token = set_request_id(request_id)
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            reset_request_id(token)
