"""
RequestContext Middleware - tags every request with an id for log correlation.

Adds to request.state:
- request_id: taken from an incoming X-Request-ID header or generated
- ip_address: direct client address

The id is echoed back in the X-Request-ID response header so the exam
client can quote it when reporting a failed upload.
"""

import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_REQUEST_ID_LENGTH = 128


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        incoming = request.headers.get("x-request-id")
        if incoming and len(incoming) <= MAX_REQUEST_ID_LENGTH:
            request_id = incoming
        else:
            request_id = str(uuid.uuid4())

        request.state.request_id = request_id
        request.state.ip_address = request.client.host if request.client else None

        logger.debug(
            "Request started",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            ip_address=request.state.ip_address,
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response
