"""Request ID middleware: tags every request and response with an identifier."""

import time

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from app.services.crypto import generate_random_string

REQUEST_ID_HEADER = "X-Request-ID"


def new_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{generate_random_string(8)}"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Stores the id on ``request.state.request_id`` and echoes it back."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = new_request_id()
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
