"""
Request hardening for the HTTP app.

Security headers and an early request-size check (middleware), plus an
in-memory sliding-window rate limiter applied per client address.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from video_recorder.errors import ValidationError


logger = logging.getLogger(__name__)

# Room for multipart boundaries and part headers around the file itself
MULTIPART_OVERHEAD = 64 * 1024

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
}


class SecurityMiddleware(BaseHTTPMiddleware):
    """
    Adds security headers to every response and turns away request bodies
    that cannot hold an acceptable upload before any of the body is read.
    """

    def __init__(self, app, max_file_size: int):
        super().__init__(app)
        self.max_file_size = max_file_size
        self.max_request_size = max_file_size + MULTIPART_OVERHEAD

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.max_request_size:
            client = request.client.host if request.client else "unknown"
            logger.warning("Request too large: %s bytes from %s", content_length, client)
            response = JSONResponse(
                status_code=ValidationError.status_code,
                content={
                    "error": f"File too large (limit is {self.max_file_size} bytes).",
                    "code": ValidationError.error_code,
                },
            )
        else:
            response = await call_next(request)

        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


class RateLimiter:
    """
    Sliding-window limiter: at most ``limit`` requests per ``window`` seconds
    for each client. A limit of 0 or less turns limiting off.
    """

    def __init__(self, limit: int, window: float, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self.clock = clock
        self.requests: dict[str, deque[float]] = defaultdict(deque)
        self.lock = threading.Lock()

    def hit(self, client_id: str) -> float | None:
        """
        Record a request from ``client_id``.

        Returns:
            None if the request is allowed, otherwise the number of seconds
            until the client may try again.
        """
        if self.limit <= 0:
            return None
        with self.lock:
            now = self.clock()
            client_requests = self.requests[client_id]

            # Drop requests that fell out of the window
            while client_requests and client_requests[0] <= now - self.window:
                client_requests.popleft()

            if len(client_requests) >= self.limit:
                return max(client_requests[0] + self.window - now, 0.0)

            client_requests.append(now)
            return None

    def reset(self, client_id: str | None = None) -> None:
        with self.lock:
            if client_id is None:
                self.requests.clear()
            else:
                self.requests.pop(client_id, None)
