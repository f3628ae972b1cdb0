import json
import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger("slotbook.access")


def _log(request_id: str, request: Request, status: int, duration_ms: float):
    logger.info(json.dumps({
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "status": status,
        "duration_ms": round(duration_ms, 2),
    }))


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        try:
            response: Response = await call_next(request)
        except Exception:
            _log(request_id, request, 500, (time.perf_counter() - start) * 1000)
            raise

        response.headers["X-Request-Id"] = request_id
        _log(request_id, request, response.status_code, (time.perf_counter() - start) * 1000)
        return response
