import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from pigeon.metrics import record_http_request


# Context variable holding the request_id of the request being served
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter to ensure ISO-8601 timestamps and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        # Millisecond UTC timestamp with Z suffix, same shape as message timestamps
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        # Tag every line logged while serving a request with its request_id
        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    # Root logger: everything under pigeon.* ends up here
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    # Drop handlers installed by earlier calls or by the server
    logger.handlers = []

    # One JSON handler on stdout
    json_handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)

    logger.addHandler(json_handler)

    # Route Uvicorn's own loggers through the same JSON handler
    uvicorn_loggers = [
        "uvicorn",
        "uvicorn.error",
        "uvicorn.access",
    ]

    for logger_name in uvicorn_loggers:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Access lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    return logger


def _route_path(request: Request) -> str:
    """Route template (/api/contacts/{contact_id}) to keep metric labels bounded."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Log keys:
    - ts, level, request_id
    - method, path, status, latency_ms

    For message sends, also includes:
    - message_id: id of the persisted message
    - dup: whether the send matched an already stored message
    - result: created, duplicate, user_not_found
    - channel: rest

    The real-time channel is not HTTP; its frames are logged by
    log_realtime_frame.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # New id per request, also returned to the caller
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        token = request_id_ctx.set(request_id)
        start_time = time.time()

        try:
            response = await call_next(request)

            response.headers["X-Request-ID"] = request_id

            # Measured once so metrics and log agree
            latency_seconds = time.time() - start_time
            latency_ms = round(latency_seconds * 1000, 2)

            # Scrapes of /metrics are not counted
            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=_route_path(request),
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": latency_ms,
            }

            # Set by log_delivery_data on the send route
            if hasattr(request.state, "delivery_log_data"):
                log_data.update(request.state.delivery_log_data)

            logger = logging.getLogger("pigeon.requests")

            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_delivery_data(request: Request, message_id: int = None, dup: bool = False, result: str = None, channel: str = "rest"):
    """
    Attach send-specific logging data to the request state.
    This data will be included in the request log by the middleware.

    Args:
        request: FastAPI request object
        message_id: Id of the stored message
        dup: Whether the send matched an already stored message
        result: created, duplicate or user_not_found
        channel: rest or realtime
    """
    delivery_data = {"channel": channel, "dup": dup}

    if message_id is not None:
        delivery_data["message_id"] = message_id

    if result is not None:
        delivery_data["result"] = result

    request.state.delivery_log_data = delivery_data


def log_realtime_frame(session_id: str, event: Optional[str], user_id: Optional[int] = None, result: str = "handled"):
    """
    One log line per frame received on the real-time channel.

    Keys: session_id, event, user_id (once registered), result.
    """
    log_data = {"session_id": session_id, "event": event, "result": result}
    if user_id is not None:
        log_data["user_id"] = user_id

    logger = logging.getLogger("pigeon.realtime")
    if result == "handled":
        logger.info("Frame processed", extra=log_data)
    else:
        logger.warning("Frame processed", extra=log_data)
