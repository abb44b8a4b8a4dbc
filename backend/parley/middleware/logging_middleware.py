"""
Request logging middleware.

Pure ASGI middleware (not BaseHTTPMiddleware), so response streaming is left
untouched. Logs one line when a request starts and one when it completes,
with sanitized and truncated bodies.
"""

import json
import logging
import time
from typing import List, Optional
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..core.logging_config import filter_sensitive_data, truncate_large_data

logger = logging.getLogger(__name__)

MAX_BODY_LOG = 2000


def _sanitize_body(chunks: List[bytes]) -> Optional[str]:
    """Decode a captured body, masking credentials when it is JSON."""
    body = b"".join(chunks)
    if not body:
        return None
    text = body.decode("utf-8", errors="ignore")
    try:
        text = json.dumps(filter_sensitive_data(json.loads(text)), ensure_ascii=False)
    except json.JSONDecodeError:
        pass
    return truncate_large_data(text, max_length=MAX_BODY_LOG)


def _error_reason(body_text: Optional[str]) -> Optional[str]:
    """Pull the ``detail`` of an error response, if there is one."""
    if not body_text:
        return None
    try:
        payload = json.loads(body_text)
    except json.JSONDecodeError:
        return truncate_large_data(body_text, max_length=500)
    if isinstance(payload, dict):
        for key in ("detail", "message", "error"):
            if payload.get(key):
                return str(payload[key])
    return truncate_large_data(body_text, max_length=500)


def _session_id(path: str) -> Optional[str]:
    parts = path.strip("/").split("/")
    if len(parts) >= 2 and parts[0] == "sessions" and parts[1] not in ("search", "export", "import", "commands"):
        return parts[1]
    return None


class RequestLoggingMiddleware:
    """Logs every HTTP request with its status code and duration."""

    def __init__(self, app: ASGIApp, exclude_paths: Optional[list] = None):
        """
        Args:
            app: The ASGI application
            exclude_paths: Paths that are passed through without logging
        """
        self.app = app
        self.exclude_paths = exclude_paths or ["/health", "/"]

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path", "") in self.exclude_paths:
            await self.app(scope, receive, send)
            return

        start_time = time.time()
        method = scope.get("method", "UNKNOWN")
        path = scope.get("path", "")
        context = {
            "request_id": id(scope),
            "method": method,
            "path": path,
            "session_id": _session_id(path),
        }

        request_chunks: List[bytes] = []
        response_chunks: List[bytes] = []
        status_code = 0

        async def logging_receive() -> Message:
            message = await receive()
            if message["type"] == "http.request":
                request_chunks.append(message.get("body", b""))
            return message

        async def logging_send(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 0)
            elif message["type"] == "http.response.body":
                response_chunks.append(message.get("body", b""))
            await send(message)

        logger.info(f"Request started: {method} {path}", extra={"extra_fields": context})

        try:
            await self.app(scope, logging_receive, logging_send)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"Request failed: {method} {path} - {e}",
                exc_info=True,
                extra={"extra_fields": {**context, "duration_ms": round(duration_ms, 2)}}
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        request_body = _sanitize_body(request_chunks)
        response_body = _sanitize_body(response_chunks)
        reason = _error_reason(response_body) if status_code >= 400 else None

        if status_code < 400:
            level = logging.INFO
        elif status_code < 500:
            level = logging.WARNING
        else:
            level = logging.ERROR

        message = f"Request completed: {method} {path} - {status_code} ({duration_ms:.2f}ms)"
        if reason:
            message += f" | error_reason={reason}"
        if logger.isEnabledFor(logging.DEBUG):
            message += f" | request_body={request_body or '-'} | response_body={response_body or '-'}"

        logger.log(level, message, extra={"extra_fields": {
            **context,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
            "error_reason": reason,
        }})
