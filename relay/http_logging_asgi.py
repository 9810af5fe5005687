"""
ASGI access-log middleware.

This middleware:
- Drains the incoming request body so it can be logged, then replays it
- Falls through to the real receive channel once the replay is exhausted,
  so long-lived event streams still see client disconnects
- Never touches WebSocket or lifespan traffic
- Logs one http_in line per request when the response finishes
  (for event streams: when the stream closes)
"""

import json
import secrets
import time
from typing import Any, Dict, List, Optional

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from relay.logging_utils import get_logger

QUIET_PATH_SUFFIXES = ("/health",)


class HTTPLoggingASGIMiddleware:
    def __init__(self, app: ASGIApp):
        self.app = app
        self.logger = get_logger()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        received: List[Message] = []
        body = b""
        while True:
            msg = await receive()
            received.append(msg)
            if msg.get("type") == "http.request":
                body += msg.get("body", b"")
                if msg.get("more_body", False):
                    continue
            break

        async def replay_receive() -> Message:
            if received:
                return received.pop(0)
            return await receive()

        t0 = time.time()
        request_id = secrets.token_hex(4)
        method = scope.get("method")
        path = scope.get("path")
        client = scope.get("client")
        remote_addr = f"{client[0]}:{client[1]}" if client and len(client) >= 2 else "unknown"

        headers: Dict[str, str] = {}
        for k, v in scope.get("headers", []):
            headers[k.decode("latin-1")] = v.decode("latin-1")

        status_code: Optional[int] = None
        streamed = False

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code, streamed
            if message["type"] == "http.response.start":
                status_code = int(message.get("status", 0) or 0)
                for k, v in message.get("headers", []):
                    if k.lower() == b"content-type" and v.startswith(b"text/event-stream"):
                        streamed = True
                        self.logger.debug("http_stream_open", request_id=request_id, path=path)
            await send(message)

        error: Optional[str] = None
        try:
            await self.app(scope, replay_receive, send_wrapper)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            raise
        finally:
            dur_ms = (time.time() - t0) * 1000.0
            if path and path.endswith(QUIET_PATH_SUFFIXES) and error is None:
                self.logger.debug("http_in", request_id=request_id, method=method, path=path,
                                  status_code=status_code, duration_ms=dur_ms)
            else:
                self.logger.http_in(
                    method=method,
                    path=path,
                    remote_addr=remote_addr,
                    request_id=request_id,
                    headers=headers,
                    body=_json_body(body, headers),
                    status_code=status_code,
                    duration_ms=dur_ms,
                    streamed=streamed,
                    error=error,
                )


def _json_body(body: bytes, headers: Dict[str, str]) -> Any:
    if not body or not headers.get("content-type", "").startswith("application/json"):
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None
