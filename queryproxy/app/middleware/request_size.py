"""Request body size limit middleware.

Chat payloads may carry a base64 image, so the limit is generous, but a
body is never buffered past it. Enforced for both Content-Length and
chunked transfer encoding.
"""

import json
from typing import Optional

from starlette.types import Message, Receive, Scope, Send

from queryproxy.app.exceptions import PayloadTooLarge


class SizeLimitedStream:
    """Wraps the ASGI receive callable and counts body bytes as they arrive."""

    def __init__(self, receive: Receive, max_size: int):
        self._receive = receive
        self._max_size = max_size
        self._bytes_read = 0

    async def receive(self) -> Message:
        message = await self._receive()

        if message["type"] == "http.request":
            self._bytes_read += len(message.get("body", b""))
            if self._bytes_read > self._max_size:
                raise PayloadTooLarge(self._max_size)

        return message


class RequestSizeLimitMiddleware:
    """ASGI middleware to limit request body size.

    Returns HTTP 413 (Payload Too Large) with a JSON body when the limit is
    exceeded. Implemented as raw ASGI middleware so the receive callable is
    wrapped before Starlette's Request is constructed.

    Usage:
        app.add_middleware(RequestSizeLimitMiddleware, max_body_size=10*1024*1024)
    """

    def __init__(self, app, max_body_size: int = 10 * 1024 * 1024):
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        content_length: Optional[str] = None
        for name, value in scope.get("headers", []):
            if name.lower() == b"content-length":
                content_length = value.decode()
                break

        if content_length:
            try:
                if int(content_length) > self.max_body_size:
                    await self._send_413_response(send)
                    return
            except ValueError:
                # Invalid Content-Length, the streaming check still applies
                pass

        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        limited = SizeLimitedStream(receive, self.max_body_size)
        try:
            await self.app(scope, limited.receive, tracking_send)
        except PayloadTooLarge:
            if response_started:
                raise
            await self._send_413_response(send)

    async def _send_413_response(self, send: Send) -> None:
        body = json.dumps({
            "error": "Payload too large",
            "detail": (
                f"Request body too large. Maximum size: "
                f"{self.max_body_size / 1024 / 1024:g}MB"
            ),
        }).encode()

        await send(
            {
                "type": "http.response.start",
                "status": 413,
                "headers": [
                    [b"content-type", b"application/json"],
                    [b"content-length", str(len(body)).encode()],
                ],
            }
        )
        await send({"type": "http.response.body", "body": body})
