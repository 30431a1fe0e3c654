"""Request-ID middleware -- tags every HTTP request with ``X-Request-ID``.

Pure ASGI (not ``BaseHTTPMiddleware``) so streaming responses and
background work are not wrapped.
"""

import uuid

from starlette.types import ASGIApp, Receive, Scope, Send


class RequestIDMiddleware:
    """Reuse the caller's ``X-Request-ID`` or mint a UUID-4, and echo it back.

    The ID is stored in ``scope["state"]["request_id"]`` for handlers and
    the access log.  Non-HTTP scopes pass through untouched.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        request_id = headers.get(b"x-request-id", b"").decode() or str(uuid.uuid4())
        scope.setdefault("state", {})["request_id"] = request_id

        async def send_with_id(message: dict) -> None:
            if message["type"] == "http.response.start":
                message = {
                    **message,
                    "headers": [*message.get("headers", []), (b"x-request-id", request_id.encode())],
                }
            await send(message)

        await self.app(scope, receive, send_with_id)
