import asyncio
import logging

from starlette.exceptions import HTTPException
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from upload_relay.errors import PayloadTooLarge

logger = logging.getLogger(__name__)

# Room for multipart boundaries and part headers on top of the file itself.
MULTIPART_OVERHEAD_BYTES = 64 * 1024

TIMEOUT_MESSAGE = "Timed out reading request body"


class UploadGuardMiddleware:
    """Protects upload endpoints from oversized and stalled request bodies.

    A declared ``Content-Length`` above ``max_body_bytes`` is refused before the
    body is read, and bodies without one are cut off with 413 as soon as they
    pass it. Each body chunk must arrive within ``timeout_seconds`` and the
    whole body within ``total_timeout_seconds``, otherwise the request fails
    with 408.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        paths: set[str],
        max_file_bytes: int,
        timeout_seconds: float,
        total_timeout_seconds: float | None = None,
    ):
        self.app = app
        self.paths = paths
        self.max_file_bytes = max_file_bytes
        self.max_body_bytes = max_file_bytes + MULTIPART_OVERHEAD_BYTES
        self.timeout_seconds = timeout_seconds
        self.total_timeout_seconds = total_timeout_seconds

    def _declared_length(self, scope: Scope) -> int | None:
        for name, value in scope.get("headers", []):
            if name == b"content-length":
                try:
                    return int(value)
                except ValueError:
                    return None
        return None

    def _too_large(self) -> PayloadTooLarge:
        return PayloadTooLarge(self.max_file_bytes)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["path"] not in self.paths:
            await self.app(scope, receive, send)
            return

        declared = self._declared_length(scope)
        if declared is not None and declared > self.max_body_bytes:
            logger.info("Refusing %s body of %d bytes", scope["path"], declared)
            response = JSONResponse(
                status_code=PayloadTooLarge.status_code,
                content={"error": self._too_large().message},
            )
            await response(scope, receive, send)
            return

        loop = asyncio.get_running_loop()
        deadline = None
        if self.total_timeout_seconds is not None:
            deadline = loop.time() + self.total_timeout_seconds
        body_complete = False
        received = 0

        async def timed_receive() -> Message:
            nonlocal body_complete, received
            if body_complete:
                return await receive()
            timeout = self.timeout_seconds
            if deadline is not None:
                timeout = max(0.0, min(timeout, deadline - loop.time()))
            try:
                message = await asyncio.wait_for(receive(), timeout)
            except asyncio.TimeoutError:
                logger.warning("Request body on %s stalled after %d bytes", scope["path"], received)
                raise HTTPException(status_code=408, detail=TIMEOUT_MESSAGE)
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_bytes:
                    logger.info("Cutting off %s body after %d bytes", scope["path"], received)
                    raise HTTPException(status_code=PayloadTooLarge.status_code, detail=self._too_large().message)
            if message["type"] != "http.request" or not message.get("more_body", False):
                body_complete = True
            return message

        await self.app(scope, timed_receive, send)
