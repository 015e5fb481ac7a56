from uuid import uuid4

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from salary_advance.core import context

REQUEST_ID_HEADER = "x-request-id"
TENANT_HEADER = "x-tenant-id"


class RequestContextMiddleware:
    """Bind request and tenant ids for the lifetime of one HTTP exchange.

    An inbound ``X-Request-ID`` is reused so callers can correlate across
    services; otherwise one is minted. The id is echoed on the response.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        inbound = Headers(scope=scope)
        request_id = inbound.get(REQUEST_ID_HEADER) or uuid4().hex
        context.clear_context()
        context.set_request_id(request_id)
        if inbound.get(TENANT_HEADER):
            context.set_tenant_id(inbound[TENANT_HEADER])

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)[REQUEST_ID_HEADER] = request_id
            await send(message)

        await self.app(scope, receive, send_wrapper)
