from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from uuid import uuid4

from litestar import Litestar, Request, get, post
from litestar.handlers import asgi
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController
from litestar.response import Response

from .errors import ProxyError, error_response
from .proxy import ReadThroughProxy

if TYPE_CHECKING:
    from litestar.types import Receive, Scope, Send


prometheus_config = PrometheusConfig(
    app_name="s3_readthrough", prefix="s3_readthrough"
)


def create_app(proxy: ReadThroughProxy | None = None) -> Litestar:
    """Create the read-through proxy ASGI application."""
    proxy = proxy or ReadThroughProxy.from_env()
    logging.getLogger("s3_readthrough").setLevel(proxy.settings.log_level)

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @post("/health/reload", include_in_schema=False, status_code=200)
    async def reload_config(request: Request) -> Response:
        try:
            await proxy.authorize_admin(request.headers.get("authorization"))
        except ProxyError as error:
            return error_response(error, uuid4().hex)
        reloaded = await proxy.reload_config()
        return Response(content={"status": "reloaded" if reloaded else "unchanged"})

    @asgi(path="/", is_mount=True, copy_scope=True)
    async def proxy_handler(scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope=scope, receive=receive)
        path = scope.get("path", "/")
        if not path.startswith("/"):
            path = f"/{path}"
        response = await proxy.handle(request, path)
        asgi_response = response.to_asgi_response(None, request)
        await asgi_response(scope, receive, send)

    async def startup(app: Litestar) -> None:
        await proxy.startup()

    async def shutdown(app: Litestar) -> None:
        await proxy.shutdown()

    return Litestar(
        route_handlers=[health, reload_config, proxy_handler, PrometheusController],
        on_startup=[startup],
        on_shutdown=[shutdown],
        middleware=[prometheus_config.middleware],
    )


app = create_app()
