import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from starlette.types import Receive, Scope, Send

import config
from forwarder import Forwarder
from key_manager import KeySelector


class ProxyEndpoint:
    """Catch-all ASGI endpoint.

    Mounted as a raw ASGI app so the route takes every method, TRACE and
    extension methods included, instead of a fixed method list.
    """

    def __init__(self, forwarder: Forwarder):
        self.forwarder = forwarder

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        if request.url.path == "/" and not request.url.query:
            response = PlainTextResponse(config.ROOT_MESSAGE)
        else:
            response = await self.forwarder.forward(request)
        await response(scope, receive, send)


def create_app(
    upstream_url: str = config.UPSTREAM_URL,
    client: Optional[httpx.AsyncClient] = None,
    selector: Optional[KeySelector] = None,
) -> FastAPI:
    forwarder = Forwarder(
        upstream_url,
        client=client,
        selector=selector,
        timeout=httpx.Timeout(
            config.UPSTREAM_TIMEOUT_SECONDS, connect=config.UPSTREAM_CONNECT_TIMEOUT_SECONDS
        ),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await forwarder.aclose()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.forwarder = forwarder
    app.add_route("/{path:path}", ProxyEndpoint(forwarder), include_in_schema=False)
    return app


app = create_app()


def main():
    logging.basicConfig(level=config.LOG_LEVEL)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
