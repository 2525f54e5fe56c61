import logging
from typing import AsyncIterator, Optional

import httpx
from fastapi import Request, Response
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.types import Receive, Scope, Send

import config
from key_manager import (
    API_KEY_HEADER,
    AUTHORIZATION_HEADER,
    KeySelector,
    KeySource,
    RandomKeySelector,
    mask_key,
    select_key,
)

# httpx logs full request URLs at INFO, and Gemini accepts ?key=<API key>
logging.getLogger("httpx").setLevel(logging.WARNING)

# Meaningful only for a single connection, never relayed upstream
HOP_BY_HOP_HEADERS = (
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
)

# The proxy owns framing and must not pin HSTS to its own host
EXCLUDED_RESPONSE_HEADERS = (
    "content-encoding",
    "transfer-encoding",
    "connection",
    "strict-transport-security",
)

BODYLESS_METHODS = ("GET", "HEAD")
BAD_GATEWAY_MESSAGE = "Bad Gateway: upstream request failed"

DEFAULT_TIMEOUT = httpx.Timeout(300.0, connect=10.0)


class UpstreamStreamingResponse(StreamingResponse):
    """Streams an upstream body and always closes the upstream response.

    Covers the relay finishing, the caller disconnecting, and the body never
    being iterated at all.
    """

    def __init__(self, upstream_response: httpx.Response, content: AsyncIterator[bytes]):
        super().__init__(content, status_code=upstream_response.status_code)
        self.upstream_response = upstream_response

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.upstream_response.aclose()


class Forwarder:
    """Relays requests to a single upstream origin, spreading load across caller-supplied keys.

    Request and response bodies are piped through as streams; nothing is
    buffered and nothing is kept between requests.
    """

    def __init__(
        self,
        upstream_url: str,
        client: Optional[httpx.AsyncClient] = None,
        selector: Optional[KeySelector] = None,
        timeout: Optional[httpx.Timeout] = None,
    ):
        try:
            url = httpx.URL(upstream_url)
        except httpx.InvalidURL as e:
            raise ValueError(f"Invalid upstream URL {upstream_url!r}: {e}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(f"Invalid upstream URL {upstream_url!r}: expected an absolute http(s) URL")

        host = url.host
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"

        self.base_url = upstream_url.rstrip("/")
        self.hostname = host
        self.origin = f"{url.scheme}://{host}" if url.port is None else f"{url.scheme}://{host}:{url.port}"
        self.referer = self.base_url

        self.selector = selector or RandomKeySelector()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout or DEFAULT_TIMEOUT)

    def target_url(self, raw_path: str, query_string: str = "") -> str:
        if query_string:
            return f"{self.base_url}{raw_path}?{query_string}"
        return f"{self.base_url}{raw_path}"

    def build_request_headers(
        self,
        headers,
        key_source: Optional[KeySource],
        key: Optional[str],
        client_host: Optional[str] = None,
        scheme: str = "http",
    ) -> httpx.Headers:
        outbound = httpx.Headers(headers)

        # Callers' key lists never leave the proxy, only the selected key does
        outbound.pop(API_KEY_HEADER, None)
        outbound.pop(AUTHORIZATION_HEADER, None)
        if key:
            if key_source is KeySource.DIRECT:
                outbound[API_KEY_HEADER] = key
            elif key_source is KeySource.BEARER:
                outbound["Authorization"] = f"Bearer {key}"

        outbound["host"] = self.hostname
        outbound["origin"] = self.origin
        outbound["referer"] = self.referer

        if "x-forwarded-for" not in outbound and client_host:
            outbound["x-forwarded-for"] = client_host
        if "x-forwarded-proto" not in outbound:
            outbound["x-forwarded-proto"] = scheme

        for header in HOP_BY_HOP_HEADERS:
            outbound.pop(header, None)
        return outbound

    @staticmethod
    def filter_response_headers(headers) -> httpx.Headers:
        headers = httpx.Headers(headers)
        filtered = httpx.Headers(
            [(k, v) for k, v in headers.multi_items() if k not in EXCLUDED_RESPONSE_HEADERS]
        )
        # aiter_bytes() decodes the body, so an encoded length no longer applies
        if "content-encoding" in headers:
            filtered.pop("content-length", None)
        return filtered

    async def forward(self, request: Request) -> Response:
        raw_path = request.scope.get("raw_path") or request.url.path.encode()
        query_string = request.scope.get("query_string", b"")
        target = self.target_url(raw_path.decode("latin-1"), query_string.decode("latin-1"))
        # The query may carry ?key=, so only the path is ever logged
        path = request.url.path

        inbound_headers = httpx.Headers(request.headers.raw)
        key_source, key = select_key(inbound_headers, self.selector)

        logging.info(f"Proxying {request.method} {path}")
        if config.DEBUG:
            logging.info(f"Inbound headers: {_masked(inbound_headers)}")
        if key_source is not None:
            logging.debug(
                f"Key source: {key_source.value}, selected key: {mask_key(key) if key else 'none'}"
            )

        headers = self.build_request_headers(
            request.headers.raw,
            key_source,
            key,
            client_host=request.client.host if request.client else None,
            scheme=request.url.scheme,
        )
        content = request.stream() if request.method not in BODYLESS_METHODS else None

        try:
            # Built directly so the client's default headers are not merged back in
            upstream_request = httpx.Request(
                request.method,
                target,
                headers=headers,
                content=content,
            )
            upstream_response = await self.client.send(upstream_request, stream=True)
        except (httpx.RequestError, httpx.InvalidURL) as e:
            logging.error(f"Upstream request for {request.method} {path} failed: {type(e).__name__}")
            return PlainTextResponse(BAD_GATEWAY_MESSAGE, status_code=502)

        response = UpstreamStreamingResponse(upstream_response, self._relay(upstream_response, path))
        for name, value in self.filter_response_headers(upstream_response.headers).multi_items():
            response.headers.append(name, value)
        return response

    async def _relay(self, upstream_response: httpx.Response, path: str) -> AsyncIterator[bytes]:
        """Yield the upstream body.

        Headers are already on the wire by the time this runs, so a broken
        upstream stream is re-raised to abort the connection.
        """
        try:
            async for chunk in upstream_response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            logging.error(f"Upstream stream for {path} broke off: {type(e).__name__}")
            raise
        finally:
            await upstream_response.aclose()

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()


def _masked(headers: httpx.Headers) -> dict:
    masked = {}
    for name, value in headers.multi_items():
        if name in (API_KEY_HEADER, AUTHORIZATION_HEADER):
            value = ",".join(mask_key(part.strip()) for part in value.split(","))
        masked[name] = value
    return masked
