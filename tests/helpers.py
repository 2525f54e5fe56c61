from typing import Callable, List, Sequence

import httpx

UPSTREAM_URL = "https://upstream.test"


class FirstKeySelector:
    """Deterministic selector so outbound headers can be asserted exactly."""

    def pick(self, keys: Sequence[str]) -> str:
        return keys[0]


class FakeUpstream:
    """Records every request the proxy sends and answers with ``handler``."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200, json={"ok": True}
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def last(self) -> httpx.Request:
        assert self.requests, "upstream was never called"
        return self.requests[-1]


class TrackingStream(httpx.AsyncByteStream):
    """Upstream body that remembers whether it was closed."""

    def __init__(self, chunks: Sequence[bytes]) -> None:
        self.chunks = list(chunks)
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True
