from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient

from main import create_app
from tests.helpers import UPSTREAM_URL, FakeUpstream, FirstKeySelector


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def client(upstream: FakeUpstream) -> Generator[TestClient, None, None]:
    app = create_app(
        UPSTREAM_URL,
        client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
        selector=FirstKeySelector(),
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def random_client(upstream: FakeUpstream) -> Generator[TestClient, None, None]:
    """Client wired with the default random selector."""
    app = create_app(UPSTREAM_URL, client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)))
    with TestClient(app) as test_client:
        yield test_client
