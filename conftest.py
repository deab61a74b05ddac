# Ensure tests import the relay package from this checkout first.
import os
import sys
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi import Request

SERVICE_ROOT = os.path.dirname(__file__)

if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from relay.utils_tests.upstream_stub import UpstreamStub  # noqa: E402
from relay.vars import PROXY_PREFIX  # noqa: E402


@pytest.fixture
def upstream(monkeypatch):
    """Route every outbound request of the relay to an in-process stub."""
    stub = UpstreamStub()
    monkeypatch.setattr("relay.origin_proxy.route.build_origin_client", stub.client)
    monkeypatch.setattr("relay.fetch_gateway.route.build_fetch_client", stub.client)
    return stub


@pytest.fixture
def mock_request():
    """Create a mock FastAPI Request object."""
    request = Mock(spec=Request)
    request.method = "GET"
    request.url.path = f"{PROXY_PREFIX}/index.html"
    request.url.query = ""
    request.url.scheme = "http"
    request.headers = {"host": "localhost:3000", "user-agent": "test-agent"}
    request.client.host = "192.168.1.100"
    request.body = AsyncMock(return_value=b"")
    request.is_disconnected = AsyncMock(return_value=False)
    return request
