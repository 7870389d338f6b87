import asyncio
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from api_testing_service import APITestingService
from data_cache import DataCache
from engine_errors import NetworkError, RequestTimeoutError
from http_transport import AiohttpTransport, TransportResponse
from mock_data_service import MockDataService
from scenario_runner import ScenarioRunner


# ============================================================================
# TARGET HTTP SERVER
# ============================================================================


def build_target_app() -> web.Application:
    users = [{"id": 1, "name": "Ada"}, {"id": 2, "name": "Linus"}]

    async def health(request):
        return web.json_response({"status": "ok", "version": "1.0"})

    async def list_users(request):
        return web.json_response(users)

    async def create_user(request):
        payload = await request.json()
        user = {"id": len(users) + 1, **payload}
        users.append(user)
        return web.json_response(user, status=201)

    async def text(request):
        return web.Response(text="plain response")

    async def broken_json(request):
        return web.Response(text="{not json", content_type="application/json")

    async def slow(request):
        await asyncio.sleep(0.5)
        return web.json_response({"slow": True})

    async def headers(request):
        return web.json_response({k: v for k, v in request.headers.items()})

    async def fail(request):
        return web.json_response({"error": "boom"}, status=500)

    app = web.Application()
    app.router.add_get("/health", health)
    app.router.add_get("/users", list_users)
    app.router.add_post("/users", create_user)
    app.router.add_get("/text", text)
    app.router.add_get("/broken-json", broken_json)
    app.router.add_get("/slow", slow)
    app.router.add_get("/headers", headers)
    app.router.add_get("/fail", fail)
    return app


@pytest_asyncio.fixture
async def target_server():
    server = test_utils.TestServer(build_target_app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def base_url(target_server) -> str:
    return str(target_server.make_url("")).rstrip("/")


# ============================================================================
# DOUBLES
# ============================================================================


class FakeTransport:
    """Canned responses keyed by (method, path); records every call"""

    def __init__(self, routes: Optional[Dict[Tuple[str, str], Any]] = None):
        self.routes = dict(routes or {})
        self.calls: List[Dict[str, Any]] = []

    def add(self, method: str, path: str, response):
        self.routes[(method, path)] = response

    async def request(self, method, url, headers=None, body=None, timeout_ms=30000):
        path = urlsplit(url).path or "/"
        self.calls.append({"method": method, "url": url, "path": path, "headers": headers, "body": body})
        response = self.routes.get((method, path))
        if response is None:
            return TransportResponse(status=404, headers={"Content-Type": "text/plain"}, text="not found")
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response()
        return response

    async def close(self):
        pass


def json_response(status: int, text: str, headers: Optional[Dict[str, str]] = None) -> TransportResponse:
    return TransportResponse(status=status, headers={"Content-Type": "application/json", **(headers or {})},
                             text=text)


@pytest.fixture
def fake_transport() -> FakeTransport:
    transport = FakeTransport()
    transport.add("GET", "/health", json_response(200, '{"status": "ok", "version": "1.0"}'))
    transport.add("GET", "/users", json_response(200, '[{"id": 1, "name": "Ada"}]'))
    transport.add("POST", "/users", json_response(201, '{"id": 2, "name": "Grace"}'))
    transport.add("GET", "/down", NetworkError("Connection refused"))
    transport.add("GET", "/timeout", RequestTimeoutError(1000))
    return transport


# ============================================================================
# SERVICES
# ============================================================================


@pytest.fixture
def mock_data_service() -> MockDataService:
    return MockDataService(cache=DataCache(max_size=1024 * 1024, max_age=3600), default_ttl_seconds=3600)


@pytest.fixture
def api_service(fake_transport, mock_data_service) -> APITestingService:
    return APITestingService(
        transport=fake_transport,
        mock_data_service=mock_data_service,
        default_base_url="http://api.test",
    )


@pytest_asyncio.fixture
async def live_api_service(base_url, mock_data_service):
    transport = AiohttpTransport(verify_ssl=False)
    service = APITestingService(transport=transport, mock_data_service=mock_data_service,
                                default_base_url=base_url)
    yield service
    await transport.close()


@pytest.fixture
def runner(api_service, mock_data_service) -> ScenarioRunner:
    return ScenarioRunner(api_service, mock_data_service, base_url="http://api.test")
