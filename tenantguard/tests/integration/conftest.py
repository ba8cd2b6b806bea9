from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from tenantguard.apps.api.main import create_app


@pytest.fixture(autouse=True)
async def _schema(database) -> None:
    # Every API test runs against a fresh schema.
    yield


@pytest.fixture
async def client() -> AsyncClient:
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
