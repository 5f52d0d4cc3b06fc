"""
Test the read-only HTTP API.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from cashback_scanner.api.main import create_app
from cashback_scanner.models import SettlementStatus
from cashback_scanner.services.query_service import QueryService
from tests.conftest import USER_A, make_record


SCANNER = "test-scanner"


@pytest.fixture
def service(session_maker, registry) -> QueryService:
    return QueryService(session_maker, SCANNER, registry)


@pytest.fixture
async def client(service):
    app = create_app(query_service=service)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_health_unhealthy_without_scans(client):
    response = await client.get("/health")

    assert response.status_code == 503
    assert response.json()["data"]["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_health_after_recent_scan(client, store):
    await store.create_cursor(SCANNER, 100)

    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["last_confirmed_height"] == 100


@pytest.mark.asyncio
async def test_stats_endpoint(client, store):
    await store.create_cursor(SCANNER, 100)
    await store.insert_record(make_record(1, status=SettlementStatus.PAID))

    response = await client.get("/api/stats")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total_transactions"] == 1
    assert data["paid_transactions"] == 1


@pytest.mark.asyncio
async def test_transactions_endpoint(client, store):
    await store.insert_record(make_record(1, status=SettlementStatus.PAID))
    await store.insert_record(make_record(2))

    response = await client.get("/api/transactions", params={"status": "paid", "limit": 10})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["pagination"]["total"] == 1
    assert data["transactions"][0]["status"] == "paid"


@pytest.mark.asyncio
async def test_user_cashback_endpoint(client, store):
    await store.insert_record(make_record(1, status=SettlementStatus.PAID))

    response = await client.get(f"/api/users/{USER_A}/cashback")

    assert response.status_code == 200
    assert response.json()["data"]["total_stats"]["total_transactions"] == 1


@pytest.mark.asyncio
async def test_user_cashback_rejects_bad_address(client):
    response = await client.get("/api/users/not-an-address/cashback")

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "INVALID_ADDRESS"


@pytest.mark.asyncio
async def test_rule_stats_and_reconciliation(client, store):
    await store.insert_record(make_record(1))
    await store.insert_record(make_record(2, status=SettlementStatus.FAILED))

    rules = await client.get("/api/rules/stats")
    pending = await client.get("/api/reconciliation/pending")

    assert rules.status_code == 200
    assert rules.json()["data"][0]["total_transactions"] == 2
    assert len(pending.json()["data"]["unrewarded"]) == 1
    assert len(pending.json()["data"]["failed"]) == 1


@pytest.mark.asyncio
async def test_service_not_initialized():
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/stats")

    assert response.status_code == 503
