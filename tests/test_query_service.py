"""
Test read-side statistics and health.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from cashback_scanner.models import SettlementStatus
from cashback_scanner.services.query_service import QueryService
from tests.conftest import USER_A, USER_B, WEDNESDAY, make_record


SCANNER = "test-scanner"


@pytest.fixture
async def populated(store):
    cursor = await store.create_cursor(SCANNER, 100)
    cursor.total_qualifying = 3
    cursor.total_reward_paid = Decimal("12.5")
    cursor.last_scan_time = WEDNESDAY
    await store.put_cursor(cursor)

    await store.insert_record(make_record(1, reward="2.5", status=SettlementStatus.PAID, height=95))
    await store.insert_record(make_record(2, reward="10", status=SettlementStatus.PAID, height=96, value="1000"))
    await store.insert_record(make_record(3, reward="0", height=97, value="0.5"))
    await store.insert_record(make_record(
        4, reward="1", sender=USER_B, height=98, value="20", rule_name="Other DEX",
        block_time=WEDNESDAY + timedelta(minutes=1),
    ))
    await store.insert_record(make_record(
        5, reward="3", sender=USER_B, status=SettlementStatus.FAILED, height=99, value="60",
    ))
    return store


@pytest.fixture
def service(session_maker, registry) -> QueryService:
    return QueryService(session_maker, SCANNER, registry)


@pytest.mark.asyncio
async def test_stats(populated, service):
    stats = await service.get_stats()

    assert stats["total_transactions"] == 5
    assert stats["paid_transactions"] == 2
    assert stats["failed_transactions"] == 1
    assert stats["pending_transactions"] == 1
    assert Decimal(stats["total_reward_paid"]) == Decimal("12.5")
    assert Decimal(stats["total_reward_paid_recomputed"]) == Decimal("12.5")
    assert stats["totals_in_sync"] is True
    assert stats["scanner_state"]["last_confirmed_height"] == 100
    assert len(stats["active_rules"]) == 2


@pytest.mark.asyncio
async def test_stats_report_drift(populated, service, store):
    cursor = await store.get_cursor(SCANNER)
    cursor.total_reward_paid = Decimal("2.5")
    await store.put_cursor(cursor)

    stats = await service.get_stats()

    assert stats["totals_in_sync"] is False
    # Reading never repairs
    assert (await store.get_cursor(SCANNER)).total_reward_paid == Decimal("2.5")


@pytest.mark.asyncio
async def test_stats_without_cursor(service):
    stats = await service.get_stats()

    assert stats["scanner_state"] is None
    assert stats["total_transactions"] == 0
    assert stats["totals_in_sync"] is True


@pytest.mark.asyncio
async def test_user_rewards(populated, service):
    data = await service.get_user_rewards(USER_A.upper().replace("0X", "0x"))

    assert data["user_address"] == USER_A
    assert [t["block_height"] for t in data["transactions"]] == [97, 96, 95]
    assert Decimal(data["total_stats"]["total_cashback"]) == Decimal("12.5")
    assert data["total_stats"]["total_transactions"] == 2
    assert Decimal(data["total_stats"]["avg_cashback_rate"]) == Decimal("0.05")
    assert data["pending_stats"]["pending_transactions"] == 0

    other = await service.get_user_rewards(USER_B)
    assert other["pending_stats"]["pending_transactions"] == 1
    assert Decimal(other["pending_stats"]["pending_cashback"]) == Decimal("1")


@pytest.mark.asyncio
async def test_rule_stats(populated, service):
    stats = {row["rule_name"]: row for row in await service.get_rule_stats()}

    test_dex = stats["Test DEX"]
    assert test_dex["total_transactions"] == 4
    assert test_dex["processed_transactions"] == 2
    assert test_dex["processing_rate"] == 0.5
    assert Decimal(test_dex["total_cashback"]) == Decimal("15.5")
    assert Decimal(test_dex["total_volume"]) == Decimal("1110.5")

    assert stats["Other DEX"]["total_transactions"] == 1


@pytest.mark.asyncio
async def test_list_transactions_filters_and_pages(populated, service):
    page = await service.list_transactions(page=1, limit=2)
    assert page["pagination"] == {"page": 1, "limit": 2, "total": 5, "pages": 3}
    assert len(page["transactions"]) == 2
    # Newest block time first
    assert page["transactions"][0]["rule_name"] == "Other DEX"

    by_user = await service.list_transactions(user=USER_B)
    assert by_user["pagination"]["total"] == 2

    by_status = await service.list_transactions(status=SettlementStatus.PAID)
    assert {t["status"] for t in by_status["transactions"]} == {"paid"}

    by_rule = await service.list_transactions(rule_name="Other DEX")
    assert by_rule["pagination"]["total"] == 1


@pytest.mark.asyncio
async def test_unresolved_and_failed(populated, service):
    unresolved = await service.list_unresolved()
    failed = await service.list_failed()

    assert [r["block_height"] for r in unresolved] == [98]
    assert [r["block_height"] for r in failed] == [99]


@pytest.mark.asyncio
async def test_health_threshold(populated, service):
    healthy = await service.health(120, now=WEDNESDAY + timedelta(seconds=60))
    assert healthy["status"] == "healthy"
    assert healthy["time_since_last_scan"] == 60
    assert healthy["last_confirmed_height"] == 100

    stale = await service.health(120, now=WEDNESDAY + timedelta(seconds=121))
    assert stale["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_health_without_cursor(service):
    health = await service.health(120)

    assert health["status"] == "unhealthy"
    assert health["last_scan_time"] is None


@pytest.mark.asyncio
async def test_stats_include_treasury_balance(session_maker):
    class Treasury:
        async def get_treasury_balance(self):
            return Decimal("250")

    class Unreachable:
        async def get_treasury_balance(self):
            raise ConnectionError("rpc down")

    stats = await QueryService(session_maker, SCANNER, treasury=Treasury()).get_stats()
    assert stats["treasury_balance"] == "250"

    stats = await QueryService(session_maker, SCANNER, treasury=Unreachable()).get_stats()
    assert stats["treasury_balance"] is None
    assert "active_rules" not in stats
