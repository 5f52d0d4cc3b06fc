"""
Read-side queries over the scan cursor and transaction ledger.

Nothing in this module writes; drift between the cursor totals and the
records is reported, and repaired by the scanner at startup.
"""

import math
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import structlog
from sqlalchemy import select, func, case, desc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cashback_scanner.models import (
    ScanCursor,
    SettlementStatus,
    TransactionRecord,
    utcnow,
)
from cashback_scanner.rewards.rules import RuleRegistry


logger = structlog.get_logger(__name__)


class TreasuryBalanceSource(Protocol):
    async def get_treasury_balance(self) -> Decimal:
        ...


def _decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value)).quantize(Decimal("0.000001"))


def serialize_record(record: TransactionRecord) -> Dict[str, Any]:
    """JSON-friendly view of a transaction record."""
    return {
        "hash": record.hash,
        "sender": record.sender,
        "recipient": record.recipient,
        "effective_target": record.effective_target,
        "value": record.value,
        "value_native": str(record.value_native),
        "block_height": record.block_height,
        "block_time": record.block_time.isoformat() if record.block_time else None,
        "rule_name": record.rule_name,
        "swap_type": record.swap_type.value if record.swap_type else None,
        "reward_amount": str(record.reward_amount),
        "reward_rate": str(record.reward_rate),
        "boost_applied": record.boost_applied,
        "status": record.status.value,
        "settlement_ref": record.settlement_ref,
        "settled_at": record.settled_at.isoformat() if record.settled_at else None,
        "error_message": record.error_message,
    }


def serialize_cursor(cursor: ScanCursor) -> Dict[str, Any]:
    return {
        "name": cursor.name,
        "last_confirmed_height": cursor.last_confirmed_height,
        "total_qualifying": cursor.total_qualifying,
        "total_reward_paid": str(cursor.total_reward_paid),
        "last_scan_time": cursor.last_scan_time.isoformat() if cursor.last_scan_time else None,
        "is_active": cursor.is_active,
    }


class QueryService:
    """Statistics, per-user history, per-rule volume and health."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        scanner_name: str,
        registry: Optional[RuleRegistry] = None,
        treasury: Optional[TreasuryBalanceSource] = None,
    ):
        self.session_maker = session_maker
        self.scanner_name = scanner_name
        self.registry = registry
        self.treasury = treasury

    async def get_stats(self) -> Dict[str, Any]:
        async with self.session_maker() as session:
            cursor = await session.get(ScanCursor, self.scanner_name)
            result = await session.execute(
                select(
                    func.count(TransactionRecord.hash),
                    func.sum(case((TransactionRecord.status == SettlementStatus.PAID, 1), else_=0)),
                    func.sum(case((TransactionRecord.status == SettlementStatus.FAILED, 1), else_=0)),
                    func.sum(case(
                        (
                            (TransactionRecord.status == SettlementStatus.UNREWARDED)
                            & (TransactionRecord.reward_amount > 0),
                            1
                        ),
                        else_=0
                    )),
                    func.sum(case(
                        (TransactionRecord.status == SettlementStatus.PAID, TransactionRecord.reward_amount),
                        else_=0
                    )),
                )
            )
            total, paid, failed, pending, paid_sum = result.one()

        recomputed_paid = _decimal(paid_sum)
        recorded_paid = cursor.total_reward_paid if cursor else Decimal("0")
        stats = {
            "scanner_state": serialize_cursor(cursor) if cursor else None,
            "total_transactions": int(total or 0),
            "paid_transactions": int(paid or 0),
            "failed_transactions": int(failed or 0),
            "pending_transactions": int(pending or 0),
            "total_reward_paid": str(recorded_paid),
            "total_reward_paid_recomputed": str(recomputed_paid),
            "totals_in_sync": recorded_paid == recomputed_paid,
        }
        if self.registry is not None:
            stats["active_rules"] = [rule.to_dict() for rule in self.registry.active_rules()]
        if self.treasury is not None:
            stats["treasury_balance"] = await self._treasury_balance()
        return stats

    async def _treasury_balance(self) -> Optional[str]:
        try:
            return str(await self.treasury.get_treasury_balance())
        except Exception as e:
            logger.warning("Failed to read treasury balance", error=str(e))
            return None

    async def get_user_rewards(self, address: str) -> Dict[str, Any]:
        """Reward history and aggregates for one originating address."""
        address = address.lower()
        async with self.session_maker() as session:
            result = await session.execute(
                select(TransactionRecord)
                .where(TransactionRecord.sender == address)
                .order_by(desc(TransactionRecord.block_height))
            )
            records = list(result.scalars())

        paid = [r for r in records if r.status == SettlementStatus.PAID]
        pending = [r for r in records if r.status == SettlementStatus.UNREWARDED and r.has_reward]
        total_paid = sum((r.reward_amount for r in paid), Decimal("0"))
        avg_rate = (
            sum((r.reward_rate for r in paid), Decimal("0")) / len(paid)
            if paid else Decimal("0")
        )
        return {
            "user_address": address,
            "transactions": [serialize_record(r) for r in records],
            "total_stats": {
                "total_cashback": str(_decimal(total_paid)),
                "total_transactions": len(paid),
                "avg_cashback_rate": str(_decimal(avg_rate)),
            },
            "pending_stats": {
                "pending_cashback": str(_decimal(sum((r.reward_amount for r in pending), Decimal("0")))),
                "pending_transactions": len(pending),
            },
        }

    async def get_rule_stats(self) -> List[Dict[str, Any]]:
        """Per-rule volume, cashback and processing rate."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(
                    TransactionRecord.rule_name,
                    func.count(TransactionRecord.hash),
                    func.sum(TransactionRecord.value_native),
                    func.sum(TransactionRecord.reward_amount),
                    func.avg(TransactionRecord.reward_rate),
                    func.sum(case((TransactionRecord.status == SettlementStatus.PAID, 1), else_=0)),
                )
                .group_by(TransactionRecord.rule_name)
                .order_by(desc(func.count(TransactionRecord.hash)))
            )
            rows = result.all()

        stats = []
        for rule_name, count, volume, cashback, avg_rate, processed in rows:
            count = int(count or 0)
            processed = int(processed or 0)
            stats.append({
                "rule_name": rule_name,
                "total_transactions": count,
                "total_volume": str(Decimal(str(volume or 0))),
                "total_cashback": str(_decimal(cashback)),
                "avg_cashback_rate": str(_decimal(avg_rate)),
                "processed_transactions": processed,
                "processing_rate": processed / count if count else 0.0,
            })
        return stats

    async def list_transactions(
        self,
        page: int = 1,
        limit: int = 20,
        user: Optional[str] = None,
        rule_name: Optional[str] = None,
        status: Optional[SettlementStatus] = None,
    ) -> Dict[str, Any]:
        filters = []
        if user:
            filters.append(TransactionRecord.sender == user.lower())
        if rule_name:
            filters.append(TransactionRecord.rule_name == rule_name)
        if status is not None:
            filters.append(TransactionRecord.status == status)

        async with self.session_maker() as session:
            total = (await session.execute(
                select(func.count(TransactionRecord.hash)).where(*filters)
            )).scalar() or 0
            result = await session.execute(
                select(TransactionRecord)
                .where(*filters)
                .order_by(desc(TransactionRecord.block_time), TransactionRecord.hash)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            records = list(result.scalars())

        return {
            "transactions": [serialize_record(r) for r in records],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0,
            },
        }

    async def list_unresolved(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Positive rewards still `unrewarded`, awaiting manual reconciliation."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(TransactionRecord)
                .where(
                    TransactionRecord.status == SettlementStatus.UNREWARDED,
                    TransactionRecord.reward_amount > 0,
                )
                .order_by(TransactionRecord.block_height)
                .limit(limit)
            )
            return [serialize_record(r) for r in result.scalars()]

    async def list_failed(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(TransactionRecord)
                .where(TransactionRecord.status == SettlementStatus.FAILED)
                .order_by(TransactionRecord.block_height)
                .limit(limit)
            )
            return [serialize_record(r) for r in result.scalars()]

    async def health(
        self,
        threshold_seconds: float,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Healthy while the last successful cycle is younger than the threshold."""
        now = now or utcnow()
        async with self.session_maker() as session:
            cursor = await session.get(ScanCursor, self.scanner_name)

        if cursor is None or cursor.last_scan_time is None:
            return {
                "status": "unhealthy",
                "last_scan_time": None,
                "time_since_last_scan": None,
                "last_confirmed_height": None,
            }

        since = cursor.seconds_since_last_scan(now)
        return {
            "status": "healthy" if since < threshold_seconds else "unhealthy",
            "last_scan_time": cursor.last_scan_time.isoformat(),
            "time_since_last_scan": since,
            "last_confirmed_height": cursor.last_confirmed_height,
        }
