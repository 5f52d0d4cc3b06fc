"""
Persistent store for the scan cursor and the transaction ledger.
Backed by SQLAlchemy async sessions.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, Optional, Protocol

import structlog
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cashback_scanner.core.exceptions import (
    DuplicateRecordError,
    TransientSourceError,
    ValidationError,
)
from cashback_scanner.models import (
    ScanCursor,
    SettlementStatus,
    TransactionRecord,
    utcnow,
)


logger = structlog.get_logger(__name__)


class ScanStore(Protocol):
    """Durable storage capability used by the scanner."""

    async def get_cursor(self, name: str) -> Optional[ScanCursor]:
        ...

    async def create_cursor(self, name: str, height: int) -> ScanCursor:
        ...

    async def put_cursor(self, cursor: ScanCursor) -> None:
        ...

    async def exists_record(self, tx_hash: str) -> bool:
        ...

    async def insert_record(self, record: TransactionRecord) -> None:
        ...

    async def update_record_status(
        self,
        tx_hash: str,
        status: SettlementStatus,
        settlement_ref: Optional[str] = None,
        settled_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        ...


class SqlAlchemyScanStore:
    """
    ScanStore over an async session maker.

    Database failures surface as TransientSourceError; a duplicate hash on
    insert surfaces as DuplicateRecordError.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker
        self.logger = logger.bind(service="scan_store")

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    yield session
        except (DuplicateRecordError, ValidationError):
            raise
        except (SQLAlchemyError, OSError) as e:
            self.logger.error("Store operation failed", operation=operation, error=str(e))
            raise TransientSourceError(
                f"Store unavailable during {operation}: {e}",
                {"operation": operation}
            ) from e

    # Cursor

    async def get_cursor(self, name: str) -> Optional[ScanCursor]:
        async with self._session("get_cursor") as session:
            return await session.get(ScanCursor, name)

    async def create_cursor(self, name: str, height: int) -> ScanCursor:
        """Create the cursor at `height` unless it already exists."""
        async with self._session("create_cursor") as session:
            existing = await session.get(ScanCursor, name)
            if existing:
                return existing
            cursor = ScanCursor(
                name=name,
                last_confirmed_height=height,
                total_qualifying=0,
                total_reward_paid=Decimal("0"),
                last_scan_time=utcnow(),
                is_active=True,
            )
            session.add(cursor)
        self.logger.info("Scan cursor created", name=name, height=height)
        return cursor

    async def put_cursor(self, cursor: ScanCursor) -> None:
        """
        Persist cursor progress in a single write.

        Raises:
            ValidationError: The write would move the height backwards
        """
        async with self._session("put_cursor") as session:
            result = await session.execute(
                update(ScanCursor)
                .where(
                    ScanCursor.name == cursor.name,
                    ScanCursor.last_confirmed_height <= cursor.last_confirmed_height,
                )
                .values(
                    last_confirmed_height=cursor.last_confirmed_height,
                    total_qualifying=cursor.total_qualifying,
                    total_reward_paid=cursor.total_reward_paid,
                    last_scan_time=cursor.last_scan_time,
                    is_active=cursor.is_active,
                    updated_at=utcnow(),
                )
            )
            if result.rowcount != 1:
                raise ValidationError(
                    "Cursor update rejected: missing row or height regression",
                    {"name": cursor.name, "height": cursor.last_confirmed_height}
                )

    # Transaction records

    async def exists_record(self, tx_hash: str) -> bool:
        async with self._session("exists_record") as session:
            result = await session.execute(
                select(TransactionRecord.hash).where(TransactionRecord.hash == tx_hash)
            )
            return result.first() is not None

    async def get_record(self, tx_hash: str) -> Optional[TransactionRecord]:
        async with self._session("get_record") as session:
            return await session.get(TransactionRecord, tx_hash)

    async def insert_record(self, record: TransactionRecord) -> None:
        """
        Insert a new record.

        Raises:
            DuplicateRecordError: A record with this hash already exists
            ValidationError: Any other constraint rejected the row
        """
        try:
            async with self._session("insert_record") as session:
                session.add(record)
                await session.flush()
        except TransientSourceError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
            if await self.exists_record(record.hash):
                raise DuplicateRecordError(record.hash)
            raise ValidationError(
                f"Record rejected by store constraints: {e.__cause__.orig}",
                {"tx_hash": record.hash}
            ) from e.__cause__

    async def update_record_status(
        self,
        tx_hash: str,
        status: SettlementStatus,
        settlement_ref: Optional[str] = None,
        settled_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Attach a settlement outcome to an unrewarded record.

        Returns:
            False when the record is missing or already terminal
        """
        async with self._session("update_record_status") as session:
            result = await session.execute(
                update(TransactionRecord)
                .where(
                    TransactionRecord.hash == tx_hash,
                    TransactionRecord.status == SettlementStatus.UNREWARDED,
                )
                .values(
                    status=status,
                    settlement_ref=settlement_ref,
                    settled_at=settled_at,
                    error_message=error_message,
                    updated_at=utcnow(),
                )
            )
            updated = result.rowcount == 1

        if not updated:
            self.logger.warning(
                "Status update skipped for non-pending record",
                tx_hash=tx_hash,
                status=status.value
            )
        return updated

    # Aggregates used for reconciliation

    async def sum_paid_rewards(self) -> Decimal:
        async with self._session("sum_paid_rewards") as session:
            result = await session.execute(
                select(func.coalesce(func.sum(TransactionRecord.reward_amount), 0))
                .where(TransactionRecord.status == SettlementStatus.PAID)
            )
            return Decimal(str(result.scalar() or 0))

    async def count_qualifying(self) -> int:
        async with self._session("count_qualifying") as session:
            result = await session.execute(
                select(func.count(TransactionRecord.hash))
                .where(TransactionRecord.reward_amount > 0)
            )
            return int(result.scalar() or 0)
