"""
Token Ledger - Append-only audit trail of balance changes.

Works inside the caller's session so the ledger row commits or rolls back
together with the balance mutation. There is no update path; the only
delete path is the retention purge by age.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import Select, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tokengate.db.models import TokenOperation
from tokengate.exceptions import LedgerIntegrityError
from tokengate.models.api import OperationType
from tokengate.models.domain import LedgerEntry, LedgerStatistics


def _within(stmt: Select[Any], start: datetime | None, end: datetime | None) -> Select[Any]:
    if start is not None:
        stmt = stmt.where(TokenOperation.created_at >= start)
    if end is not None:
        stmt = stmt.where(TokenOperation.created_at <= end)
    return stmt


def _page(stmt: Select[Any], limit: int | None, offset: int | None) -> Select[Any]:
    stmt = stmt.order_by(TokenOperation.created_at.desc())
    if offset:
        stmt = stmt.offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    return stmt


class TokenLedger:
    """Ledger reads and writes bound to one session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_entry(
        self,
        user_id: UUID,
        operation_type: OperationType,
        tokens_amount: int,
        balance_before: int,
        balance_after: int,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """
        Append one entry.

        Raises:
            LedgerIntegrityError: balance_after != balance_before + tokens_amount
        """
        if balance_after != balance_before + tokens_amount:
            raise LedgerIntegrityError(balance_before, tokens_amount, balance_after)

        operation = TokenOperation(
            user_id=user_id,
            operation_type=operation_type,
            tokens_amount=tokens_amount,
            balance_before=balance_before,
            balance_after=balance_after,
            metadata_=metadata,
        )
        self.session.add(operation)
        await self.session.flush()
        return self._to_domain(operation)

    async def get_user_entries(
        self,
        user_id: UUID,
        operation_type: OperationType | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[LedgerEntry]:
        """A user's history, newest first."""
        stmt = select(TokenOperation).where(TokenOperation.user_id == user_id)
        if operation_type is not None:
            stmt = stmt.where(TokenOperation.operation_type == operation_type)
        stmt = _page(_within(stmt, start_date, end_date), limit, offset)
        result = await self.session.execute(stmt)
        return [self._to_domain(op) for op in result.scalars()]

    async def get_entries_by_type(
        self,
        operation_type: OperationType,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[LedgerEntry]:
        """All users' entries of one type, newest first."""
        stmt = select(TokenOperation).where(TokenOperation.operation_type == operation_type)
        stmt = _page(_within(stmt, start_date, end_date), limit, offset)
        result = await self.session.execute(stmt)
        return [self._to_domain(op) for op in result.scalars()]

    async def get_total_spent(
        self, user_id: UUID, start_date: datetime | None = None, end_date: datetime | None = None
    ) -> int:
        """Sum of debits as a positive number."""
        stmt = select(func.coalesce(func.sum(TokenOperation.tokens_amount), 0)).where(
            TokenOperation.user_id == user_id, TokenOperation.tokens_amount < 0
        )
        total = await self.session.scalar(_within(stmt, start_date, end_date))
        return abs(int(total or 0))

    async def get_total_earned(
        self, user_id: UUID, start_date: datetime | None = None, end_date: datetime | None = None
    ) -> int:
        """Sum of credits."""
        stmt = select(func.coalesce(func.sum(TokenOperation.tokens_amount), 0)).where(
            TokenOperation.user_id == user_id, TokenOperation.tokens_amount > 0
        )
        total = await self.session.scalar(_within(stmt, start_date, end_date))
        return int(total or 0)

    async def get_user_statistics(
        self, user_id: UUID, start_date: datetime | None = None, end_date: datetime | None = None
    ) -> LedgerStatistics:
        total_spent = await self.get_total_spent(user_id, start_date, end_date)
        total_earned = await self.get_total_earned(user_id, start_date, end_date)
        count_stmt = select(func.count(TokenOperation.id)).where(
            TokenOperation.user_id == user_id
        )
        operation_count = await self.session.scalar(_within(count_stmt, start_date, end_date))
        return LedgerStatistics(
            total_spent=total_spent,
            total_earned=total_earned,
            net_change=total_earned - total_spent,
            operation_count=int(operation_count or 0),
        )

    async def delete_old_entries(self, older_than: datetime) -> int:
        """Retention purge: delete entries created before `older_than`."""
        result = await self.session.execute(
            delete(TokenOperation).where(TokenOperation.created_at < older_than)
        )
        return int(result.rowcount or 0)  # type: ignore[attr-defined]

    async def count_old_entries(self, older_than: datetime) -> int:
        """Entries a purge with the same cutoff would delete."""
        total = await self.session.scalar(
            select(func.count(TokenOperation.id)).where(TokenOperation.created_at < older_than)
        )
        return int(total or 0)

    def _to_domain(self, operation: TokenOperation) -> LedgerEntry:
        """Convert ORM token operation to domain model."""
        return LedgerEntry(
            id=operation.id,
            user_id=operation.user_id,
            operation_type=OperationType(operation.operation_type),
            tokens_amount=operation.tokens_amount,
            balance_before=operation.balance_before,
            balance_after=operation.balance_after,
            created_at=operation.created_at,
            metadata=operation.metadata_,
        )
