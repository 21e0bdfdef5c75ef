"""
Order Ledger - authoritative record of purchase outcomes.

Orders move pending -> {completed, failed, expired} exactly once. Every
terminal write is a compare-and-set on the pending state, never a read
followed by a write, so two racing notifications cannot both win.

The forward to the persistence collaborator is tracked separately
(sync_status) and claimed with its own compare-and-set so the forward also
happens at most once per successful claim.

Recurring subscription charges after enrollment are separate rows keyed by
(trade number, sequence). Recording one is an insert-if-absent, and each
charge has its own sync track.
"""

import asyncio
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError as SQLIntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from storefront.db.models import OrderRecord, PeriodChargeRecord
from storefront.exceptions import UnknownOrderError
from storefront.models.domain import (
    ChargeOutcome,
    CheckoutKind,
    OrderData,
    OrderStatus,
    PeriodChargeData,
    SyncStatus,
    TransitionOutcome,
)

logger = get_logger(__name__)

_CLAIMABLE = (SyncStatus.PENDING, SyncStatus.FAILED)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class OrderStore(Protocol):
    """Order ledger backend."""

    async def create_pending(
        self,
        trade_number: str,
        product_id: str,
        product_name: str,
        kind: CheckoutKind,
        amount: int,
        customer_email: str | None = None,
    ) -> OrderData:
        """Record a new pending order. Trade numbers are unique."""
        ...

    async def get(self, trade_number: str) -> OrderData | None:
        """Look up an order by trade number."""
        ...

    async def transition(
        self,
        trade_number: str,
        status: OrderStatus,
        gateway_trade_seq: str | None = None,
        period_trade_number: str | None = None,
    ) -> TransitionOutcome:
        """
        Atomically move a pending order to a terminal state.

        Raises:
            UnknownOrderError: If no order has this trade number
        """
        ...

    async def claim_sync(self, trade_number: str) -> bool:
        """Claim the collaborator forward (pending/failed -> in_flight)."""
        ...

    async def mark_synced(self, trade_number: str) -> None:
        ...

    async def mark_sync_failed(self, trade_number: str, error: str) -> None:
        ...

    async def list_unsynced(self) -> list[OrderData]:
        """Orders whose last forward failed, for manual reconciliation."""
        ...

    async def record_charge(
        self,
        trade_number: str,
        sequence: int,
        status: OrderStatus,
        amount: int | None = None,
        gateway_trade_seq: str | None = None,
        period_trade_number: str | None = None,
        paid_at: str | None = None,
    ) -> ChargeOutcome:
        """
        Atomically record a recurring charge unless it already exists.

        Raises:
            UnknownOrderError: If no order has this trade number
        """
        ...

    async def get_charge(self, trade_number: str, sequence: int) -> PeriodChargeData | None:
        ...

    async def claim_charge_sync(self, trade_number: str, sequence: int) -> bool:
        """Claim the collaborator forward of one charge (pending/failed -> in_flight)."""
        ...

    async def mark_charge_synced(self, trade_number: str, sequence: int) -> None:
        ...

    async def mark_charge_sync_failed(self, trade_number: str, sequence: int, error: str) -> None:
        ...

    async def list_unsynced_charges(self) -> list[PeriodChargeData]:
        """Charges whose last forward failed."""
        ...


class InMemoryOrderStore:
    """
    Process-local order ledger.

    A single asyncio.Lock serialises every read-modify-write, which gives
    the same compare-and-set semantics as the SQL backend within one process.
    """

    def __init__(self) -> None:
        self._orders: dict[str, OrderData] = {}
        self._charges: dict[tuple[str, int], PeriodChargeData] = {}
        self._lock = asyncio.Lock()

    async def create_pending(
        self,
        trade_number: str,
        product_id: str,
        product_name: str,
        kind: CheckoutKind,
        amount: int,
        customer_email: str | None = None,
    ) -> OrderData:
        async with self._lock:
            if trade_number in self._orders:
                raise ValueError(f"Duplicate trade number: {trade_number}")
            now = _utc_now()
            order = OrderData(
                trade_number=trade_number,
                product_id=product_id,
                product_name=product_name,
                kind=kind,
                amount=amount,
                status=OrderStatus.PENDING,
                sync_status=SyncStatus.PENDING,
                created_at=now,
                updated_at=now,
                customer_email=customer_email,
            )
            self._orders[trade_number] = order
            return order

    async def get(self, trade_number: str) -> OrderData | None:
        return self._orders.get(trade_number)

    async def transition(
        self,
        trade_number: str,
        status: OrderStatus,
        gateway_trade_seq: str | None = None,
        period_trade_number: str | None = None,
    ) -> TransitionOutcome:
        if not status.is_terminal:
            raise ValueError(f"Target status must be terminal: {status.value}")

        async with self._lock:
            order = self._orders.get(trade_number)
            if order is None:
                raise UnknownOrderError(trade_number)
            if order.status is not OrderStatus.PENDING:
                return TransitionOutcome(order=order, applied=False)

            order = replace(
                order,
                status=status,
                gateway_trade_seq=gateway_trade_seq,
                period_trade_number=period_trade_number,
                updated_at=_utc_now(),
            )
            self._orders[trade_number] = order
            return TransitionOutcome(order=order, applied=True)

    async def claim_sync(self, trade_number: str) -> bool:
        async with self._lock:
            order = self._orders.get(trade_number)
            if order is None or order.sync_status not in _CLAIMABLE:
                return False
            self._orders[trade_number] = replace(
                order, sync_status=SyncStatus.IN_FLIGHT, updated_at=_utc_now()
            )
            return True

    async def mark_synced(self, trade_number: str) -> None:
        await self._set_sync(trade_number, SyncStatus.SYNCED, None)

    async def mark_sync_failed(self, trade_number: str, error: str) -> None:
        await self._set_sync(trade_number, SyncStatus.FAILED, error)

    async def list_unsynced(self) -> list[OrderData]:
        return [o for o in self._orders.values() if o.sync_status is SyncStatus.FAILED]

    async def _set_sync(self, trade_number: str, sync_status: SyncStatus, error: str | None) -> None:
        async with self._lock:
            order = self._orders.get(trade_number)
            if order is None:
                raise UnknownOrderError(trade_number)
            self._orders[trade_number] = replace(
                order, sync_status=sync_status, sync_error=error, updated_at=_utc_now()
            )

    async def record_charge(
        self,
        trade_number: str,
        sequence: int,
        status: OrderStatus,
        amount: int | None = None,
        gateway_trade_seq: str | None = None,
        period_trade_number: str | None = None,
        paid_at: str | None = None,
    ) -> ChargeOutcome:
        if not status.is_terminal:
            raise ValueError(f"Charge status must be terminal: {status.value}")

        async with self._lock:
            if trade_number not in self._orders:
                raise UnknownOrderError(trade_number)
            existing = self._charges.get((trade_number, sequence))
            if existing is not None:
                return ChargeOutcome(charge=existing, applied=False)

            now = _utc_now()
            charge = PeriodChargeData(
                trade_number=trade_number,
                sequence=sequence,
                status=status,
                sync_status=SyncStatus.PENDING,
                created_at=now,
                updated_at=now,
                amount=amount,
                gateway_trade_seq=gateway_trade_seq,
                period_trade_number=period_trade_number,
                paid_at=paid_at,
            )
            self._charges[(trade_number, sequence)] = charge
            return ChargeOutcome(charge=charge, applied=True)

    async def get_charge(self, trade_number: str, sequence: int) -> PeriodChargeData | None:
        return self._charges.get((trade_number, sequence))

    async def claim_charge_sync(self, trade_number: str, sequence: int) -> bool:
        async with self._lock:
            charge = self._charges.get((trade_number, sequence))
            if charge is None or charge.sync_status not in _CLAIMABLE:
                return False
            self._charges[(trade_number, sequence)] = replace(
                charge, sync_status=SyncStatus.IN_FLIGHT, updated_at=_utc_now()
            )
            return True

    async def mark_charge_synced(self, trade_number: str, sequence: int) -> None:
        await self._set_charge_sync(trade_number, sequence, SyncStatus.SYNCED, None)

    async def mark_charge_sync_failed(self, trade_number: str, sequence: int, error: str) -> None:
        await self._set_charge_sync(trade_number, sequence, SyncStatus.FAILED, error)

    async def list_unsynced_charges(self) -> list[PeriodChargeData]:
        return [c for c in self._charges.values() if c.sync_status is SyncStatus.FAILED]

    async def _set_charge_sync(
        self, trade_number: str, sequence: int, sync_status: SyncStatus, error: str | None
    ) -> None:
        async with self._lock:
            charge = self._charges.get((trade_number, sequence))
            if charge is None:
                raise UnknownOrderError(f"{trade_number}_{sequence}")
            self._charges[(trade_number, sequence)] = replace(
                charge, sync_status=sync_status, sync_error=error, updated_at=_utc_now()
            )


def _to_order_data(record: OrderRecord) -> OrderData:
    return OrderData(
        trade_number=record.trade_number,
        product_id=record.product_id,
        product_name=record.product_name,
        kind=CheckoutKind(record.kind),
        amount=record.amount,
        status=OrderStatus(record.status),
        sync_status=SyncStatus(record.sync_status),
        created_at=record.created_at,
        updated_at=record.updated_at,
        customer_email=record.customer_email,
        gateway_trade_seq=record.gateway_trade_seq,
        period_trade_number=record.period_trade_number,
        sync_error=record.sync_error,
    )


def _to_charge_data(record: PeriodChargeRecord) -> PeriodChargeData:
    return PeriodChargeData(
        trade_number=record.trade_number,
        sequence=record.sequence,
        status=OrderStatus(record.status),
        sync_status=SyncStatus(record.sync_status),
        created_at=record.created_at,
        updated_at=record.updated_at,
        amount=record.amount,
        gateway_trade_seq=record.gateway_trade_seq,
        period_trade_number=record.period_trade_number,
        paid_at=record.paid_at,
        sync_error=record.sync_error,
    )


class SqlOrderStore:
    """
    PostgreSQL order ledger.

    Terminal transitions are `UPDATE ... WHERE status = 'pending'`; the
    affected row count tells the caller whether it won.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession],
    ) -> None:
        self.session_factory = session_factory

    async def create_pending(
        self,
        trade_number: str,
        product_id: str,
        product_name: str,
        kind: CheckoutKind,
        amount: int,
        customer_email: str | None = None,
    ) -> OrderData:
        now = _utc_now()
        record = OrderRecord(
            trade_number=trade_number,
            product_id=product_id,
            product_name=product_name,
            kind=kind.value,
            amount=amount,
            customer_email=customer_email,
            status=OrderStatus.PENDING.value,
            sync_status=SyncStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(record)
            try:
                await session.commit()
            except SQLIntegrityError as e:
                await session.rollback()
                logger.error("order_create_conflict", trade_number=trade_number, error=str(e))
                raise ValueError(f"Duplicate trade number: {trade_number}") from e
        return _to_order_data(record)

    async def get(self, trade_number: str) -> OrderData | None:
        async with self.session_factory() as session:
            return await self._get(session, trade_number)

    async def transition(
        self,
        trade_number: str,
        status: OrderStatus,
        gateway_trade_seq: str | None = None,
        period_trade_number: str | None = None,
    ) -> TransitionOutcome:
        if not status.is_terminal:
            raise ValueError(f"Target status must be terminal: {status.value}")

        async with self.session_factory() as session:
            stmt = (
                update(OrderRecord)
                .where(OrderRecord.trade_number == trade_number)
                .where(OrderRecord.status == OrderStatus.PENDING.value)
                .values(
                    status=status.value,
                    gateway_trade_seq=gateway_trade_seq,
                    period_trade_number=period_trade_number,
                    updated_at=_utc_now(),
                )
            )
            result = await session.execute(stmt)
            await session.commit()
            applied = bool(result.rowcount)  # type: ignore[attr-defined]

            order = await self._get(session, trade_number)
            if order is None:
                raise UnknownOrderError(trade_number)
            return TransitionOutcome(order=order, applied=applied)

    async def claim_sync(self, trade_number: str) -> bool:
        async with self.session_factory() as session:
            stmt = (
                update(OrderRecord)
                .where(OrderRecord.trade_number == trade_number)
                .where(OrderRecord.sync_status.in_([s.value for s in _CLAIMABLE]))
                .values(sync_status=SyncStatus.IN_FLIGHT.value, updated_at=_utc_now())
            )
            result = await session.execute(stmt)
            await session.commit()
            return bool(result.rowcount)  # type: ignore[attr-defined]

    async def mark_synced(self, trade_number: str) -> None:
        await self._set_sync(trade_number, SyncStatus.SYNCED, None)

    async def mark_sync_failed(self, trade_number: str, error: str) -> None:
        await self._set_sync(trade_number, SyncStatus.FAILED, error)

    async def list_unsynced(self) -> list[OrderData]:
        async with self.session_factory() as session:
            stmt = (
                select(OrderRecord)
                .where(OrderRecord.sync_status == SyncStatus.FAILED.value)
                .order_by(OrderRecord.created_at)
            )
            result = await session.execute(stmt)
            return [_to_order_data(r) for r in result.scalars().all()]

    async def _get(self, session: AsyncSession, trade_number: str) -> OrderData | None:
        stmt = select(OrderRecord).where(OrderRecord.trade_number == trade_number)
        result = await session.execute(stmt)
        record = result.scalar_one_or_none()
        return _to_order_data(record) if record is not None else None

    async def _set_sync(self, trade_number: str, sync_status: SyncStatus, error: str | None) -> None:
        async with self.session_factory() as session:
            stmt = (
                update(OrderRecord)
                .where(OrderRecord.trade_number == trade_number)
                .values(sync_status=sync_status.value, sync_error=error, updated_at=_utc_now())
            )
            result = await session.execute(stmt)
            await session.commit()
            if not result.rowcount:  # type: ignore[attr-defined]
                raise UnknownOrderError(trade_number)

    async def record_charge(
        self,
        trade_number: str,
        sequence: int,
        status: OrderStatus,
        amount: int | None = None,
        gateway_trade_seq: str | None = None,
        period_trade_number: str | None = None,
        paid_at: str | None = None,
    ) -> ChargeOutcome:
        """`INSERT ... ON CONFLICT DO NOTHING`; a row count of 1 means this caller recorded it."""
        if not status.is_terminal:
            raise ValueError(f"Charge status must be terminal: {status.value}")

        now = _utc_now()
        async with self.session_factory() as session:
            stmt = (
                pg_insert(PeriodChargeRecord)
                .values(
                    trade_number=trade_number,
                    sequence=sequence,
                    status=status.value,
                    amount=amount,
                    gateway_trade_seq=gateway_trade_seq,
                    period_trade_number=period_trade_number,
                    paid_at=paid_at,
                    sync_status=SyncStatus.PENDING.value,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(index_elements=["trade_number", "sequence"])
            )
            try:
                result = await session.execute(stmt)
                await session.commit()
            except SQLIntegrityError as e:
                # Foreign key: the enrollment order does not exist
                await session.rollback()
                raise UnknownOrderError(trade_number) from e
            applied = bool(result.rowcount)  # type: ignore[attr-defined]

            charge = await self._get_charge(session, trade_number, sequence)
            if charge is None:
                raise UnknownOrderError(trade_number)
            return ChargeOutcome(charge=charge, applied=applied)

    async def get_charge(self, trade_number: str, sequence: int) -> PeriodChargeData | None:
        async with self.session_factory() as session:
            return await self._get_charge(session, trade_number, sequence)

    async def claim_charge_sync(self, trade_number: str, sequence: int) -> bool:
        async with self.session_factory() as session:
            stmt = (
                update(PeriodChargeRecord)
                .where(PeriodChargeRecord.trade_number == trade_number)
                .where(PeriodChargeRecord.sequence == sequence)
                .where(PeriodChargeRecord.sync_status.in_([s.value for s in _CLAIMABLE]))
                .values(sync_status=SyncStatus.IN_FLIGHT.value, updated_at=_utc_now())
            )
            result = await session.execute(stmt)
            await session.commit()
            return bool(result.rowcount)  # type: ignore[attr-defined]

    async def mark_charge_synced(self, trade_number: str, sequence: int) -> None:
        await self._set_charge_sync(trade_number, sequence, SyncStatus.SYNCED, None)

    async def mark_charge_sync_failed(self, trade_number: str, sequence: int, error: str) -> None:
        await self._set_charge_sync(trade_number, sequence, SyncStatus.FAILED, error)

    async def list_unsynced_charges(self) -> list[PeriodChargeData]:
        async with self.session_factory() as session:
            stmt = (
                select(PeriodChargeRecord)
                .where(PeriodChargeRecord.sync_status == SyncStatus.FAILED.value)
                .order_by(PeriodChargeRecord.created_at)
            )
            result = await session.execute(stmt)
            return [_to_charge_data(r) for r in result.scalars().all()]

    async def _get_charge(
        self, session: AsyncSession, trade_number: str, sequence: int
    ) -> PeriodChargeData | None:
        stmt = select(PeriodChargeRecord).where(
            PeriodChargeRecord.trade_number == trade_number,
            PeriodChargeRecord.sequence == sequence,
        )
        result = await session.execute(stmt)
        record = result.scalar_one_or_none()
        return _to_charge_data(record) if record is not None else None

    async def _set_charge_sync(
        self, trade_number: str, sequence: int, sync_status: SyncStatus, error: str | None
    ) -> None:
        async with self.session_factory() as session:
            stmt = (
                update(PeriodChargeRecord)
                .where(PeriodChargeRecord.trade_number == trade_number)
                .where(PeriodChargeRecord.sequence == sequence)
                .values(sync_status=sync_status.value, sync_error=error, updated_at=_utc_now())
            )
            result = await session.execute(stmt)
            await session.commit()
            if not result.rowcount:  # type: ignore[attr-defined]
                raise UnknownOrderError(f"{trade_number}_{sequence}")
