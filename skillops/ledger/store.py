"""Persistence backends for the credit ledger.

A store never decides whether a movement is allowed; it only applies a
:class:`LedgerMutation` atomically when the account version still matches.
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillops.db import transaction
from skillops.ledger.models import (
    Account,
    CreditReservation,
    CreditTransaction,
    LedgerMutation,
    ReservationStatus,
    TransactionType,
)
from skillops.ledger.orm import AccountModel, CreditReservationModel, CreditTransactionModel


class LedgerStore(ABC):
    """Storage contract used by :class:`skillops.ledger.service.CreditLedger`."""

    @abstractmethod
    async def create_account(self, account: Account) -> bool:
        """Insert an account. Returns False when the id is already taken."""

    @abstractmethod
    async def get_account(self, account_id: str) -> Account | None: ...

    @abstractmethod
    async def apply(self, mutation: LedgerMutation) -> bool:
        """Apply a mutation if the account version matches. Returns False on conflict."""

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> CreditTransaction | None: ...

    @abstractmethod
    async def find_transaction(self, account_id: str, idempotency_key: str) -> CreditTransaction | None: ...

    @abstractmethod
    async def list_transactions(
        self,
        account_id: str,
        *,
        limit: int | None = None,
        offset: int = 0,
        type: TransactionType | None = None,
    ) -> list[CreditTransaction]:
        """Transactions newest first."""

    @abstractmethod
    async def sum_transactions(self, account_id: str, *, debits_only: bool = False) -> int: ...

    @abstractmethod
    async def get_reservation(self, reservation_id: str) -> CreditReservation | None: ...

    @abstractmethod
    async def list_reservations(
        self,
        *,
        status: ReservationStatus | None = None,
        account_id: str | None = None,
    ) -> list[CreditReservation]: ...


class InMemoryLedgerStore(LedgerStore):
    """Dictionary-backed store for tests and single-process runs.

    ``apply`` never awaits, so each mutation is atomic with respect to other
    coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._transactions: list[CreditTransaction] = []
        self._reservations: dict[str, CreditReservation] = {}

    async def create_account(self, account: Account) -> bool:
        if account.id in self._accounts:
            return False
        self._accounts[account.id] = dataclasses.replace(account)
        return True

    async def get_account(self, account_id: str) -> Account | None:
        account = self._accounts.get(account_id)
        return dataclasses.replace(account) if account is not None else None

    async def apply(self, mutation: LedgerMutation) -> bool:
        account = self._accounts.get(mutation.account_id)
        if account is None or account.version != mutation.expected_version:
            return False
        txn = mutation.transaction
        if txn is not None and txn.idempotency_key is not None:
            if self._find(mutation.account_id, txn.idempotency_key) is not None:
                return False
        account.credit_balance = mutation.credit_balance
        account.reserved_credits = mutation.reserved_credits
        account.lifetime_earned = mutation.lifetime_earned
        account.version += 1
        account.updated_at = datetime.now(timezone.utc)
        if txn is not None:
            self._transactions.append(txn)
        if mutation.reservation is not None:
            self._reservations[mutation.reservation.id] = dataclasses.replace(mutation.reservation)
        return True

    async def get_transaction(self, transaction_id: str) -> CreditTransaction | None:
        for txn in self._transactions:
            if txn.id == transaction_id:
                return txn
        return None

    async def find_transaction(self, account_id: str, idempotency_key: str) -> CreditTransaction | None:
        return self._find(account_id, idempotency_key)

    def _find(self, account_id: str, idempotency_key: str) -> CreditTransaction | None:
        for txn in self._transactions:
            if txn.account_id == account_id and txn.idempotency_key == idempotency_key:
                return txn
        return None

    async def list_transactions(
        self,
        account_id: str,
        *,
        limit: int | None = None,
        offset: int = 0,
        type: TransactionType | None = None,
    ) -> list[CreditTransaction]:
        items = [
            txn
            for txn in reversed(self._transactions)
            if txn.account_id == account_id and (type is None or txn.type == type)
        ]
        items = items[max(0, offset) :]
        return items[:limit] if limit is not None else items

    async def sum_transactions(self, account_id: str, *, debits_only: bool = False) -> int:
        return sum(
            txn.amount
            for txn in self._transactions
            if txn.account_id == account_id and (not debits_only or txn.amount < 0)
        )

    async def get_reservation(self, reservation_id: str) -> CreditReservation | None:
        reservation = self._reservations.get(reservation_id)
        return dataclasses.replace(reservation) if reservation is not None else None

    async def list_reservations(
        self,
        *,
        status: ReservationStatus | None = None,
        account_id: str | None = None,
    ) -> list[CreditReservation]:
        items = [
            dataclasses.replace(item)
            for item in self._reservations.values()
            if (status is None or item.status == status) and (account_id is None or item.account_id == account_id)
        ]
        return sorted(items, key=lambda item: item.created_at)


class SqlLedgerStore(LedgerStore):
    """PostgreSQL-backed store; each mutation is one database transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_account(self, account: Account) -> bool:
        try:
            async with transaction(self._session_factory) as session:
                session.add(
                    AccountModel(
                        id=account.id,
                        name=account.name,
                        email=account.email,
                        credit_balance=account.credit_balance,
                        reserved_credits=account.reserved_credits,
                        lifetime_earned=account.lifetime_earned,
                        version=account.version,
                        created_at=account.created_at,
                        updated_at=account.updated_at,
                    )
                )
        except IntegrityError:
            return False
        return True

    async def get_account(self, account_id: str) -> Account | None:
        async with self._session_factory() as session:
            row = await session.get(AccountModel, account_id)
            return _to_account(row) if row is not None else None

    async def apply(self, mutation: LedgerMutation) -> bool:
        try:
            async with transaction(self._session_factory) as session:
                result = await session.execute(
                    update(AccountModel)
                    .where(
                        AccountModel.id == mutation.account_id,
                        AccountModel.version == mutation.expected_version,
                    )
                    .values(
                        credit_balance=mutation.credit_balance,
                        reserved_credits=mutation.reserved_credits,
                        lifetime_earned=mutation.lifetime_earned,
                        version=AccountModel.version + 1,
                        updated_at=func.now(),
                    )
                )
                if result.rowcount != 1:
                    return False
                txn = mutation.transaction
                if txn is not None:
                    session.add(
                        CreditTransactionModel(
                            id=txn.id,
                            account_id=txn.account_id,
                            amount=txn.amount,
                            type=txn.type.value,
                            description=txn.description,
                            balance_after=txn.balance_after,
                            idempotency_key=txn.idempotency_key,
                            reference=txn.reference,
                            created_at=txn.created_at,
                        )
                    )
                reservation = mutation.reservation
                if reservation is not None:
                    await session.merge(
                        CreditReservationModel(
                            id=reservation.id,
                            account_id=reservation.account_id,
                            amount=reservation.amount,
                            description=reservation.description,
                            status=reservation.status.value,
                            reference=reservation.reference,
                            transaction_id=reservation.transaction_id,
                            created_at=reservation.created_at,
                            resolved_at=reservation.resolved_at,
                        )
                    )
        except IntegrityError:
            # Duplicate idempotency key committed by a concurrent writer.
            return False
        return True

    async def get_transaction(self, transaction_id: str) -> CreditTransaction | None:
        async with self._session_factory() as session:
            row = await session.get(CreditTransactionModel, transaction_id)
            return _to_transaction(row) if row is not None else None

    async def find_transaction(self, account_id: str, idempotency_key: str) -> CreditTransaction | None:
        stmt = select(CreditTransactionModel).where(
            CreditTransactionModel.account_id == account_id,
            CreditTransactionModel.idempotency_key == idempotency_key,
        )
        async with self._session_factory() as session:
            row = await session.scalar(stmt)
            return _to_transaction(row) if row is not None else None

    async def list_transactions(
        self,
        account_id: str,
        *,
        limit: int | None = None,
        offset: int = 0,
        type: TransactionType | None = None,
    ) -> list[CreditTransaction]:
        stmt = select(CreditTransactionModel).where(CreditTransactionModel.account_id == account_id)
        if type is not None:
            stmt = stmt.where(CreditTransactionModel.type == type.value)
        stmt = stmt.order_by(CreditTransactionModel.created_at.desc(), CreditTransactionModel.id.desc())
        stmt = stmt.offset(max(0, offset))
        if limit is not None:
            stmt = stmt.limit(max(1, limit))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_transaction(row) for row in result.scalars().all()]

    async def sum_transactions(self, account_id: str, *, debits_only: bool = False) -> int:
        stmt = select(func.coalesce(func.sum(CreditTransactionModel.amount), 0)).where(
            CreditTransactionModel.account_id == account_id
        )
        if debits_only:
            stmt = stmt.where(CreditTransactionModel.amount < 0)
        async with self._session_factory() as session:
            return int(await session.scalar(stmt) or 0)

    async def get_reservation(self, reservation_id: str) -> CreditReservation | None:
        async with self._session_factory() as session:
            row = await session.get(CreditReservationModel, reservation_id)
            return _to_reservation(row) if row is not None else None

    async def list_reservations(
        self,
        *,
        status: ReservationStatus | None = None,
        account_id: str | None = None,
    ) -> list[CreditReservation]:
        stmt = select(CreditReservationModel)
        if status is not None:
            stmt = stmt.where(CreditReservationModel.status == status.value)
        if account_id is not None:
            stmt = stmt.where(CreditReservationModel.account_id == account_id)
        stmt = stmt.order_by(CreditReservationModel.created_at.asc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_reservation(row) for row in result.scalars().all()]


def _to_account(row: AccountModel) -> Account:
    return Account(
        id=row.id,
        name=row.name,
        email=row.email,
        credit_balance=row.credit_balance,
        reserved_credits=row.reserved_credits,
        lifetime_earned=row.lifetime_earned,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_transaction(row: CreditTransactionModel) -> CreditTransaction:
    return CreditTransaction(
        id=row.id,
        account_id=row.account_id,
        amount=row.amount,
        type=TransactionType(row.type),
        description=row.description,
        balance_after=row.balance_after,
        idempotency_key=row.idempotency_key,
        reference=row.reference,
        created_at=row.created_at,
    )


def _to_reservation(row: CreditReservationModel) -> CreditReservation:
    return CreditReservation(
        id=row.id,
        account_id=row.account_id,
        amount=row.amount,
        description=row.description,
        status=ReservationStatus(row.status),
        reference=row.reference,
        transaction_id=row.transaction_id,
        created_at=row.created_at,
        resolved_at=row.resolved_at,
    )
