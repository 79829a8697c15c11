"""Credit ledger: the single serialization point for account balances.

Every balance change is planned from a snapshot of the account and applied by
the store as a compare-and-set on the account version. Losing a race means
re-reading the account and planning again, so checks such as "enough credits
available" are always evaluated against the state that is actually written.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

from skillops.errors import ConcurrencyConflict, InsufficientCredits, InvalidState, NotFoundError
from skillops.ledger.models import (
    Account,
    BalanceSummary,
    CreditReservation,
    CreditTransaction,
    LedgerMutation,
    LedgerResult,
    ReservationStatus,
    TransactionType,
    new_id,
)
from skillops.ledger.store import LedgerStore

logger = logging.getLogger(__name__)

LowBalanceNotifier = Callable[[str, int, int], Awaitable[None]]
"""``notifier(account_id, new_balance, threshold)``."""

DEFAULT_LOW_BALANCE_THRESHOLDS = (50, 25, 10)


@dataclass
class _Plan:
    value: Any
    mutation: LedgerMutation | None = None


class CreditLedger:
    """Owns every mutation of account balances and reservations."""

    def __init__(
        self,
        store: LedgerStore,
        *,
        max_attempts: int = 5,
        backoff_base_seconds: float = 0.005,
        low_balance_thresholds: list[int] | tuple[int, ...] = DEFAULT_LOW_BALANCE_THRESHOLDS,
        notifier: LowBalanceNotifier | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._store = store
        self._max_attempts = max_attempts
        self._backoff_base_seconds = max(0.0, backoff_base_seconds)
        self._thresholds = sorted(set(low_balance_thresholds), reverse=True)
        self._notifier = notifier

    @property
    def store(self) -> LedgerStore:
        return self._store

    # -- accounts -----------------------------------------------------------

    async def open_account(
        self,
        name: str,
        *,
        account_id: str | None = None,
        email: str | None = None,
        initial_credits: int = 0,
    ) -> Account:
        """Create an account, optionally granting an initial purchase."""
        if initial_credits < 0:
            raise ValueError("initial_credits must be >= 0")
        account = Account(id=account_id or new_id(), name=name, email=email)
        if not await self._store.create_account(account):
            raise InvalidState("account", account.id, "exists", "open")
        logger.info("account_opened account_id=%s", account.id)
        if initial_credits > 0:
            await self.credit(
                account.id,
                initial_credits,
                "Initial credits",
                idempotency_key=f"open:{account.id}",
            )
        return await self.get_account(account.id)

    async def get_account(self, account_id: str) -> Account:
        account = await self._store.get_account(account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        return account

    async def get_balance(self, account_id: str, *, recent: int = 10) -> BalanceSummary:
        account = await self.get_account(account_id)
        spent = await self._store.sum_transactions(account_id, debits_only=True)
        return BalanceSummary(
            account_id=account_id,
            balance=account.credit_balance,
            reserved=account.reserved_credits,
            available=account.available,
            lifetime_earned=account.lifetime_earned,
            lifetime_spent=-spent,
            recent_transactions=await self._store.list_transactions(account_id, limit=recent),
        )

    async def history(
        self,
        account_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        type: TransactionType | None = None,
    ) -> list[CreditTransaction]:
        await self.get_account(account_id)
        return await self._store.list_transactions(account_id, limit=limit, offset=offset, type=type)

    async def reconcile(self, account_id: str) -> bool:
        """Return True when the transaction log sums to the cached balance."""
        account = await self.get_account(account_id)
        total = await self._store.sum_transactions(account_id)
        if total != account.credit_balance:
            logger.error(
                "ledger_mismatch account_id=%s balance=%d transactions_total=%d",
                account_id,
                account.credit_balance,
                total,
            )
            return False
        return True

    # -- balance movements --------------------------------------------------

    async def debit(
        self,
        account_id: str,
        amount: int,
        description: str,
        *,
        type: TransactionType = TransactionType.REDEMPTION,
        idempotency_key: str | None = None,
        reference: str | None = None,
    ) -> LedgerResult:
        """Remove ``amount`` credits; nothing is written when ``available`` is short."""
        if amount < 0:
            raise ValueError("debit amount must be >= 0")

        async def plan(account: Account) -> _Plan:
            replay = await self._replay(account, idempotency_key)
            if replay is not None:
                return _Plan(replay)
            if account.available < amount:
                raise InsufficientCredits(account_id, amount, account.available)
            txn = self._transaction(account, -amount, type, description, idempotency_key, reference)
            mutation = LedgerMutation(
                account_id=account_id,
                expected_version=account.version,
                credit_balance=txn.balance_after,
                reserved_credits=account.reserved_credits,
                lifetime_earned=account.lifetime_earned,
                transaction=txn,
            )
            return _Plan((account.credit_balance, LedgerResult(account_id, txn.balance_after, txn)), mutation)

        outcome = await self._commit(account_id, plan)
        if isinstance(outcome, LedgerResult):
            return outcome
        previous, result = outcome
        logger.info(
            "credits_debited account_id=%s amount=%d balance=%d reference=%s",
            account_id,
            amount,
            result.new_balance,
            reference,
        )
        await self._check_low_balance(account_id, previous, result.new_balance)
        return result

    async def credit(
        self,
        account_id: str,
        amount: int,
        description: str,
        *,
        type: TransactionType = TransactionType.PURCHASE,
        idempotency_key: str | None = None,
        reference: str | None = None,
    ) -> LedgerResult:
        """Add ``amount`` credits. Positive additions count towards lifetime earned."""
        if amount <= 0:
            raise ValueError("credit amount must be > 0")

        async def plan(account: Account) -> _Plan:
            replay = await self._replay(account, idempotency_key)
            if replay is not None:
                return _Plan(replay)
            txn = self._transaction(account, amount, type, description, idempotency_key, reference)
            mutation = LedgerMutation(
                account_id=account_id,
                expected_version=account.version,
                credit_balance=txn.balance_after,
                reserved_credits=account.reserved_credits,
                lifetime_earned=account.lifetime_earned + amount,
                transaction=txn,
            )
            return _Plan(LedgerResult(account_id, txn.balance_after, txn), mutation)

        result = await self._commit(account_id, plan)
        if not result.replayed:
            logger.info(
                "credits_added account_id=%s amount=%d type=%s balance=%d",
                account_id,
                amount,
                type.value,
                result.new_balance,
            )
        return result

    async def adjust(
        self,
        account_id: str,
        delta: int,
        reason: str,
        *,
        idempotency_key: str | None = None,
    ) -> LedgerResult:
        """Staff correction; a negative delta is still refused past zero."""
        if delta == 0:
            raise ValueError("adjustment delta must be non-zero")
        if delta > 0:
            return await self.credit(
                account_id, delta, reason, type=TransactionType.ADJUSTMENT, idempotency_key=idempotency_key
            )
        return await self.debit(
            account_id, -delta, reason, type=TransactionType.ADJUSTMENT, idempotency_key=idempotency_key
        )

    async def get_transaction(self, transaction_id: str) -> CreditTransaction:
        transaction = await self._store.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError("transaction", transaction_id)
        return transaction

    async def refund(self, transaction_id: str, description: str = "") -> LedgerResult:
        """Credit back a redemption. Repeated refunds of one transaction replay the first."""
        original = await self.get_transaction(transaction_id)
        if original.type != TransactionType.REDEMPTION or original.amount >= 0:
            raise InvalidState("transaction", transaction_id, original.type.value, "refund")
        return await self.credit(
            original.account_id,
            -original.amount,
            description or f"Refund of {transaction_id}",
            type=TransactionType.REFUND,
            idempotency_key=f"refund:{transaction_id}",
            reference=original.reference,
        )

    # -- reservations -------------------------------------------------------

    async def reserve(
        self,
        account_id: str,
        amount: int,
        description: str,
        *,
        reference: str | None = None,
    ) -> CreditReservation:
        """Hold ``amount`` credits against the available balance."""
        if amount < 0:
            raise ValueError("reservation amount must be >= 0")

        async def plan(account: Account) -> _Plan:
            if account.available < amount:
                raise InsufficientCredits(account_id, amount, account.available)
            reservation = CreditReservation(
                id=new_id(),
                account_id=account_id,
                amount=amount,
                description=description,
                reference=reference,
            )
            mutation = LedgerMutation(
                account_id=account_id,
                expected_version=account.version,
                credit_balance=account.credit_balance,
                reserved_credits=account.reserved_credits + amount,
                lifetime_earned=account.lifetime_earned,
                reservation=reservation,
            )
            return _Plan(reservation, mutation)

        reservation = await self._commit(account_id, plan)
        logger.debug(
            "credits_reserved account_id=%s reservation_id=%s amount=%d",
            account_id,
            reservation.id,
            amount,
        )
        return reservation

    async def settle(
        self,
        reservation_id: str,
        amount: int | None = None,
        description: str = "",
    ) -> LedgerResult:
        """Turn a held reservation into exactly one redemption debit.

        ``amount`` defaults to the reserved amount and may not exceed it.
        Settling an already settled reservation returns its transaction.
        """
        reservation = await self._require_reservation(reservation_id)
        charge = reservation.amount if amount is None else amount
        if charge < 0 or charge > reservation.amount:
            raise ValueError(f"settle amount must be between 0 and {reservation.amount}")
        account_id = reservation.account_id

        async def plan(account: Account) -> _Plan:
            current = await self._require_reservation(reservation_id)
            if current.status == ReservationStatus.SETTLED:
                txn = await self._store.get_transaction(current.transaction_id or "")
                return _Plan(LedgerResult(account_id, account.credit_balance, txn, replayed=True))
            if current.status == ReservationStatus.RELEASED:
                raise InvalidState("reservation", reservation_id, current.status.value, "settle")
            txn = self._transaction(
                account,
                -charge,
                TransactionType.REDEMPTION,
                description or current.description,
                f"reservation:{reservation_id}",
                current.reference,
            )
            settled = replace(
                current,
                status=ReservationStatus.SETTLED,
                transaction_id=txn.id,
                resolved_at=datetime.now(timezone.utc),
            )
            mutation = LedgerMutation(
                account_id=account_id,
                expected_version=account.version,
                credit_balance=txn.balance_after,
                reserved_credits=max(0, account.reserved_credits - current.amount),
                lifetime_earned=account.lifetime_earned,
                transaction=txn,
                reservation=settled,
            )
            return _Plan((account.credit_balance, LedgerResult(account_id, txn.balance_after, txn)), mutation)

        outcome = await self._commit(account_id, plan)
        if isinstance(outcome, LedgerResult):
            return outcome
        previous, result = outcome
        logger.info(
            "reservation_settled reservation_id=%s account_id=%s amount=%d balance=%d",
            reservation_id,
            account_id,
            charge,
            result.new_balance,
        )
        await self._check_low_balance(account_id, previous, result.new_balance)
        return result

    async def release(self, reservation_id: str) -> CreditReservation:
        """Drop a hold without writing a transaction. Releasing twice is a no-op."""
        reservation = await self._require_reservation(reservation_id)

        async def plan(account: Account) -> _Plan:
            current = await self._require_reservation(reservation_id)
            if current.status == ReservationStatus.RELEASED:
                return _Plan(current)
            if current.status == ReservationStatus.SETTLED:
                raise InvalidState("reservation", reservation_id, current.status.value, "release")
            released = replace(
                current,
                status=ReservationStatus.RELEASED,
                resolved_at=datetime.now(timezone.utc),
            )
            mutation = LedgerMutation(
                account_id=account.id,
                expected_version=account.version,
                credit_balance=account.credit_balance,
                reserved_credits=max(0, account.reserved_credits - current.amount),
                lifetime_earned=account.lifetime_earned,
                reservation=released,
            )
            return _Plan(released, mutation)

        released = await self._commit(reservation.account_id, plan)
        logger.debug("reservation_released reservation_id=%s", reservation_id)
        return released

    async def get_reservation(self, reservation_id: str) -> CreditReservation:
        return await self._require_reservation(reservation_id)

    async def open_reservations(self, account_id: str | None = None) -> list[CreditReservation]:
        return await self._store.list_reservations(status=ReservationStatus.HELD, account_id=account_id)

    # -- internals ----------------------------------------------------------

    async def _commit(self, account_id: str, plan: Callable[[Account], Awaitable[_Plan]]) -> Any:
        for attempt in range(1, self._max_attempts + 1):
            account = await self.get_account(account_id)
            planned = await plan(account)
            if planned.mutation is None or await self._store.apply(planned.mutation):
                return planned.value
            if attempt < self._max_attempts and self._backoff_base_seconds > 0:
                delay = self._backoff_base_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "ledger_conflict account_id=%s attempt=%d/%d retry_in=%.3fs",
                    account_id,
                    attempt,
                    self._max_attempts,
                    delay,
                )
                await asyncio.sleep(delay)
        logger.error("ledger_conflict_exhausted account_id=%s attempts=%d", account_id, self._max_attempts)
        raise ConcurrencyConflict(f"account:{account_id}", self._max_attempts)

    async def _replay(self, account: Account, idempotency_key: str | None) -> LedgerResult | None:
        if idempotency_key is None:
            return None
        existing = await self._store.find_transaction(account.id, idempotency_key)
        if existing is None:
            return None
        logger.info("ledger_replay account_id=%s idempotency_key=%s", account.id, idempotency_key)
        return LedgerResult(account.id, account.credit_balance, existing, replayed=True)

    async def _require_reservation(self, reservation_id: str) -> CreditReservation:
        reservation = await self._store.get_reservation(reservation_id)
        if reservation is None:
            raise NotFoundError("reservation", reservation_id)
        return reservation

    @staticmethod
    def _transaction(
        account: Account,
        amount: int,
        type: TransactionType,
        description: str,
        idempotency_key: str | None,
        reference: str | None,
    ) -> CreditTransaction:
        return CreditTransaction(
            id=new_id(),
            account_id=account.id,
            amount=amount,
            type=type,
            description=description,
            balance_after=account.credit_balance + amount,
            idempotency_key=idempotency_key,
            reference=reference,
        )

    async def _check_low_balance(self, account_id: str, previous: int, new_balance: int) -> None:
        if self._notifier is None:
            return
        for threshold in self._thresholds:
            if previous > threshold >= new_balance:
                try:
                    await self._notifier(account_id, new_balance, threshold)
                except Exception:
                    logger.exception(
                        "low_balance_notify_failed account_id=%s threshold=%d", account_id, threshold
                    )
                # One notification per spend event.
                break
