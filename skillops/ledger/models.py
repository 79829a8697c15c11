"""Typed records for accounts, credit transactions and reservations."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TransactionType(str, Enum):
    """Kind of balance movement recorded in the transaction log."""

    PURCHASE = "purchase"
    REDEMPTION = "redemption"
    ADJUSTMENT = "adjustment"
    REFUND = "refund"


class ReservationStatus(str, Enum):
    """Lifecycle of a credit hold."""

    HELD = "held"
    SETTLED = "settled"
    RELEASED = "released"


@dataclass(slots=True)
class Account:
    """Billable entity. ``credit_balance`` only changes through the ledger."""

    id: str
    name: str
    email: str | None = None
    credit_balance: int = 0
    reserved_credits: int = 0
    lifetime_earned: int = 0
    version: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def available(self) -> int:
        return self.credit_balance - self.reserved_credits


@dataclass(frozen=True, slots=True)
class CreditTransaction:
    """Immutable entry in an account's append-only transaction log."""

    id: str
    account_id: str
    amount: int
    type: TransactionType
    description: str
    balance_after: int
    idempotency_key: str | None = None
    reference: str | None = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class CreditReservation:
    """Credits set aside for work that has not been charged yet."""

    id: str
    account_id: str
    amount: int
    description: str
    status: ReservationStatus = ReservationStatus.HELD
    reference: str | None = None
    transaction_id: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    resolved_at: datetime | None = None


@dataclass(slots=True)
class LedgerMutation:
    """One compare-and-set unit applied atomically by a ledger store.

    The store applies the new account figures only if the stored account
    still has ``expected_version``; the optional transaction is appended and
    the optional reservation upserted in the same unit.
    """

    account_id: str
    expected_version: int
    credit_balance: int
    reserved_credits: int
    lifetime_earned: int
    transaction: CreditTransaction | None = None
    reservation: CreditReservation | None = None


@dataclass(frozen=True, slots=True)
class LedgerResult:
    """Outcome of a balance-changing ledger call."""

    account_id: str
    new_balance: int
    transaction: CreditTransaction | None
    replayed: bool = False


@dataclass(slots=True)
class BalanceSummary:
    """Balance view returned to API clients."""

    account_id: str
    balance: int
    reserved: int
    available: int
    lifetime_earned: int
    lifetime_spent: int
    recent_transactions: list[CreditTransaction] = field(default_factory=list)
