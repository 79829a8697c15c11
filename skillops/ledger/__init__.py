"""Credit ledger: balances, transaction log and reservations."""

from skillops.ledger.models import (
    Account,
    BalanceSummary,
    CreditReservation,
    CreditTransaction,
    LedgerMutation,
    LedgerResult,
    ReservationStatus,
    TransactionType,
)
from skillops.ledger.service import CreditLedger, LowBalanceNotifier
from skillops.ledger.store import InMemoryLedgerStore, LedgerStore, SqlLedgerStore

__all__ = [
    "Account",
    "BalanceSummary",
    "CreditLedger",
    "CreditReservation",
    "CreditTransaction",
    "InMemoryLedgerStore",
    "LedgerMutation",
    "LedgerResult",
    "LedgerStore",
    "LowBalanceNotifier",
    "ReservationStatus",
    "SqlLedgerStore",
    "TransactionType",
]
