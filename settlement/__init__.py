"""
Event Debt Settlement

This package provides:
- Per-member balances folded from an event's payments
- Greedy transfer planning that nets every balance to zero
- Idempotent transfer persistence keyed by (event, from, to)
- Event settlement lifecycle: open → confirmed → open (cancel)
- Transfer lifecycle: pending → checking → completed, with reversals
"""

from .calculator import BalanceSheet, compute_balances
from .models import (
    EventStatus,
    TransferStatus,
    Member,
    Payment,
    Event,
    Transfer,
    MemberBalance,
    SplitResult,
)
from .planner import plan_transfers
from .service import SettlementService
from .storage import InMemoryStorage, SettlementStore

__all__ = [
    "BalanceSheet",
    "compute_balances",
    "plan_transfers",
    "EventStatus",
    "TransferStatus",
    "Member",
    "Payment",
    "Event",
    "Transfer",
    "MemberBalance",
    "SplitResult",
    "SettlementService",
    "InMemoryStorage",
    "SettlementStore",
]
