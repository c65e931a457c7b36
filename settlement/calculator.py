"""
Balance calculation for a single event.

Folds the recorded payments into one signed balance per member:
positive means the member is owed money, negative means the member owes.
"""

import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from .errors import NoParticipantsError
from .models import Payment

logger = logging.getLogger(__name__)

ZERO_SUM_TOLERANCE = 1e-6


@dataclass
class BalanceSheet:
    balances: dict[str, float]
    diagnostics: list[str] = field(default_factory=list)

    @property
    def total(self) -> float:
        return sum(self.balances.values())

    def is_balanced(self, tolerance: float = ZERO_SUM_TOLERANCE) -> bool:
        return abs(self.total) < tolerance


def _valid_amount(amount) -> Optional[float]:
    if isinstance(amount, bool):
        return None
    if isinstance(amount, Decimal):
        amount = float(amount)
    if not isinstance(amount, (int, float)):
        return None
    if not math.isfinite(amount) or amount < 0:
        return None
    return float(amount)


def compute_balances(members: Sequence[str], payments: Iterable[Payment]) -> BalanceSheet:
    """
    Compute each member's net balance from the event's payments.

    Payments with an invalid amount, a missing payer or a payer outside
    ``members`` are skipped. Participants outside ``members`` are dropped
    before the share is computed, so every sheet nets to zero. Each skip is
    recorded in the returned diagnostics. Raises NoParticipantsError when
    ``members`` is empty.
    """
    member_ids = list(dict.fromkeys(m for m in members if m))
    if not member_ids:
        raise NoParticipantsError("No members found for this event")

    balances: dict[str, float] = {mid: 0.0 for mid in member_ids}
    diagnostics: list[str] = []

    def skip(message: str) -> None:
        logger.warning(message)
        diagnostics.append(message)

    for index, payment in enumerate(payments):
        label = payment.id or f"#{index}"

        if not payment.payer_id:
            skip(f"Payment {label}: missing payer, skipped")
            continue

        amount = _valid_amount(payment.amount)
        if amount is None:
            skip(f"Payment {label}: invalid amount {payment.amount!r}, skipped")
            continue

        if payment.payer_id not in balances:
            skip(f"Payment {label}: payer {payment.payer_id} is not an event member, skipped")
            continue

        participants = []
        for member_id in dict.fromkeys(payment.participants):
            if member_id in balances:
                participants.append(member_id)
            else:
                skip(f"Payment {label}: participant {member_id} is not an event member")
        # No known participant left means the whole event shares the cost
        participants = participants or member_ids
        share = amount / len(participants)

        balances[payment.payer_id] += amount
        for member_id in participants:
            balances[member_id] -= share

    logger.debug("Computed balances for %d members: %s", len(balances), balances)
    return BalanceSheet(balances=balances, diagnostics=diagnostics)
