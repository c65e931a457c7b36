"""
Greedy transfer planning.

Turns signed member balances into point-to-point transfers that bring every
balance back to zero. Largest creditors are matched with the largest debtors
first; this bounds the plan to fewer transfers than participants but does not
always find the theoretical minimum.
"""

import logging
from typing import Mapping

from .calculator import ZERO_SUM_TOLERANCE
from .errors import ConsistencyError
from .models import Transfer

logger = logging.getLogger(__name__)


def plan_transfers(event_id: str, balances: Mapping[str, float]) -> list[Transfer]:
    total = sum(balances.values())
    if abs(total) >= ZERO_SUM_TOLERANCE:
        logger.error("Balances for event %s do not net to zero (total=%r)", event_id, total)
        raise ConsistencyError(f"Balances for event {event_id} do not net to zero (total={total!r})")

    # Python's sort is stable, so equal balances keep member order
    creditors = sorted(
        ([mid, bal] for mid, bal in balances.items() if bal > 0),
        key=lambda x: x[1],
        reverse=True,
    )
    debtors = sorted(
        ([mid, bal] for mid, bal in balances.items() if bal < 0),
        key=lambda x: x[1],
    )

    transfers: list[Transfer] = []
    c = 0
    d = 0
    while c < len(creditors) and d < len(debtors):
        creditor = creditors[c]
        debtor = debtors[d]
        amount = min(creditor[1], -debtor[1])

        if debtor[0] != creditor[0]:
            transfers.append(Transfer(
                event_id=event_id,
                from_member_id=debtor[0],
                to_member_id=creditor[0],
                amount=amount,
            ))
        else:
            logger.warning("Skipping self-transfer for member %s", debtor[0])

        creditor[1] -= amount
        debtor[1] += amount

        if abs(debtor[1]) < ZERO_SUM_TOLERANCE:
            d += 1
        if abs(creditor[1]) < ZERO_SUM_TOLERANCE:
            c += 1

    residual = [mid for mid, bal in creditors[c:] + debtors[d:] if abs(bal) >= ZERO_SUM_TOLERANCE]
    if residual:
        logger.error("Unmatched balance left for event %s: %s", event_id, residual)
        raise ConsistencyError(f"Unmatched balance left for members {residual} in event {event_id}")

    logger.info("Planned %d transfers for event %s", len(transfers), event_id)
    return transfers
