import logging
from typing import Callable, Optional

from .calculator import compute_balances
from .errors import (
    SettlementServiceError,
    InputError,
    NoParticipantsError,
    ConsistencyError,
    PersistenceError,
    EventNotFoundError,
    TransferNotFoundError,
    InvalidStateTransitionError,
    PermissionDeniedError,
)
from .models import (
    CreatePaymentRequest,
    Event,
    EventStatus,
    EventResponse,
    MemberBalance,
    Payment,
    SplitResult,
    Transfer,
    TransferActionRequest,
    TransferResponse,
    TransferStatus,
)
from .planner import plan_transfers
from .storage import InMemoryStorage, SettlementStore

logger = logging.getLogger(__name__)

__all__ = [
    "SettlementService",
    "SettlementServiceError",
    "InputError",
    "NoParticipantsError",
    "ConsistencyError",
    "PersistenceError",
    "EventNotFoundError",
    "TransferNotFoundError",
    "InvalidStateTransitionError",
    "PermissionDeniedError",
]


class SettlementService:
    def __init__(
        self,
        storage: Optional[SettlementStore] = None,
        identity_resolver: Optional[Callable[[], Optional[str]]] = None,
    ):
        self.storage = storage if storage is not None else InMemoryStorage()
        self.identity_resolver = identity_resolver

    def calculate_split(self, event_id) -> SplitResult:
        """
        Compute balances and the transfer plan for an event and persist the plan.

        Nothing is written unless the whole computation succeeds, so a failed
        run leaves previously stored transfers untouched. Re-running with the
        same payments yields the same transfers.
        """
        event_id = self._get_event(event_id).id
        logger.info("Calculating split for event %s", event_id)

        members = self.storage.get_event_members(event_id)
        payments = self.storage.get_event_payments(event_id)

        try:
            sheet = compute_balances(members, payments)
            planned = plan_transfers(event_id, sheet.balances)
        except (NoParticipantsError, ConsistencyError) as e:
            logger.error("Split calculation for event %s failed: %s", event_id, e)
            raise

        names = self._member_names(list(sheet.balances))

        try:
            persisted = self.storage.upsert_transfers(event_id, planned)
        except PersistenceError as e:
            logger.error("Could not store transfers for event %s: %s", event_id, e)
            raise

        return SplitResult(
            event_id=event_id,
            transactions=persisted,
            balances=[
                MemberBalance(member_id=mid, name=names.get(mid, mid), balance=balance)
                for mid, balance in sheet.balances.items()
            ],
            diagnostics=sheet.diagnostics,
        )

    def confirm_settlement(self, event_id) -> EventResponse:
        event = self._get_event(event_id)
        if event.status != EventStatus.OPEN:
            raise InvalidStateTransitionError(f"Event {event.id} is already {event.status.value}")

        result = self.calculate_split(event.id)
        event = self.storage.set_event_status(event.id, EventStatus.CONFIRMED)
        logger.info("Settlement confirmed for event %s with %d transfers", event.id, len(result.transactions))

        return EventResponse(
            event=event,
            transactions=result.transactions,
            message="Settlement confirmed successfully",
        )

    def cancel_settlement(self, event_id) -> EventResponse:
        event = self._get_event(event_id)
        if event.status != EventStatus.CONFIRMED:
            raise InvalidStateTransitionError(f"Cannot cancel settlement of event {event.id} in {event.status.value} state")

        removed = self.storage.delete_transfers(event.id)
        event = self.storage.set_event_status(event.id, EventStatus.OPEN)
        logger.info("Settlement cancelled for event %s, %d transfers removed", event.id, removed)

        return EventResponse(event=event, message="Settlement cancelled successfully")

    def mark_transfer_sent(self, transfer_id: str, request: TransferActionRequest) -> TransferResponse:
        transfer, actor = self._load_for_action(transfer_id, request)
        if actor != transfer.from_member_id:
            raise PermissionDeniedError("Only the paying member can mark a transfer as sent")
        if not transfer.can_mark_sent(actor):
            raise InvalidStateTransitionError(f"Cannot mark transfer as sent in {transfer.status.value} state")
        return self._move(transfer, TransferStatus.CHECKING, "Transfer marked as sent")

    def confirm_transfer_receipt(self, transfer_id: str, request: TransferActionRequest) -> TransferResponse:
        transfer, actor = self._load_for_action(transfer_id, request)
        if actor != transfer.to_member_id:
            raise PermissionDeniedError("Only the receiving member can confirm receipt")
        if not transfer.can_confirm_receipt(actor):
            raise InvalidStateTransitionError(f"Cannot confirm receipt in {transfer.status.value} state")
        return self._move(transfer, TransferStatus.COMPLETED, "Transfer receipt confirmed")

    def revert_transfer_payment(self, transfer_id: str, request: TransferActionRequest) -> TransferResponse:
        transfer, actor = self._load_for_action(transfer_id, request)
        if actor not in (transfer.from_member_id, transfer.to_member_id):
            raise PermissionDeniedError("Only members of the transfer can revert it")
        if not transfer.can_revert_payment(actor):
            raise InvalidStateTransitionError(f"Cannot revert payment in {transfer.status.value} state")
        return self._move(transfer, TransferStatus.PENDING, "Transfer reverted to pending")

    def revert_transfer_receipt(self, transfer_id: str, request: TransferActionRequest) -> TransferResponse:
        transfer, actor = self._load_for_action(transfer_id, request)
        if actor != transfer.to_member_id:
            raise PermissionDeniedError("Only the receiving member can revert a receipt")
        if not transfer.can_revert_receipt(actor):
            raise InvalidStateTransitionError(f"Cannot revert receipt in {transfer.status.value} state")
        return self._move(transfer, TransferStatus.CHECKING, "Transfer receipt reverted")

    def record_payment(self, event_id, request: CreatePaymentRequest) -> Payment:
        event = self._get_event(event_id)
        if event.status != EventStatus.OPEN:
            raise InvalidStateTransitionError(
                f"Event {event.id} is {event.status.value}; cancel the settlement before adding payments"
            )
        if request.payer_id not in event.member_ids:
            raise InputError(f"Payer {request.payer_id} is not a member of event {event.id}")
        strays = [mid for mid in request.participants if mid not in event.member_ids]
        if strays:
            raise InputError(f"Participants {strays} are not members of event {event.id}")

        return self.storage.add_payment(
            event.id,
            payer_id=request.payer_id,
            amount=request.amount,
            participants=request.participants,
            description=request.description,
        )

    def get_event(self, event_id) -> Event:
        return self._get_event(event_id)

    def list_event_transfers(self, event_id) -> list[Transfer]:
        event = self._get_event(event_id)
        return self.storage.list_event_transfers(event.id)

    def list_member_transfers(self, member_id: str, status: Optional[TransferStatus] = None) -> list[Transfer]:
        transfers = self.storage.list_member_transfers(member_id)
        if status is not None:
            transfers = [t for t in transfers if t.status == status]
        return transfers

    def resolve_member_id(self, principal_id: str) -> Optional[str]:
        return self.storage.resolve_member_id(principal_id)

    def _validate_event_id(self, event_id) -> str:
        if event_id is None or isinstance(event_id, bool) or not isinstance(event_id, (str, int)):
            raise InputError(f"Invalid event ID: {event_id!r}")
        event_id = str(event_id).strip()
        if not event_id:
            raise InputError("Event ID is required")
        return event_id

    def _get_event(self, event_id) -> Event:
        event_id = self._validate_event_id(event_id)
        event = self.storage.get_event(event_id)
        if not event:
            raise EventNotFoundError(f"Event {event_id} not found")
        return event

    def _member_names(self, member_ids: list[str]) -> dict[str, str]:
        try:
            return self.storage.get_member_names(member_ids)
        except PersistenceError as e:
            logger.warning("Member names unavailable, falling back to ids: %s", e)
            return {}

    def _load_for_action(self, transfer_id: str, request: TransferActionRequest) -> tuple[Transfer, str]:
        transfer = self.storage.get_transfer(transfer_id)
        if not transfer:
            raise TransferNotFoundError(f"Transfer {transfer_id} not found")

        actor = request.performed_by
        if actor is None and self.identity_resolver is not None:
            actor = self.identity_resolver()
        if not actor:
            raise PermissionDeniedError("Could not resolve the acting member")
        return transfer, actor

    def _move(self, transfer: Transfer, status: TransferStatus, message: str) -> TransferResponse:
        previous = transfer.status
        updated = self.storage.set_transfer_status(transfer.id, status)
        logger.info("Transfer %s moved %s -> %s", transfer.id, previous.value, status.value)
        return TransferResponse(transfer=updated, message=message)
