"""
Unit Tests for the Settlement Service

Tests cover:
1. calculate_split flow and idempotent persistence
2. Fatal errors leaving stored transfers untouched
3. Event confirmation and cancellation
4. Transfer lifecycle and who may move it
"""

import pytest

from settlement.calculator import BalanceSheet
from settlement.models import (
    CreatePaymentRequest,
    EventStatus,
    TransferActionRequest,
    TransferStatus,
)
from settlement.service import (
    SettlementService,
    InputError,
    NoParticipantsError,
    ConsistencyError,
    PersistenceError,
    EventNotFoundError,
    TransferNotFoundError,
    InvalidStateTransitionError,
    PermissionDeniedError,
)
from settlement.storage import InMemoryStorage


EVENT_ID = "trip-1"


def make_service(identity_resolver=None) -> SettlementService:
    storage = InMemoryStorage(seed=False)
    storage.add_member("alice", name="Alice", principal_id="auth-alice")
    storage.add_member("bob", name="Bob", principal_id="auth-bob")
    storage.add_member("carol")
    storage.add_event(EVENT_ID, "Trip", ["alice", "bob", "carol"])
    storage.add_payment(EVENT_ID, payer_id="alice", amount=90)
    storage.add_payment(EVENT_ID, payer_id="bob", amount=30)
    return SettlementService(storage, identity_resolver=identity_resolver)


def as_triples(transfers):
    return {(t.from_member_id, t.to_member_id, round(t.amount, 6)) for t in transfers}


def transfer_between(service, from_member, to_member):
    for t in service.list_event_transfers(EVENT_ID):
        if t.from_member_id == from_member and t.to_member_id == to_member:
            return t
    raise AssertionError(f"No transfer {from_member} -> {to_member}")


def unbalanced_sheet(members, payments):
    return BalanceSheet(balances={"alice": 100.0, "bob": -60.0, "carol": 0.0})


class FailingStorage(InMemoryStorage):
    def upsert_transfers(self, event_id, transfers):
        raise PersistenceError("store unavailable")


class TestCalculateSplit:
    """Tests for the calculate_split entry point."""

    def test_split_result(self):
        service = make_service()

        result = service.calculate_split(EVENT_ID)

        assert as_triples(result.transactions) == {("carol", "alice", 40.0), ("bob", "alice", 10.0)}
        assert all(t.id is not None for t in result.transactions)

        balances = {b.member_id: b for b in result.balances}
        assert balances["alice"].balance == pytest.approx(50.0)
        assert balances["bob"].balance == pytest.approx(-10.0)
        assert balances["carol"].balance == pytest.approx(-40.0)
        assert balances["alice"].name == "Alice"
        # No display name falls back to the member id
        assert balances["carol"].name == "carol"

    def test_transfers_are_persisted(self):
        service = make_service()

        result = service.calculate_split(EVENT_ID)

        stored = service.list_event_transfers(EVENT_ID)
        assert as_triples(stored) == as_triples(result.transactions)

    def test_idempotent_recalculation(self):
        """Test that running twice yields the same transfers without duplicates."""
        service = make_service()

        first = service.calculate_split(EVENT_ID)
        second = service.calculate_split(EVENT_ID)

        assert as_triples(first.transactions) == as_triples(second.transactions)
        assert {t.id for t in first.transactions} == {t.id for t in second.transactions}
        assert len(service.list_event_transfers(EVENT_ID)) == 2

    def test_recalculation_replaces_amount(self):
        """Test that a changed payment updates the same (event, from, to) row."""
        service = make_service()
        first = service.calculate_split(EVENT_ID)
        service.storage.add_payment(EVENT_ID, payer_id="alice", amount=30, participants=["alice", "carol"])

        second = service.calculate_split(EVENT_ID)

        carol_first = next(t for t in first.transactions if t.from_member_id == "carol")
        carol_second = next(t for t in second.transactions if t.from_member_id == "carol")
        assert carol_second.id == carol_first.id
        assert carol_second.amount == pytest.approx(55.0)
        assert len(service.list_event_transfers(EVENT_ID)) == 2

    def test_recalculation_drops_pairs_no_longer_owed(self):
        """Test that a settled-up member loses the transfer from an earlier plan."""
        storage = InMemoryStorage(seed=False)
        for member_id in ("A", "B", "C"):
            storage.add_member(member_id)
        storage.add_event("e", "Outing", ["A", "B", "C"])
        storage.add_payment("e", payer_id="A", amount=90)
        service = SettlementService(storage)
        first = service.calculate_split("e")
        assert as_triples(first.transactions) == {("B", "A", 30.0), ("C", "A", 30.0)}

        service.record_payment("e", CreatePaymentRequest(payer_id="B", amount=60, participants=["B", "C"]))
        response = service.confirm_settlement("e")

        assert as_triples(response.transactions) == {("C", "A", 60.0)}
        assert as_triples(service.list_event_transfers("e")) == {("C", "A", 60.0)}
        assert service.list_member_transfers("B") == []

    def test_recalculation_keeps_transfer_status(self):
        service = make_service()
        service.calculate_split(EVENT_ID)
        transfer = transfer_between(service, "carol", "alice")
        service.mark_transfer_sent(transfer.id, TransferActionRequest(performed_by="carol"))

        service.calculate_split(EVENT_ID)

        assert service.storage.get_transfer(transfer.id).status == TransferStatus.CHECKING

    def test_invalid_payment_reported_in_diagnostics(self):
        service = make_service()
        service.storage.add_payment(EVENT_ID, payer_id="bob", amount="lots")

        result = service.calculate_split(EVENT_ID)

        assert len(result.diagnostics) == 1
        assert as_triples(result.transactions) == {("carol", "alice", 40.0), ("bob", "alice", 10.0)}

    @pytest.mark.parametrize("event_id", [None, "", "   ", 1.5, True])
    def test_invalid_event_id(self, event_id):
        service = make_service()

        with pytest.raises(InputError):
            service.calculate_split(event_id)

    def test_integer_event_id_accepted(self):
        service = make_service()
        service.storage.add_event("7", "Numeric", ["alice", "bob"])
        service.storage.add_payment("7", payer_id="bob", amount=20)

        result = service.calculate_split(7)

        assert as_triples(result.transactions) == {("alice", "bob", 10.0)}

    def test_event_without_members(self):
        service = make_service()
        service.storage.add_event("empty", "Empty", [])

        with pytest.raises(NoParticipantsError):
            service.calculate_split("empty")

    def test_unknown_event(self):
        """Test that splitting a missing event fails the same way as confirming it."""
        service = make_service()

        with pytest.raises(EventNotFoundError):
            service.calculate_split("unknown-event")

    def test_payment_with_stray_ids_still_settles(self):
        """Ids outside the event are ignored instead of failing the split."""
        service = make_service()
        service.storage.add_payment(EVENT_ID, payer_id="mallory", amount=300)
        service.storage.add_payment(EVENT_ID, payer_id="alice", amount=30, participants=["alice", "carol", "zed"])

        result = service.calculate_split(EVENT_ID)

        # alice 50+15=65, bob -10, carol -40-15=-55
        assert as_triples(result.transactions) == {("carol", "alice", 55.0), ("bob", "alice", 10.0)}
        assert len(result.diagnostics) == 2


class TestFatalErrors:
    """Tests that fatal errors never overwrite stored transfers."""

    def test_consistency_error_leaves_transfers_untouched(self, monkeypatch):
        service = make_service()
        service.calculate_split(EVENT_ID)
        before = service.list_event_transfers(EVENT_ID)

        monkeypatch.setattr("settlement.service.compute_balances", unbalanced_sheet)

        with pytest.raises(ConsistencyError):
            service.calculate_split(EVENT_ID)

        after = service.list_event_transfers(EVENT_ID)
        assert as_triples(after) == as_triples(before)

    def test_persistence_error_surfaced(self):
        storage = FailingStorage(seed=False)
        storage.add_member("alice")
        storage.add_member("bob")
        storage.add_event(EVENT_ID, "Trip", ["alice", "bob"])
        storage.add_payment(EVENT_ID, payer_id="alice", amount=10)
        service = SettlementService(storage)

        with pytest.raises(PersistenceError):
            service.calculate_split(EVENT_ID)


class TestEventSettlement:
    """Tests for confirming and cancelling an event's settlement."""

    def test_confirm_settlement(self):
        service = make_service()

        response = service.confirm_settlement(EVENT_ID)

        assert response.event.status == EventStatus.CONFIRMED
        assert response.event.confirmed_at is not None
        assert len(response.transactions) == 2
        assert len(service.list_event_transfers(EVENT_ID)) == 2

    def test_cannot_confirm_twice(self):
        service = make_service()
        service.confirm_settlement(EVENT_ID)

        with pytest.raises(InvalidStateTransitionError):
            service.confirm_settlement(EVENT_ID)

    def test_failed_confirmation_keeps_event_open(self, monkeypatch):
        service = make_service()
        monkeypatch.setattr("settlement.service.compute_balances", unbalanced_sheet)

        with pytest.raises(ConsistencyError):
            service.confirm_settlement(EVENT_ID)

        assert service.get_event(EVENT_ID).status == EventStatus.OPEN
        assert service.list_event_transfers(EVENT_ID) == []

    def test_cancel_deletes_transfers(self):
        service = make_service()
        service.confirm_settlement(EVENT_ID)

        response = service.cancel_settlement(EVENT_ID)

        assert response.event.status == EventStatus.OPEN
        assert response.event.confirmed_at is None
        assert service.list_event_transfers(EVENT_ID) == []

    def test_cannot_cancel_open_event(self):
        service = make_service()

        with pytest.raises(InvalidStateTransitionError):
            service.cancel_settlement(EVENT_ID)

    def test_reconfirm_after_cancel_uses_new_payments(self):
        service = make_service()
        service.confirm_settlement(EVENT_ID)
        service.cancel_settlement(EVENT_ID)
        service.record_payment(EVENT_ID, CreatePaymentRequest(payer_id="carol", amount=120))

        response = service.confirm_settlement(EVENT_ID)

        # alice +50-40=+10, bob -10-40=-50, carol -40+80=+40
        assert as_triples(response.transactions) == {("bob", "carol", 40.0), ("bob", "alice", 10.0)}

    def test_unknown_event(self):
        service = make_service()

        with pytest.raises(EventNotFoundError):
            service.confirm_settlement("nope")


class TestRecordPayment:
    """Tests for recording payments against an event."""

    def test_record_payment(self):
        service = make_service()

        payment = service.record_payment(
            EVENT_ID, CreatePaymentRequest(payer_id="carol", amount=12.5, participants=["bob", "carol"])
        )

        assert payment.id is not None
        assert payment.participants == ["bob", "carol"]
        assert len(service.storage.get_event_payments(EVENT_ID)) == 3

    def test_payer_must_be_member(self):
        service = make_service()

        with pytest.raises(InputError):
            service.record_payment(EVENT_ID, CreatePaymentRequest(payer_id="mallory", amount=10))

    def test_participants_must_be_members(self):
        service = make_service()

        with pytest.raises(InputError):
            service.record_payment(
                EVENT_ID, CreatePaymentRequest(payer_id="bob", amount=10, participants=["bob", "mallory"])
            )

    def test_confirmed_event_rejects_payments(self):
        service = make_service()
        service.confirm_settlement(EVENT_ID)

        with pytest.raises(InvalidStateTransitionError):
            service.record_payment(EVENT_ID, CreatePaymentRequest(payer_id="bob", amount=10))


class TestTransferLifecycle:
    """Tests for pending → checking → completed and the reversals."""

    def setup_transfer(self, identity_resolver=None):
        service = make_service(identity_resolver)
        service.confirm_settlement(EVENT_ID)
        return service, transfer_between(service, "carol", "alice")

    def test_debtor_marks_sent(self):
        service, transfer = self.setup_transfer()

        response = service.mark_transfer_sent(transfer.id, TransferActionRequest(performed_by="carol"))

        assert response.transfer.status == TransferStatus.CHECKING

    def test_creditor_cannot_mark_sent(self):
        service, transfer = self.setup_transfer()

        with pytest.raises(PermissionDeniedError):
            service.mark_transfer_sent(transfer.id, TransferActionRequest(performed_by="alice"))

    def test_cannot_mark_sent_twice(self):
        service, transfer = self.setup_transfer()
        service.mark_transfer_sent(transfer.id, TransferActionRequest(performed_by="carol"))

        with pytest.raises(InvalidStateTransitionError):
            service.mark_transfer_sent(transfer.id, TransferActionRequest(performed_by="carol"))

    def test_creditor_confirms_receipt(self):
        service, transfer = self.setup_transfer()
        service.mark_transfer_sent(transfer.id, TransferActionRequest(performed_by="carol"))

        response = service.confirm_transfer_receipt(transfer.id, TransferActionRequest(performed_by="alice"))

        assert response.transfer.status == TransferStatus.COMPLETED

    def test_creditor_confirms_receipt_from_pending(self):
        service, transfer = self.setup_transfer()

        response = service.confirm_transfer_receipt(transfer.id, TransferActionRequest(performed_by="alice"))

        assert response.transfer.status == TransferStatus.COMPLETED

    def test_debtor_cannot_confirm_receipt(self):
        service, transfer = self.setup_transfer()
        service.mark_transfer_sent(transfer.id, TransferActionRequest(performed_by="carol"))

        with pytest.raises(PermissionDeniedError):
            service.confirm_transfer_receipt(transfer.id, TransferActionRequest(performed_by="carol"))

    def test_revert_payment_by_either_side(self):
        service, transfer = self.setup_transfer()

        for member in ("carol", "alice"):
            service.mark_transfer_sent(transfer.id, TransferActionRequest(performed_by="carol"))
            response = service.revert_transfer_payment(transfer.id, TransferActionRequest(performed_by=member))
            assert response.transfer.status == TransferStatus.PENDING

    def test_outsider_cannot_revert_payment(self):
        service, transfer = self.setup_transfer()
        service.mark_transfer_sent(transfer.id, TransferActionRequest(performed_by="carol"))

        with pytest.raises(PermissionDeniedError):
            service.revert_transfer_payment(transfer.id, TransferActionRequest(performed_by="bob"))

    def test_cannot_revert_pending_payment(self):
        service, transfer = self.setup_transfer()

        with pytest.raises(InvalidStateTransitionError):
            service.revert_transfer_payment(transfer.id, TransferActionRequest(performed_by="carol"))

    def test_creditor_reverts_receipt(self):
        service, transfer = self.setup_transfer()
        service.mark_transfer_sent(transfer.id, TransferActionRequest(performed_by="carol"))
        service.confirm_transfer_receipt(transfer.id, TransferActionRequest(performed_by="alice"))

        response = service.revert_transfer_receipt(transfer.id, TransferActionRequest(performed_by="alice"))

        assert response.transfer.status == TransferStatus.CHECKING

    def test_debtor_cannot_revert_receipt(self):
        service, transfer = self.setup_transfer()
        service.confirm_transfer_receipt(transfer.id, TransferActionRequest(performed_by="alice"))

        with pytest.raises(PermissionDeniedError):
            service.revert_transfer_receipt(transfer.id, TransferActionRequest(performed_by="carol"))

    def test_cannot_revert_receipt_before_completion(self):
        service, transfer = self.setup_transfer()

        with pytest.raises(InvalidStateTransitionError):
            service.revert_transfer_receipt(transfer.id, TransferActionRequest(performed_by="alice"))

    def test_identity_resolver_used_when_actor_missing(self):
        service, transfer = self.setup_transfer(identity_resolver=lambda: "carol")

        response = service.mark_transfer_sent(transfer.id, TransferActionRequest())

        assert response.transfer.status == TransferStatus.CHECKING

    def test_unresolved_actor_denied(self):
        service, transfer = self.setup_transfer(identity_resolver=lambda: None)

        with pytest.raises(PermissionDeniedError):
            service.mark_transfer_sent(transfer.id, TransferActionRequest())

    def test_unknown_transfer(self):
        service, _ = self.setup_transfer()

        with pytest.raises(TransferNotFoundError):
            service.mark_transfer_sent("missing", TransferActionRequest(performed_by="carol"))


class TestTransferQueries:
    """Tests for listing transfers and resolving identities."""

    def test_member_transfers_filtered_by_status(self):
        service = make_service()
        service.confirm_settlement(EVENT_ID)
        transfer = transfer_between(service, "carol", "alice")
        service.mark_transfer_sent(transfer.id, TransferActionRequest(performed_by="carol"))

        all_alice = service.list_member_transfers("alice")
        checking = service.list_member_transfers("alice", TransferStatus.CHECKING)

        assert len(all_alice) == 2
        assert [t.id for t in checking] == [transfer.id]
        assert service.list_member_transfers("carol", TransferStatus.PENDING) == []

    def test_resolve_member_id(self):
        service = make_service()

        assert service.resolve_member_id("auth-bob") == "bob"
        assert service.resolve_member_id("auth-nobody") is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
