import logging
from datetime import datetime, timezone
from typing import Optional, Protocol
from uuid import uuid4

from .errors import PersistenceError
from .models import Event, EventStatus, Member, Payment, Transfer, TransferStatus

logger = logging.getLogger(__name__)


class SettlementStore(Protocol):
    def get_event(self, event_id: str) -> Optional[Event]: ...

    def set_event_status(self, event_id: str, status: EventStatus) -> Event: ...

    def get_event_members(self, event_id: str) -> list[str]: ...

    def get_member_names(self, member_ids: list[str]) -> dict[str, str]: ...

    def get_event_payments(self, event_id: str) -> list[Payment]: ...

    def add_payment(
        self,
        event_id: str,
        payer_id: Optional[str],
        amount,
        participants: Optional[list[str]] = None,
        description: Optional[str] = None,
    ) -> Payment: ...

    def upsert_transfers(self, event_id: str, transfers: list[Transfer]) -> list[Transfer]: ...

    def delete_transfers(self, event_id: str) -> int: ...

    def get_transfer(self, transfer_id: str) -> Optional[Transfer]: ...

    def set_transfer_status(self, transfer_id: str, status: TransferStatus) -> Transfer: ...

    def list_event_transfers(self, event_id: str) -> list[Transfer]: ...

    def list_member_transfers(self, member_id: str) -> list[Transfer]: ...

    def resolve_member_id(self, principal_id: str) -> Optional[str]: ...


class InMemoryStorage:
    DEMO_EVENT_ID = "demo-trip"

    def __init__(self, seed: bool = True):
        self.members: dict[str, dict] = {}
        self.events: dict[str, dict] = {}
        self.payments: dict[str, dict] = {}
        self.transfers: dict[str, dict] = {}
        self.transfer_index: dict[tuple[str, str, str], str] = {}
        if seed:
            self._seed_data()

    def _seed_data(self):
        for member_id, name in (("alice", "Alice"), ("bob", "Bob"), ("carol", "Carol")):
            self.add_member(member_id, name=name, principal_id=f"auth-{member_id}")

        self.add_event(self.DEMO_EVENT_ID, "Weekend trip", ["alice", "bob", "carol"])
        self.add_payment(self.DEMO_EVENT_ID, payer_id="alice", amount=90.0, description="Groceries")
        self.add_payment(self.DEMO_EVENT_ID, payer_id="bob", amount=30.0, description="Fuel")

    def add_member(self, member_id: str, name: Optional[str] = None, principal_id: Optional[str] = None) -> Member:
        self.members[member_id] = {"id": member_id, "name": name, "principal_id": principal_id}
        return Member(**self.members[member_id])

    def add_event(self, event_id: str, name: str, member_ids: list[str]) -> Event:
        self.events[event_id] = {
            "id": event_id,
            "name": name,
            "status": EventStatus.OPEN,
            "member_ids": list(member_ids),
            "confirmed_at": None,
        }
        return Event(**self.events[event_id])

    def add_payment(
        self,
        event_id: str,
        payer_id: Optional[str],
        amount,
        participants: Optional[list[str]] = None,
        description: Optional[str] = None,
    ) -> Payment:
        if event_id not in self.events:
            raise PersistenceError(f"Event {event_id} does not exist")
        payment_id = str(uuid4())
        self.payments[payment_id] = {
            "id": payment_id,
            "event_id": event_id,
            "payer_id": payer_id,
            "amount": amount,
            "participants": list(participants or []),
            "description": description,
        }
        return Payment(**self.payments[payment_id])

    def get_event(self, event_id: str) -> Optional[Event]:
        event_data = self.events.get(event_id)
        return Event(**event_data) if event_data else None

    def set_event_status(self, event_id: str, status: EventStatus) -> Event:
        event_data = self.events.get(event_id)
        if not event_data:
            raise PersistenceError(f"Event {event_id} does not exist")
        event_data["status"] = status
        event_data["confirmed_at"] = datetime.now(timezone.utc) if status == EventStatus.CONFIRMED else None
        return Event(**event_data)

    def get_event_members(self, event_id: str) -> list[str]:
        event_data = self.events.get(event_id)
        return list(event_data["member_ids"]) if event_data else []

    def get_member_names(self, member_ids: list[str]) -> dict[str, str]:
        return {
            mid: self.members[mid]["name"]
            for mid in member_ids
            if mid in self.members and self.members[mid]["name"]
        }

    def get_event_payments(self, event_id: str) -> list[Payment]:
        return [
            Payment(**p) for p in self.payments.values()
            if p["event_id"] == event_id
        ]

    def upsert_transfers(self, event_id: str, transfers: list[Transfer]) -> list[Transfer]:
        if event_id not in self.events:
            raise PersistenceError(f"Event {event_id} does not exist")

        now = datetime.now(timezone.utc)
        staged: dict[str, dict] = {}
        index_updates: dict[tuple[str, str, str], str] = {}
        for transfer in transfers:
            key = (event_id, transfer.from_member_id, transfer.to_member_id)
            existing_id = index_updates.get(key) or self.transfer_index.get(key)
            if existing_id:
                # Same (event, from, to) replaces the amount, the lifecycle status is kept
                row = dict(staged.get(existing_id) or self.transfers[existing_id])
                row["amount"] = transfer.amount
                row["updated_at"] = now
            else:
                existing_id = str(uuid4())
                row = {
                    "id": existing_id,
                    "event_id": event_id,
                    "from_member_id": transfer.from_member_id,
                    "to_member_id": transfer.to_member_id,
                    "amount": transfer.amount,
                    "status": TransferStatus.PENDING,
                    "created_at": now,
                    "updated_at": now,
                }
            staged[existing_id] = row
            index_updates[key] = existing_id

        # Pairs missing from the new plan are no longer owed
        stale = [
            key for key in self.transfer_index
            if key[0] == event_id and key not in index_updates
        ]
        for key in stale:
            self.transfers.pop(self.transfer_index.pop(key), None)

        self.transfers.update(staged)
        self.transfer_index.update(index_updates)
        logger.debug("Upserted %d transfers for event %s, removed %d stale", len(staged), event_id, len(stale))
        return [Transfer(**staged[index_updates[(event_id, t.from_member_id, t.to_member_id)]]) for t in transfers]

    def delete_transfers(self, event_id: str) -> int:
        doomed = [tid for tid, t in self.transfers.items() if t["event_id"] == event_id]
        for tid in doomed:
            t = self.transfers.pop(tid)
            self.transfer_index.pop((t["event_id"], t["from_member_id"], t["to_member_id"]), None)
        return len(doomed)

    def get_transfer(self, transfer_id: str) -> Optional[Transfer]:
        transfer_data = self.transfers.get(transfer_id)
        return Transfer(**transfer_data) if transfer_data else None

    def set_transfer_status(self, transfer_id: str, status: TransferStatus) -> Transfer:
        transfer_data = self.transfers.get(transfer_id)
        if not transfer_data:
            raise PersistenceError(f"Transfer {transfer_id} does not exist")
        transfer_data["status"] = status
        transfer_data["updated_at"] = datetime.now(timezone.utc)
        return Transfer(**transfer_data)

    def list_event_transfers(self, event_id: str) -> list[Transfer]:
        return [Transfer(**t) for t in self.transfers.values() if t["event_id"] == event_id]

    def list_member_transfers(self, member_id: str) -> list[Transfer]:
        rows = [
            t for t in self.transfers.values()
            if member_id in (t["from_member_id"], t["to_member_id"])
        ]
        rows.sort(key=lambda t: t["created_at"], reverse=True)
        return [Transfer(**t) for t in rows]

    def resolve_member_id(self, principal_id: str) -> Optional[str]:
        for member in self.members.values():
            if member["principal_id"] == principal_id:
                return member["id"]
        return None
