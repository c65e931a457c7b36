from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict


class EventStatus(str, Enum):
    OPEN = "open"
    CONFIRMED = "confirmed"


class TransferStatus(str, Enum):
    PENDING = "pending"
    CHECKING = "checking"
    COMPLETED = "completed"


class Member(BaseModel):
    id: str
    name: Optional[str] = None
    principal_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class Payment(BaseModel):
    id: Optional[str] = None
    payer_id: Optional[str] = None
    # Left loose so malformed store records reach the calculator and get skipped there
    amount: Any = None
    participants: list[str] = Field(default_factory=list)
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class Event(BaseModel):
    id: str
    name: str
    status: EventStatus = EventStatus.OPEN
    member_ids: list[str] = Field(default_factory=list)
    confirmed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Transfer(BaseModel):
    id: Optional[str] = None
    event_id: str
    from_member_id: str
    to_member_id: str
    amount: float
    status: TransferStatus = TransferStatus.PENDING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_mark_sent(self, member_id: str) -> bool:
        return member_id == self.from_member_id and self.status == TransferStatus.PENDING

    def can_confirm_receipt(self, member_id: str) -> bool:
        return member_id == self.to_member_id and self.status in (
            TransferStatus.PENDING,
            TransferStatus.CHECKING,
        )

    def can_revert_payment(self, member_id: str) -> bool:
        return member_id in (self.from_member_id, self.to_member_id) and self.status == TransferStatus.CHECKING

    def can_revert_receipt(self, member_id: str) -> bool:
        return member_id == self.to_member_id and self.status == TransferStatus.COMPLETED


class MemberBalance(BaseModel):
    member_id: str
    name: str
    balance: float


class SplitResult(BaseModel):
    event_id: str
    transactions: list[Transfer]
    balances: list[MemberBalance]
    diagnostics: list[str] = Field(default_factory=list)


class TransferActionRequest(BaseModel):
    performed_by: Optional[str] = Field(
        default=None, description="Member id of the acting user; resolved from the principal when omitted"
    )


class CreatePaymentRequest(BaseModel):
    payer_id: str
    amount: float = Field(..., ge=0, allow_inf_nan=False)
    participants: list[str] = Field(default_factory=list)
    description: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "payer_id": "member-a",
            "amount": 300.0,
            "participants": [],
            "description": "Dinner",
        }
    })


class EventResponse(BaseModel):
    event: Event
    transactions: list[Transfer] = Field(default_factory=list)
    message: str


class TransferResponse(BaseModel):
    transfer: Transfer
    message: str
