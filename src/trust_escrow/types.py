"""Core types for the trust escrow engine.

Records are plain dataclasses. Stores hand out copies, so the engine builds
each new state with `dataclasses.replace` and writes it back through a
conditional put.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class TransactionStatus(Enum):
    PENDING = "pending"
    FUNDED = "funded"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    REFUNDED = "refunded"

    @property
    def terminal(self) -> bool:
        return self in (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED)


class Party(Enum):
    BUYER = "buyer"
    SELLER = "seller"

    @property
    def counterparty(self) -> "Party":
        return Party.SELLER if self is Party.BUYER else Party.BUYER


class DisputeResolutionMode(Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class DisputeStatus(Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    # Decided, and part of the money has moved; only the same decision may finish it.
    SETTLING = "settling"
    RESOLVED = "resolved"
    CLOSED = "closed"

    @property
    def pending(self) -> bool:
        return self in (DisputeStatus.OPEN, DisputeStatus.INVESTIGATING)


class EvidenceKind(Enum):
    IMAGE = "image"
    DOCUMENT = "document"
    MESSAGE = "message"


class DueAction(Enum):
    AUTO_COMPLETE = "auto_complete"


class DueStatus(Enum):
    SCHEDULED = "scheduled"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


class EventType(Enum):
    PAYMENT_RECEIVED = "payment_received"
    ITEM_SHIPPED = "item_shipped"
    ITEM_DELIVERED = "item_delivered"
    TRANSACTION_COMPLETED = "transaction_completed"
    PAYMENT_RELEASED = "payment_released"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"
    DISPUTE_CLOSED = "dispute_closed"


# --- Transaction ---


@dataclass(frozen=True)
class Subject:
    item_id: str
    amount: int


@dataclass(frozen=True)
class Fees:
    escrow_fee: int
    platform_fee: int
    total_fee: int


@dataclass
class TrackingInfo:
    carrier: str
    tracking_number: str
    status: str
    last_update: datetime


@dataclass
class EscrowTransaction:
    id: str
    buyer_id: str
    seller_id: str
    subject: Subject
    fees: Fees
    status: TransactionStatus
    created_at: datetime
    updated_at: datetime
    funded_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    tracking: Optional[TrackingInfo] = None
    dispute_id: Optional[str] = None
    refund_amount: Optional[int] = None
    revision: int = 0

    @property
    def amount(self) -> int:
        return self.subject.amount

    def role_of(self, user_id: str) -> Optional[Party]:
        if user_id == self.buyer_id:
            return Party.BUYER
        if user_id == self.seller_id:
            return Party.SELLER
        return None

    def party_id(self, party: Party) -> str:
        return self.buyer_id if party is Party.BUYER else self.seller_id


# --- Agreement ---


@dataclass(frozen=True)
class AgreementTerms:
    inspection_period_days: int
    return_policy: str
    shipping_responsibility: Party
    insurance_required: bool
    dispute_resolution: DisputeResolutionMode


@dataclass(frozen=True)
class AgreementConditions:
    product_condition: str
    delivery_method: str
    special_instructions: Optional[str] = None


@dataclass
class Agreement:
    transaction_id: str
    terms: AgreementTerms
    conditions: AgreementConditions
    signed_at: datetime
    buyer_signed: bool = False
    seller_signed: bool = False
    revision: int = 0


# --- Dispute ---


@dataclass(frozen=True)
class Evidence:
    kind: EvidenceKind
    reference: str
    note: str = ""


@dataclass(frozen=True)
class Resolution:
    winner: Party
    refund_amount: int
    reason: str


@dataclass
class Dispute:
    id: str
    transaction_id: str
    initiated_by: Party
    initiator_id: str
    reason: str
    description: str
    status: DisputeStatus
    created_at: datetime
    evidence: List[Evidence] = field(default_factory=list)
    resolution: Optional[Resolution] = None
    resolved_at: Optional[datetime] = None
    # Money legs ("payout", "refund") that have already gone through.
    settled_legs: List[str] = field(default_factory=list)
    revision: int = 0


# --- Scheduler ---


@dataclass
class DueWork:
    transaction_id: str
    action: DueAction
    due_at: datetime
    status: DueStatus = DueStatus.SCHEDULED
    attempts: int = 0
    last_error: Optional[str] = None


# --- Reporting ---


@dataclass(frozen=True)
class EscrowStats:
    total_transactions: int = 0
    active_transactions: int = 0
    completed_transactions: int = 0
    disputed_transactions: int = 0
    refunded_transactions: int = 0
    total_volume: int = 0
    average_transaction_value: float = 0.0
