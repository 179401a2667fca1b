"""Escrow state machine.

Lifecycle: pending -> funded -> shipped -> delivered -> completed, with
shipped/delivered -> disputed -> completed | refunded through the dispute
module. Each operation reads the current record, checks its guard, and writes
the successor through the store's compare-and-set against the record it read.

Release paths (auto-complete, early acceptance, dispute settlement) commit the
terminal status first and move money second; a failed processor call restores
the previous record. Funding charges first under an idempotency key and
commits second.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .config import (
    ACTIVE_STATUSES,
    CARRIER_DELIVERED,
    DEFAULT_DELIVERY_METHOD,
    DEFAULT_INSPECTION_DAYS,
    DEFAULT_PRODUCT_CONDITION,
    DEFAULT_RETURN_POLICY,
    INSURANCE_THRESHOLD,
    MAX_INSPECTION_DAYS,
    MAX_TRACKING_LEN,
    MIN_INSPECTION_DAYS,
    PAYMENT_METHODS,
    EngineConfig,
)
from .digest import derive_id
from .disputes import DisputeArbitrator
from .errors import ErrorCode, EscrowError
from .fees import DEFAULT_SCHEDULE, FeeSchedule, calculate_fees, seller_payout
from .processors import (
    NotificationGateway,
    PaymentProcessor,
    PayoutProcessor,
    ProcessorError,
    ProcessorResult,
    TransactionLimits,
)
from .store import AgreementStore, DisputeStore, DueWorkStore, TransactionStore
from .types import (
    Agreement,
    AgreementConditions,
    AgreementTerms,
    DisputeResolutionMode,
    DueAction,
    DueWork,
    EscrowStats,
    EscrowTransaction,
    EventType,
    Party,
    Subject,
    TrackingInfo,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def random_nonce() -> str:
    return secrets.token_hex(8)


def _require_text(value: object, name: str, max_len: int = MAX_TRACKING_LEN) -> str:
    if not isinstance(value, str) or not value.strip():
        raise EscrowError(ErrorCode.INVALID_INPUT, f"{name} must be non-empty")
    value = value.strip()
    if len(value) > max_len:
        raise EscrowError(ErrorCode.INVALID_INPUT, f"{name} too long")
    return value


def _as_party(value: Union[Party, str]) -> Party:
    if isinstance(value, Party):
        return value
    try:
        return Party(value)
    except ValueError:
        raise EscrowError(ErrorCode.INVALID_INPUT, f"unknown party: {value!r}") from None


class EscrowEngine:
    """Owns the transaction lifecycle.

    All collaborators are injected; nothing here keeps module-level state.
    """

    def __init__(
        self,
        *,
        transactions: TransactionStore,
        agreements: AgreementStore,
        disputes: DisputeStore,
        due_work: DueWorkStore,
        payments: PaymentProcessor,
        payouts: PayoutProcessor,
        notifier: NotificationGateway,
        limits: Optional[TransactionLimits] = None,
        clock: Clock = utc_now,
        fee_schedule: FeeSchedule = DEFAULT_SCHEDULE,
        default_inspection_days: int = DEFAULT_INSPECTION_DAYS,
        processor_timeout: Optional[float] = None,
        nonce: Callable[[], str] = random_nonce,
    ):
        self._transactions = transactions
        self._agreements = agreements
        self._due_work = due_work
        self._payments = payments
        self._payouts = payouts
        self._notifier = notifier
        self._limits = limits
        self._clock = clock
        self._fee_schedule = fee_schedule
        self._default_inspection_days = default_inspection_days
        self._processor_timeout = processor_timeout
        self.nonce = nonce
        self.disputes = DisputeArbitrator(self, disputes)

    @classmethod
    def from_config(cls, config: EngineConfig, **collaborators: Any) -> "EscrowEngine":
        schedule = FeeSchedule(
            escrow_fee_bps=config.escrow_fee_bps,
            platform_fee_bps=config.platform_fee_bps,
            floor=config.fee_floor,
            ceiling=config.fee_ceiling,
        )
        collaborators.setdefault("fee_schedule", schedule)
        collaborators.setdefault("default_inspection_days", config.inspection_days)
        collaborators.setdefault("processor_timeout", config.processor_timeout)
        return cls(**collaborators)

    # --- create ---

    async def create(
        self,
        buyer_id: str,
        seller_id: str,
        item_id: str,
        amount: int,
        *,
        inspection_period_days: Optional[int] = None,
        return_policy: str = DEFAULT_RETURN_POLICY,
        shipping_responsibility: Union[Party, str] = Party.SELLER,
        dispute_resolution: Union[DisputeResolutionMode, str] = DisputeResolutionMode.AUTOMATIC,
        conditions: Optional[AgreementConditions] = None,
    ) -> EscrowTransaction:
        buyer_id = _require_text(buyer_id, "buyer_id")
        seller_id = _require_text(seller_id, "seller_id")
        item_id = _require_text(item_id, "item_id")
        if buyer_id == seller_id:
            raise EscrowError(ErrorCode.SELF_DEALING, "buyer and seller must differ")
        fees = calculate_fees(amount, self._fee_schedule)

        days = inspection_period_days
        if days is None:
            days = self._default_inspection_days
        if not isinstance(days, int) or not MIN_INSPECTION_DAYS <= days <= MAX_INSPECTION_DAYS:
            raise EscrowError(ErrorCode.INVALID_INPUT, "inspection period out of range")
        try:
            resolution_mode = DisputeResolutionMode(dispute_resolution)
        except ValueError:
            raise EscrowError(
                ErrorCode.INVALID_INPUT, f"unknown dispute resolution: {dispute_resolution!r}"
            ) from None

        now = self._clock()
        transaction_id = derive_id(
            buyer_id, seller_id, item_id, now.isoformat(), self.nonce()
        )
        record = EscrowTransaction(
            id=transaction_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            subject=Subject(item_id=item_id, amount=amount),
            fees=fees,
            status=TransactionStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        agreement = Agreement(
            transaction_id=transaction_id,
            terms=AgreementTerms(
                inspection_period_days=days,
                return_policy=return_policy,
                shipping_responsibility=_as_party(shipping_responsibility),
                insurance_required=amount > INSURANCE_THRESHOLD,
                dispute_resolution=resolution_mode,
            ),
            conditions=conditions or AgreementConditions(
                product_condition=DEFAULT_PRODUCT_CONDITION,
                delivery_method=DEFAULT_DELIVERY_METHOD,
            ),
            signed_at=now,
        )

        await self._transactions.create(record)
        await self._agreements.create(agreement)
        logger.info(
            f"Escrow transaction created: {transaction_id} "
            f"amount={amount} total_fee={fees.total_fee}"
        )
        return record

    async def sign_agreement(self, transaction_id: str, caller_id: str) -> Agreement:
        record = await self.get(transaction_id)
        role = self.require_party(record, caller_id)
        agreement = await self._agreements.get_by_transaction(transaction_id)
        if role is Party.BUYER:
            if agreement.buyer_signed:
                raise EscrowError(ErrorCode.STATE_CONFLICT, "buyer already signed")
            agreement = replace(agreement, buyer_signed=True)
        else:
            if agreement.seller_signed:
                raise EscrowError(ErrorCode.STATE_CONFLICT, "seller already signed")
            agreement = replace(agreement, seller_signed=True)
        agreement = replace(agreement, revision=agreement.revision + 1)
        await self._agreements.compare_and_set(agreement)
        logger.info(f"Agreement for {transaction_id} signed by {role.value}")
        return agreement

    # --- fund ---

    async def fund(self, transaction_id: str, caller_id: str, method: str = "card") -> EscrowTransaction:
        record = await self.get(transaction_id)
        self._require_role(record, caller_id, Party.BUYER)
        self._require_status(record, TransactionStatus.PENDING, "fund")
        if method not in PAYMENT_METHODS:
            raise EscrowError(ErrorCode.INVALID_INPUT, f"unsupported payment method: {method!r}")

        if self._limits is not None:
            ceiling = await self._limits.max_allowed_amount(record.seller_id)
            if record.amount > ceiling:
                raise EscrowError(
                    ErrorCode.LIMIT_EXCEEDED,
                    f"amount {record.amount} exceeds seller limit {ceiling}",
                )

        charge = record.amount + record.fees.total_fee
        try:
            result = await self._call_processor(
                "charge",
                self._payments.charge(
                    record.buyer_id, charge, method, f"{transaction_id}:fund"
                ),
                declined=ErrorCode.PAYMENT_DECLINED,
            )
        except EscrowError as exc:
            logger.warning(f"Funding attempt for {transaction_id} failed: {exc}")
            raise

        now = self.stamp(record)
        funded = replace(
            record,
            status=TransactionStatus.FUNDED,
            funded_at=now,
            updated_at=now,
            payment_method=method,
        )
        funded = await self.commit(record, funded)
        logger.info(f"Escrow transaction funded: {transaction_id} reference={result.reference}")
        await self.notify(
            record.seller_id,
            EventType.PAYMENT_RECEIVED,
            {"transaction_id": transaction_id, "amount": record.amount},
        )
        return funded

    # --- ship ---

    async def ship(
        self, transaction_id: str, caller_id: str, carrier: str, tracking_number: str
    ) -> EscrowTransaction:
        record = await self.get(transaction_id)
        self._require_role(record, caller_id, Party.SELLER)
        carrier = _require_text(carrier, "carrier")
        tracking_number = _require_text(tracking_number, "tracking number")
        self._require_status(record, TransactionStatus.FUNDED, "ship")

        now = self.stamp(record)
        shipped = replace(
            record,
            status=TransactionStatus.SHIPPED,
            shipped_at=now,
            updated_at=now,
            tracking=TrackingInfo(
                carrier=carrier,
                tracking_number=tracking_number,
                status="shipped",
                last_update=now,
            ),
        )
        shipped = await self.commit(record, shipped)
        logger.info(f"Escrow transaction shipped: {transaction_id} via {carrier}")
        await self.notify(
            record.buyer_id,
            EventType.ITEM_SHIPPED,
            {
                "transaction_id": transaction_id,
                "carrier": carrier,
                "tracking_number": tracking_number,
            },
        )
        return shipped

    # --- delivery ---

    async def confirm_delivery(self, transaction_id: str, caller_id: str) -> EscrowTransaction:
        record = await self.get(transaction_id)
        self._require_role(record, caller_id, Party.BUYER)
        return await self._deliver(record, source="buyer")

    async def record_carrier_update(
        self, transaction_id: str, carrier_status: str
    ) -> EscrowTransaction:
        """Apply a carrier tracking event; a `delivered` event confirms delivery."""
        carrier_status = _require_text(carrier_status, "carrier status").lower()
        record = await self.get(transaction_id)
        if record.tracking is None or record.status not in (
            TransactionStatus.SHIPPED,
            TransactionStatus.DELIVERED,
        ):
            raise EscrowError(
                ErrorCode.STATE_CONFLICT,
                f"cannot track transaction in status {record.status.value}",
            )

        now = self.stamp(record)
        tracking = replace(record.tracking, status=carrier_status, last_update=now)
        if record.status == TransactionStatus.SHIPPED and carrier_status == CARRIER_DELIVERED:
            return await self._deliver(record, source="carrier", tracking=tracking)

        updated = replace(record, tracking=tracking, updated_at=now)
        updated = await self.commit(record, updated)
        logger.debug(f"Tracking for {transaction_id} now {carrier_status}")
        return updated

    async def _deliver(
        self,
        record: EscrowTransaction,
        source: str,
        tracking: Optional[TrackingInfo] = None,
    ) -> EscrowTransaction:
        self._require_status(record, TransactionStatus.SHIPPED, "confirm delivery")
        agreement = await self._agreements.get_by_transaction(record.id)

        now = self.stamp(record)
        delivered = replace(
            record,
            status=TransactionStatus.DELIVERED,
            delivered_at=now,
            updated_at=now,
            tracking=tracking or record.tracking,
        )
        delivered = await self.commit(record, delivered)

        # Scheduled after the commit so the worker never sees a pre-delivery record.
        due_at = now + timedelta(days=agreement.terms.inspection_period_days)
        await self._due_work.schedule(
            DueWork(transaction_id=record.id, action=DueAction.AUTO_COMPLETE, due_at=due_at)
        )
        logger.info(
            f"Escrow transaction delivered: {record.id} ({source}), "
            f"auto-complete due {due_at.isoformat()}"
        )
        await self.notify(
            record.seller_id,
            EventType.ITEM_DELIVERED,
            {"transaction_id": record.id, "inspection_ends_at": due_at.isoformat()},
        )
        return delivered

    # --- completion ---

    async def auto_complete(self, transaction_id: str) -> EscrowTransaction:
        """Release funds after the inspection window. Called by the worker."""
        record = await self.get(transaction_id)
        self._require_status(record, TransactionStatus.DELIVERED, "auto-complete")
        return await self._release(record, source="inspection window elapsed")

    async def accept(self, transaction_id: str, caller_id: str) -> EscrowTransaction:
        """Buyer accepts the item before the inspection window closes."""
        record = await self.get(transaction_id)
        self._require_role(record, caller_id, Party.BUYER)
        self._require_status(record, TransactionStatus.DELIVERED, "accept")
        return await self._release(record, source="buyer acceptance")

    async def _release(self, record: EscrowTransaction, source: str) -> EscrowTransaction:
        now = self.stamp(record)
        completed = replace(
            record,
            status=TransactionStatus.COMPLETED,
            completed_at=now,
            updated_at=now,
        )
        completed = await self.commit(record, completed)

        amount = seller_payout(record.amount, record.fees)
        try:
            await self.pay_seller(record, amount, f"{record.id}:release")
        except EscrowError:
            await self.restore(completed, record)
            raise

        logger.info(f"Escrow transaction completed: {record.id} ({source}) payout={amount}")
        await self.notify(
            record.buyer_id, EventType.TRANSACTION_COMPLETED, {"transaction_id": record.id}
        )
        await self.notify(
            record.seller_id,
            EventType.PAYMENT_RELEASED,
            {"transaction_id": record.id, "amount": amount},
        )
        return completed

    # --- queries ---

    async def get(self, transaction_id: str) -> EscrowTransaction:
        return await self._transactions.get_by_id(transaction_id)

    async def get_agreement(self, transaction_id: str) -> Agreement:
        return await self._agreements.get_by_transaction(transaction_id)

    async def list_for_party(
        self, party_id: str, role: Union[Party, str]
    ) -> List[EscrowTransaction]:
        return await self._transactions.query_by_party(party_id, _as_party(role))

    async def stats(self) -> EscrowStats:
        records = await self._transactions.all()
        if not records:
            return EscrowStats()
        by_status: Dict[TransactionStatus, int] = {}
        for r in records:
            by_status[r.status] = by_status.get(r.status, 0) + 1
        volume = sum(r.amount for r in records)
        active = sum(by_status.get(TransactionStatus(s), 0) for s in ACTIVE_STATUSES)
        return EscrowStats(
            total_transactions=len(records),
            active_transactions=active,
            completed_transactions=by_status.get(TransactionStatus.COMPLETED, 0),
            disputed_transactions=by_status.get(TransactionStatus.DISPUTED, 0),
            refunded_transactions=by_status.get(TransactionStatus.REFUNDED, 0),
            total_volume=volume,
            average_transaction_value=volume / len(records),
        )

    # --- shared with the dispute module ---

    def stamp(self, record: EscrowTransaction) -> datetime:
        # Phase timestamps never run backwards, even if the clock does.
        return max(self._clock(), record.updated_at)

    async def commit(
        self, current: EscrowTransaction, successor: EscrowTransaction
    ) -> EscrowTransaction:
        """Write `successor` over `current`, exactly as it was read; returns the stored record."""
        stored = replace(successor, revision=current.revision + 1)
        try:
            await self._transactions.compare_and_set(current.id, current.status, stored)
        except EscrowError as exc:
            if exc.code == ErrorCode.STATE_CONFLICT:
                logger.warning(f"Lost update on {current.id}: {exc.message}")
            raise
        return stored

    async def restore(
        self, committed: EscrowTransaction, previous: EscrowTransaction
    ) -> EscrowTransaction:
        """Put back `previous` after a settlement whose money movement failed."""
        stored = await self.commit(committed, previous)
        logger.warning(
            f"Transaction {previous.id} restored to {previous.status.value} "
            f"after failed settlement"
        )
        return stored

    async def pay_seller(self, record: EscrowTransaction, amount: int, key: str) -> None:
        if amount <= 0:
            return
        await self._call_processor("payout", self._payouts.payout(record.seller_id, amount, key))

    async def refund_buyer(self, record: EscrowTransaction, amount: int, key: str) -> None:
        if amount <= 0:
            return
        await self._call_processor("refund", self._payouts.refund(record.buyer_id, amount, key))

    async def _call_processor(
        self,
        operation: str,
        call: Awaitable[ProcessorResult],
        declined: ErrorCode = ErrorCode.PROCESSOR_FAILURE,
    ) -> ProcessorResult:
        try:
            if self._processor_timeout:
                result = await asyncio.wait_for(call, self._processor_timeout)
            else:
                result = await call
        except asyncio.TimeoutError as exc:
            raise EscrowError(ErrorCode.PROCESSOR_FAILURE, f"{operation} timed out") from exc
        except ProcessorError as exc:
            raise EscrowError(ErrorCode.PROCESSOR_FAILURE, f"{operation} failed: {exc}") from exc
        if not result.ok:
            logger.warning(f"{operation} rejected: {result.error}")
            raise EscrowError(declined, f"{operation} rejected: {result.error}")
        return result

    async def notify(self, user_id: str, event: EventType, payload: Dict[str, Any]) -> None:
        # Fire and forget: delivery problems are the gateway's, never the caller's.
        try:
            await self._notifier.notify(user_id, event.value, payload)
        except Exception:
            logger.exception(f"Notification {event.value} to {user_id} failed")

    def require_party(self, record: EscrowTransaction, caller_id: str) -> Party:
        role = record.role_of(caller_id)
        if role is None:
            raise EscrowError(
                ErrorCode.UNAUTHORIZED, f"{caller_id} is not a party to {record.id}"
            )
        return role

    @staticmethod
    def _require_role(record: EscrowTransaction, caller_id: str, party: Party) -> None:
        if record.party_id(party) != caller_id:
            raise EscrowError(
                ErrorCode.UNAUTHORIZED, f"only the {party.value} may perform this action"
            )

    @staticmethod
    def _require_status(
        record: EscrowTransaction, expected: TransactionStatus, operation: str
    ) -> None:
        if record.status != expected:
            raise EscrowError(
                ErrorCode.STATE_CONFLICT,
                f"cannot {operation} transaction in status {record.status.value}",
            )
