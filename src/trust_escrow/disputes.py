"""Dispute arbitration.

A dispute moves its transaction to `disputed`; resolving (or withdrawing)
the dispute settles the transaction with exactly one terminal write:
`refunded` when the buyer wins, `completed` when the seller wins.

If a money leg fails after another has gone through, the transaction goes
back to `disputed` and the dispute is held `settling` with its decision;
only a retry of that same decision can finish it.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Iterable, List, Sequence, Tuple, Union

from .config import MAX_DESCRIPTION_LEN, MAX_EVIDENCE_ITEMS, MAX_REASON_LEN
from .digest import derive_id
from .errors import ErrorCode, EscrowError
from .fees import seller_payout
from .store import DisputeStore
from .types import (
    Dispute,
    DisputeStatus,
    EscrowTransaction,
    EventType,
    Evidence,
    EvidenceKind,
    Party,
    Resolution,
    TransactionStatus,
)

if TYPE_CHECKING:
    from .engine import EscrowEngine

logger = logging.getLogger(__name__)

_DISPUTABLE = (TransactionStatus.SHIPPED, TransactionStatus.DELIVERED)


def _check_evidence(items: Iterable[Evidence]) -> List[Evidence]:
    checked = []
    for item in items:
        if not isinstance(item, Evidence):
            raise EscrowError(ErrorCode.INVALID_INPUT, "evidence items must be Evidence")
        if not isinstance(item.kind, EvidenceKind):
            raise EscrowError(ErrorCode.INVALID_INPUT, f"unknown evidence kind: {item.kind!r}")
        if not item.reference:
            raise EscrowError(ErrorCode.INVALID_INPUT, "evidence reference required")
        checked.append(item)
    return checked


def _check_reason(reason: object, name: str = "reason") -> str:
    if not isinstance(reason, str) or not reason.strip():
        raise EscrowError(ErrorCode.INVALID_INPUT, f"{name} required")
    if len(reason) > MAX_REASON_LEN:
        raise EscrowError(ErrorCode.INVALID_INPUT, f"{name} too long")
    return reason.strip()


class DisputeArbitrator:
    def __init__(self, engine: "EscrowEngine", store: DisputeStore):
        self._engine = engine
        self._store = store

    async def get(self, dispute_id: str) -> Dispute:
        return await self._store.get_by_id(dispute_id)

    # --- open ---

    async def open(
        self,
        transaction_id: str,
        caller_id: str,
        reason: str,
        description: str = "",
        evidence: Sequence[Evidence] = (),
    ) -> Dispute:
        record = await self._engine.get(transaction_id)
        initiated_by = self._engine.require_party(record, caller_id)
        reason = _check_reason(reason)
        if len(description) > MAX_DESCRIPTION_LEN:
            raise EscrowError(ErrorCode.INVALID_INPUT, "description too long")
        items = _check_evidence(evidence)
        if len(items) > MAX_EVIDENCE_ITEMS:
            raise EscrowError(ErrorCode.INVALID_INPUT, "too many evidence items")
        if record.status not in _DISPUTABLE:
            raise EscrowError(
                ErrorCode.STATE_CONFLICT,
                f"cannot dispute transaction in status {record.status.value}",
            )

        now = self._engine.stamp(record)
        dispute_id = derive_id(
            transaction_id, caller_id, now.isoformat(), self._engine.nonce()
        )
        dispute = Dispute(
            id=dispute_id,
            transaction_id=transaction_id,
            initiated_by=initiated_by,
            initiator_id=caller_id,
            reason=reason,
            description=description,
            status=DisputeStatus.OPEN,
            created_at=now,
            evidence=items,
        )

        # The transaction write decides the race with auto-complete; the
        # dispute record exists only if that write wins.
        disputed = replace(
            record, status=TransactionStatus.DISPUTED, dispute_id=dispute_id, updated_at=now
        )
        await self._engine.commit(record, disputed)
        await self._store.create(dispute)

        logger.info(
            f"Dispute opened: {dispute_id} on {transaction_id} by {initiated_by.value}"
        )
        counterparty = initiated_by.counterparty
        await self._engine.notify(
            record.party_id(counterparty),
            EventType.DISPUTE_OPENED,
            {"transaction_id": transaction_id, "dispute_id": dispute_id, "reason": reason},
        )
        return dispute

    # --- investigation ---

    async def start_investigation(self, dispute_id: str) -> Dispute:
        dispute = await self.get(dispute_id)
        if dispute.status != DisputeStatus.OPEN:
            raise EscrowError(
                ErrorCode.STATE_CONFLICT,
                f"cannot investigate dispute in status {dispute.status.value}",
            )
        investigating = await self._write(
            dispute, replace(dispute, status=DisputeStatus.INVESTIGATING)
        )
        logger.info(f"Dispute {dispute_id} under investigation")
        return investigating

    async def add_evidence(
        self, dispute_id: str, caller_id: str, evidence: Sequence[Evidence]
    ) -> Dispute:
        dispute = await self.get(dispute_id)
        record = await self._engine.get(dispute.transaction_id)
        self._engine.require_party(record, caller_id)
        items = _check_evidence(evidence)
        if not items:
            raise EscrowError(ErrorCode.INVALID_INPUT, "no evidence given")
        if not dispute.status.pending:
            raise EscrowError(
                ErrorCode.STATE_CONFLICT, f"dispute {dispute_id} is {dispute.status.value}"
            )
        if len(dispute.evidence) + len(items) > MAX_EVIDENCE_ITEMS:
            raise EscrowError(ErrorCode.INVALID_INPUT, "too many evidence items")

        updated = await self._write(dispute, replace(dispute, evidence=dispute.evidence + items))
        logger.debug(f"Dispute {dispute_id}: {len(items)} evidence item(s) added")
        return updated

    # --- resolve / close ---

    async def resolve(
        self,
        dispute_id: str,
        winner: Union[Party, str],
        refund_amount: int,
        reason: str,
    ) -> Dispute:
        """Settle a dispute.

        Buyer wins: the buyer is refunded `refund_amount`, the seller gets
        nothing, the transaction becomes `refunded`.
        Seller wins: the seller is paid `amount - refund_amount - platform_fee`,
        the buyer is refunded `refund_amount`, the transaction becomes
        `completed`.

        A dispute left `settling` by a partly failed settlement accepts only
        the decision it already holds; the retry runs the legs still owed.
        """
        if not isinstance(winner, Party):
            try:
                winner = Party(winner)
            except ValueError:
                raise EscrowError(ErrorCode.INVALID_INPUT, f"unknown winner: {winner!r}") from None
        reason = _check_reason(reason)

        dispute = await self.get(dispute_id)
        held = dispute.resolution if dispute.status == DisputeStatus.SETTLING else None
        if held is not None:
            if held.winner is not winner or held.refund_amount != refund_amount:
                raise EscrowError(
                    ErrorCode.STATE_CONFLICT,
                    f"dispute {dispute_id} is settling as winner={held.winner.value} "
                    f"refund={held.refund_amount}",
                )
            logger.info(f"Retrying settlement of dispute {dispute_id}")
        elif not dispute.status.pending:
            raise EscrowError(
                ErrorCode.STATE_CONFLICT, f"dispute {dispute_id} already {dispute.status.value}"
            )
        record = await self._engine.get(dispute.transaction_id)
        if isinstance(refund_amount, bool) or not isinstance(refund_amount, int):
            raise EscrowError(ErrorCode.INVALID_AMOUNT, "refund amount must be an integer")
        if refund_amount < 0 or refund_amount > record.amount:
            raise EscrowError(
                ErrorCode.INVALID_AMOUNT,
                f"refund amount must be within 0..{record.amount}",
            )

        now = self._engine.stamp(record)
        resolution = held or Resolution(winner=winner, refund_amount=refund_amount, reason=reason)
        resolved = replace(
            dispute, status=DisputeStatus.RESOLVED, resolution=resolution, resolved_at=now
        )
        resolved = await self._settle(dispute, resolved, record, winner, refund_amount)

        logger.info(
            f"Dispute resolved: {dispute_id} winner={winner.value} refund={refund_amount}"
        )
        payload = {
            "dispute_id": dispute_id,
            "transaction_id": record.id,
            "winner": winner.value,
            "refund_amount": refund_amount,
            "reason": resolution.reason,
        }
        await self._engine.notify(record.buyer_id, EventType.DISPUTE_RESOLVED, payload)
        await self._engine.notify(record.seller_id, EventType.DISPUTE_RESOLVED, payload)
        return resolved

    async def close(self, dispute_id: str, caller_id: str) -> Dispute:
        """Withdraw a dispute; funds release to the seller as if it never happened."""
        dispute = await self.get(dispute_id)
        if caller_id != dispute.initiator_id:
            raise EscrowError(ErrorCode.UNAUTHORIZED, "only the initiator may withdraw")
        if not dispute.status.pending:
            raise EscrowError(
                ErrorCode.STATE_CONFLICT, f"dispute {dispute_id} already {dispute.status.value}"
            )
        record = await self._engine.get(dispute.transaction_id)

        now = self._engine.stamp(record)
        closed = replace(dispute, status=DisputeStatus.CLOSED, resolved_at=now)
        closed = await self._settle(dispute, closed, record, Party.SELLER, 0)

        logger.info(f"Dispute closed: {dispute_id} withdrawn by {dispute.initiated_by.value}")
        payload = {"dispute_id": dispute_id, "transaction_id": record.id}
        await self._engine.notify(record.buyer_id, EventType.DISPUTE_CLOSED, payload)
        await self._engine.notify(record.seller_id, EventType.DISPUTE_CLOSED, payload)
        return closed

    async def _write(self, current: Dispute, successor: Dispute) -> Dispute:
        stored = replace(successor, revision=current.revision + 1)
        await self._store.compare_and_set(current.id, current.status, stored)
        return stored

    async def _settle(
        self,
        before: Dispute,
        after: Dispute,
        record: EscrowTransaction,
        winner: Party,
        refund_amount: int,
    ) -> Dispute:
        if record.status != TransactionStatus.DISPUTED:
            raise EscrowError(
                ErrorCode.STATE_CONFLICT,
                f"transaction {record.id} is {record.status.value}, not disputed",
            )

        legs: List[Tuple[str, int]] = []
        if winner is Party.SELLER:
            legs.append(("payout", seller_payout(record.amount, record.fees, refund_amount)))
        legs.append(("refund", refund_amount))

        # Dispute first: its compare-and-set makes settlement happen once.
        decided = await self._write(before, replace(after, settled_legs=[leg for leg, _ in legs]))

        now = after.resolved_at or self._engine.stamp(record)
        if winner is Party.BUYER:
            settled = replace(
                record,
                status=TransactionStatus.REFUNDED,
                refund_amount=refund_amount,
                updated_at=now,
            )
        else:
            settled = replace(
                record,
                status=TransactionStatus.COMPLETED,
                completed_at=now,
                refund_amount=refund_amount,
                updated_at=now,
            )
        try:
            settled = await self._engine.commit(record, settled)
        except EscrowError:
            await self._write(decided, before)
            raise

        done = list(before.settled_legs)
        try:
            for leg, amount in legs:
                if leg in done:
                    continue
                if leg == "payout":
                    await self._engine.pay_seller(record, amount, f"{record.id}:dispute-payout")
                else:
                    await self._engine.refund_buyer(record, amount, f"{record.id}:dispute-refund")
                done.append(leg)
        except EscrowError as exc:
            logger.warning(
                f"Settlement of dispute {before.id} failed, settled legs {done}: {exc}"
            )
            await self._engine.restore(settled, record)
            if done:
                # Money has moved; the decision stays so only it can finish.
                held = replace(
                    decided, status=DisputeStatus.SETTLING, resolved_at=None, settled_legs=done
                )
            else:
                held = before
            await self._write(decided, held)
            raise
        return decided
