"""Persistence contracts for escrow records, with in-memory implementations.

Every mutation of a transaction, agreement or dispute goes through
`compare_and_set`. A write is accepted only as the direct successor of the
stored record: its `revision` must be one past the stored revision, and for
transactions and disputes the stored status must still be the status the
caller read. This per-record check is the only serialization between
concurrent callers.
"""

from __future__ import annotations

import asyncio
from copy import deepcopy
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from .errors import ErrorCode, EscrowError
from .types import (
    Agreement,
    Dispute,
    DisputeStatus,
    DueStatus,
    DueWork,
    EscrowTransaction,
    Party,
    TransactionStatus,
)


class TransactionStore(Protocol):
    async def create(self, record: EscrowTransaction) -> None: ...

    async def get_by_id(self, transaction_id: str) -> EscrowTransaction: ...

    async def compare_and_set(
        self,
        transaction_id: str,
        expected_status: TransactionStatus,
        record: EscrowTransaction,
    ) -> None: ...

    async def query_by_party(self, party_id: str, role: Party) -> List[EscrowTransaction]: ...

    async def all(self) -> List[EscrowTransaction]: ...


class AgreementStore(Protocol):
    async def create(self, agreement: Agreement) -> None: ...

    async def get_by_transaction(self, transaction_id: str) -> Agreement: ...

    async def compare_and_set(self, agreement: Agreement) -> None: ...


class DisputeStore(Protocol):
    async def create(self, dispute: Dispute) -> None: ...

    async def get_by_id(self, dispute_id: str) -> Dispute: ...

    async def compare_and_set(
        self, dispute_id: str, expected_status: DisputeStatus, dispute: Dispute
    ) -> None: ...


class DueWorkStore(Protocol):
    async def schedule(self, work: DueWork) -> None: ...

    async def due(self, now: datetime) -> List[DueWork]: ...

    async def update(self, work: DueWork) -> None: ...

    async def get(self, transaction_id: str) -> Optional[DueWork]: ...


# --- In-memory implementations ---


def _check_successor(kind: str, key: str, current_revision: int, new_revision: int) -> None:
    if new_revision != current_revision + 1:
        raise EscrowError(
            ErrorCode.STATE_CONFLICT,
            f"{kind} {key} changed concurrently (revision {current_revision})",
        )


class InMemoryTransactionStore:
    def __init__(self) -> None:
        self._records: Dict[str, EscrowTransaction] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: EscrowTransaction) -> None:
        async with self._lock:
            if record.id in self._records:
                raise EscrowError(ErrorCode.STATE_CONFLICT, f"transaction {record.id} exists")
            self._records[record.id] = deepcopy(record)

    async def get_by_id(self, transaction_id: str) -> EscrowTransaction:
        async with self._lock:
            record = self._records.get(transaction_id)
            if record is None:
                raise EscrowError(ErrorCode.NOT_FOUND, f"transaction {transaction_id} not found")
            return deepcopy(record)

    async def compare_and_set(
        self,
        transaction_id: str,
        expected_status: TransactionStatus,
        record: EscrowTransaction,
    ) -> None:
        async with self._lock:
            current = self._records.get(transaction_id)
            if current is None:
                raise EscrowError(ErrorCode.NOT_FOUND, f"transaction {transaction_id} not found")
            if current.status != expected_status:
                raise EscrowError(
                    ErrorCode.STATE_CONFLICT,
                    f"transaction {transaction_id} is {current.status.value}, "
                    f"expected {expected_status.value}",
                )
            _check_successor("transaction", transaction_id, current.revision, record.revision)
            self._records[transaction_id] = deepcopy(record)

    async def query_by_party(self, party_id: str, role: Party) -> List[EscrowTransaction]:
        async with self._lock:
            if role is Party.BUYER:
                found = [r for r in self._records.values() if r.buyer_id == party_id]
            else:
                found = [r for r in self._records.values() if r.seller_id == party_id]
            found.sort(key=lambda r: r.created_at, reverse=True)
            return deepcopy(found)

    async def all(self) -> List[EscrowTransaction]:
        async with self._lock:
            return deepcopy(list(self._records.values()))


class InMemoryAgreementStore:
    def __init__(self) -> None:
        self._agreements: Dict[str, Agreement] = {}
        self._lock = asyncio.Lock()

    async def create(self, agreement: Agreement) -> None:
        async with self._lock:
            if agreement.transaction_id in self._agreements:
                raise EscrowError(
                    ErrorCode.STATE_CONFLICT,
                    f"agreement for {agreement.transaction_id} exists",
                )
            self._agreements[agreement.transaction_id] = deepcopy(agreement)

    async def get_by_transaction(self, transaction_id: str) -> Agreement:
        async with self._lock:
            agreement = self._agreements.get(transaction_id)
            if agreement is None:
                raise EscrowError(ErrorCode.NOT_FOUND, f"agreement for {transaction_id} not found")
            return deepcopy(agreement)

    async def compare_and_set(self, agreement: Agreement) -> None:
        async with self._lock:
            current = self._agreements.get(agreement.transaction_id)
            if current is None:
                raise EscrowError(
                    ErrorCode.NOT_FOUND, f"agreement for {agreement.transaction_id} not found"
                )
            _check_successor(
                "agreement", agreement.transaction_id, current.revision, agreement.revision
            )
            self._agreements[agreement.transaction_id] = deepcopy(agreement)


class InMemoryDisputeStore:
    def __init__(self) -> None:
        self._disputes: Dict[str, Dispute] = {}
        self._lock = asyncio.Lock()

    async def create(self, dispute: Dispute) -> None:
        async with self._lock:
            if dispute.id in self._disputes:
                raise EscrowError(ErrorCode.STATE_CONFLICT, f"dispute {dispute.id} exists")
            self._disputes[dispute.id] = deepcopy(dispute)

    async def get_by_id(self, dispute_id: str) -> Dispute:
        async with self._lock:
            dispute = self._disputes.get(dispute_id)
            if dispute is None:
                raise EscrowError(ErrorCode.NOT_FOUND, f"dispute {dispute_id} not found")
            return deepcopy(dispute)

    async def compare_and_set(
        self, dispute_id: str, expected_status: DisputeStatus, dispute: Dispute
    ) -> None:
        async with self._lock:
            current = self._disputes.get(dispute_id)
            if current is None:
                raise EscrowError(ErrorCode.NOT_FOUND, f"dispute {dispute_id} not found")
            if current.status != expected_status:
                raise EscrowError(
                    ErrorCode.STATE_CONFLICT,
                    f"dispute {dispute_id} is {current.status.value}, "
                    f"expected {expected_status.value}",
                )
            _check_successor("dispute", dispute_id, current.revision, dispute.revision)
            self._disputes[dispute_id] = deepcopy(dispute)


class InMemoryDueWorkStore:
    """One due-work record per transaction; rescheduling replaces it."""

    def __init__(self) -> None:
        self._work: Dict[str, DueWork] = {}
        self._lock = asyncio.Lock()

    async def schedule(self, work: DueWork) -> None:
        async with self._lock:
            self._work[work.transaction_id] = deepcopy(work)

    async def due(self, now: datetime) -> List[DueWork]:
        async with self._lock:
            ready = [
                w for w in self._work.values()
                if w.status == DueStatus.SCHEDULED and w.due_at <= now
            ]
            ready.sort(key=lambda w: w.due_at)
            return deepcopy(ready)

    async def update(self, work: DueWork) -> None:
        async with self._lock:
            self._work[work.transaction_id] = deepcopy(work)

    async def get(self, transaction_id: str) -> Optional[DueWork]:
        async with self._lock:
            work = self._work.get(transaction_id)
            return deepcopy(work) if work is not None else None
