"""Deterministic collaborators for tests and scenario runs."""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from .config import EngineConfig
from .engine import EscrowEngine
from .processors import ProcessorError, ProcessorResult
from .scheduler import AutoCompleteWorker
from .store import (
    InMemoryAgreementStore,
    InMemoryDisputeStore,
    InMemoryDueWorkStore,
    InMemoryTransactionStore,
)

EPOCH = datetime(2025, 1, 1, tzinfo=timezone.utc)

# Named parties used across tests and scenarios
BUYER = "buyer-alice"
SELLER = "seller-bob"
STRANGER = "mallory"


class ManualClock:
    def __init__(self, start: datetime = EPOCH):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> datetime:
        self.current = self.current + delta
        return self.current

    def set(self, moment: datetime) -> None:
        self.current = moment


class CountingNonce:
    """Deterministic id nonces so replays produce identical records."""

    def __init__(self) -> None:
        self._counter = itertools.count(1)

    def __call__(self) -> str:
        return f"{next(self._counter):016x}"


class _ScriptedProcessor:
    """Succeeds unless told otherwise; repeats of an idempotency key are free."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, int, str]] = []
        self.declines: int = 0
        self.errors: int = 0
        self.op_errors: Dict[str, int] = {}
        self.yield_before_reply = False
        self._seen: Set[str] = set()

    def decline_next(self, count: int = 1) -> None:
        self.declines += count

    def fail_next(self, count: int = 1, op: Optional[str] = None) -> None:
        """Raise on the next `count` calls, or only on calls of `op` when given."""
        if op is None:
            self.errors += count
        else:
            self.op_errors[op] = self.op_errors.get(op, 0) + count

    async def _handle(self, op: str, party: str, amount: int, key: str) -> ProcessorResult:
        if self.yield_before_reply:
            await asyncio.sleep(0)
        if self.op_errors.get(op):
            self.op_errors[op] -= 1
            raise ProcessorError(f"{op} gateway unavailable")
        if self.errors:
            self.errors -= 1
            raise ProcessorError(f"{op} gateway unavailable")
        if self.declines:
            self.declines -= 1
            return ProcessorResult.failure(f"{op} declined")
        if key in self._seen:
            return ProcessorResult.success(reference=f"dup:{key}")
        self._seen.add(key)
        self.calls.append((op, party, amount, key))
        return ProcessorResult.success(reference=f"{op}-{len(self.calls)}")

    def total(self, op: str, party: Optional[str] = None) -> int:
        return sum(
            amount for (o, p, amount, _) in self.calls
            if o == op and (party is None or p == party)
        )


class FakePaymentProcessor(_ScriptedProcessor):
    async def charge(
        self, buyer_id: str, amount: int, method: str, idempotency_key: str
    ) -> ProcessorResult:
        return await self._handle("charge", buyer_id, amount, idempotency_key)


class FakePayoutProcessor(_ScriptedProcessor):
    async def payout(self, seller_id: str, amount: int, idempotency_key: str) -> ProcessorResult:
        return await self._handle("payout", seller_id, amount, idempotency_key)

    async def refund(self, buyer_id: str, amount: int, idempotency_key: str) -> ProcessorResult:
        return await self._handle("refund", buyer_id, amount, idempotency_key)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []
        self.broken = False

    async def notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if self.broken:
            raise ConnectionError("notification gateway down")
        self.events.append((user_id, event_type, payload))

    def for_user(self, user_id: str) -> List[str]:
        return [event for (user, event, _) in self.events if user == user_id]


class StaticLimits:
    def __init__(self, default: int = 10**12, per_seller: Optional[Dict[str, int]] = None):
        self.default = default
        self.per_seller = dict(per_seller or {})

    async def max_allowed_amount(self, seller_id: str) -> int:
        return self.per_seller.get(seller_id, self.default)


@dataclass
class Harness:
    """An in-memory engine with every collaborator exposed."""
    engine: EscrowEngine
    worker: AutoCompleteWorker
    clock: ManualClock
    payments: FakePaymentProcessor
    payouts: FakePayoutProcessor
    notifier: RecordingNotifier
    limits: StaticLimits
    transactions: InMemoryTransactionStore
    due_work: InMemoryDueWorkStore


def build_harness(
    config: Optional[EngineConfig] = None,
    start: datetime = EPOCH,
    *,
    transactions: Optional[InMemoryTransactionStore] = None,
    agreements: Optional[InMemoryAgreementStore] = None,
    disputes: Optional[InMemoryDisputeStore] = None,
) -> Harness:
    """Wire an engine to fakes; pass stores to observe or interleave persistence."""
    config = config or EngineConfig()
    clock = ManualClock(start)
    payments = FakePaymentProcessor()
    payouts = FakePayoutProcessor()
    notifier = RecordingNotifier()
    limits = StaticLimits()
    transactions = transactions or InMemoryTransactionStore()
    due_work = InMemoryDueWorkStore()
    engine = EscrowEngine.from_config(
        config,
        transactions=transactions,
        agreements=agreements or InMemoryAgreementStore(),
        disputes=disputes or InMemoryDisputeStore(),
        due_work=due_work,
        payments=payments,
        payouts=payouts,
        notifier=notifier,
        limits=limits,
        clock=clock,
        nonce=CountingNonce(),
    )
    worker = AutoCompleteWorker(engine, due_work, clock=clock)
    return Harness(
        engine=engine,
        worker=worker,
        clock=clock,
        payments=payments,
        payouts=payouts,
        notifier=notifier,
        limits=limits,
        transactions=transactions,
        due_work=due_work,
    )
