"""External collaborators the escrow engine calls out to."""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol


class ProcessorError(Exception):
    """Raised by processor implementations when a call cannot complete."""


class ProcessorResult:
    """Thin wrapper for payment/payout/refund outcomes."""

    def __init__(self, ok: bool, reference: Optional[str] = None, error: Optional[str] = None):
        self.ok = ok
        self.reference = reference
        self.error = error

    @classmethod
    def success(cls, reference: Optional[str] = None) -> "ProcessorResult":
        return cls(True, reference, None)

    @classmethod
    def failure(cls, error: str) -> "ProcessorResult":
        return cls(False, None, error)

    def __repr__(self) -> str:
        if self.ok:
            return f"ProcessorResult(ok, reference={self.reference!r})"
        return f"ProcessorResult(failed, error={self.error!r})"


class PaymentProcessor(Protocol):
    async def charge(
        self, buyer_id: str, amount: int, method: str, idempotency_key: str
    ) -> ProcessorResult: ...


class PayoutProcessor(Protocol):
    async def payout(
        self, seller_id: str, amount: int, idempotency_key: str
    ) -> ProcessorResult: ...

    async def refund(
        self, buyer_id: str, amount: int, idempotency_key: str
    ) -> ProcessorResult: ...


class NotificationGateway(Protocol):
    async def notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None: ...


class TransactionLimits(Protocol):
    async def max_allowed_amount(self, seller_id: str) -> int: ...
