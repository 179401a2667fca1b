"""Identifier derivation and canonical transaction digest (v1)."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from blake3 import blake3

from .types import EscrowTransaction

ID_HEX_LEN = 32


def derive_id(*parts: str) -> str:
    """Opaque record id: truncated BLAKE3 of the unit-separated parts."""
    buf = "\x1f".join(parts).encode("utf-8")
    return blake3(buf).hexdigest()[:ID_HEX_LEN]


def _u64_be(value: int) -> bytes:
    if value < 0:
        raise ValueError("u64 must be non-negative")
    return int(value).to_bytes(8, "big", signed=False)


def _str(value: Optional[str]) -> bytes:
    data = (value or "").encode("utf-8")
    return _u64_be(len(data)) + data


def _ts(value: Optional[datetime]) -> bytes:
    if value is None:
        return _u64_be(0)
    return _u64_be(int(value.timestamp() * 1_000_000))


def compute_transaction_digest(record: EscrowTransaction) -> str:
    """Compute digest v1 of a transaction snapshot.

    Fields are encoded in canonical order and hashed with BLAKE3-256.
    `updated_at` is excluded so replays with a different clock resolution
    still agree on the lifecycle outcome.
    """
    buf = bytearray()
    buf += _str(record.id)
    buf += _str(record.buyer_id)
    buf += _str(record.seller_id)
    buf += _str(record.subject.item_id)
    buf += _u64_be(record.subject.amount)
    for fee in (record.fees.escrow_fee, record.fees.platform_fee, record.fees.total_fee):
        buf += _u64_be(fee)
    buf += _str(record.status.value)
    for ts in (
        record.created_at,
        record.funded_at,
        record.shipped_at,
        record.delivered_at,
        record.completed_at,
    ):
        buf += _ts(ts)
    buf += _str(record.payment_method)
    if record.tracking is not None:
        buf += b"\x01"
        buf += _str(record.tracking.carrier)
        buf += _str(record.tracking.tracking_number)
        buf += _str(record.tracking.status)
    else:
        buf += b"\x00"
    buf += _str(record.dispute_id)
    if record.refund_amount is None:
        buf += b"\x00"
    else:
        buf += b"\x01" + _u64_be(record.refund_amount)
    return blake3(buf).hexdigest()
