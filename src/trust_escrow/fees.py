"""Escrow fee calculation."""

from __future__ import annotations

from dataclasses import dataclass

from .config import ESCROW_FEE_BPS, FEE_CEILING, FEE_FLOOR, MAX_BPS, PLATFORM_FEE_BPS
from .errors import ErrorCode, EscrowError
from .types import Fees


@dataclass(frozen=True)
class FeeSchedule:
    escrow_fee_bps: int = ESCROW_FEE_BPS
    platform_fee_bps: int = PLATFORM_FEE_BPS
    floor: int = FEE_FLOOR
    ceiling: int = FEE_CEILING

    def __post_init__(self) -> None:
        for bps in (self.escrow_fee_bps, self.platform_fee_bps):
            if bps < 0 or bps > MAX_BPS:
                raise EscrowError(ErrorCode.INVALID_INPUT, f"fee rate out of range: {bps} bps")
        if self.floor < 0 or self.ceiling < self.floor:
            raise EscrowError(ErrorCode.INVALID_INPUT, "fee floor/ceiling out of order")


DEFAULT_SCHEDULE = FeeSchedule()


def _bps_of(amount: int, bps: int) -> int:
    # Truncating; fees are whole minor units.
    return amount * bps // MAX_BPS


def calculate_fees(amount: int, schedule: FeeSchedule = DEFAULT_SCHEDULE) -> Fees:
    """Escrow, platform and total fee for a transaction amount.

    Each component is raised to the floor; the total is capped at the ceiling.
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise EscrowError(ErrorCode.INVALID_AMOUNT, "amount must be an integer")
    if amount <= 0:
        raise EscrowError(ErrorCode.INVALID_AMOUNT, "amount must be > 0")

    escrow_fee = max(schedule.floor, _bps_of(amount, schedule.escrow_fee_bps))
    platform_fee = max(schedule.floor, _bps_of(amount, schedule.platform_fee_bps))
    total_fee = min(schedule.ceiling, escrow_fee + platform_fee)
    return Fees(escrow_fee=escrow_fee, platform_fee=platform_fee, total_fee=total_fee)


def seller_payout(amount: int, fees: Fees, refund_amount: int = 0) -> int:
    """Amount released to the seller; never negative."""
    return max(0, amount - refund_amount - fees.platform_fee)
