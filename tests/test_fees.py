"""Fee calculation vectors."""

from __future__ import annotations

import pytest

from trust_escrow.config import FEE_CEILING, FEE_FLOOR
from trust_escrow.errors import ErrorCode, EscrowError
from trust_escrow.fees import FeeSchedule, calculate_fees, seller_payout
from trust_escrow.types import Fees


def _fee_vector(name: str, amount: int) -> dict:
    fees = calculate_fees(amount)
    return {
        "name": name,
        "input": {"amount": amount},
        "expected": {
            "escrow_fee": fees.escrow_fee,
            "platform_fee": fees.platform_fee,
            "total_fee": fees.total_fee,
        },
    }


def test_fees_standard_amount(vector_test_group) -> None:
    fees = calculate_fees(10_000)
    assert fees == Fees(escrow_fee=250, platform_fee=300, total_fee=550)
    vector_test_group("fees/calculate.json", _fee_vector("fees_standard_amount", 10_000))


def test_fees_truncate_fractional_units(vector_test_group) -> None:
    fees = calculate_fees(10_001)
    assert (fees.escrow_fee, fees.platform_fee) == (250, 300)
    vector_test_group("fees/calculate.json", _fee_vector("fees_truncate", 10_001))


def test_fees_floor_applies_per_component(vector_test_group) -> None:
    assert calculate_fees(1_000) == Fees(escrow_fee=100, platform_fee=100, total_fee=200)
    assert calculate_fees(4_000) == Fees(escrow_fee=100, platform_fee=120, total_fee=220)
    assert calculate_fees(1) == Fees(escrow_fee=100, platform_fee=100, total_fee=200)
    vector_test_group("fees/calculate.json", _fee_vector("fees_floor", 1_000))


def test_fees_total_capped_at_ceiling(vector_test_group) -> None:
    assert calculate_fees(90_000).total_fee == 4_950
    assert calculate_fees(100_000).total_fee == FEE_CEILING
    big = calculate_fees(1_000_000)
    assert (big.escrow_fee, big.platform_fee, big.total_fee) == (25_000, 30_000, FEE_CEILING)
    vector_test_group("fees/calculate.json", _fee_vector("fees_ceiling", 1_000_000))


@pytest.mark.parametrize("amount", [1, 99, 5_000, 10_000, 123_457, 199_999, 10**9])
def test_fee_bounds(amount: int) -> None:
    fees = calculate_fees(amount)
    assert 0 <= fees.total_fee <= FEE_CEILING
    assert fees.escrow_fee >= FEE_FLOOR
    assert fees.platform_fee >= FEE_FLOOR


@pytest.mark.parametrize("amount", [0, -5, 1.5, "100", True, None])
def test_fees_reject_invalid_amount(amount) -> None:
    with pytest.raises(EscrowError) as exc:
        calculate_fees(amount)
    assert exc.value.code == ErrorCode.INVALID_AMOUNT
    assert exc.value.kind == "InvalidInput"


def test_custom_schedule() -> None:
    schedule = FeeSchedule(escrow_fee_bps=100, platform_fee_bps=0, floor=0, ceiling=10**9)
    assert calculate_fees(50_000, schedule) == Fees(escrow_fee=500, platform_fee=0, total_fee=500)


def test_schedule_rejects_bad_rates() -> None:
    with pytest.raises(EscrowError) as exc:
        FeeSchedule(escrow_fee_bps=10_001)
    assert exc.value.code == ErrorCode.INVALID_INPUT
    with pytest.raises(EscrowError):
        FeeSchedule(floor=500, ceiling=100)


def test_seller_payout() -> None:
    fees = calculate_fees(10_000)
    assert seller_payout(10_000, fees) == 9_700
    assert seller_payout(10_000, fees, refund_amount=3_000) == 6_700
    # Small transactions can leave nothing after the platform fee.
    assert seller_payout(50, calculate_fees(50)) == 0
    assert seller_payout(10_000, fees, refund_amount=10_000) == 0
