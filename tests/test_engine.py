"""Escrow lifecycle: create, fund, ship, deliver, complete."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from trust_escrow.config import EngineConfig
from trust_escrow.errors import ErrorCode, EscrowError
from trust_escrow.store import InMemoryAgreementStore, InMemoryTransactionStore
from trust_escrow.testing import BUYER, EPOCH, SELLER, STRANGER, Harness, build_harness
from trust_escrow.types import (
    Agreement,
    DueAction,
    DueStatus,
    EscrowTransaction,
    Party,
    TransactionStatus,
)


async def _created(h: Harness, amount: int = 10_000, **kwargs) -> EscrowTransaction:
    return await h.engine.create(BUYER, SELLER, "item-1", amount, **kwargs)


async def _funded(h: Harness, amount: int = 10_000) -> EscrowTransaction:
    record = await _created(h, amount)
    h.clock.advance(timedelta(hours=1))
    return await h.engine.fund(record.id, BUYER)


async def _shipped(h: Harness, amount: int = 10_000) -> EscrowTransaction:
    record = await _funded(h, amount)
    h.clock.advance(timedelta(hours=1))
    return await h.engine.ship(record.id, SELLER, "ups", "1Z999AA10123456784")


async def _delivered(h: Harness, amount: int = 10_000) -> EscrowTransaction:
    record = await _shipped(h, amount)
    h.clock.advance(timedelta(days=2))
    return await h.engine.confirm_delivery(record.id, BUYER)


def _code(exc_info) -> ErrorCode:
    return exc_info.value.code


class _YieldingTransactionStore(InMemoryTransactionStore):
    """Suspends after every read so concurrent callers interleave."""

    async def get_by_id(self, transaction_id: str) -> EscrowTransaction:
        record = await super().get_by_id(transaction_id)
        await asyncio.sleep(0)
        return record


class _YieldingAgreementStore(InMemoryAgreementStore):
    async def get_by_transaction(self, transaction_id: str) -> Agreement:
        agreement = await super().get_by_transaction(transaction_id)
        await asyncio.sleep(0)
        return agreement


# --- create ---


def test_create_pending_with_fees_and_agreement(harness) -> None:
    async def run() -> None:
        record = await _created(harness)
        assert record.status == TransactionStatus.PENDING
        assert record.created_at == EPOCH
        assert record.fees.total_fee == 550
        assert record.funded_at is None and record.refund_amount is None

        agreement = await harness.engine.get_agreement(record.id)
        assert agreement.terms.inspection_period_days == 7
        assert agreement.terms.shipping_responsibility == Party.SELLER
        assert agreement.terms.insurance_required is False
        assert agreement.conditions.product_condition == "Like new"
        assert not agreement.buyer_signed and not agreement.seller_signed

    asyncio.run(run())


def test_create_small_amount_fees(harness) -> None:
    record = asyncio.run(_created(harness, 1_000))
    assert (record.fees.escrow_fee, record.fees.platform_fee, record.fees.total_fee) == (
        100,
        100,
        200,
    )


def test_create_insurance_above_threshold(harness) -> None:
    async def run() -> None:
        record = await _created(harness, 10_001)
        agreement = await harness.engine.get_agreement(record.id)
        assert agreement.terms.insurance_required is True

    asyncio.run(run())


def test_create_custom_inspection_period(harness) -> None:
    async def run() -> None:
        record = await _created(harness, inspection_period_days=3)
        agreement = await harness.engine.get_agreement(record.id)
        assert agreement.terms.inspection_period_days == 3

    asyncio.run(run())


@pytest.mark.parametrize(
    "buyer,seller,item,amount,code",
    [
        (BUYER, BUYER, "item-1", 10_000, ErrorCode.SELF_DEALING),
        ("", SELLER, "item-1", 10_000, ErrorCode.INVALID_INPUT),
        (BUYER, "  ", "item-1", 10_000, ErrorCode.INVALID_INPUT),
        (BUYER, SELLER, "", 10_000, ErrorCode.INVALID_INPUT),
        (BUYER, SELLER, "item-1", 0, ErrorCode.INVALID_AMOUNT),
        (BUYER, SELLER, "item-1", -1, ErrorCode.INVALID_AMOUNT),
    ],
)
def test_create_rejects_bad_input(harness, buyer, seller, item, amount, code) -> None:
    with pytest.raises(EscrowError) as exc:
        asyncio.run(harness.engine.create(buyer, seller, item, amount))
    assert _code(exc) == code
    assert exc.value.kind == "InvalidInput"
    assert asyncio.run(harness.engine.stats()).total_transactions == 0


def test_create_rejects_inspection_period_out_of_range(harness) -> None:
    with pytest.raises(EscrowError) as exc:
        asyncio.run(_created(harness, inspection_period_days=365))
    assert _code(exc) == ErrorCode.INVALID_INPUT


def test_sign_agreement_each_party_once(harness) -> None:
    async def run() -> None:
        record = await _created(harness)
        await harness.engine.sign_agreement(record.id, BUYER)
        agreement = await harness.engine.sign_agreement(record.id, SELLER)
        assert agreement.buyer_signed and agreement.seller_signed

        with pytest.raises(EscrowError) as exc:
            await harness.engine.sign_agreement(record.id, BUYER)
        assert _code(exc) == ErrorCode.STATE_CONFLICT

        with pytest.raises(EscrowError) as exc:
            await harness.engine.sign_agreement(record.id, STRANGER)
        assert _code(exc) == ErrorCode.UNAUTHORIZED

    asyncio.run(run())


def test_concurrent_signatures_are_not_lost() -> None:
    harness = build_harness(agreements=_YieldingAgreementStore())

    async def run() -> None:
        record = await _created(harness)
        results = await asyncio.gather(
            harness.engine.sign_agreement(record.id, BUYER),
            harness.engine.sign_agreement(record.id, SELLER),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, EscrowError)]
        assert len(errors) == 1 and errors[0].code == ErrorCode.STATE_CONFLICT

        # The loser re-reads and signs on top of the winner's signature.
        loser = SELLER if isinstance(results[1], EscrowError) else BUYER
        agreement = await harness.engine.sign_agreement(record.id, loser)
        assert agreement.buyer_signed and agreement.seller_signed
        stored = await harness.engine.get_agreement(record.id)
        assert stored.buyer_signed and stored.seller_signed
        assert stored.revision == 2

    asyncio.run(run())


# --- fund ---


def test_fund_charges_amount_plus_fee(harness) -> None:
    record = asyncio.run(_funded(harness))
    assert record.status == TransactionStatus.FUNDED
    assert record.funded_at == EPOCH + timedelta(hours=1)
    assert record.payment_method == "card"
    assert harness.payments.calls == [("charge", BUYER, 10_550, f"{record.id}:fund")]
    assert harness.notifier.for_user(SELLER) == ["payment_received"]


def test_fund_twice_conflicts(harness) -> None:
    async def run() -> None:
        record = await _created(harness)
        await harness.engine.fund(record.id, BUYER)
        with pytest.raises(EscrowError) as exc:
            await harness.engine.fund(record.id, BUYER)
        assert _code(exc) == ErrorCode.STATE_CONFLICT
        assert exc.value.kind == "StateConflict"
        assert harness.payments.total("charge") == 10_550

    asyncio.run(run())


def test_fund_only_by_buyer(harness) -> None:
    async def run() -> None:
        record = await _created(harness)
        for caller in (SELLER, STRANGER):
            with pytest.raises(EscrowError) as exc:
                await harness.engine.fund(record.id, caller)
            assert _code(exc) == ErrorCode.UNAUTHORIZED
        assert harness.payments.calls == []

    asyncio.run(run())


def test_fund_unknown_method(harness) -> None:
    async def run() -> None:
        record = await _created(harness)
        with pytest.raises(EscrowError) as exc:
            await harness.engine.fund(record.id, BUYER, method="crypto")
        assert _code(exc) == ErrorCode.INVALID_INPUT

    asyncio.run(run())


def test_fund_over_seller_limit(harness) -> None:
    async def run() -> None:
        harness.limits.per_seller[SELLER] = 5_000
        record = await _created(harness)
        with pytest.raises(EscrowError) as exc:
            await harness.engine.fund(record.id, BUYER)
        assert _code(exc) == ErrorCode.LIMIT_EXCEEDED
        assert exc.value.kind == "LimitExceeded"
        assert (await harness.engine.get(record.id)).status == TransactionStatus.PENDING
        assert harness.payments.calls == []

    asyncio.run(run())


def test_fund_declined_then_retried(harness) -> None:
    async def run() -> None:
        record = await _created(harness)
        harness.payments.decline_next()
        with pytest.raises(EscrowError) as exc:
            await harness.engine.fund(record.id, BUYER)
        assert _code(exc) == ErrorCode.PAYMENT_DECLINED
        assert exc.value.retryable
        assert (await harness.engine.get(record.id)).status == TransactionStatus.PENDING

        funded = await harness.engine.fund(record.id, BUYER)
        assert funded.status == TransactionStatus.FUNDED
        assert harness.payments.total("charge") == 10_550

    asyncio.run(run())


def test_fund_processor_error(harness) -> None:
    async def run() -> None:
        record = await _created(harness)
        harness.payments.fail_next()
        with pytest.raises(EscrowError) as exc:
            await harness.engine.fund(record.id, BUYER)
        assert _code(exc) == ErrorCode.PROCESSOR_FAILURE
        assert exc.value.kind == "ProcessorFailure"
        assert isinstance(exc.value.__cause__, Exception)
        assert (await harness.engine.get(record.id)).status == TransactionStatus.PENDING

    asyncio.run(run())


def test_fund_processor_timeout() -> None:
    h = build_harness(EngineConfig(processor_timeout=0.01))

    async def slow_charge(*args, **kwargs):
        await asyncio.sleep(1)

    async def run() -> None:
        record = await _created(h)
        h.payments.charge = slow_charge
        with pytest.raises(EscrowError) as exc:
            await h.engine.fund(record.id, BUYER)
        assert _code(exc) == ErrorCode.PROCESSOR_FAILURE
        assert (await h.engine.get(record.id)).status == TransactionStatus.PENDING

    asyncio.run(run())


# --- ship ---


def test_ship_records_tracking(harness) -> None:
    record = asyncio.run(_shipped(harness))
    assert record.status == TransactionStatus.SHIPPED
    assert record.tracking.carrier == "ups"
    assert record.tracking.tracking_number == "1Z999AA10123456784"
    assert record.tracking.status == "shipped"
    assert harness.notifier.for_user(BUYER) == ["item_shipped"]


def test_ship_empty_tracking_number_keeps_funded(harness) -> None:
    async def run() -> None:
        record = await _funded(harness)
        with pytest.raises(EscrowError) as exc:
            await harness.engine.ship(record.id, SELLER, "ups", "")
        assert _code(exc) == ErrorCode.INVALID_INPUT
        assert (await harness.engine.get(record.id)).status == TransactionStatus.FUNDED

    asyncio.run(run())


def test_ship_guards(harness) -> None:
    async def run() -> None:
        pending = await _created(harness)
        with pytest.raises(EscrowError) as exc:
            await harness.engine.ship(pending.id, SELLER, "ups", "1Z")
        assert _code(exc) == ErrorCode.STATE_CONFLICT

        funded = await harness.engine.fund(pending.id, BUYER)
        with pytest.raises(EscrowError) as exc:
            await harness.engine.ship(funded.id, BUYER, "ups", "1Z")
        assert _code(exc) == ErrorCode.UNAUTHORIZED

    asyncio.run(run())


# --- delivery ---


def test_confirm_delivery_schedules_auto_complete(harness) -> None:
    async def run() -> None:
        record = await _delivered(harness)
        assert record.status == TransactionStatus.DELIVERED
        work = await harness.due_work.get(record.id)
        assert work.action == DueAction.AUTO_COMPLETE
        assert work.status == DueStatus.SCHEDULED
        assert work.due_at == record.delivered_at + timedelta(days=7)
        assert harness.notifier.for_user(SELLER)[-1] == "item_delivered"

    asyncio.run(run())


def test_confirm_delivery_only_buyer_after_ship(harness) -> None:
    async def run() -> None:
        funded = await _funded(harness)
        with pytest.raises(EscrowError) as exc:
            await harness.engine.confirm_delivery(funded.id, BUYER)
        assert _code(exc) == ErrorCode.STATE_CONFLICT

        await harness.engine.ship(funded.id, SELLER, "ups", "1Z")
        with pytest.raises(EscrowError) as exc:
            await harness.engine.confirm_delivery(funded.id, SELLER)
        assert _code(exc) == ErrorCode.UNAUTHORIZED

    asyncio.run(run())


def test_carrier_updates(harness) -> None:
    async def run() -> None:
        record = await _shipped(harness)
        in_transit = await harness.engine.record_carrier_update(record.id, "in_transit")
        assert in_transit.status == TransactionStatus.SHIPPED
        assert in_transit.tracking.status == "in_transit"

        delivered = await harness.engine.record_carrier_update(record.id, "Delivered")
        assert delivered.status == TransactionStatus.DELIVERED
        assert delivered.tracking.status == "delivered"
        assert await harness.due_work.get(record.id) is not None

    asyncio.run(run())


def test_concurrent_carrier_updates_do_not_overwrite() -> None:
    harness = build_harness(transactions=_YieldingTransactionStore())

    async def run() -> None:
        record = await _shipped(harness)
        results = await asyncio.gather(
            harness.engine.record_carrier_update(record.id, "in_transit"),
            harness.engine.record_carrier_update(record.id, "out_for_delivery"),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, EscrowError)]
        applied = [r for r in results if isinstance(r, EscrowTransaction)]
        assert len(errors) == 1 and errors[0].code == ErrorCode.STATE_CONFLICT
        assert len(applied) == 1

        stored = await harness.engine.get(record.id)
        assert stored.tracking.status == applied[0].tracking.status
        assert stored.revision == record.revision + 1

    asyncio.run(run())


def test_carrier_update_before_ship(harness) -> None:
    async def run() -> None:
        record = await _funded(harness)
        with pytest.raises(EscrowError) as exc:
            await harness.engine.record_carrier_update(record.id, "delivered")
        assert _code(exc) == ErrorCode.STATE_CONFLICT

    asyncio.run(run())


# --- completion ---


def test_accept_releases_to_seller(harness) -> None:
    async def run() -> None:
        record = await _delivered(harness)
        completed = await harness.engine.accept(record.id, BUYER)
        assert completed.status == TransactionStatus.COMPLETED
        assert completed.completed_at >= completed.delivered_at
        assert harness.payouts.calls == [("payout", SELLER, 9_700, f"{record.id}:release")]
        assert harness.notifier.for_user(BUYER)[-1] == "transaction_completed"
        assert harness.notifier.for_user(SELLER)[-1] == "payment_released"

    asyncio.run(run())


def test_accept_payout_failure_restores_delivered(harness) -> None:
    async def run() -> None:
        record = await _delivered(harness)
        harness.payouts.fail_next()
        with pytest.raises(EscrowError) as exc:
            await harness.engine.accept(record.id, BUYER)
        assert _code(exc) == ErrorCode.PROCESSOR_FAILURE
        restored = await harness.engine.get(record.id)
        assert restored.status == TransactionStatus.DELIVERED
        assert restored.completed_at is None

        await harness.engine.accept(record.id, BUYER)
        assert harness.payouts.total("payout", SELLER) == 9_700

    asyncio.run(run())


def test_accept_only_buyer_when_delivered(harness) -> None:
    async def run() -> None:
        record = await _shipped(harness)
        with pytest.raises(EscrowError) as exc:
            await harness.engine.accept(record.id, BUYER)
        assert _code(exc) == ErrorCode.STATE_CONFLICT

        await harness.engine.confirm_delivery(record.id, BUYER)
        with pytest.raises(EscrowError) as exc:
            await harness.engine.accept(record.id, SELLER)
        assert _code(exc) == ErrorCode.UNAUTHORIZED

    asyncio.run(run())


def test_timestamps_never_run_backwards(harness) -> None:
    async def run() -> None:
        record = await _funded(harness)
        harness.clock.set(EPOCH - timedelta(days=30))
        await harness.engine.ship(record.id, SELLER, "ups", "1Z")
        await harness.engine.confirm_delivery(record.id, BUYER)
        final = await harness.engine.accept(record.id, BUYER)
        assert final.created_at <= final.funded_at <= final.shipped_at
        assert final.shipped_at <= final.delivered_at <= final.completed_at

    asyncio.run(run())


def test_broken_notifier_does_not_fail_transitions(harness) -> None:
    harness.notifier.broken = True
    record = asyncio.run(_delivered(harness))
    assert record.status == TransactionStatus.DELIVERED
    assert harness.notifier.events == []


# --- queries ---


def test_get_unknown(harness) -> None:
    with pytest.raises(EscrowError) as exc:
        asyncio.run(harness.engine.get("missing"))
    assert _code(exc) == ErrorCode.NOT_FOUND


def test_list_for_party_newest_first(harness) -> None:
    async def run() -> None:
        first = await _created(harness)
        harness.clock.advance(timedelta(minutes=5))
        second = await harness.engine.create(BUYER, SELLER, "item-2", 2_000)
        await harness.engine.create(STRANGER, SELLER, "item-3", 3_000)

        mine = await harness.engine.list_for_party(BUYER, "buyer")
        assert [r.id for r in mine] == [second.id, first.id]
        assert len(await harness.engine.list_for_party(SELLER, Party.SELLER)) == 3
        assert await harness.engine.list_for_party(SELLER, Party.BUYER) == []

    asyncio.run(run())


def test_stats(harness) -> None:
    async def run() -> None:
        assert (await harness.engine.stats()).total_transactions == 0
        done = await _delivered(harness, 10_000)
        await harness.engine.accept(done.id, BUYER)
        await harness.engine.create(BUYER, SELLER, "item-2", 2_000)

        stats = await harness.engine.stats()
        assert stats.total_transactions == 2
        assert stats.active_transactions == 1
        assert stats.completed_transactions == 1
        assert stats.total_volume == 12_000
        assert stats.average_transaction_value == 6_000

    asyncio.run(run())
