"""
End-to-end off-ramp scenarios over the fake chain and payout provider
"""

import asyncio
import pytest
from datetime import timedelta
from decimal import Decimal

from models import OfframpStatus
from utils.base_tokens import KNOWN_TOKENS, USDC

from conftest import RECEIVER_ADDRESS

DAI = next(t for t in KNOWN_TOKENS if t.symbol == "DAI")
TEN_DAI = 10 * 10 ** 18


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_dai_deposit_paid_out_in_naira(self, stack, make_row, payout_provider):
        """10 DAI -> 2.1 USDC via 0x -> ₦3465 gross, ₦250 fee, ₦3215 paid"""
        row = await make_row()
        stack.chain.fund(row.deposit_address, TEN_DAI, DAI.address)
        stack.swap_router.zerox.outputs[DAI.address.lower()] = 2_100_000

        report = await stack.monitor.poll_pending_deposits()

        assert report.advanced == [row.transaction_id]
        done = await stack.ledger.get(row.transaction_id)
        assert done.status == "completed"
        assert done.token_symbol == "DAI"
        assert done.token_amount == Decimal("10")
        assert done.usdc_amount == Decimal("2.1")
        assert done.ngn_amount == Decimal("3465")
        assert done.fee_ngn == Decimal("250")
        assert done.net_payout_ngn == Decimal("3215")
        assert done.payout_reference == row.transaction_id
        assert done.swap_provider == "0x"
        for stamp in ("token_received_at", "swapping_at", "usdc_received_at", "paying_at", "completed_at"):
            assert getattr(done, stamp) is not None, stamp

        [payout] = payout_provider.payouts
        assert payout["amount_ngn"] == Decimal("3215")
        assert payout["reference"] == row.transaction_id
        assert stack.chain.balance(RECEIVER_ADDRESS, USDC.address) == 2_100_000

    @pytest.mark.asyncio
    async def test_settled_wallet_is_emptied(self, stack, make_row):
        row = await make_row()
        stack.chain.fund(row.deposit_address, TEN_DAI, DAI.address)
        stack.swap_router.zerox.outputs[DAI.address.lower()] = 2_100_000

        await stack.pipeline.advance(row.transaction_id, trigger="test")

        assert (await stack.ledger.get(row.transaction_id)).status == "completed"
        for token in KNOWN_TOKENS:
            assert stack.chain.balance(row.deposit_address, token.address) == 0, token.symbol
        assert stack.chain.balance(row.deposit_address) > 0
        assert await stack.scanner.is_wallet_empty(row.deposit_address)

    @pytest.mark.asyncio
    async def test_webhook_and_poll_race_pays_once(self, stack, make_row, payout_provider):
        row = await make_row()
        stack.chain.fund(row.deposit_address, TEN_DAI, DAI.address)
        stack.swap_router.zerox.outputs[DAI.address.lower()] = 2_100_000
        event = {"type": "onchain.activity.detected", "data": {"to": row.deposit_address}}

        await asyncio.gather(
            stack.monitor.handle_webhook_event(event),
            stack.monitor.poll_pending_deposits(),
            stack.pipeline.advance(row.transaction_id, trigger="test"),
        )

        assert (await stack.ledger.get(row.transaction_id)).status == "completed"
        assert len(payout_provider.payouts) == 1
        assert len(stack.swap_router.zerox.quotes) == 1
        assert len(stack.chain.sent_of("transfer")) == 1

    @pytest.mark.asyncio
    async def test_advance_is_idempotent_after_completion(self, stack, make_row, payout_provider):
        row = await make_row()
        stack.chain.fund(row.deposit_address, 5_000_000, USDC.address)

        await stack.pipeline.advance(row.transaction_id)
        await stack.pipeline.advance(row.transaction_id)

        assert (await stack.ledger.get(row.transaction_id)).status == "completed"
        assert len(payout_provider.payouts) == 1

    @pytest.mark.asyncio
    async def test_no_deposit_stays_pending(self, stack, make_row):
        row = await make_row()
        result = await stack.pipeline.advance(row.transaction_id)
        assert not result.won
        assert result.reason == "no deposit yet"
        assert (await stack.ledger.get(row.transaction_id)).status == "pending"


class TestStalledSwap:

    @pytest.mark.asyncio
    async def test_recovery_exhausts_last_attempt(self, stack, make_row, payout_provider):
        """Stuck in token_received after two failed swaps, no route anywhere: third attempt fails the row"""
        two_hours_ago = stack.ledger.now() - timedelta(hours=2)
        row = await make_row(
            status=OfframpStatus.TOKEN_RECEIVED.value,
            token_address=DAI.address,
            token_symbol="DAI",
            token_amount_raw=str(TEN_DAI),
            swap_attempt_count=2,
            created_at=two_hours_ago,
            updated_at=two_hours_ago,
        )
        stack.chain.fund(row.deposit_address, TEN_DAI, DAI.address)

        report = await stack.recovery.run()

        assert row.transaction_id in report.redriven
        failed = await stack.ledger.get(row.transaction_id)
        assert failed.status == "failed"
        assert failed.swap_attempt_count == 3
        assert "manual review" in failed.error_message
        assert payout_provider.payouts == []

    @pytest.mark.asyncio
    async def test_recent_failure_not_picked_up(self, stack, make_row):
        row = await make_row(status=OfframpStatus.TOKEN_RECEIVED.value, swap_attempt_count=1)
        report = await stack.recovery.run()
        assert report.examined == 0
        assert (await stack.ledger.get(row.transaction_id)).swap_attempt_count == 1

    @pytest.mark.asyncio
    async def test_crashed_swap_released_and_retried(self, stack, make_row):
        an_hour_ago = stack.ledger.now() - timedelta(hours=1)
        row = await make_row(
            status=OfframpStatus.SWAPPING.value,
            token_address=DAI.address,
            token_amount_raw=str(TEN_DAI),
            updated_at=an_hour_ago,
        )
        stack.chain.fund(row.deposit_address, TEN_DAI, DAI.address)
        stack.swap_router.zerox.outputs[DAI.address.lower()] = 2_100_000

        report = await stack.recovery.run()

        assert report.released == [row.transaction_id]
        done = await stack.ledger.get(row.transaction_id)
        assert done.status == "completed"
        assert done.swap_attempt_count == 1


class TestSharedDepositAddress:

    @pytest.mark.asyncio
    async def test_newer_request_does_not_take_earlier_deposit(self, stack, make_row, payout_provider):
        """A user's first deposit is mid-swap when a second row appears on the same address"""
        first = await make_row(
            status=OfframpStatus.TOKEN_RECEIVED.value,
            token_address=DAI.address,
            token_symbol="DAI",
            token_amount_raw=str(TEN_DAI),
            swap_attempt_count=1,
            created_at=stack.ledger.now() - timedelta(minutes=5),
        )
        second = await make_row(account_number="9999999999")
        assert second.deposit_address == first.deposit_address
        stack.chain.fund(first.deposit_address, TEN_DAI, DAI.address)
        stack.swap_router.zerox.outputs[DAI.address.lower()] = 2_100_000

        result = await stack.pipeline.advance(second.transaction_id, trigger="test")

        assert not result.won
        assert first.transaction_id in result.reason
        assert (await stack.ledger.get(second.transaction_id)).status == "pending"
        assert payout_provider.payouts == []

        await stack.pipeline.advance(first.transaction_id, trigger="test")

        assert (await stack.ledger.get(first.transaction_id)).status == "completed"
        assert [p["account_number"] for p in payout_provider.payouts] == ["0123456789"]

    @pytest.mark.asyncio
    async def test_newest_pending_row_owns_the_address(self, stack, make_row):
        older = await make_row(created_at=stack.ledger.now() - timedelta(minutes=30))
        newer = await make_row()
        stack.chain.fund(older.deposit_address, 5_000_000, USDC.address)

        result = await stack.pipeline.advance(older.transaction_id, trigger="test")

        assert not result.won
        assert (await stack.ledger.get(older.transaction_id)).status == "pending"
        assert (await stack.ledger.get(newer.transaction_id)).status == "pending"
