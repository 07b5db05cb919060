"""
Deposit monitor: polling pending rows and acting on verified webhook events
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from models import OfframpStatus
from services.deposit_ledger import ClaimResult
from services.deposit_monitor import DepositMonitor, is_relevant_event, recipient_from_event
from services.offramp_pipeline import OfframpPipeline
from utils.base_tokens import USDC


class TestEventParsing:

    @pytest.mark.parametrize("event_type, relevant", [
        ("onchain.activity.detected", True),
        ("evm_transactions", True),
        ("erc20_transfer", True),
        ("wallet.created", False),
        (None, False),
    ])
    def test_relevant_event_types(self, event_type, relevant):
        assert is_relevant_event({"type": event_type}) is relevant

    def test_recipient_normalized(self):
        assert recipient_from_event({"data": {"to": " 0xABCdef "}}) == "0xabcdef"
        assert recipient_from_event({"data": {"destination": "0x12"}}) == "0x12"

    @pytest.mark.parametrize("event", [{}, {"data": "0xabc"}, {"data": {"to": "abc"}}, {"data": {"to": 5}}])
    def test_recipient_missing(self, event):
        assert recipient_from_event(event) is None


class TestPolling:

    @pytest.mark.asyncio
    async def test_funded_rows_advanced(self, stack, make_row):
        funded = await make_row()
        idle = await make_row(user_id="user-2")
        stack.chain.fund(funded.deposit_address, 5_000_000, USDC.address)

        report = await stack.monitor.poll_pending_deposits()

        assert report.scanned == 2
        assert report.advanced == [funded.transaction_id]
        assert (await stack.ledger.get(funded.transaction_id)).status == "completed"
        assert (await stack.ledger.get(idle.transaction_id)).status == "pending"

    @pytest.mark.asyncio
    async def test_expired_rows_left_to_recovery(self, stack, make_row):
        stamp = stack.ledger.now() - timedelta(hours=2)
        row = await make_row(created_at=stamp, updated_at=stamp)
        stack.chain.fund(row.deposit_address, 5_000_000, USDC.address)

        report = await stack.monitor.poll_pending_deposits()

        assert report.scanned == 0
        assert (await stack.ledger.get(row.transaction_id)).status == "pending"

    @pytest.mark.asyncio
    async def test_one_failing_row_does_not_stop_the_poll(self, stack, make_row):
        first = await make_row()
        second = await make_row(user_id="user-2")
        pipeline = AsyncMock()
        pipeline.advance.side_effect = [RuntimeError("rpc down"), ClaimResult(True, second)]
        monitor = DepositMonitor(stack.ledger, pipeline, expiry_minutes=60)

        report = await monitor.poll_pending_deposits()

        assert report.scanned == 2
        assert report.errors == {first.transaction_id: "rpc down"}
        assert report.advanced == [second.transaction_id]


class TestWebhookEvents:

    @pytest.mark.asyncio
    async def test_event_for_watched_address_advances(self, stack, make_row):
        row = await make_row()
        stack.chain.fund(row.deposit_address, 5_000_000, USDC.address)
        event = {"type": "onchain.activity.detected", "data": {"to": stack.keys.derive("user-1").address}}

        assert await stack.monitor.handle_webhook_event(event) == row.transaction_id
        assert (await stack.ledger.get(row.transaction_id)).status == "completed"

    @pytest.mark.asyncio
    async def test_event_for_unknown_address_ignored(self, stack):
        event = {"type": "onchain.activity.detected", "data": {"to": "0x" + "00" * 20}}
        assert await stack.monitor.handle_webhook_event(event) is None

    @pytest.mark.asyncio
    async def test_event_for_non_pending_row_ignored(self, stack, make_row):
        row = await make_row(status=OfframpStatus.TOKEN_RECEIVED.value)
        event = {"type": "onchain.activity.detected", "data": {"to": row.deposit_address}}
        assert await stack.monitor.handle_webhook_event(event) is None

    @pytest.mark.asyncio
    async def test_irrelevant_event_type_ignored(self, stack, make_row):
        row = await make_row()
        event = {"type": "wallet.created", "data": {"to": row.deposit_address}}
        assert await stack.monitor.handle_webhook_event(event) is None

    @pytest.mark.asyncio
    async def test_settle_delay_waited_once_per_webhook_deposit(self, stack, make_row):
        row = await make_row()
        stack.chain.fund(row.deposit_address, 5_000_000, USDC.address)
        pipeline = OfframpPipeline(
            stack.ledger, stack.scanner, stack.swap_router, stack.settlement, settle_delay_seconds=2,
        )
        monitor = DepositMonitor(stack.ledger, pipeline, expiry_minutes=60)
        event = {"type": "onchain.activity.detected", "data": {"to": row.deposit_address}}

        with patch("services.offramp_pipeline.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await monitor.handle_webhook_event(event) == row.transaction_id

        sleep.assert_awaited_once_with(2)
        assert (await stack.ledger.get(row.transaction_id)).status == "completed"
