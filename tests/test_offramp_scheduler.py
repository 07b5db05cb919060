"""
Off-ramp background jobs
"""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from jobs.offramp_scheduler import OfframpScheduler, run_pipeline_advance, run_recovery
from models import OfframpStatus
from utils.base_tokens import USDC


class TestScheduler:

    def test_jobs_registered(self):
        scheduler = OfframpScheduler(MagicMock())
        scheduler.setup_jobs()
        ids = {job.id for job in scheduler.scheduler.get_jobs()}
        assert ids == {"offramp_deposit_poll", "offramp_pipeline_advance", "offramp_recovery"}

    def test_jobs_receive_services(self):
        services = MagicMock()
        scheduler = OfframpScheduler(services)
        scheduler.setup_jobs()
        for job in scheduler.scheduler.get_jobs():
            assert list(job.args) == [services]

    def test_stop_before_start(self):
        OfframpScheduler(MagicMock()).stop()


class TestJobs:

    @pytest.mark.asyncio
    async def test_advance_job_moves_working_rows(self, stack, make_row):
        ready = await make_row(
            status=OfframpStatus.USDC_RECEIVED.value, usdc_amount=Decimal("5"), usdc_amount_raw="5000000",
        )
        stack.chain.fund(ready.deposit_address, 5_000_000, USDC.address)
        in_flight = await make_row(user_id="user-2", status=OfframpStatus.PAYING.value)

        moved = await run_pipeline_advance(stack)

        assert moved == 1
        assert (await stack.ledger.get(ready.transaction_id)).status == "completed"
        assert (await stack.ledger.get(in_flight.transaction_id)).status == "paying"

    @pytest.mark.asyncio
    async def test_advance_job_survives_row_errors(self):
        services = MagicMock()
        services.ledger.list_transactions = AsyncMock(return_value=[
            MagicMock(transaction_id="a", status="token_received"),
            MagicMock(transaction_id="b", status="usdc_received"),
        ])
        services.pipeline.advance = AsyncMock(side_effect=[RuntimeError("boom"), MagicMock(won=True)])

        assert await run_pipeline_advance(services) == 1
        assert services.pipeline.advance.await_count == 2

    @pytest.mark.asyncio
    async def test_recovery_job_runs_full_pass(self, stack):
        report = await run_recovery(stack)
        assert report.examined == 0
        assert not report.dry_run
