"""
Off-ramp Background Job Scheduler

Three interval jobs drive rows that no webhook pushed forward:
1. Deposit Poll - scan pending deposit addresses for incoming tokens
2. Pipeline Advance - re-drive rows sitting in a non-terminal working status
3. Recovery - abandoned cleanup, duplicate discard, stalled-row reconciliation

Every job goes through the ledger's conditional claims, so a job overlapping a
webhook or another replica is harmless.
"""

import logging
from datetime import datetime

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from models import OfframpStatus

logger = logging.getLogger(__name__)

ADVANCE_STATUSES = [
    OfframpStatus.TOKEN_RECEIVED,
    OfframpStatus.USDC_RECEIVED,
    OfframpStatus.PAYING,
]
ADVANCE_BATCH_LIMIT = 100


async def run_deposit_poll(services):
    return await services.monitor.poll_pending_deposits()


async def run_pipeline_advance(services):
    """Push rows forward whose last trigger stopped short of a terminal status"""
    rows = await services.ledger.list_transactions(ADVANCE_STATUSES, limit=ADVANCE_BATCH_LIMIT)
    advanced = 0
    for row in rows:
        # PAYING without a reference is an in-flight transfer; recovery owns it
        if row.status == OfframpStatus.PAYING.value and not row.payout_reference:
            continue
        try:
            result = await services.pipeline.advance(row.transaction_id, trigger="advance-job")
            if result is not None and result.won:
                advanced += 1
        except Exception as e:
            logger.error(f"❌ PIPELINE_ADVANCE: {row.transaction_id} failed: {e}", exc_info=True)
    if rows:
        logger.info(f"⚙️ PIPELINE_ADVANCE: {advanced}/{len(rows)} rows moved")
    return advanced


async def run_recovery(services):
    report = await services.recovery.run()
    logger.info(f"🛠️ RECOVERY: {report.summary()}")
    return report


class OfframpScheduler:
    """
    Scheduling Strategy:
    - Deposit Poll: every DEPOSIT_POLL_INTERVAL_SECONDS (default 30s)
    - Pipeline Advance: every PIPELINE_ADVANCE_INTERVAL_SECONDS (default 60s)
    - Recovery: every RECOVERY_INTERVAL_MINUTES (default 10m)
    """

    def __init__(self, services):
        self.services = services

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        self.scheduler.add_job(
            run_deposit_poll,
            trigger=IntervalTrigger(
                seconds=Config.DEPOSIT_POLL_INTERVAL_SECONDS,
                start_date=datetime.now().replace(second=5, microsecond=0),
            ),
            args=[self.services],
            id="offramp_deposit_poll",
            name="🔍 Deposit Poll - Pending Address Scan",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True
        )
        logger.info(f"✅ DEPOSIT_POLL scheduled every {Config.DEPOSIT_POLL_INTERVAL_SECONDS}s")

        # Staggered 20s after the poll so both do not hit the RPC together
        self.scheduler.add_job(
            run_pipeline_advance,
            trigger=IntervalTrigger(
                seconds=Config.PIPELINE_ADVANCE_INTERVAL_SECONDS,
                start_date=datetime.now().replace(second=25, microsecond=0),
            ),
            args=[self.services],
            id="offramp_pipeline_advance",
            name="⚙️ Pipeline Advance - Swap and Payout Re-drive",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=120,
            replace_existing=True
        )
        logger.info(f"✅ PIPELINE_ADVANCE scheduled every {Config.PIPELINE_ADVANCE_INTERVAL_SECONDS}s")

        self.scheduler.add_job(
            run_recovery,
            trigger=IntervalTrigger(
                minutes=Config.RECOVERY_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=45, microsecond=0),
            ),
            args=[self.services],
            id="offramp_recovery",
            name="🛠️ Recovery - Cleanup and Reconciliation",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True
        )
        logger.info(f"✅ RECOVERY scheduled every {Config.RECOVERY_INTERVAL_MINUTES}m")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()

        jobs = self.scheduler.get_jobs()
        logger.info(f"📋 Active jobs: {[f'{job.name} ({job.id})' for job in jobs]}")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Off-ramp job scheduler stopped")
