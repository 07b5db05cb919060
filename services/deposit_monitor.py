"""
Deposit Monitor
===============

Two ways a deposit is noticed, both ending in OfframpPipeline.advance():
- polling: every pending row that has not expired gets its deposit address
  scanned on each run
- push: a verified webhook event names the recipient address; the owning
  row is looked up and advanced (the pipeline waits out the settle delay
  once it has claimed the deposit)

Neither path changes status itself; the pipeline's atomic claim decides who
acts when both fire for the same deposit.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config import Config
from models import OfframpStatus
from services.deposit_ledger import cutoff

logger = logging.getLogger(__name__)

RELEVANT_EVENT_TYPES = {"onchain.activity.detected", "evm_transactions"}


@dataclass
class PollReport:
    scanned: int = 0
    advanced: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


def is_relevant_event(event: Dict[str, Any]) -> bool:
    event_type = str(event.get("type") or "")
    return (
        event_type in RELEVANT_EVENT_TYPES
        or "transaction" in event_type
        or "transfer" in event_type
    )


def recipient_from_event(event: Dict[str, Any]) -> Optional[str]:
    data = event.get("data")
    if not isinstance(data, dict):
        return None
    to = data.get("to") or data.get("destination")
    if isinstance(to, str) and to.strip().lower().startswith("0x"):
        return to.strip().lower()
    return None


class DepositMonitor:
    """Polling and webhook deposit detection"""

    def __init__(self, ledger, pipeline, expiry_minutes: int = None):
        self.ledger = ledger
        self.pipeline = pipeline
        self.expiry_minutes = expiry_minutes or Config.PENDING_EXPIRY_MINUTES

    async def poll_pending_deposits(self, limit: int = 200) -> PollReport:
        """Scan every live pending row once"""
        report = PollReport()
        live_since = cutoff(self.ledger.now(), self.expiry_minutes)
        pending = await self.ledger.list_transactions(
            [OfframpStatus.PENDING], created_after=live_since, limit=limit
        )
        for transaction in pending:
            report.scanned += 1
            try:
                result = await self.pipeline.advance(transaction.transaction_id, trigger="deposit-poll")
            except Exception as e:
                logger.error(f"❌ DEPOSIT_POLL_ERROR: {transaction.transaction_id}: {type(e).__name__}: {e}")
                report.errors[transaction.transaction_id] = str(e)
                continue
            if result is not None and result.won:
                report.advanced.append(transaction.transaction_id)

        if report.scanned:
            logger.info(
                f"🔍 DEPOSIT_POLL: scanned {report.scanned}, advanced {len(report.advanced)}, "
                f"errors {len(report.errors)}"
            )
        return report

    async def handle_webhook_event(self, event: Dict[str, Any]) -> Optional[str]:
        """
        Act on an already-verified event. Returns the transaction id that was
        advanced, or None when the event is not about a watched address.
        """
        if not is_relevant_event(event):
            logger.debug(f"Ignoring webhook event type {event.get('type')!r}")
            return None

        recipient = recipient_from_event(event)
        if recipient is None:
            return None

        transaction = await self.ledger.get_by_deposit_address(recipient)
        if transaction is None or transaction.status != OfframpStatus.PENDING.value:
            logger.info(f"📭 WEBHOOK_NO_PENDING: no pending off-ramp for {recipient}")
            return None

        logger.info(f"📬 WEBHOOK_DEPOSIT: {transaction.transaction_id} at {recipient}")
        await self.pipeline.advance(transaction.transaction_id, trigger="webhook")
        return transaction.transaction_id
