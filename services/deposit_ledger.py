"""
Off-ramp Deposit Ledger
=======================

The only code path that changes an off-ramp row's status. Every status change
is a conditional UPDATE ... WHERE transaction_id = X AND status = expected;
the caller proceeds with its side effect only when that statement hit a row.
A caller that loses the race gets the freshly re-read row back instead.

Sessions are opened per statement group and closed before returning, so no
database connection or row lock is held across chain or provider calls.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select, update

from database import get_async_session
from models import OfframpStatus, OfframpSwapLeg, OfframpTransaction, utc_now
from utils.offramp_errors import StateTransitionError
from utils.offramp_state_validator import OfframpStateValidator

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    """Outcome of a conditional status transition"""
    won: bool
    transaction: Optional[OfframpTransaction]
    reason: str = ""

    @property
    def status(self) -> Optional[str]:
        return self.transaction.status if self.transaction else None


def _error_entry(message: str, now: datetime) -> str:
    return f"[{now.strftime('%Y-%m-%d %H:%M:%S')}] {message}"


class DepositLedger:
    """Durable off-ramp transaction record and its state transitions"""

    def __init__(self, session_factory=get_async_session, clock=utc_now):
        self._session = session_factory
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, transaction_id: str) -> Optional[OfframpTransaction]:
        async with self._session() as session:
            result = await session.execute(
                select(OfframpTransaction).where(OfframpTransaction.transaction_id == transaction_id)
            )
            return result.scalar_one_or_none()

    async def get_by_deposit_address(self, address: str) -> Optional[OfframpTransaction]:
        """Most recent row watching this address (addresses are reused per user)"""
        async with self._session() as session:
            result = await session.execute(
                select(OfframpTransaction)
                .where(OfframpTransaction.deposit_address == address.lower())
                .order_by(OfframpTransaction.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def find_pending_for_user(self, user_id: str) -> Optional[OfframpTransaction]:
        async with self._session() as session:
            result = await session.execute(
                select(OfframpTransaction)
                .where(
                    OfframpTransaction.user_id == str(user_id),
                    OfframpTransaction.status == OfframpStatus.PENDING.value,
                )
                .order_by(OfframpTransaction.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_open_for_address(self, address: str) -> List[OfframpTransaction]:
        """Non-terminal rows on a deposit address, newest first"""
        terminal = [s.value for s in OfframpStateValidator.TERMINAL_STATES]
        async with self._session() as session:
            result = await session.execute(
                select(OfframpTransaction)
                .where(
                    OfframpTransaction.deposit_address == address.lower(),
                    OfframpTransaction.status.notin_(terminal),
                )
                .order_by(OfframpTransaction.created_at.desc())
            )
            return list(result.scalars().all())

    async def list_transactions(
        self,
        statuses: Iterable[OfframpStatus],
        created_before: Optional[datetime] = None,
        created_after: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
        has_token: Optional[bool] = None,
        transaction_ids: Optional[Iterable[str]] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[OfframpTransaction]:
        """Declarative row selection shared by polling, recovery and the operator CLI"""
        stmt = select(OfframpTransaction).where(
            OfframpTransaction.status.in_([s.value for s in statuses])
        )
        if created_before is not None:
            stmt = stmt.where(OfframpTransaction.created_at < created_before)
        if created_after is not None:
            stmt = stmt.where(OfframpTransaction.created_at >= created_after)
        if updated_before is not None:
            stmt = stmt.where(OfframpTransaction.updated_at < updated_before)
        if has_token is True:
            stmt = stmt.where(OfframpTransaction.token_amount_raw.isnot(None))
        elif has_token is False:
            stmt = stmt.where(OfframpTransaction.token_amount_raw.is_(None))
        if transaction_ids is not None:
            stmt = stmt.where(OfframpTransaction.transaction_id.in_(list(transaction_ids)))
        if user_id is not None:
            stmt = stmt.where(OfframpTransaction.user_id == user_id)
        stmt = stmt.order_by(OfframpTransaction.created_at.asc())
        if limit:
            stmt = stmt.limit(limit)

        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_completed_duplicate(
        self, transaction: OfframpTransaction, window_minutes: int
    ) -> Optional[OfframpTransaction]:
        """A completed row for the same user, account and amount created within the window"""
        if not transaction.user_id or transaction.requested_ngn_amount is None:
            return None
        window = timedelta(minutes=window_minutes)
        async with self._session() as session:
            result = await session.execute(
                select(OfframpTransaction)
                .where(
                    OfframpTransaction.transaction_id != transaction.transaction_id,
                    OfframpTransaction.user_id == transaction.user_id,
                    OfframpTransaction.account_number == transaction.account_number,
                    OfframpTransaction.requested_ngn_amount == transaction.requested_ngn_amount,
                    OfframpTransaction.status == OfframpStatus.COMPLETED.value,
                    OfframpTransaction.created_at >= transaction.created_at - window,
                    OfframpTransaction.created_at <= transaction.created_at + window,
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_swap_legs(self, transaction_pk: int) -> List[OfframpSwapLeg]:
        async with self._session() as session:
            result = await session.execute(
                select(OfframpSwapLeg)
                .where(OfframpSwapLeg.transaction_pk == transaction_pk)
                .order_by(OfframpSwapLeg.id.asc())
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, **fields: Any) -> OfframpTransaction:
        fields.setdefault("status", OfframpStatus.PENDING.value)
        if fields.get("deposit_address"):
            fields["deposit_address"] = fields["deposit_address"].lower()
        transaction = OfframpTransaction(**fields)
        async with self._session() as session:
            session.add(transaction)
            await session.flush()
        logger.info(
            f"🆕 OFFRAMP_CREATED: {transaction.transaction_id} user={transaction.user_id} "
            f"address={transaction.deposit_address}"
        )
        return transaction

    async def claim(
        self,
        transaction_id: str,
        expected: OfframpStatus,
        target: OfframpStatus,
        worker: Optional[str] = None,
        error: Optional[str] = None,
        **values: Any,
    ) -> ClaimResult:
        """
        Atomically move a row from `expected` to `target`.

        Raises StateTransitionError for an edge the state machine does not
        allow. Returns ClaimResult(won=False) with the current row when
        another process got there first.
        """
        OfframpStateValidator.require_transition(expected, target, transaction_id)
        conditions = [
            OfframpTransaction.transaction_id == transaction_id,
            OfframpTransaction.status == expected.value,
        ]
        if target == OfframpStatus.COMPLETED and not values.get("settlement_tx_hash"):
            conditions.append(OfframpTransaction.settlement_tx_hash.isnot(None))

        now = self.now()
        stage_field = OfframpStateValidator.stage_timestamp_field(target)
        update_values: Dict[str, Any] = dict(values)
        update_values.update(
            status=target.value,
            version=OfframpTransaction.version + 1,
            updated_at=now,
        )
        if stage_field:
            update_values[stage_field] = now
        if worker:
            update_values["claimed_by"] = worker
        if error:
            update_values["error_message"] = self._append_error(error, now)

        stmt = (
            update(OfframpTransaction)
            .where(*conditions)
            .values(**update_values)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            won = result.rowcount == 1

        current = await self.get(transaction_id)
        if won:
            logger.info(f"✅ OFFRAMP_CLAIM: {transaction_id} {expected.value} -> {target.value} ({worker or 'n/a'})")
            return ClaimResult(True, current, "claimed")

        actual = current.status if current else "missing"
        if current is not None and actual == expected.value and target == OfframpStatus.COMPLETED:
            raise StateTransitionError(f"{transaction_id} cannot complete without a settlement transaction hash")
        logger.info(
            f"🔒 OFFRAMP_CLAIM_LOST: {transaction_id} expected {expected.value} -> {target.value}, "
            f"row is {actual}"
        )
        return ClaimResult(False, current, f"status is {actual}")

    async def update_fields(
        self,
        transaction_id: str,
        expected: OfframpStatus,
        error: Optional[str] = None,
        extra_conditions: Iterable = (),
        **values: Any,
    ) -> bool:
        """Same-status update, guarded by the expected status"""
        now = self.now()
        update_values: Dict[str, Any] = dict(values)
        update_values["updated_at"] = now
        if error:
            update_values["error_message"] = self._append_error(error, now)
        stmt = (
            update(OfframpTransaction)
            .where(
                OfframpTransaction.transaction_id == transaction_id,
                OfframpTransaction.status == expected.value,
                *extra_conditions,
            )
            .values(**update_values)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            updated = result.rowcount == 1
        if not updated:
            logger.warning(f"⚠️ OFFRAMP_UPDATE_SKIPPED: {transaction_id} no longer {expected.value}")
        return updated

    async def mark_failed(self, transaction_id: str, expected: OfframpStatus, error: str, **values: Any) -> ClaimResult:
        logger.error(f"❌ OFFRAMP_FAILED: {transaction_id} from {expected.value}: {error}")
        return await self.claim(transaction_id, expected, OfframpStatus.FAILED, error=error, **values)

    async def delete_if_status(self, transaction_id: str, expected: OfframpStatus) -> bool:
        """Physical delete, only for abandoned or duplicate rows still in `expected`"""
        if expected != OfframpStatus.PENDING:
            raise StateTransitionError(f"Refusing to delete {transaction_id} outside pending")
        async with self._session() as session:
            result = await session.execute(
                delete(OfframpTransaction).where(
                    OfframpTransaction.transaction_id == transaction_id,
                    OfframpTransaction.status == expected.value,
                )
            )
            deleted = result.rowcount == 1
        if deleted:
            logger.info(f"🗑️ OFFRAMP_DELETED: {transaction_id} ({expected.value})")
        return deleted

    async def add_swap_leg(self, transaction_pk: int, **fields: Any) -> OfframpSwapLeg:
        leg = OfframpSwapLeg(transaction_pk=transaction_pk, **fields)
        async with self._session() as session:
            session.add(leg)
            await session.flush()
        return leg

    @staticmethod
    def _append_error(message: str, now: datetime):
        entry = _error_entry(message, now)
        return func.coalesce(OfframpTransaction.error_message + "\n", "") + entry


def cutoff(now: datetime, minutes: int) -> datetime:
    return now - timedelta(minutes=minutes)
