"""
Deposit ledger: atomic claims, selection queries and duplicate lookup
"""

import asyncio
import pytest
from datetime import timedelta
from decimal import Decimal

from models import OfframpStatus
from services.deposit_ledger import cutoff


class TestAtomicClaim:

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, stack, make_row):
        """Many workers race for the same transition; the side effect runs once"""
        row = await make_row(status=OfframpStatus.TOKEN_RECEIVED.value)
        side_effects = []

        async def worker(n):
            result = await stack.ledger.claim(
                row.transaction_id, OfframpStatus.TOKEN_RECEIVED, OfframpStatus.SWAPPING, worker=f"w{n}"
            )
            if result.won:
                side_effects.append(n)
            return result

        results = await asyncio.gather(*(worker(n) for n in range(8)))

        assert sum(1 for r in results if r.won) == 1
        assert len(side_effects) == 1
        stored = await stack.ledger.get(row.transaction_id)
        assert stored.status == "swapping"
        assert stored.version == row.version + 1
        assert stored.claimed_by == f"w{side_effects[0]}"

    @pytest.mark.asyncio
    async def test_loser_gets_current_row(self, stack, make_row):
        row = await make_row(status=OfframpStatus.TOKEN_RECEIVED.value)
        first = await stack.ledger.claim(row.transaction_id, OfframpStatus.TOKEN_RECEIVED, OfframpStatus.SWAPPING)
        second = await stack.ledger.claim(row.transaction_id, OfframpStatus.TOKEN_RECEIVED, OfframpStatus.SWAPPING)
        assert first.won
        assert not second.won
        assert second.transaction.status == "swapping"
        assert second.reason == "status is swapping"

    @pytest.mark.asyncio
    async def test_missing_row(self, stack):
        result = await stack.ledger.claim("offramp_missing", OfframpStatus.PENDING, OfframpStatus.TOKEN_RECEIVED)
        assert not result.won
        assert result.transaction is None
        assert result.reason == "status is missing"

    @pytest.mark.asyncio
    async def test_claim_writes_values_with_transition(self, stack, make_row):
        row = await make_row(status=OfframpStatus.PAYING.value)
        result = await stack.ledger.claim(
            row.transaction_id, OfframpStatus.PAYING, OfframpStatus.COMPLETED, settlement_tx_hash="0xabc"
        )
        assert result.won
        assert result.transaction.settlement_tx_hash == "0xabc"
        assert result.transaction.completed_at is not None

    @pytest.mark.asyncio
    async def test_update_fields_guarded_by_status(self, stack, make_row):
        row = await make_row()
        assert not await stack.ledger.update_fields(row.transaction_id, OfframpStatus.PAYING, payout_reference="x")
        assert await stack.ledger.update_fields(row.transaction_id, OfframpStatus.PENDING, user_email="a@b.co")
        stored = await stack.ledger.get(row.transaction_id)
        assert stored.payout_reference is None
        assert stored.user_email == "a@b.co"

    @pytest.mark.asyncio
    async def test_delete_only_while_pending(self, stack, make_row):
        row = await make_row()
        await stack.ledger.claim(row.transaction_id, OfframpStatus.PENDING, OfframpStatus.TOKEN_RECEIVED)
        assert not await stack.ledger.delete_if_status(row.transaction_id, OfframpStatus.PENDING)
        assert await stack.ledger.get(row.transaction_id) is not None

        pending = await make_row(user_id="user-2")
        assert await stack.ledger.delete_if_status(pending.transaction_id, OfframpStatus.PENDING)
        assert await stack.ledger.get(pending.transaction_id) is None


class TestSelection:

    @pytest.mark.asyncio
    async def test_list_by_status_age_and_token(self, stack, make_row):
        now = stack.ledger.now()
        old = await make_row(user_id="u-old", created_at=now - timedelta(hours=3), updated_at=now - timedelta(hours=3))
        fresh = await make_row(user_id="u-fresh")
        funded = await make_row(
            user_id="u-funded", status=OfframpStatus.TOKEN_RECEIVED.value, token_amount_raw="1000",
        )

        stale = await stack.ledger.list_transactions([OfframpStatus.PENDING], created_before=cutoff(now, 60))
        assert [t.transaction_id for t in stale] == [old.transaction_id]

        live = await stack.ledger.list_transactions([OfframpStatus.PENDING], created_after=cutoff(now, 60))
        assert [t.transaction_id for t in live] == [fresh.transaction_id]

        not_touched = await stack.ledger.list_transactions(
            [OfframpStatus.PENDING, OfframpStatus.TOKEN_RECEIVED], updated_before=cutoff(now, 60)
        )
        assert [t.transaction_id for t in not_touched] == [old.transaction_id]

        with_token = await stack.ledger.list_transactions(list(OfframpStatus), has_token=True)
        assert [t.transaction_id for t in with_token] == [funded.transaction_id]

        without_token = await stack.ledger.list_transactions(list(OfframpStatus), has_token=False, limit=1)
        assert [t.transaction_id for t in without_token] == [old.transaction_id]

        by_id = await stack.ledger.list_transactions(list(OfframpStatus), transaction_ids=[fresh.transaction_id])
        assert [t.transaction_id for t in by_id] == [fresh.transaction_id]

    @pytest.mark.asyncio
    async def test_deposit_address_lookup_prefers_latest(self, stack, make_row):
        now = stack.ledger.now()
        earlier = await make_row(
            user_id="reuser", status=OfframpStatus.FAILED.value, created_at=now - timedelta(days=1),
        )
        latest = await make_row(user_id="reuser")
        assert earlier.deposit_address == latest.deposit_address

        found = await stack.ledger.get_by_deposit_address(stack.keys.derive("reuser").address)
        assert found.transaction_id == latest.transaction_id
        open_rows = await stack.ledger.list_open_for_address(latest.deposit_address)
        assert [t.transaction_id for t in open_rows] == [latest.transaction_id]
        assert (await stack.ledger.find_pending_for_user("reuser")).transaction_id == latest.transaction_id

    @pytest.mark.asyncio
    async def test_completed_duplicate_lookup(self, stack, make_row):
        now = stack.ledger.now()
        done = await make_row(
            user_id="dup-user", status=OfframpStatus.COMPLETED.value, settlement_tx_hash="0x1",
            requested_ngn_amount=Decimal("5000"), created_at=now - timedelta(minutes=10),
        )
        twin = await make_row(user_id="dup-user", requested_ngn_amount=Decimal("5000"))
        other_amount = await make_row(user_id="dup-user", requested_ngn_amount=Decimal("7000"))

        match = await stack.ledger.find_completed_duplicate(twin, window_minutes=30)
        assert match.transaction_id == done.transaction_id
        assert await stack.ledger.find_completed_duplicate(twin, window_minutes=5) is None
        assert await stack.ledger.find_completed_duplicate(other_amount, window_minutes=30) is None

    @pytest.mark.asyncio
    async def test_swap_legs_in_order(self, stack, make_row):
        row = await make_row(status=OfframpStatus.SWAPPING.value)
        await stack.ledger.add_swap_leg(row.id, token_symbol="DAI", amount_raw="1", status="confirmed")
        await stack.ledger.add_swap_leg(row.id, token_symbol="AERO", amount_raw="2", status="skipped_dust")
        legs = await stack.ledger.get_swap_legs(row.id)
        assert [leg.token_symbol for leg in legs] == ["DAI", "AERO"]
