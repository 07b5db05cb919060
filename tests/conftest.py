"""
Shared fixtures for the off-ramp test suite.

Key Components:
1. Temporary aiosqlite ledger (fresh schema per test)
2. FakeChain: in-memory balances, allowances and receipts standing in for Base RPC
3. Fake 0x quote client and fake Fincra payout provider
4. A fully wired OfframpServices stack over the fakes
"""

import os
import itertools
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

os.environ.setdefault("ENVIRONMENT", "test")

from eth_account import Account

from config import DEFAULT_FEE_TIERS
from database import create_tables, dispose_engine, init_engine
from services.aerodrome_service import AerodromeService
from services.deposit_ledger import DepositLedger
from services.deposit_monitor import DepositMonitor
from services.gas_sponsor import GasSponsor
from services.key_derivation import KeyDerivationService
from services.offramp_pipeline import OfframpPipeline
from services.offramp_request_service import OfframpRequestService, generate_transaction_id
from services.offramp_services import OfframpServices
from services.offramp_settings import OfframpSettings, OfframpSettingsProvider
from services.recovery_service import RecoveryService
from services.settlement_engine import SettlementEngine
from services.swap_router import SwapRouter
from services.wallet_scanner import WalletScanner
from services.zerox_service import ZeroXQuote
from utils.base_tokens import USDC
from utils.fee_calculator import parse_fee_tiers
from utils.offramp_errors import ConfirmationTimeoutError, NoRouteError, TransactionRevertedError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

TEST_MNEMONIC = "test test test test test test test test test test test junk"
FUNDING_PRIVATE_KEY = "0x" + "11" * 32
RECEIVER_ADDRESS = "0x000000000000000000000000000000000000bEEF"
ZEROX_SETTLER = "0x0000000000000000000000000000000000005e77"
ONE_ETH = 10 ** 18


def _key(address: Optional[str]) -> str:
    return address.lower() if address else "eth"


# ============================================================================
# CHAIN
# ============================================================================

class FakeChain:
    """In-memory stand-in for ChainClient"""

    def __init__(self, gas_price: int = 1_000_000_000):
        self.balances: Dict[tuple, int] = {}
        self.allowances: Dict[tuple, int] = {}
        self.gas_price = gas_price
        self.pools: Dict[str, Callable[[int], int]] = {}
        self.calls: Dict[str, tuple] = {}
        self.sent: List[Dict[str, Any]] = []
        self.reverted: set = set()
        self.revert_purposes: set = set()
        self.timeout_purposes: set = set()
        self._counter = itertools.count(1)

    # helpers for tests
    def fund(self, address: str, amount: int, token: Optional[str] = None):
        k = (_key(token), address.lower())
        self.balances[k] = self.balances.get(k, 0) + amount

    def balance(self, address: str, token: Optional[str] = None) -> int:
        return self.balances.get((_key(token), address.lower()), 0)

    def _move(self, token: Optional[str], sender: str, to: str, amount: int):
        if self.balance(sender, token) < amount:
            raise ValueError(f"insufficient {_key(token)} balance at {sender}")
        self.fund(sender, -amount, token)
        self.fund(to, amount, token)

    def _hash(self) -> str:
        return "0x" + f"{next(self._counter):064x}"

    def _record(self, kind: str, **fields) -> str:
        tx_hash = self._hash()
        self.sent.append(dict(kind=kind, tx_hash=tx_hash, **fields))
        return tx_hash

    def sent_of(self, kind: str) -> List[Dict[str, Any]]:
        return [s for s in self.sent if s["kind"] == kind]

    def stage_swap(self, sell_token: Optional[str], amount: int, output: int, recipient: str) -> str:
        data = "0x" + f"{len(self.calls) + 1:08x}"
        self.calls[data] = ("swap", (sell_token, amount, output, recipient))
        return data

    # ChainClient surface
    @staticmethod
    def checksum(address: str) -> str:
        return address

    @staticmethod
    def address_of(private_key: str) -> str:
        return Account.from_key(private_key).address

    async def get_native_balance(self, address: str) -> int:
        return self.balance(address)

    async def get_token_balance(self, token_address: Optional[str], owner: str) -> int:
        return self.balance(owner, token_address)

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        return self.allowances.get((_key(token_address), owner.lower(), spender.lower()), 0)

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def call_function(self, address: str, abi, fn_name: str, *args):
        if fn_name != "getAmountsOut":
            raise NotImplementedError(fn_name)
        amount, routes = args
        if len(routes) != 1 or routes[0][2]:
            raise ValueError("execution reverted")
        pool = self.pools.get(routes[0][0].lower())
        if pool is None:
            raise ValueError("execution reverted")
        return [amount, pool(amount)]

    def encode_function(self, address: str, abi, fn_name: str, *args) -> str:
        data = "0x" + f"{len(self.calls) + 1:08x}"
        self.calls[data] = (fn_name, args)
        return data

    async def send_transaction(self, private_key, to, data="0x", value=0, gas=None, gas_price=None) -> str:
        sender = self.address_of(private_key)
        if value:
            self._move(None, sender, to, value)
        call = self.calls.get(data)
        if call is not None:
            fn_name, args = call
            if fn_name == "swap":
                sell_token, amount, output, recipient = args
                self._move(sell_token, sender, ZEROX_SETTLER, amount)
                self.fund(recipient, output, USDC.address)
            elif fn_name == "swapExactTokensForTokens":
                amount, _min_out, routes, recipient, _deadline = args
                sell_token = routes[0][0]
                self._move(sell_token, sender, to, amount)
                self.fund(recipient, self.pools[sell_token.lower()](amount), USDC.address)
        return self._record("tx", sender=sender, to=to, data=data, value=value, fn=call[0] if call else None)

    async def send_native(self, private_key, to, value_wei, gas_price=None) -> str:
        sender = self.address_of(private_key)
        self._move(None, sender, to, value_wei)
        return self._record("native", sender=sender, to=to, value=value_wei)

    async def transfer_token(self, private_key, token_address, to, amount) -> str:
        sender = self.address_of(private_key)
        self._move(token_address, sender, to, int(amount))
        return self._record("transfer", sender=sender, to=to, token=token_address, amount=int(amount))

    async def approve_token(self, private_key, token_address, spender, amount) -> str:
        owner = self.address_of(private_key)
        self.allowances[(_key(token_address), owner.lower(), spender.lower())] = amount
        return self._record("approve", sender=owner, token=token_address, spender=spender, amount=amount)

    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        return {"status": 0 if tx_hash in self.reverted else 1, "blockNumber": 1}

    async def wait_for_success(self, tx_hash: str, purpose: str = "chain") -> Dict[str, Any]:
        if purpose in self.timeout_purposes:
            raise ConfirmationTimeoutError(tx_hash, 1)
        if purpose in self.revert_purposes:
            self.reverted.add(tx_hash)
        receipt = await self.wait_for_receipt(tx_hash)
        if receipt["status"] != 1:
            raise TransactionRevertedError(tx_hash, purpose)
        return receipt


class FakeZeroX:
    """0x client whose quotes execute against a FakeChain"""

    def __init__(self, chain: FakeChain):
        self.chain = chain
        self.outputs: Dict[str, int] = {}
        self.quotes: List[tuple] = []

    async def get_quote(self, sell_token, buy_token, sell_amount, taker, slippage_percent=None) -> ZeroXQuote:
        self.quotes.append((sell_token, sell_amount))
        output = self.outputs.get(_key(sell_token))
        if not output:
            raise NoRouteError("0x quote has no executable route")
        data = self.chain.stage_swap(sell_token, sell_amount, output, taker)
        return ZeroXQuote(
            sell_token=sell_token, buy_token=buy_token, sell_amount=sell_amount,
            buy_amount=output, min_buy_amount=output, to=ZEROX_SETTLER, data=data,
            value=0, gas=200000, allowance_spender=None, permit2_eip712=None, raw={},
        )


class FakePayoutProvider:
    """Fincra stand-in: name enquiry, payouts by reference, inbound payment lookup"""

    def __init__(self, payout_status: str = "successful"):
        self.payout_status = payout_status
        self.accept = True
        self.account_name: Optional[str] = "ADA OKAFOR"
        self.payouts: List[Dict[str, Any]] = []
        self.statuses: Dict[str, Dict[str, Any]] = {}
        self.payments: Dict[str, Dict[str, Any]] = {}

    async def verify_account_name(self, account_number: str, bank_code: str) -> Optional[str]:
        return self.account_name

    async def initiate_payout(self, amount_ngn, bank_code, account_number, account_name, reference, user_id=None):
        self.payouts.append(dict(
            amount_ngn=amount_ngn, bank_code=bank_code, account_number=account_number,
            account_name=account_name, reference=reference,
        ))
        if not self.accept:
            return {"success": False, "error": "Payout API request failed - money NOT sent", "reference": reference}
        self.statuses[reference] = {"status": self.payout_status, "reference": reference, "failure_reason": None}
        return {"success": True, "status": self.payout_status, "reference": reference, "payout_id": len(self.payouts)}

    async def check_transfer_status_by_reference(self, reference: str):
        return self.statuses.get(reference)

    async def verify_payment(self, reference: str):
        return self.payments.get(reference)


def make_settings(**overrides) -> OfframpSettings:
    values = dict(
        exchange_rate=Decimal("1650"),
        fee_tiers=parse_fee_tiers(DEFAULT_FEE_TIERS),
        minimum_amount=Decimal("500"),
        maximum_amount=Decimal("5000000"),
        transactions_enabled=True,
    )
    values.update(overrides)
    return OfframpSettings(**values)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest_asyncio.fixture
async def ledger_db(tmp_path):
    init_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    await create_tables()
    yield
    await dispose_engine()


@pytest.fixture
def chain():
    fake = FakeChain()
    fake.fund(FakeChain.address_of(FUNDING_PRIVATE_KEY), ONE_ETH)
    return fake


@pytest.fixture(scope="session")
def keys():
    return KeyDerivationService(TEST_MNEMONIC)


@pytest.fixture
def payout_provider():
    return FakePayoutProvider()


@pytest.fixture
def settings_provider():
    provider = OfframpSettingsProvider()
    provider.override(make_settings())
    return provider


@pytest.fixture
def stack(ledger_db, chain, keys, payout_provider, settings_provider) -> OfframpServices:
    """Every off-ramp service wired over the fakes"""
    ledger = DepositLedger()
    scanner = WalletScanner(chain)
    gas_sponsor = GasSponsor(chain, FUNDING_PRIVATE_KEY)
    zerox = FakeZeroX(chain)
    swap_router = SwapRouter(
        chain, ledger, keys, scanner, gas_sponsor, zerox, AerodromeService(chain), max_attempts=3,
    )
    settlement = SettlementEngine(
        chain, ledger, keys, gas_sponsor, payout_provider, settings_provider,
        receiver_address=RECEIVER_ADDRESS, max_payout_attempts=3,
    )
    pipeline = OfframpPipeline(ledger, scanner, swap_router, settlement, settle_delay_seconds=0)
    monitor = DepositMonitor(ledger, pipeline, expiry_minutes=60)
    recovery = RecoveryService(
        ledger, pipeline, scanner, swap_router, settlement,
        payment_verifier=payout_provider, keys=keys, chain=chain, gas_sponsor=gas_sponsor,
        pending_expiry_minutes=60, stall_threshold_minutes=30, duplicate_window_minutes=30,
    )
    requests = OfframpRequestService(
        ledger, keys, payout_provider, settings_provider, encryption_secret="", scanner=scanner,
    )
    return OfframpServices(
        ledger=ledger, keys=keys, chain=chain, scanner=scanner, gas_sponsor=gas_sponsor,
        swap_router=swap_router, settlement=settlement, pipeline=pipeline, monitor=monitor,
        recovery=recovery, requests=requests, settings=settings_provider, webhook_secret="whsec_test",
    )


async def create_row(stack: OfframpServices, user_id: Optional[str] = "user-1", **fields):
    """Insert an off-ramp row with a correctly derived deposit address"""
    transaction_id = fields.pop("transaction_id", None) or generate_transaction_id()
    derived, scheme = stack.keys.derive_for(user_id, transaction_id)
    values = dict(
        transaction_id=transaction_id,
        user_id=user_id,
        deposit_address=derived.address,
        derivation_identifier=derived.identifier,
        derivation_scheme=scheme.value,
        derivation_index=derived.index,
        account_number="0123456789",
        account_name="ADA OKAFOR",
        bank_code="058",
    )
    values.update(fields)
    return await stack.ledger.create(**values)


@pytest.fixture
def make_row(stack):
    async def _make(**fields):
        return await create_row(stack, **fields)
    return _make


@pytest.fixture
def settings_factory():
    return make_settings
