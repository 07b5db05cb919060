"""
Gas sponsorship: top-ups from the funding wallet and sweeps back to it
"""

import pytest
from decimal import Decimal

from services.gas_sponsor import GasSponsor, eth_to_wei, sweep_keep_wei, wei_to_eth
from services.wallet_scanner import WalletScanner
from utils.base_tokens import KNOWN_TOKENS, USDC
from utils.offramp_errors import ConfigurationError, GasFundingError

from conftest import FUNDING_PRIVATE_KEY, ONE_ETH


@pytest.fixture
def sponsor(chain):
    return GasSponsor(
        chain, FUNDING_PRIVATE_KEY,
        min_gas_per_op=Decimal("0.0001"),
        topup_headroom=Decimal("0.00005"),
        reserve=Decimal("0.00002"),
        funding_reserve=Decimal("0.00002"),
    )


@pytest.fixture
def deposit(keys):
    return keys.derive("gas-user")


class TestEnsureGas:

    def test_wei_conversions(self):
        assert eth_to_wei(Decimal("0.0002")) == 200_000_000_000_000
        assert wei_to_eth(10 ** 15) == Decimal("0.001")

    def test_requires_funding_key(self, chain, monkeypatch):
        monkeypatch.setattr("services.gas_sponsor.Config.GAS_FUNDING_PRIVATE_KEY", None)
        with pytest.raises(ConfigurationError):
            GasSponsor(chain)

    @pytest.mark.asyncio
    async def test_no_op_when_already_funded(self, sponsor, chain, deposit):
        chain.fund(deposit.address, eth_to_wei(Decimal("0.001")))
        assert await sponsor.ensure_gas(deposit.address, estimated_ops=2) is None
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_tops_up_shortfall_plus_headroom(self, sponsor, chain, deposit):
        chain.fund(deposit.address, eth_to_wei(Decimal("0.00005")))

        tx_hash = await sponsor.ensure_gas(deposit.address, estimated_ops=2)

        assert tx_hash is not None
        [topup] = chain.sent_of("native")
        assert topup["to"] == deposit.address
        assert topup["value"] == eth_to_wei(Decimal("0.0002"))
        assert chain.balance(deposit.address) == eth_to_wei(Decimal("0.00025"))

    @pytest.mark.asyncio
    async def test_depleted_funding_wallet(self, sponsor, chain, deposit):
        chain.fund(sponsor.funding_address, -ONE_ETH + eth_to_wei(Decimal("0.0001")))

        with pytest.raises(GasFundingError):
            await sponsor.ensure_gas(deposit.address, estimated_ops=2)
        assert chain.sent_of("native") == []

    @pytest.mark.asyncio
    async def test_unconfirmed_topup_is_gas_funding_error(self, sponsor, chain, deposit):
        chain.timeout_purposes.add("gas top-up")
        with pytest.raises(GasFundingError):
            await sponsor.ensure_gas(deposit.address)

    @pytest.mark.asyncio
    async def test_reverted_topup_is_gas_funding_error(self, sponsor, chain, deposit):
        chain.revert_purposes.add("gas top-up")
        with pytest.raises(GasFundingError):
            await sponsor.ensure_gas(deposit.address)


class TestSweep:

    @pytest.mark.asyncio
    async def test_sweeps_excess_back_to_funding_wallet(self, sponsor, chain, deposit):
        chain.fund(deposit.address, eth_to_wei(Decimal("0.01")))
        before = chain.balance(sponsor.funding_address)

        tx_hash = await sponsor.sweep_excess_gas(deposit.address, deposit.private_key)

        assert tx_hash is not None
        keep = 21000 * chain.gas_price * 2
        assert chain.balance(deposit.address) == keep
        assert chain.balance(sponsor.funding_address) == before + eth_to_wei(Decimal("0.01")) - keep

    @pytest.mark.asyncio
    async def test_nothing_to_sweep_within_reserve(self, sponsor, chain, deposit):
        chain.fund(deposit.address, eth_to_wei(Decimal("0.00002")))
        assert await sponsor.sweep_excess_gas(deposit.address, deposit.private_key) is None
        assert chain.sent == []


class TestWalletEmptyAfterSweep:

    @pytest.mark.asyncio
    async def test_swept_wallet_counts_as_empty(self, sponsor, chain, deposit):
        chain.fund(deposit.address, eth_to_wei(Decimal("0.0003")))
        await sponsor.sweep_excess_gas(deposit.address, deposit.private_key)

        scanner = WalletScanner(chain)
        assert chain.balance(deposit.address) == sweep_keep_wei(chain.gas_price, Decimal("0.00002"))
        assert await scanner.is_wallet_empty(deposit.address, reserve=Decimal("0.00002"))

    @pytest.mark.asyncio
    async def test_eth_above_sweep_keep_is_not_empty(self, chain, deposit):
        keep = sweep_keep_wei(chain.gas_price, Decimal("0.00002"))
        chain.fund(deposit.address, keep + 1)
        assert not await WalletScanner(chain).is_wallet_empty(deposit.address, reserve=Decimal("0.00002"))

    @pytest.mark.asyncio
    async def test_leftover_token_is_not_empty(self, chain, deposit):
        dai = next(t for t in KNOWN_TOKENS if t.symbol == "DAI")
        chain.fund(deposit.address, 1, dai.address)
        assert not await WalletScanner(chain).is_wallet_empty(deposit.address)

    @pytest.mark.asyncio
    async def test_usdc_dust_allowance(self, chain, deposit):
        chain.fund(deposit.address, 500, USDC.address)
        scanner = WalletScanner(chain)
        assert not await scanner.is_wallet_empty(deposit.address)
        assert await scanner.is_wallet_empty(deposit.address, dust_usdc_raw=10_000)
