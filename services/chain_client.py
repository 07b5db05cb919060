"""
Base chain access for custodial deposit wallets.

Thin async wrapper over web3: balances, signing and broadcasting from a given
private key, and a bounded receipt wait. Every RPC request carries a timeout;
a transaction that is not mined within the polling budget raises
ConfirmationTimeoutError instead of blocking the caller.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence

from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from config import Config
from utils.base_tokens import ERC20_ABI, token_by_address
from utils.offramp_errors import ConfirmationTimeoutError, TransactionRevertedError

logger = logging.getLogger(__name__)

NATIVE_TRANSFER_GAS = 21000
GAS_ESTIMATE_BUFFER = 1.2
GAS_PRICE_BUMP = 1.1


class ChainClient:
    """Async Base RPC client used by the monitor, swap router and gas sponsor"""

    def __init__(
        self,
        rpc_url: str = None,
        chain_id: int = None,
        request_timeout: int = None,
        poll_attempts: int = None,
        poll_interval: float = None,
    ):
        self.rpc_url = rpc_url or Config.BASE_RPC_URL
        self.chain_id = chain_id or Config.BASE_CHAIN_ID
        self.poll_attempts = poll_attempts or Config.CONFIRMATION_POLL_ATTEMPTS
        self.poll_interval = poll_interval if poll_interval is not None else Config.CONFIRMATION_POLL_INTERVAL_SECONDS
        self.w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                self.rpc_url,
                request_kwargs={"timeout": request_timeout or Config.RPC_TIMEOUT_SECONDS},
            )
        )
        self._decimals_cache: Dict[str, int] = {}

    @staticmethod
    def checksum(address: str) -> str:
        return Web3.to_checksum_address(address)

    @staticmethod
    def address_of(private_key: str) -> str:
        return Account.from_key(private_key).address

    def _erc20(self, token_address: str):
        return self.w3.eth.contract(address=self.checksum(token_address), abi=ERC20_ABI)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_native_balance(self, address: str) -> int:
        return await self.w3.eth.get_balance(self.checksum(address))

    async def get_token_balance(self, token_address: Optional[str], owner: str) -> int:
        """Raw balance; token_address None means native ETH"""
        if token_address is None:
            return await self.get_native_balance(owner)
        return await self._erc20(token_address).functions.balanceOf(self.checksum(owner)).call()

    async def get_token_decimals(self, token_address: Optional[str]) -> int:
        known = token_by_address(token_address)
        if known is not None:
            return known.decimals
        key = token_address.lower()
        if key not in self._decimals_cache:
            self._decimals_cache[key] = await self._erc20(token_address).functions.decimals().call()
        return self._decimals_cache[key]

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        return await self._erc20(token_address).functions.allowance(
            self.checksum(owner), self.checksum(spender)
        ).call()

    async def get_gas_price(self) -> int:
        return await self.w3.eth.gas_price

    async def call_function(self, address: str, abi: Sequence[dict], fn_name: str, *args) -> Any:
        contract = self.w3.eth.contract(address=self.checksum(address), abi=abi)
        return await contract.functions[fn_name](*args).call()

    def encode_function(self, address: str, abi: Sequence[dict], fn_name: str, *args) -> str:
        contract = self.w3.eth.contract(address=self.checksum(address), abi=abi)
        return contract.encode_abi(fn_name, args=list(args))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def send_transaction(
        self,
        private_key: str,
        to: str,
        data: str = "0x",
        value: int = 0,
        gas: Optional[int] = None,
        gas_price: Optional[int] = None,
    ) -> str:
        """Sign and broadcast; returns the 0x-prefixed hash without waiting"""
        sender = self.address_of(private_key)
        tx: Dict[str, Any] = {
            "from": sender,
            "to": self.checksum(to),
            "value": int(value),
            "data": data or "0x",
            "chainId": self.chain_id,
            "nonce": await self.w3.eth.get_transaction_count(sender, "pending"),
            "gasPrice": gas_price or int(await self.get_gas_price() * GAS_PRICE_BUMP),
        }
        if gas is None:
            estimate = await self.w3.eth.estimate_gas({k: tx[k] for k in ("from", "to", "value", "data")})
            gas = int(estimate * GAS_ESTIMATE_BUFFER)
        tx["gas"] = int(gas)

        signed = Account.sign_transaction(tx, private_key)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(f"📤 CHAIN_TX_SENT: {tx_hash_hex} from={sender} to={to} value={value}")
        return tx_hash_hex

    async def send_native(self, private_key: str, to: str, value_wei: int, gas_price: Optional[int] = None) -> str:
        return await self.send_transaction(
            private_key, to, value=value_wei, gas=NATIVE_TRANSFER_GAS, gas_price=gas_price
        )

    async def transfer_token(self, private_key: str, token_address: str, to: str, amount: int) -> str:
        data = self.encode_function(token_address, ERC20_ABI, "transfer", self.checksum(to), int(amount))
        return await self.send_transaction(private_key, token_address, data=data)

    async def approve_token(self, private_key: str, token_address: str, spender: str, amount: int) -> str:
        data = self.encode_function(token_address, ERC20_ABI, "approve", self.checksum(spender), int(amount))
        return await self.send_transaction(private_key, token_address, data=data)

    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        """Poll for a receipt a bounded number of times"""
        for _ in range(self.poll_attempts):
            try:
                receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                receipt = None
            if receipt is not None:
                return dict(receipt)
            await asyncio.sleep(self.poll_interval)

        logger.error(f"⏰ CHAIN_TX_STUCK: {tx_hash} not mined after {self.poll_attempts} polls")
        raise ConfirmationTimeoutError(tx_hash, self.poll_attempts)

    async def wait_for_success(self, tx_hash: str, purpose: str = "chain") -> Dict[str, Any]:
        receipt = await self.wait_for_receipt(tx_hash)
        if receipt.get("status") != 1:
            logger.error(f"❌ CHAIN_TX_REVERTED: {purpose} {tx_hash}")
            raise TransactionRevertedError(tx_hash, purpose)
        logger.info(f"✅ CHAIN_TX_CONFIRMED: {purpose} {tx_hash} block={receipt.get('blockNumber')}")
        return receipt
