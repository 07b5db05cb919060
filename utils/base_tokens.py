"""
Base mainnet token registry and contract ABIs used by the off-ramp.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

BASE_CHAIN_ID = 8453


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    address: Optional[str]  # None = native ETH
    decimals: int

    @property
    def is_native(self) -> bool:
        return self.address is None


ETH = TokenInfo("ETH", None, 18)
USDC = TokenInfo("USDC", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", 6)
WETH = TokenInfo("WETH", "0x4200000000000000000000000000000000000006", 18)
SEND = TokenInfo("SEND", "0xEab49138BA2Ea6dd776220fE26b7b8E446638956", 18)

# Tokens the deposit monitor and wallet scanner check on every address
KNOWN_TOKENS: List[TokenInfo] = [
    USDC,
    TokenInfo("DAI", "0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb", 18),
    TokenInfo("USDbC", "0xd9aAEc86B65D86f6A7B5B1b0c42FFA531710b6CA", 6),
    WETH,
    SEND,
    TokenInfo("cbETH", "0x2Ae3F1Ec7F1F5012CFEab0185bfc7aa3cf0DEc22", 18),
    TokenInfo("AERO", "0x940181a94A35A4569E4529A3CDfB74e38FD98631", 18),
    TokenInfo("DEGEN", "0x4ed4E862860beD51a9570b96d89aF5E1B0Efefed", 18),
    TokenInfo("BRETT", "0x532f27101965dd16442E59d40670FaF5eBB142E4", 18),
]

_BY_ADDRESS: Dict[str, TokenInfo] = {t.address.lower(): t for t in KNOWN_TOKENS}

AERODROME_ROUTER = "0xcF77a3Ba9A5CA399B7c97c74d54e5b1Beb874E43"
AERODROME_FACTORY = "0x420DD381b31aEf6683db6B902084cB0FFECe40Da"
PERMIT2_ADDRESS = "0x000000000022D473030F116dDEE9F6B43aC78BA3"

# Tokens 0x has no usable liquidity for; routed straight to Aerodrome
AERODROME_ONLY_TOKENS = {SEND.address.lower()}


def token_by_address(address: Optional[str]) -> Optional[TokenInfo]:
    if address is None:
        return ETH
    return _BY_ADDRESS.get(address.lower())


def is_usdc(address: Optional[str]) -> bool:
    return address is not None and address.lower() == USDC.address.lower()


ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "_owner", "type": "address"},
            {"name": "_spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_spender", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]

_AERODROME_ROUTE_COMPONENTS = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "stable", "type": "bool"},
    {"name": "factory", "type": "address"},
]

AERODROME_ROUTER_ABI = [
    {
        "name": "getAmountsOut",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "routes", "type": "tuple[]", "components": _AERODROME_ROUTE_COMPONENTS},
        ],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
    {
        "name": "swapExactTokensForTokens",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "routes", "type": "tuple[]", "components": _AERODROME_ROUTE_COMPONENTS},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
    {
        "name": "swapExactETHForTokens",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "routes", "type": "tuple[]", "components": _AERODROME_ROUTE_COMPONENTS},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
]
