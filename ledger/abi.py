from decimal import Decimal

from web3 import Web3

UNITY_COIN = "UC"
SOULAANI_COIN = "SC"

TOKEN_DECIMALS = 18

STORE_PURCHASE_REWARD = "STORE_PURCHASE_REWARD"
STORE_SALE_REWARD = "STORE_SALE_REWARD"
MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"


_BALANCE_OF = {
    "constant": True,
    "inputs": [{"name": "account", "type": "address"}],
    "name": "balanceOf",
    "outputs": [{"name": "", "type": "uint256"}],
    "stateMutability": "view",
    "type": "function",
}

_TOTAL_SUPPLY = {
    "constant": True,
    "inputs": [],
    "name": "totalSupply",
    "outputs": [{"name": "", "type": "uint256"}],
    "stateMutability": "view",
    "type": "function",
}


UNITY_COIN_ABI = [
    _BALANCE_OF,
    _TOTAL_SUPPLY,
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "mintOnramp",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
]

SOULAANI_COIN_ABI = [
    _BALANCE_OF,
    _TOTAL_SUPPLY,
    {
        "inputs": [
            {"name": "recipient", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "reason", "type": "bytes32"},
        ],
        "name": "mintReward",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "recipient", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": True, "name": "reason", "type": "bytes32"},
            {"indexed": True, "name": "awarder", "type": "address"},
        ],
        "name": "Awarded",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "recipient", "type": "address"},
            {"indexed": False, "name": "requestedAmount", "type": "uint256"},
            {"indexed": False, "name": "actualAmount", "type": "uint256"},
            {"indexed": False, "name": "currentBalancePercent", "type": "uint256"},
        ],
        "name": "DiminishingRateApplied",
        "type": "event",
    },
]

SC_REWARD_ENGINE_ABI = [
    {
        "inputs": [
            {"name": "recipient", "type": "address"},
            {"name": "purchaseAmount", "type": "uint256"},
        ],
        "name": "calculateReward",
        "outputs": [{"name": "expectedReward", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

TOKEN_ABIS = {
    UNITY_COIN: UNITY_COIN_ABI,
    SOULAANI_COIN: SOULAANI_COIN_ABI,
}


def to_base_units(amount: Decimal) -> int:
    return int(Decimal(str(amount)) * (10 ** TOKEN_DECIMALS))


def from_base_units(value: int) -> Decimal:
    return Decimal(int(value)) / (Decimal(10) ** TOKEN_DECIMALS)


def reason_hash(reason: str) -> str:
    """bytes32 tag the SC contract stores with each award."""
    return Web3.to_hex(Web3.keccak(text=reason))
