"""Chainlink aggregator addresses and the minimal ABI used for price reads."""

from src.data.constants import ETH, STETH, USDC

# ---------------------------------------------------------------------------
# Chainlink USD aggregators (Ethereum mainnet)
# ---------------------------------------------------------------------------
CHAINLINK_USD_FEEDS: dict[str, str] = {
    ETH: "0x5f4eC3Df9cbd43714FE2740f5E3616155c5b8419",
    USDC: "0x8fFfFfd4AfB6115b954Bd326cbe7B4BA576818f6",
    STETH: "0xCfE54B5cD566aB89272946F602D76Ea879CAb4a8",
}

# Token decimals of each pool's underlying
TOKEN_DECIMALS: dict[str, int] = {
    ETH: 18,
    USDC: 6,
    STETH: 18,
}

# ---------------------------------------------------------------------------
# Minimal ABI: only the view functions we call
# ---------------------------------------------------------------------------

CHAINLINK_FEED_ABI = [
    {
        "inputs": [],
        "name": "latestRoundData",
        "outputs": [
            {"name": "roundId", "type": "uint80"},
            {"name": "answer", "type": "int256"},
            {"name": "startedAt", "type": "uint256"},
            {"name": "updatedAt", "type": "uint256"},
            {"name": "answeredInRound", "type": "uint80"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
]
