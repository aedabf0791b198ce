"""Fixed-point scales and protocol constants."""

# Fixed-point units
ONE_4_DP = 10**4  # factors, ratios, target health
ONE_6_DP = 10**6  # rate curve params, retention, flash loan fee
ONE_10_DP = 10**10
ONE_12_DP = 10**12  # 6dp -> 18dp
ONE_14_DP = 10**14  # 4dp -> 18dp
ONE_18_DP = 10**18  # rates, indexes, prices

SECONDS_IN_YEAR = 365 * 24 * 60 * 60

# Parameter bounds
MAX_FLASH_LOAN_FEE = ONE_6_DP // 10  # 10%
MAX_RETENTION_RATE = ONE_6_DP
MAX_INTEREST_RATE_PARAMS = 100 * ONE_6_DP  # 10000%
MAX_STABLE_BORROW_PERCENTAGE = ONE_18_DP

# Initial interest index
INITIAL_INTEREST_INDEX = ONE_18_DP

# Pool identifiers with default price feeds
USDC = "USDC"
ETH = "ETH"
STETH = "stETH"
