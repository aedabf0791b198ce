"""Integer fixed-point arithmetic.

Every amount, rate and index in the ledger is an ``int`` scaled by a power
of ten.  Floor division is the default; the ``_round_up`` variants are used
wherever rounding must not favour the borrower.
"""

from src.data.constants import ONE_18_DP, SECONDS_IN_YEAR


def mul_scale(n1: int, n2: int, scale: int) -> int:
    return n1 * n2 // scale


def mul_scale_round_up(n1: int, n2: int, scale: int) -> int:
    return -(-n1 * n2 // scale)


def div_scale(n1: int, n2: int, scale: int) -> int:
    return n1 * scale // n2


def div_scale_round_up(n1: int, n2: int, scale: int) -> int:
    return -(-n1 * scale // n2)


def exp_by_squaring(x: int, n: int, scale: int) -> int:
    """Compute ``x ** n`` in fixed point, truncating at every step."""
    if n == 0:
        return scale

    y = scale
    while n > 1:
        if n % 2:
            y = mul_scale(x, y, scale)
            n = (n - 1) // 2
        else:
            n = n // 2
        x = mul_scale(x, x, scale)
    return mul_scale(x, y, scale)


def compound_every_second(rate: int) -> int:
    """Effective annual rate of *rate* (18dp) compounded per second."""
    return exp_by_squaring(ONE_18_DP + rate // SECONDS_IN_YEAR, SECONDS_IN_YEAR, ONE_18_DP) - ONE_18_DP


# ---------------------------------------------------------------------------
# Asset values
# ---------------------------------------------------------------------------

def calc_asset_dollar_value(amount: int, price: int, decimals: int) -> int:
    """Dollar value (18dp) of *amount* token units at *price* (18dp)."""
    return mul_scale(amount, price, 10**decimals)


def calc_asset_dollar_value_round_up(amount: int, price: int, decimals: int) -> int:
    return mul_scale_round_up(amount, price, 10**decimals)


def calc_asset_amount(value: int, price: int, decimals: int) -> int:
    """Token units worth *value* dollars (18dp) at *price*."""
    return div_scale(value, price, 10**decimals)


def convert_asset_amount(
    amount_from: int,
    price_from: int,
    decimals_from: int,
    price_to: int,
    decimals_to: int,
) -> int:
    value = calc_asset_dollar_value(amount_from, price_from, decimals_from)
    return mul_scale(value, 10**decimals_to, price_to)
