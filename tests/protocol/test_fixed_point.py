"""Tests for integer fixed-point helpers."""

from src.data.constants import ONE_18_DP
from src.protocol.fixed_point import (
    calc_asset_amount,
    calc_asset_dollar_value,
    calc_asset_dollar_value_round_up,
    compound_every_second,
    convert_asset_amount,
    div_scale,
    div_scale_round_up,
    exp_by_squaring,
    mul_scale,
    mul_scale_round_up,
)


class TestScaling:
    def test_mul_scale_floors(self) -> None:
        assert mul_scale(3, 5, 2) == 7

    def test_mul_scale_round_up(self) -> None:
        assert mul_scale_round_up(3, 5, 2) == 8
        # exact results are not bumped
        assert mul_scale_round_up(4, 5, 2) == 10

    def test_div_scale_floors(self) -> None:
        assert div_scale(1, 3, ONE_18_DP) == 333_333_333_333_333_333

    def test_div_scale_round_up(self) -> None:
        assert div_scale_round_up(1, 3, ONE_18_DP) == 333_333_333_333_333_334
        assert div_scale_round_up(1, 2, ONE_18_DP) == 5 * 10**17


class TestExpBySquaring:
    def test_power_of_two(self) -> None:
        assert exp_by_squaring(2 * ONE_18_DP, 10, ONE_18_DP) == 1024 * ONE_18_DP

    def test_zero_exponent_is_one(self) -> None:
        assert exp_by_squaring(7 * ONE_18_DP, 0, ONE_18_DP) == ONE_18_DP

    def test_first_power_is_identity(self) -> None:
        assert exp_by_squaring(123_456, 1, ONE_18_DP) == 123_456

    def test_odd_exponent(self) -> None:
        assert exp_by_squaring(3 * ONE_18_DP, 5, ONE_18_DP) == 243 * ONE_18_DP

    def test_compound_zero_rate(self) -> None:
        assert compound_every_second(0) == 0

    def test_compounding_beats_simple_rate(self) -> None:
        apy = compound_every_second(10**17)
        assert 10**17 < apy < 106 * 10**15


class TestAssetValues:
    def test_dollar_value_of_six_decimal_token(self) -> None:
        # 1 USDC at $1
        assert calc_asset_dollar_value(1_000_000, ONE_18_DP, 6) == ONE_18_DP

    def test_dollar_value_round_up(self) -> None:
        assert calc_asset_dollar_value(1, ONE_18_DP // 3, 0) == ONE_18_DP // 3
        assert calc_asset_dollar_value_round_up(1, 10, 1) == 1
        assert calc_asset_dollar_value(1, 10, 2) == 0
        assert calc_asset_dollar_value_round_up(1, 10, 2) == 1

    def test_asset_amount_from_value(self) -> None:
        assert calc_asset_amount(2_000 * ONE_18_DP, 2_000 * ONE_18_DP, 18) == ONE_18_DP

    def test_convert_between_assets(self) -> None:
        # 1 ETH at $2000 into USDC at $1
        converted = convert_asset_amount(ONE_18_DP, 2_000 * ONE_18_DP, 18, ONE_18_DP, 6)
        assert converted == 2_000 * 10**6
