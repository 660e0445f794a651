import pytest

from app.services.distributions import (
    DEFAULT_LEVELS,
    DistributionBucket,
    DistributionConfiguration,
    DistributionConfigurationError,
    level_ranges,
    normalise_levels,
)


@pytest.mark.parametrize("levels", [[], [5], [1, 2]])
def test_fewer_than_three_levels_are_rejected(levels):
    with pytest.raises(DistributionConfigurationError):
        normalise_levels(levels)


@pytest.mark.parametrize("levels", [[-5, 1, 3], [2, 4, -0.5]])
def test_negative_levels_are_rejected(levels):
    with pytest.raises(DistributionConfigurationError):
        normalise_levels(levels)


def test_levels_are_sorted_and_start_at_zero():
    assert normalise_levels([10, 1, 5]) == [0, 1, 5, 10]
    assert normalise_levels([3, 0, 1]) == [0, 1, 3]


def test_normalising_is_idempotent():
    once = normalise_levels([20, 7, 3])
    assert normalise_levels(once) == once


def test_level_ranges_are_half_open_and_end_unbounded():
    assert level_ranges([0, 1, 5]) == [(0, 1), (1, 5), (5, None)]


def test_level_ranges_cover_every_non_negative_value_exactly_once():
    levels = normalise_levels([0.01, 3, 6, 10])
    buckets = [DistributionBucket(lower, upper, 0) for lower, upper in level_ranges(levels)]

    for value in (0, 0.005, 0.01, 2.99, 3, 6, 9.999, 10, 10_000):
        assert sum(bucket.contains(value) for bucket in buckets) == 1


def test_configuration_falls_back_to_defaults():
    configuration = DistributionConfiguration()

    for key, levels in DEFAULT_LEVELS.items():
        assert configuration.levels(key) == levels
        assert len(levels) >= 3
        assert levels[0] == 0


def test_configuration_override_is_normalised():
    configuration = DistributionConfiguration({"user_payment_count": [4, 2, 9]})

    assert configuration.levels("user_payment_count") == [0, 2, 4, 9]
    assert configuration.levels("user_payment_amount") == DEFAULT_LEVELS["user_payment_amount"]


def test_configuration_set_rejects_short_level_sets_and_keeps_previous():
    configuration = DistributionConfiguration()

    with pytest.raises(DistributionConfigurationError):
        configuration.set("product_shop_count", [1, 2])

    assert configuration.levels("product_shop_count") == DEFAULT_LEVELS["product_shop_count"]


def test_configuration_returns_copies():
    configuration = DistributionConfiguration()

    configuration.levels("user_payment_count").append(1000)

    assert configuration.levels("user_payment_count") == DEFAULT_LEVELS["user_payment_count"]


def test_unknown_distribution_key_raises():
    with pytest.raises(DistributionConfigurationError):
        DistributionConfiguration().levels("unknown")
