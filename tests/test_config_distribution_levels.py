import pytest
from pydantic import ValidationError

from app.core.config import Settings, get_distribution_configuration
from app.main import set_distribution_configuration
from app.services.distributions import (
    DEFAULT_LEVELS,
    DistributionConfiguration,
    DistributionConfigurationError,
)


def test_levels_from_environment_are_normalised(monkeypatch):
    monkeypatch.setenv("DISTRIBUTION_USER_PAYMENT_COUNT", "[5, 2, 10]")

    settings = Settings()

    assert settings.user_payment_count_levels == [0, 2, 5, 10]
    assert settings.distribution_levels() == {"user_payment_count": [0, 2, 5, 10]}


def test_short_level_set_fails_settings_validation(monkeypatch):
    monkeypatch.setenv("DISTRIBUTION_PRODUCT_SHOP_COUNT", "[1, 2]")

    with pytest.raises(ValidationError):
        Settings()


def test_unconfigured_sets_use_defaults(monkeypatch):
    monkeypatch.delenv("DISTRIBUTION_USER_PAYMENT_AMOUNT", raising=False)
    monkeypatch.setenv("DISTRIBUTION_PRODUCT_DAYS_FROM_LAST_ORDER", "[30, 7, 90]")

    configuration = DistributionConfiguration(Settings().distribution_levels())

    assert configuration.levels("product_days_from_last_order") == [0, 7, 30, 90]
    assert configuration.levels("user_payment_amount") == DEFAULT_LEVELS["user_payment_amount"]


def test_blank_audit_log_path_is_ignored(monkeypatch):
    monkeypatch.setenv("AUDIT_LOG_PATH", "  ")

    assert Settings().audit_log_path is None


@pytest.fixture
def fresh_distribution_configuration():
    get_distribution_configuration.cache_clear()
    yield get_distribution_configuration
    get_distribution_configuration.cache_clear()


def test_set_distribution_configuration_replaces_level_set(fresh_distribution_configuration):
    set_distribution_configuration("product_shop_count", [10, 2, 5])

    assert fresh_distribution_configuration().levels("product_shop_count") == [0, 2, 5, 10]


def test_set_distribution_configuration_keeps_previous_set_on_failure(
    fresh_distribution_configuration,
):
    set_distribution_configuration("user_payment_count", [1, 2, 3])

    with pytest.raises(DistributionConfigurationError):
        set_distribution_configuration("user_payment_count", [4, 8])

    assert fresh_distribution_configuration().levels("user_payment_count") == [0, 1, 2, 3]
