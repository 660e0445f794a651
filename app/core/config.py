from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.services.distributions import DistributionConfiguration, normalise_levels


class Settings(BaseSettings):
    """Application configuration loaded from environment variables.

    Distribution level sets are validated while the settings load so an
    unusable configuration stops the application at startup rather than on
    the first product detail request.
    """

    app_name: str = "Product Catalog Admin"
    environment: str = "development"
    secret_key: str = Field(validation_alias=AliasChoices("SESSION_SECRET", "SECRET_KEY"))
    database_host: str | None = Field(default=None, validation_alias="DB_HOST")
    database_user: str | None = Field(default=None, validation_alias="DB_USER")
    database_password: str | None = Field(default=None, validation_alias="DB_PASSWORD")
    database_name: str | None = Field(default=None, validation_alias="DB_NAME")
    database_port: int = Field(default=3306, validation_alias="DB_PORT")
    migration_lock_timeout: int = Field(
        default=60, validation_alias="MIGRATION_LOCK_TIMEOUT"
    )
    session_cookie_name: str = Field(
        default="catalog_admin_session",
        validation_alias=AliasChoices("SESSION_COOKIE_NAME", "SESSION_COOKIE"),
    )
    items_per_page: int = Field(default=50, ge=1, le=500, validation_alias="ITEMS_PER_PAGE")
    audit_log_path: Path | None = Field(
        default=None,
        validation_alias=AliasChoices("AUDIT_LOG_PATH", "FAIL2BAN_LOG_PATH"),
    )
    user_payment_amount_levels: list[float] | None = Field(
        default=None, validation_alias="DISTRIBUTION_USER_PAYMENT_AMOUNT"
    )
    user_payment_count_levels: list[float] | None = Field(
        default=None, validation_alias="DISTRIBUTION_USER_PAYMENT_COUNT"
    )
    product_shop_count_levels: list[float] | None = Field(
        default=None, validation_alias="DISTRIBUTION_PRODUCT_SHOP_COUNT"
    )
    product_days_from_last_order_levels: list[float] | None = Field(
        default=None, validation_alias="DISTRIBUTION_PRODUCT_DAYS_FROM_LAST_ORDER"
    )

    @field_validator(
        "user_payment_amount_levels",
        "user_payment_count_levels",
        "product_shop_count_levels",
        "product_days_from_last_order_levels",
    )
    @classmethod
    def _normalise_distribution_levels(cls, value: list[float] | None) -> list[float] | None:
        if value is None:
            return None
        return normalise_levels(value)

    @field_validator("audit_log_path", mode="before")
    @classmethod
    def _empty_path_to_none(cls, value: str | Path | None) -> str | Path | None:
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    def distribution_levels(self) -> dict[str, list[float]]:
        """Return the explicitly configured level sets keyed by distribution name."""

        configured = {
            "user_payment_amount": self.user_payment_amount_levels,
            "user_payment_count": self.user_payment_count_levels,
            "product_shop_count": self.product_shop_count_levels,
            "product_days_from_last_order": self.product_days_from_last_order_levels,
        }
        return {key: levels for key, levels in configured.items() if levels is not None}

    model_config = SettingsConfigDict(
        env_file=(Path(__file__).resolve().parent.parent.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


class TemplatesConfig(BaseModel):
    """Configuration for templating."""

    template_path: Path = Path(__file__).resolve().parent.parent / "templates"


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_templates_config() -> TemplatesConfig:
    return TemplatesConfig()


@lru_cache
def get_distribution_configuration() -> DistributionConfiguration:
    return DistributionConfiguration(get_settings().distribution_levels())
