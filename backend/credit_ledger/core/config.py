"""Ledger configuration loaded from environment variables.

Settings for the database connection, grant recipe amounts, expiry
windows and the credit hold lifetime. Uses pydantic-settings for validation and .env file support.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
# Security: Runtime check in check_settings() prevents use in production
_INSECURE_DEFAULT_PASSWORD = "credit_ledger_dev_password"  # nosec B105


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "credit_ledger"
    database_user: str = "credit_ledger_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD
    # Full async URL; takes precedence over the discrete fields when set
    database_url_override: str = ""

    # Application
    environment: str = "development"

    # Grant recipes (credits)
    signup_bonus_general_credits: int = 30
    signup_bonus_business_credits: int = 100
    referral_reward_credits: int = 40

    # Expiry windows (days)
    free_credit_expiry_days: int = 30
    admin_bonus_default_expiry_days: int = 30
    expiring_windows_days: list[int] = [7, 30]

    # Credit holds (minutes)
    credit_hold_ttl_minutes: int = 60

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @model_validator(mode="after")
    def check_settings(self) -> "Settings":
        """Validate grant and expiry invariants.

        Checks:
        - Every grant recipe amount is positive (all environments)
        - Every expiry window is positive (all environments)
        - Credit hold lifetime is positive (all environments)
        - Database password must not be the default in production
        """
        amounts = {
            "SIGNUP_BONUS_GENERAL_CREDITS": self.signup_bonus_general_credits,
            "SIGNUP_BONUS_BUSINESS_CREDITS": self.signup_bonus_business_credits,
            "REFERRAL_REWARD_CREDITS": self.referral_reward_credits,
        }
        for name, value in amounts.items():
            if value <= 0:
                msg = f"{name} must be positive. Got: {value}"
                raise ValueError(msg)

        windows = {
            "FREE_CREDIT_EXPIRY_DAYS": self.free_credit_expiry_days,
            "ADMIN_BONUS_DEFAULT_EXPIRY_DAYS": self.admin_bonus_default_expiry_days,
            "CREDIT_HOLD_TTL_MINUTES": self.credit_hold_ttl_minutes,
        }
        for name, value in windows.items():
            if value <= 0:
                msg = f"{name} must be positive. Got: {value}"
                raise ValueError(msg)

        if not self.expiring_windows_days or any(
            days <= 0 for days in self.expiring_windows_days
        ):
            msg = (
                "EXPIRING_WINDOWS_DAYS must be a non-empty list of positive "
                f"day counts. Got: {self.expiring_windows_days}"
            )
            raise ValueError(msg)

        if (
            self.environment == "production"
            and not self.database_url_override
            and self.database_password == _INSECURE_DEFAULT_PASSWORD
        ):
            msg = (
                "Cannot use default database password in production. "
                "Set DATABASE_PASSWORD environment variable to a secure value."
            )
            raise ValueError(msg)

        return self


settings = Settings()
