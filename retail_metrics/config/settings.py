"""
Retail Profitability Analytics
Centralized Configuration Management

Pydantic settings with environment variable support, validation, and type
safety for the analytics pipeline.
"""

from functools import lru_cache
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_COHORT_BUCKETS = [
    "1980-1985",
    "1986-1990",
    "1991-1995",
    "1996-2000",
    "2001-2005",
    "2006-2010",
    "2011-2015",
    "2016-2020",
]


class AnalyticsSettings(BaseSettings):
    """Profitability and segmentation configuration"""

    model_config = SettingsConfigDict(env_prefix="ANALYTICS_")

    cohort_buckets: List[str] = Field(
        default_factory=lambda: list(DEFAULT_COHORT_BUCKETS),
        description="Acquisition-year cohort ranges, closed-closed, as 'start-end' labels",
    )
    unbucketed_label: str = Field(default="unbucketed", description="Label for years outside every cohort range")
    unknown_label: str = Field(default="Unknown", description="Label for facts with no matching dimension row")
    strict_lines: bool = Field(default=True, description="Raise on the first malformed order line")
    convert_currency: bool = Field(default=False, description="Apply exchange_rate before derivation")
    currency_decimals: int = Field(default=2, description="Decimal places for currency fields")
    top_n: int = Field(default=1, description="Default number of leaders per partition")
    tie_policy: str = Field(default="all", description="Tie policy at the cut-off: all or key_ascending")
    aggregation_workers: int = Field(default=1, description="Threads for partitioned aggregation")

    @field_validator("tie_policy")
    @classmethod
    def validate_tie_policy(cls, v: str) -> str:
        """Validate tie policy value"""
        allowed = ["all", "key_ascending"]
        if v.lower() not in allowed:
            raise ValueError(f"Tie policy must be one of: {allowed}")
        return v.lower()

    @field_validator("top_n", "aggregation_workers")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Counts must be at least one"""
        if v < 1:
            raise ValueError("Value must be >= 1")
        return v


class DataLakeSettings(BaseSettings):
    """Data Lake Storage Configuration"""

    model_config = SettingsConfigDict(env_prefix="DATA_")

    lake_path: str = Field(default="./data", description="Data lake root path")
    default_format: str = Field(default="parquet", description="Default file format")


class MonitoringSettings(BaseSettings):
    """Logging Configuration"""

    model_config = SettingsConfigDict(env_prefix="", populate_by_name=True)

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="retail-metrics", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    analytics: AnalyticsSettings = Field(default_factory=AnalyticsSettings)
    data_lake: DataLakeSettings = Field(default_factory=DataLakeSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
