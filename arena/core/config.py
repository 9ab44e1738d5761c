"""Configuration management for the arena engine."""

from decimal import Decimal
from typing import Dict, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from arena.core.exceptions import ConfigurationError
from arena.core.models import SimulationConfig

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="ENVIRONMENT"
    )
    app_name: str = Field(default="Arena Engine", validation_alias="APP_NAME")
    app_version: str = Field(default="0.1.0", validation_alias="APP_VERSION")


# =============================================================================
# Decision Provider Configuration
# =============================================================================


class ProviderAPIConfig(BaseSettings):
    """Credentials and request settings for the AI decision backends."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    openai_api_key: str = Field(default="", validation_alias="OPENAI_API_KEY")
    anthropic_api_key: str = Field(default="", validation_alias="ANTHROPIC_API_KEY")
    google_api_key: str = Field(default="", validation_alias="GOOGLE_API_KEY")
    xai_api_key: str = Field(default="", validation_alias="XAI_API_KEY")
    deepseek_api_key: str = Field(default="", validation_alias="DEEPSEEK_API_KEY")
    ollama_base_url: str = Field(
        default="http://localhost:11434", validation_alias="OLLAMA_BASE_URL"
    )

    # Whole-decision budget, retries included
    request_timeout: float = Field(default=30.0, validation_alias="PROVIDER_TIMEOUT")
    retry_attempts: int = Field(default=2, validation_alias="PROVIDER_RETRY_ATTEMPTS")
    temperature: float = Field(default=0.1, validation_alias="PROVIDER_TEMPERATURE")
    max_tokens: int = Field(default=200, validation_alias="PROVIDER_MAX_TOKENS")

    @field_validator("request_timeout")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("request_timeout must be positive")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v):
        if v < 1:
            raise ValueError("retry_attempts must be at least 1")
        return v

    def api_keys(self) -> Dict[str, str]:
        """Map of provider name to configured API key."""
        return {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "google": self.google_api_key,
            "xai": self.xai_api_key,
            "deepseek": self.deepseek_api_key,
        }

    def get_api_key(self, provider: str) -> str:
        return self.api_keys().get(provider.lower(), "")


# =============================================================================
# Simulation Defaults
# =============================================================================


class SimulationDefaultsConfig(BaseSettings):
    """Default competition parameters and engine tuning."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    market: str = Field(default="BTC", validation_alias="ARENA_MARKET")
    timeframe: str = Field(default="1h", validation_alias="ARENA_TIMEFRAME")
    initial_balance: float = Field(default=10000.0, validation_alias="ARENA_INITIAL_BALANCE")
    max_leverage: int = Field(default=10, validation_alias="ARENA_MAX_LEVERAGE")
    fee_rate: float = Field(default=0.001, validation_alias="ARENA_FEE_RATE")
    slippage_rate: float = Field(default=0.0005, validation_alias="ARENA_SLIPPAGE_RATE")
    liquidation_threshold: float = Field(
        default=0.5, validation_alias="ARENA_LIQUIDATION_THRESHOLD"
    )

    # Engine tuning
    candle_limit: int = Field(default=1000, validation_alias="ARENA_CANDLE_LIMIT")
    window_size: int = Field(default=200, validation_alias="ARENA_WINDOW_SIZE")
    prompt_candles: int = Field(default=20, validation_alias="ARENA_PROMPT_CANDLES")
    cache_ttl_seconds: float = Field(default=300.0, validation_alias="ARENA_CACHE_TTL")
    progress_log_interval: int = Field(
        default=50, validation_alias="ARENA_PROGRESS_LOG_INTERVAL"
    )

    @field_validator("fee_rate", "slippage_rate", "liquidation_threshold")
    @classmethod
    def validate_rate(cls, v):
        """Validate that a rate is between 0 and 1."""
        if v < 0 or v > 1:
            raise ValueError("Rates must be between 0 and 1")
        return v

    @field_validator("max_leverage", "candle_limit", "window_size", "prompt_candles")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    def to_simulation_config(
        self,
        market: Optional[str] = None,
        timeframe: Optional[str] = None,
        competition_id: Optional[str] = None,
        competition_name: Optional[str] = None,
    ) -> SimulationConfig:
        """Build an immutable run config from these defaults."""
        try:
            return SimulationConfig(
                market=market or self.market,
                timeframe=timeframe or self.timeframe,
                initial_balance=Decimal(str(self.initial_balance)),
                max_leverage=self.max_leverage,
                fee_rate=Decimal(str(self.fee_rate)),
                slippage_rate=Decimal(str(self.slippage_rate)),
                liquidation_threshold=Decimal(str(self.liquidation_threshold)),
                competition_id=competition_id,
                competition_name=competition_name,
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid simulation config: {e}") from e


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    database_url: str = Field(
        default="sqlite:///./data/arena.db", validation_alias="DATABASE_URL"
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: str = Field(default="logs/arena.log", validation_alias="LOG_FILE")


# =============================================================================
# Global Configuration Container
# =============================================================================


class ArenaConfig:
    """
    Container for all arena configurations.

    Usage:
        from arena.core.config import arena_config

        timeout = arena_config.providers.request_timeout
        sim = arena_config.simulation.to_simulation_config(market="ETH")
    """

    def __init__(self):
        self.system = SystemConfig()
        self.providers = ProviderAPIConfig()
        self.simulation = SimulationDefaultsConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

    @property
    def configured_providers(self) -> list:
        """Providers with an API key set."""
        return [name for name, key in self.providers.api_keys().items() if key]

    def validate_configuration(self) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean, 'issues' list and 'warnings' list
        """
        issues = []
        warnings = []

        if not self.configured_providers:
            warnings.append(
                "No provider API keys configured - hosted models fall back to random decisions"
            )

        sim = self.simulation
        if sim.window_size < sim.prompt_candles:
            issues.append(
                f"window_size ({sim.window_size}) must be >= prompt_candles ({sim.prompt_candles})"
            )
        if sim.initial_balance <= 0:
            issues.append("initial_balance must be positive")
        if sim.cache_ttl_seconds < 0:
            issues.append("cache_ttl_seconds must not be negative")

        return {"valid": len(issues) == 0, "issues": issues, "warnings": warnings}


# =============================================================================
# Global Configuration Instances
# =============================================================================

provider_config = ProviderAPIConfig()
simulation_defaults = SimulationDefaultsConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()

arena_config = ArenaConfig()

__all__ = [
    "SystemConfig",
    "ProviderAPIConfig",
    "SimulationDefaultsConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "ArenaConfig",
    "provider_config",
    "simulation_defaults",
    "database_config",
    "logging_config",
    "arena_config",
]
