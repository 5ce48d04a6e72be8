"""QuantFusion Configuration System."""

from __future__ import annotations

from typing import Optional, Literal
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class LLMConfig(BaseSettings):
    """External reasoner configuration."""
    model_config = SettingsConfigDict(env_prefix="")

    openai_api_key: str = ""
    anthropic_api_key: str = ""
    groq_api_key: str = ""
    gemini_api_key: str = ""

    llm_provider: Literal["groq", "openai", "anthropic", "gemini"] = "groq"
    llm_model: str = "llama-3.3-70b-versatile"
    gemini_api_url: str = (
        "https://generativelanguage.googleapis.com/v1beta/models/gemini-pro:generateContent"
    )

    # Retry state machine
    max_retries: int = 2  # 3 attempts total
    base_temperature: float = 0.1
    temperature_step: float = 0.2
    retry_delay_seconds: float = 1.0

    request_timeout_seconds: float = 60.0
    max_output_tokens: int = 2048

    # Rough cost estimate
    cost_per_1k_tokens: float = 0.001

    def api_key_for(self, provider: Optional[str] = None) -> str:
        provider = provider or self.llm_provider
        return {
            "groq": self.groq_api_key,
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "gemini": self.gemini_api_key,
        }.get(provider, "")


class CacheConfig(BaseSettings):
    """Memoization TTLs (seconds)."""
    model_config = SettingsConfigDict(env_prefix="CACHE_")

    quant_ttl: int = 300
    sentiment_ttl: int = 600
    fusion_ttl: int = 300
    news_ttl: int = 1800
    sentiment_history_ttl: int = 7 * 24 * 3600

    # Rolling sentiment history length
    sentiment_history_window: int = 7


class DataConfig(BaseSettings):
    """Data provider configuration."""
    model_config = SettingsConfigDict(env_prefix="")

    newsapi_key: str = ""
    newsapi_url: str = "https://newsapi.org/v2/everything"
    news_page_size: int = 20
    http_timeout_seconds: float = 15.0

    # Bars on disk, one <SYMBOL>.csv per instrument
    data_dir: str = "./data"
    default_period: int = 200

    # Seed for the simulated social feed
    social_seed: Optional[int] = None


class FusionConfig(BaseSettings):
    """Fusion engine configuration."""
    model_config = SettingsConfigDict(env_prefix="FUSION_")

    parallel_fetch: bool = True

    # Alpha by volatility regime (weight on the quant side)
    alpha_low: float = 0.8
    alpha_medium: float = 0.6
    alpha_high: float = 0.4

    # Base recommendation ladder before regime/confidence scaling
    strong_buy_threshold: float = 0.6
    buy_threshold: float = 0.3
    hold_threshold: float = -0.1
    sell_threshold: float = -0.4

    base_position_size: float = 0.10
    min_position_size: float = 0.02
    max_position_size: float = 0.25

    @field_validator("alpha_low", "alpha_medium", "alpha_high")
    @classmethod
    def validate_alpha(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"alpha must be within [0, 1], got {v}")
        return v


class SystemConfig(BaseSettings):
    """System configuration."""
    model_config = SettingsConfigDict(env_prefix="")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_dir: str = "logs"

    # Append-only analysis history
    analysis_store_path: str = "data/analyses.jsonl"


class QuantFusionConfig(BaseSettings):
    """Master QuantFusion configuration."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    llm: LLMConfig = Field(default_factory=LLMConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    fusion: FusionConfig = Field(default_factory=FusionConfig)
    system: SystemConfig = Field(default_factory=SystemConfig)

    @classmethod
    def load(cls, env_file: Optional[str] = None) -> "QuantFusionConfig":
        """Load configuration from environment."""
        if env_file:
            return cls(_env_file=env_file)
        return cls()

    def validate_for_llm(self) -> list[str]:
        """Check that the selected reasoner can be reached. Returns list of errors."""
        errors = []
        if not self.llm.api_key_for():
            errors.append(f"No API key configured for provider '{self.llm.llm_provider}'")
        if self.llm.max_retries < 0:
            errors.append("max_retries must be >= 0")
        return errors
