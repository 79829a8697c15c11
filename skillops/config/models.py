"""Configuration models for SkillOps."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


class DatabaseConfig(BaseModel):
    """PostgreSQL connection settings. An empty url selects in-memory stores."""

    url: str = Field(default="")
    pool_size: int = Field(default=20, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    pool_timeout: float = Field(default=30.0, gt=0)
    echo: bool = Field(default=False)


class LedgerConfig(BaseModel):
    """Credit ledger behaviour."""

    max_attempts: int = Field(default=5, ge=1, le=50)
    conflict_backoff_seconds: float = Field(default=0.005, ge=0.0)
    low_balance_thresholds: list[int] = Field(default_factory=lambda: [50, 25, 10])

    @field_validator("low_balance_thresholds")
    @classmethod
    def _sorted_thresholds(cls, value: list[int]) -> list[int]:
        if any(item < 0 for item in value):
            raise ValueError("low balance thresholds must be non-negative")
        return sorted(set(value), reverse=True)


class EngineConfig(BaseModel):
    """Execution engine limits."""

    max_concurrent: int = Field(default=10, ge=1)
    default_timeout_seconds: float = Field(default=300.0, gt=0)


class DispatcherConfig(BaseModel):
    """Trigger dispatcher settings."""

    tick_interval_minutes: int = Field(default=15, ge=1, le=1440)
    admission_batch_size: int = Field(default=100, ge=1)
    system_actor: str = Field(default="dispatcher")


class InvokerConfig(BaseModel):
    """External skill runner reached by the HTTP invoker."""

    base_url: str = Field(default="")
    api_key: str = Field(default="")
    timeout_seconds: float = Field(default=300.0, gt=0)


class APIConfig(BaseModel):
    """HTTP API authentication and CORS."""

    staff_tokens: list[str] = Field(default_factory=list)
    scheduler_tokens: list[str] = Field(default_factory=list)
    cors_origins: list[str] = Field(default_factory=list)


class SkillConfig(BaseModel):
    """Catalog entry describing how a skill is priced."""

    skill_id: str
    name: str = ""
    description: str = ""
    credit_cost: int = Field(default=0, ge=0)
    pricing: Literal["fixed", "usage"] = "fixed"
    max_credits: int | None = Field(default=None, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)

    @field_validator("skill_id")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("skill_id must be non-empty")
        return normalized

    @model_validator(mode="after")
    def _usage_needs_cap(self) -> SkillConfig:
        if self.pricing == "usage" and self.max_credits is None:
            raise ValueError("usage-priced skills require max_credits")
        return self


class SkillOpsConfig(BaseSettings):
    """Root configuration model for SkillOps."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    invoker: InvokerConfig = Field(default_factory=InvokerConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    skills: list[SkillConfig] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="SKILLOPS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, init_settings
