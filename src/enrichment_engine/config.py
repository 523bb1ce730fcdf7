from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .coordinator.policy import BackoffPolicy


class EngineSettings(BaseSettings):
    """Runtime settings, overridable via ENRICH_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="ENRICH_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # workers and global in-flight ceiling
    concurrency: int = Field(5, ge=1, le=100)
    # records read ahead of the workers
    batch_size: int = Field(100, ge=1)
    # 0 = unlimited
    per_credential_limit: int = Field(1, ge=0)
    # total attempts per record, first call included
    max_retries: int = Field(5, ge=1)
    backoff_base_ms: int = Field(750, ge=0)
    backoff_cap_ms: int = Field(15_000, ge=0)

    output_path: Path = Path("output/results.csv")
    resume: bool = True
    ledger_path: Optional[Path] = None
    fsync: bool = True

    rate_limit_ban_threshold: int = Field(3, ge=1)
    credit_cap: Optional[int] = Field(None, ge=1)
    requests_per_second: Optional[float] = Field(None, gt=0)

    call_timeout_s: Optional[float] = Field(60.0, gt=0)
    shutdown_timeout_s: float = Field(10.0, ge=0)
    run_timeout_s: Optional[float] = Field(None, gt=0)
    progress_interval_s: float = Field(1.0, gt=0)

    keys_path: Path = Path("keys.json")
    used_keys_path: Optional[Path] = None
    precheck_keys: bool = False
    stop_flag_file: Optional[Path] = None

    @field_validator("backoff_cap_ms")
    def _cap_not_below_base(cls, v, info):
        base = info.data.get("backoff_base_ms")
        if base is not None and v < base:
            raise ValueError("backoff_cap_ms must be >= backoff_base_ms")
        return v

    @property
    def resolved_ledger_path(self) -> Path:
        if self.ledger_path is not None:
            return self.ledger_path
        return self.output_path.with_name(self.output_path.name + ".ledger.jsonl")

    @property
    def resolved_used_keys_path(self) -> Path:
        if self.used_keys_path is not None:
            return self.used_keys_path
        return self.keys_path.with_name("used_keys.json")

    def to_backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.max_retries,
            base_ms=self.backoff_base_ms,
            cap_ms=self.backoff_cap_ms,
        )


@lru_cache()
def get_settings() -> EngineSettings:
    return EngineSettings()
