"""
Configuration management with Pydantic validation.

Loads settings from YAML config file and environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class RunConfig(BaseModel):
    """Runtime trading mode configuration."""

    mode: Literal["paper", "live"] = Field(default="paper", validation_alias="RUN_MODE")
    live_confirm: str = Field(default="", validation_alias="RUN_LIVE_CONFIRM")

    model_config = {
        "populate_by_name": True,
    }


class QueueConfig(BaseModel):
    """Order queue retry and recovery configuration."""

    max_attempts: int = Field(default=5, ge=1, le=50)
    initial_retry_delay_sec: float = Field(default=10.0, ge=0.0, le=3600.0)
    max_retry_delay_sec: float = Field(default=3600.0, ge=1.0, le=86400.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    # Fraction of the delay applied as +/- random jitter; 0 keeps delays exact.
    retry_jitter_pct: float = Field(default=0.0, ge=0.0, le=0.5)
    abandon_threshold: int = Field(default=50, ge=1, le=1000)
    stuck_order_timeout_sec: float = Field(default=120.0, ge=5.0, le=3600.0)
    no_credential_retry_delay_sec: float = Field(default=30.0, ge=1.0, le=3600.0)
    submit_timeout_sec: float = Field(default=30.0, ge=1.0, le=300.0)
    # Bound on the post-acceptance fill lookup, outside the submission deadline.
    fill_lookup_timeout_sec: float = Field(default=10.0, gt=0.0, le=120.0)

    @field_validator("max_retry_delay_sec")
    @classmethod
    def validate_max_retry_delay(cls, v: float, info) -> float:
        initial = info.data.get("initial_retry_delay_sec", 10.0)
        if v < initial:
            raise ValueError(
                f"max_retry_delay_sec ({v}) cannot be below initial_retry_delay_sec ({initial})"
            )
        return v


class RateLimitConfig(BaseModel):
    """Submission throughput and concurrency limits."""

    max_orders_per_second: float = Field(default=2.0, gt=0.0, le=1000.0)
    max_concurrent_orders: int = Field(default=5, ge=1, le=100)
    max_concurrent_per_api_key: int = Field(default=2, ge=1, le=50)
    acquire_timeout_sec: float = Field(default=30.0, ge=0.1, le=600.0)

    @field_validator("max_concurrent_per_api_key")
    @classmethod
    def validate_per_key(cls, v: int, info) -> int:
        total = info.data.get("max_concurrent_orders", 5)
        if v > total:
            raise ValueError(
                f"max_concurrent_per_api_key ({v}) cannot exceed max_concurrent_orders ({total})"
            )
        return v


class CircuitBreakerConfig(BaseModel):
    """Per-credential circuit breaker configuration."""

    enabled: bool = True
    failure_threshold: int = Field(default=3, ge=1, le=100)
    failure_window_sec: float = Field(default=300.0, ge=1.0, le=86400.0)
    reset_timeout_sec: float = Field(default=300.0, ge=1.0, le=86400.0)
    # Rate-limit responses only affect backoff unless this is enabled.
    rate_limit_counts_as_failure: bool = False


class SchedulerConfig(BaseModel):
    """Execution tick scheduling."""

    enabled: bool = True
    interval_sec: float = Field(default=60.0, ge=1.0, le=3600.0)


class ExchangeConfig(BaseModel):
    """Kraken REST API configuration."""

    base_url: str = "https://api.kraken.com"
    timeout_sec: float = Field(default=10.0, ge=1.0, le=120.0)
    query_fill_details: bool = True


class CredentialConfig(BaseModel):
    """A named set of exchange-access secrets."""

    id: str
    name: str = ""
    api_key: str = ""
    api_secret: str = ""
    is_active: bool = True


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    orders_path: str = "./data/orders"
    bots_path: str = "./data/bots"
    ledger_path: str = "./data/ledger"
    logs_path: str = "./logs"


class MonitoringConfig(BaseModel):
    """Monitoring and logging configuration."""

    metrics_port: int = Field(default=9090, ge=1024, le=65535)
    metrics_enabled: bool = True
    api_port: int = Field(default=8000, ge=1024, le=65535)
    api_enabled: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_http: bool = False
    error_log_max_bytes: int = Field(default=5_000_000, ge=100_000, le=50_000_000)
    error_log_backup_count: int = Field(default=3, ge=1, le=20)


class Settings(BaseSettings):
    """Main application settings."""

    run: RunConfig = Field(default_factory=RunConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    # user id -> credentials, in fallback order
    credentials: dict[str, list[CredentialConfig]] = Field(default_factory=dict)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "env_nested_delimiter": "__",
        "populate_by_name": True,
    }

    @field_validator("exchange")
    @classmethod
    def validate_exchange_timeout(cls, v: ExchangeConfig, info) -> ExchangeConfig:
        queue = info.data.get("queue") or QueueConfig()
        if v.timeout_sec >= queue.submit_timeout_sec:
            raise ValueError(
                f"exchange.timeout_sec ({v.timeout_sec}) must be below "
                f"queue.submit_timeout_sec ({queue.submit_timeout_sec})"
            )
        return v

    @property
    def live_trading(self) -> bool:
        return self.run.mode == "live"

    def validate_for_trading(self) -> list[str]:
        """Validate settings are suitable for the configured run mode. Returns list of errors."""
        errors = []

        if self.run.mode == "live":
            if self.run.live_confirm != "YES_I_UNDERSTAND":
                errors.append("RUN_LIVE_CONFIRM missing/invalid")
            for user_id, creds in self.credentials.items():
                for cred in creds:
                    if cred.is_active and (not cred.api_key or not cred.api_secret):
                        errors.append(f"credential {cred.id} for user {user_id} missing secrets")

        ids = [cred.id for creds in self.credentials.values() for cred in creds]
        duplicates = sorted({cid for cid in ids if ids.count(cid) > 1})
        if duplicates:
            errors.append(f"duplicate credential ids: {', '.join(duplicates)}")

        return errors


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Load settings from YAML config file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file values
    3. Default values
    """
    config_data = {}

    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH", "config.yaml")

    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file) as f:
            config_data = yaml.safe_load(f) or {}

    run_overrides = {}
    env_run_mode = os.environ.get("RUN_MODE")
    env_run_confirm = os.environ.get("RUN_LIVE_CONFIRM")
    if env_run_mode:
        run_overrides["mode"] = env_run_mode
    if env_run_confirm is not None:
        run_overrides["live_confirm"] = env_run_confirm
    if run_overrides:
        config_data.setdefault("run", {}).update(run_overrides)

    env_path = config_file.parent / ".env"
    settings = Settings(**config_data, _env_file=env_path)

    return settings


def create_default_config(path: str | Path = "config.yaml") -> None:
    """Create a default configuration file."""
    default_config = {
        "run": {
            "mode": "paper",
            "live_confirm": "",
        },
        "queue": {
            "max_attempts": 5,
            "initial_retry_delay_sec": 10,
            "max_retry_delay_sec": 3600,
            "backoff_multiplier": 2,
            "retry_jitter_pct": 0.0,
            "abandon_threshold": 50,
            "stuck_order_timeout_sec": 120,
            "no_credential_retry_delay_sec": 30,
            "submit_timeout_sec": 30,
            "fill_lookup_timeout_sec": 10,
        },
        "rate_limit": {
            "max_orders_per_second": 2,
            "max_concurrent_orders": 5,
            "max_concurrent_per_api_key": 2,
            "acquire_timeout_sec": 30,
        },
        "circuit_breaker": {
            "enabled": True,
            "failure_threshold": 3,
            "failure_window_sec": 300,
            "reset_timeout_sec": 300,
            "rate_limit_counts_as_failure": False,
        },
        "scheduler": {
            "enabled": True,
            "interval_sec": 60,
        },
        "exchange": {
            "base_url": "https://api.kraken.com",
            "timeout_sec": 10,
            "query_fill_details": True,
        },
        "credentials": {},
        "storage": {
            "orders_path": "./data/orders",
            "bots_path": "./data/bots",
            "ledger_path": "./data/ledger",
            "logs_path": "./logs",
        },
        "monitoring": {
            "metrics_port": 9090,
            "metrics_enabled": True,
            "api_port": 8000,
            "api_enabled": True,
            "log_level": "INFO",
            "log_http": False,
            "error_log_max_bytes": 5000000,
            "error_log_backup_count": 3,
        },
    }

    with open(path, "w") as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)
