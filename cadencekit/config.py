from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .utils.retry import escalating_delays


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class SchedulingConfig(BaseModel):
    """How compiled steps are turned into timestamps."""

    default_send_time: str = "09:00"
    channel_send_times: Dict[str, str] = Field(
        default_factory=lambda: {"email": "09:00", "linkedin": "10:00"}
    )
    default_timezone: str = "UTC"
    bulk_stagger_seconds: float = 5.0
    # Claimed entries without a reported outcome are handed out again after this.
    claim_lease_seconds: Optional[float] = 3600.0

    def send_time_for(self, channel: Optional[str]) -> str:
        if channel and channel in self.channel_send_times:
            return self.channel_send_times[channel]
        return self.default_send_time


class ReadinessProfile(BaseModel):
    """Polling schedule for one external integration."""

    delays: List[float]
    deadline: float


def _default_profiles() -> Dict[str, ReadinessProfile]:
    return {
        # Google OAuth provisioning can take 30-60s
        "gmail": ReadinessProfile(delays=escalating_delays(2, 2, 8, 9), deadline=70),
        "linkedin": ReadinessProfile(delays=[3, 3, 3, 3, 3], deadline=20),
    }


class ReadinessConfig(BaseModel):
    profiles: Dict[str, ReadinessProfile] = Field(default_factory=_default_profiles)
    check_timeout: Optional[float] = 10.0


class AccountsConfig(BaseModel):
    """Account-linking provider endpoint."""

    base_url: Optional[str] = None
    api_key: Optional[str] = None


class ProgressConfig(BaseModel):
    halt_on_failure: bool = True


class CadenceConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    event_log_url: Optional[str] = None
    scheduling: SchedulingConfig = SchedulingConfig()
    readiness: ReadinessConfig = ReadinessConfig()
    accounts: AccountsConfig = AccountsConfig()
    progress: ProgressConfig = ProgressConfig()


def load_config(path: Optional[str] = None) -> CadenceConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CADENCEKIT_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CADENCEKIT_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CadenceConfig(**data)
    else:
        config = CadenceConfig()

    env_db_url = os.getenv("CADENCEKIT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("CADENCEKIT_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport  # type: ignore[assignment]
    env_api_key = os.getenv("CADENCEKIT_ACCOUNTS_API_KEY")
    if env_api_key:
        config.accounts.api_key = env_api_key
    return config
