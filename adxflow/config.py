from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_ACTIVITY_TIMEOUT,
    DEFAULT_SUBSCRIPTION_TIER,
    DEFAULT_TENANT_CLAIM,
    DEFAULT_TENANT_HEADER,
    DEFAULT_TENANT_ID,
)
from .contracts import RetryPolicy


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport used to publish execution events."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class TenantProfile(BaseModel):
    """Directory entry describing a known tenant."""

    name: str = ""
    subscription_tier: str = DEFAULT_SUBSCRIPTION_TIER
    features: List[str] = Field(default_factory=list)
    quotas: Dict[str, int] = Field(default_factory=dict)


class TenancyConfig(BaseModel):
    """How tenant identity is resolved at the boundary."""

    default_tenant_id: str = DEFAULT_TENANT_ID
    tenant_header: str = DEFAULT_TENANT_HEADER
    tenant_claim: str = DEFAULT_TENANT_CLAIM
    jwt_secret: Optional[str] = None
    jwks_url: Optional[str] = None
    audience: Optional[str] = None
    issuer: Optional[str] = None
    leeway: int = 30
    tenants: Dict[str, TenantProfile] = Field(default_factory=dict)


class EngineConfig(BaseModel):
    """Retry policies and version mappings consumed at engine startup."""

    default_activity_timeout: float = DEFAULT_ACTIVITY_TIMEOUT
    default_retry_policy: RetryPolicy = RetryPolicy()
    retry_policies: Dict[str, RetryPolicy] = Field(default_factory=dict)
    default_versions: Dict[str, str] = Field(default_factory=dict)

    def retry_policy_for(self, activity_type: str) -> RetryPolicy:
        return self.retry_policies.get(activity_type, self.default_retry_policy)


class AdxflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    tenancy: TenancyConfig = TenancyConfig()
    engine: EngineConfig = EngineConfig()


def load_config(path: Optional[str] = None) -> AdxflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to ADXFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("ADXFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = AdxflowConfig(**data)
    else:
        config = AdxflowConfig()

    env_db_url = os.getenv("ADXFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
