"""
Client configuration.

Loaded from a YAML file (``load_config``) or built directly; every field
accepts its camelCase name as well, e.g.::

    nodes:
      - https://agent-1.example.com
      - https://agent-2.example.com
    policy: ROUND_ROBIN
    pollTimeoutSeconds: 30
    version: v2
    retry:
      maxAttempts: 10
      initialIntervalMs: 500
      multiplier: 2
      maxIntervalMs: 300000
    feedIdStore:
      redisUrl: ${REDIS_URL:-redis://localhost:6379/0}
"""
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .datafeed import DatafeedVersion
from .exceptions import InvalidConfigurationError
from .loadbalancing import LoadBalancingMode
from .retry import RetryConfig

logger = logging.getLogger(__name__)

_ENV_VAR = re.compile(r"\$\{([^}:]+)(?::-(([^}]*))?)?\}")


class FeedIdStoreConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    redis_url: Optional[str] = Field(default=None, alias="redisUrl",
                                     description="Redis connection URL, e.g., redis://localhost:6379/0")
    key: str = Field(default="datafeed:id")
    ttl_seconds: Optional[int] = Field(default=None, alias="ttlSeconds")


class DatafeedClientConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    nodes: List[str] = Field(..., min_length=1, description="Base URLs of the agent nodes")
    policy: LoadBalancingMode = Field(default=LoadBalancingMode.ROUND_ROBIN)
    seed: Optional[int] = Field(default=None, description="Seed of the RANDOM policy")
    poll_timeout_seconds: float = Field(default=30.0, gt=0, alias="pollTimeoutSeconds")
    request_timeout_seconds: float = Field(default=30.0, gt=0, alias="requestTimeoutSeconds")
    version: DatafeedVersion = Field(default=DatafeedVersion.V1)
    rotate_after_failures: int = Field(default=3, ge=1, alias="rotateAfterFailures")
    node_cooldown_seconds: float = Field(default=10.0, ge=0, alias="nodeCooldownSeconds")
    client_name: str = Field(default="datafeed-client", alias="clientName")
    bot_user_id: Optional[int] = Field(default=None, alias="botUserId")
    bot_display_name: Optional[str] = Field(default=None, alias="botDisplayName")

    retry: RetryConfig = Field(default_factory=RetryConfig)
    feed_id_store: FeedIdStoreConfig = Field(default_factory=FeedIdStoreConfig, alias="feedIdStore")

    @field_validator("version", mode="before")
    @classmethod
    def _parse_version(cls, value):
        if isinstance(value, DatafeedVersion):
            return value
        return DatafeedVersion.of(value)

    @field_validator("policy", mode="before")
    @classmethod
    def _parse_policy(cls, value):
        if isinstance(value, str):
            return value.upper()
        return value


def expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} and ${VAR_NAME:-default} environment variables in config data."""
    if isinstance(data, dict):
        return {key: expand_env_vars(value) for key, value in data.items()}
    if isinstance(data, list):
        return [expand_env_vars(item) for item in data]
    if isinstance(data, str):
        def replacer(match):
            default_value = match.group(2) if match.group(2) is not None else match.group(0)
            return os.getenv(match.group(1), default_value)

        return _ENV_VAR.sub(replacer, data)
    return data


def load_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def load_config(path: Union[str, Path], section: Optional[str] = None) -> DatafeedClientConfig:
    """Load the client configuration from a YAML file, optionally from one of its sections"""
    config_path = Path(path)
    if not config_path.exists():
        raise InvalidConfigurationError("path", str(config_path), f"Configuration file not found: {config_path}")

    data = expand_env_vars(load_yaml(config_path))
    if section is not None:
        if section not in data:
            raise InvalidConfigurationError("section", section, f"Section '{section}' missing from {config_path}")
        data = data[section]

    try:
        config = DatafeedClientConfig.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first["loc"])
        raise InvalidConfigurationError(key, str(first.get("input")), f"Invalid configuration in {config_path}: {e}") from e

    logger.debug("Loaded datafeed client configuration from %s", config_path)
    return config
