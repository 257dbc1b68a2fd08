"""Configuration loading for Loom.

Reads an optional ``loom.yaml`` and applies environment overrides.
Credentials never live in the YAML file: each section names the environment
variable that holds its secret.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from loom.prompts import SYSTEM_PROMPT, ComplexityTier

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "loom.yaml"


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3324


class LinearConfig(BaseModel):
    api_url: str = "https://api.linear.app/graphql"
    access_token_env: str = "LINEAR_ACCESS_TOKEN"
    webhook_secret_env: str = "LINEAR_WEBHOOK_SECRET"

    @property
    def access_token(self) -> str | None:
        return os.environ.get(self.access_token_env)

    @property
    def webhook_secret(self) -> str | None:
        return os.environ.get(self.webhook_secret_env)


class GenerationConfig(BaseModel):
    """v0 Platform API settings."""

    api_url: str = "https://api.v0.dev/v1"
    api_key_env: str = "V0_API_KEY"
    system_prompt: str = SYSTEM_PROMPT
    response_mode: Literal["sync", "async"] = "async"
    # Complexity tier → v0 model ID
    models: dict[str, str] = Field(
        default_factory=lambda: {
            ComplexityTier.LOW.value: "v0-1.5-sm",
            ComplexityTier.MEDIUM.value: "v0-1.5-md",
            ComplexityTier.HIGH.value: "v0-1.5-lg",
        }
    )

    @field_validator("models")
    @classmethod
    def _validate_models(cls, v: dict[str, str]) -> dict[str, str]:
        missing = {tier.value for tier in ComplexityTier} - set(v)
        if missing:
            raise ValueError(f"generation.models is missing tiers: {sorted(missing)}")
        return v

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class DeploymentConfig(BaseModel):
    """Deployment API settings (v0 deploys previews to Vercel)."""

    api_url: str = "https://api.v0.dev/v1"
    api_key_env: str = "V0_API_KEY"

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class StoreConfig(BaseModel):
    backend: Literal["sqlite", "memory"] = "sqlite"
    db_path: str = ".loom-data/sessions.db"


class WebhookConfig(BaseModel):
    rate_limit_max: int = 60  # deliveries per minute, 0 = unlimited
    max_timestamp_skew: int = 60  # seconds, 0 = don't check webhookTimestamp


class LoomConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    linear: LinearConfig = Field(default_factory=LinearConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    deployment: DeploymentConfig = Field(default_factory=DeploymentConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)


def load_config(config_path: Path | None = None) -> LoomConfig:
    """Load Loom configuration.

    Args:
        config_path: YAML file to read. When None, ``loom.yaml`` in the working
            directory is used if it exists, otherwise defaults apply.

    Raises:
        FileNotFoundError: If an explicit ``config_path`` doesn't exist.
        pydantic.ValidationError: If config validation fails.
    """
    raw: dict = {}
    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Loom config not found: {config_path}")
        path: Path | None = config_path
    else:
        default = Path.cwd() / DEFAULT_CONFIG_FILE
        path = default if default.exists() else None

    if path is not None:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    config = LoomConfig(**raw)

    # Environment variable overrides for deployment
    data_dir = os.environ.get("LOOM_DATA_DIR", "").strip()
    if data_dir:
        config.store.db_path = str(Path(data_dir) / "sessions.db")

    db_path = os.environ.get("LOOM_DB_PATH", "").strip()
    if db_path:
        config.store.db_path = db_path

    port = os.environ.get("PORT", "").strip()
    if port:
        config.server.port = int(port)

    logger.info("Loaded Loom config from %s", path or "defaults")
    return config
