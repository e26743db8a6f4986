"""
Configuration model for the combat engine server and clients.
"""

import os
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "COMBAT_KEEPER_"


class EngineConfig(BaseModel):
    """Settings shared by the authoritative mutator and the Action Gateway.

    Values come from ``COMBAT_KEEPER_*`` environment variables (optionally
    loaded from a ``.env`` file) with the defaults below.
    """

    # Transport
    base_url: str = Field(
        default="http://127.0.0.1:8787",
        description="Base URL of the authoritative mutator"
    )
    request_timeout: float = Field(
        default=10.0,
        gt=0.0,
        description="Seconds before a single remote call times out"
    )

    # Retry policy
    max_retries: int = Field(
        default=2,
        ge=0,
        le=5,
        description="Additional attempts after the first for transient failures"
    )
    retry_base_delay: float = Field(
        default=0.5,
        ge=0.0,
        description="Initial backoff delay in seconds"
    )
    retry_max_delay: float = Field(
        default=4.0,
        ge=0.0,
        description="Upper bound on a single backoff delay in seconds"
    )

    # Server
    host: str = Field(default="127.0.0.1", description="Bind address for the mutator")
    port: int = Field(default=8787, ge=1, le=65535, description="Bind port for the mutator")
    rate_limit_per_minute: int = Field(
        default=120,
        ge=1,
        description="Mutating calls allowed per client per rolling minute"
    )
    idempotency_ttl_seconds: float = Field(
        default=600.0,
        gt=0.0,
        description="How long a completed response is replayed for its key"
    )

    log_level: str = Field(default="INFO", description="Root logging level")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    @classmethod
    def from_env(cls, **overrides: Any) -> "EngineConfig":
        """Build a config from the environment.

        Args:
            **overrides: Explicit values that win over the environment.

        Returns:
            A validated EngineConfig.
        """
        load_dotenv()
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update(overrides)
        return cls(**values)
