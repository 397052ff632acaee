"""
Shared configuration for the invoice batch pipeline.

Deployment switches are read once into ``Settings`` and injected into the
orchestrator and the API; nothing reads the environment per request.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field

# Client polling contract
POLL_INTERVAL_SECONDS = 8.0
MAX_POLL_ATTEMPTS = 45
INITIAL_POLL_DELAY_SECONDS = 2.0

# Local storage
ARTIFACT_DIR_DEFAULT = "artifacts"

# API server
API_HOST_DEFAULT = "0.0.0.0"
API_PORT_DEFAULT = 8080

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_TRUTHY = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Static deployment configuration."""

    extraction_enabled: bool = Field(
        default=True,
        description="False archives every extraction-related operation (SPLIT_ONLY delivery)",
    )
    artifact_dir: Path = Field(default=Path(ARTIFACT_DIR_DEFAULT))
    log_level: str = "INFO"
    poll_interval_seconds: float = Field(default=POLL_INTERVAL_SECONDS, gt=0)
    max_poll_attempts: int = Field(default=MAX_POLL_ATTEMPTS, ge=1)
    initial_poll_delay_seconds: float = Field(default=INITIAL_POLL_DELAY_SECONDS, ge=0)
    api_host: str = API_HOST_DEFAULT
    api_port: int = API_PORT_DEFAULT

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        split_only = env.get("SPLIT_ONLY", "").strip().lower() in _TRUTHY
        return cls(
            extraction_enabled=not split_only,
            artifact_dir=Path(env.get("ARTIFACT_DIR", ARTIFACT_DIR_DEFAULT)),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            poll_interval_seconds=float(env.get("POLL_INTERVAL_SECONDS", POLL_INTERVAL_SECONDS)),
            max_poll_attempts=int(env.get("MAX_POLL_ATTEMPTS", MAX_POLL_ATTEMPTS)),
            initial_poll_delay_seconds=float(
                env.get("INITIAL_POLL_DELAY_SECONDS", INITIAL_POLL_DELAY_SECONDS)
            ),
            api_host=env.get("API_HOST", API_HOST_DEFAULT),
            api_port=int(env.get("API_PORT", API_PORT_DEFAULT)),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )
