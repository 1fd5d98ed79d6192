"""Configuration utilities for the card valuation service."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "POKEVALUE_"
DEFAULT_MAX_IMAGE_BYTES = 10 * 1024 * 1024


class AppConfig(BaseModel):
    """Runtime configuration for the API, the CLI and the lifecycle manager."""

    database_path: Path = Field(
        default_factory=lambda: Path.cwd() / "pokemon_cards.db",
        description="SQLite file holding the card_submissions table.",
    )
    store_backend: Literal["sqlite", "memory"] = Field(
        default="sqlite",
        description="Backing store for submissions; 'memory' keeps them in-process only.",
    )
    api_model: str = Field(
        default="gpt-4o-mini",
        description="Model identifier used for both identification and valuation.",
    )
    dry_run: bool = Field(
        default=False,
        description="If True, the model is not contacted and synthetic responses are returned instead.",
    )
    max_image_bytes: int = Field(
        default=DEFAULT_MAX_IMAGE_BYTES,
        gt=0,
        description="Largest decoded image accepted by the scan endpoint.",
    )
    accepted_image_types: Tuple[str, ...] = Field(
        default=("image/jpeg", "image/png", "image/webp", "image/gif"),
        description="MIME types accepted in image data URIs.",
    )
    collaborator_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds to wait for each identification or valuation call.",
    )
    max_output_tokens: int = Field(
        default=800,
        ge=1,
        description="Output token budget for each model call.",
    )
    retention_days: Optional[float] = Field(
        default=None,
        gt=0,
        description="Age after which finished submissions may be purged. None keeps them forever.",
    )
    event_log_path: Optional[Path] = Field(
        default=None,
        description="Optional JSON-lines file receiving one record per lifecycle transition.",
    )

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("database_path", "event_log_path", mode="before")
    @classmethod
    def _expand_path(cls, value: Path | str | None) -> Optional[Path]:
        if value is None or value == "":
            return None
        return Path(value).expanduser().resolve()

    @field_validator("accepted_image_types", mode="before")
    @classmethod
    def _split_types(cls, value: object) -> object:
        if isinstance(value, str):
            value = [part for part in value.split(",")]
        if isinstance(value, (list, tuple)):
            return tuple(str(part).strip().lower() for part in value if str(part).strip())
        return value

    @classmethod
    def from_env(cls, project_root: Path | None = None, **overrides: object) -> "AppConfig":
        """Build a config from ``POKEVALUE_*`` variables, reading ``.env`` first."""

        if project_root is not None:
            load_env(project_root)
        kwargs: Dict[str, object] = {}
        for name in cls.model_fields:
            value = os.getenv(ENV_PREFIX + name.upper())
            if value is not None and value != "":
                kwargs[name] = value
        kwargs.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**kwargs)


def load_env(project_root: Path) -> None:
    """Populate ``os.environ`` from ``project_root/.env`` without overriding existing values."""

    env_path = project_root / ".env"
    if not env_path.exists():
        return
    for line in env_path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))
    LOGGER.debug("Loaded environment defaults from %s", env_path)


def read_env(name: str) -> str | None:
    value = os.getenv(name)
    if value:
        LOGGER.debug("Using %s from environment", name)
    return value
