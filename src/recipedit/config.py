"""EditorSettings: environment-driven configuration for the editor core."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MB = 1024 * 1024

DEFAULT_IMAGE_TYPES = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/svg+xml",
)


class EditorSettings(BaseSettings):
    """Limits, debounce windows, and storage locations for an editor session.

    Every value can be overridden through a ``RECIPEDIT_``-prefixed
    environment variable, e.g. ``RECIPEDIT_MAX_TABS=4``.
    """

    model_config = SettingsConfigDict(
        env_prefix="RECIPEDIT_",
        case_sensitive=False,
        extra="ignore",
    )

    data_root: Path = Field(
        Path("~/.local/share/recipedit").expanduser(),
        description="Root directory for the blob store and local key-value entries",
    )
    max_image_bytes: int = Field(10 * MB, description="Maximum image payload size")
    max_attachment_bytes: int = Field(5 * MB, description="Maximum attachment-file payload size")
    allowed_image_types: tuple[str, ...] = Field(DEFAULT_IMAGE_TYPES, description="Accepted image media types")
    allowed_attachment_extensions: tuple[str, ...] = Field(
        (".json",), description="Accepted attachment file extensions"
    )
    key_max_length: int = Field(30, description="Maximum length of each slug segment in a blob key")
    max_tabs: int = Field(10, description="Maximum number of simultaneously open tabs")
    preview_debounce_seconds: float = Field(0.05, description="Quiescence window of the preview channel")
    autosave_debounce_seconds: float = Field(3.0, description="Quiescence window of the save channel")
    naming_debounce_seconds: float = Field(2.0, description="Quiescence window of the naming pass")
    log_level: str = Field("INFO", description="Level of the recipedit package logger")

    @field_validator("data_root", mode="before")
    @classmethod
    def expand_root(cls, v: Any) -> Any:
        """Expand user home and make absolute."""
        if isinstance(v, (str, Path)):
            return Path(v).expanduser().resolve()
        return v

    @field_validator("max_image_bytes", "max_attachment_bytes", "key_max_length", "max_tabs")
    @classmethod
    def positive_int(cls, v: int) -> int:
        """Reject zero and negative limits."""
        if v <= 0:
            msg = "must be > 0"
            raise ValueError(msg)
        return v

    @field_validator("preview_debounce_seconds", "autosave_debounce_seconds", "naming_debounce_seconds")
    @classmethod
    def non_negative_delay(cls, v: float) -> float:
        """Reject negative debounce windows."""
        if v < 0:
            msg = "must be >= 0"
            raise ValueError(msg)
        return v

    @field_validator("allowed_attachment_extensions")
    @classmethod
    def normalize_extensions(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Lower-case extensions and make sure each starts with a dot."""
        return tuple(ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in v)

    @field_validator("log_level")
    @classmethod
    def known_level(cls, v: str) -> str:
        """Accept only level names the logging module knows."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            msg = f"unknown log level {v!r}"
            raise ValueError(msg)
        return level

    @property
    def blobs_root(self) -> Path:
        """Directory of the file-backed blob store."""
        return self.data_root / "blobs"

    @property
    def storage_root(self) -> Path:
        """Directory of the local key-value entries."""
        return self.data_root / "local"


def configure_logging(settings: EditorSettings) -> logging.Logger:
    """Apply the configured level to the package logger and return it."""
    logger = logging.getLogger("recipedit")
    logger.setLevel(settings.log_level)
    return logger
