"""Runtime settings from ``.env``, the environment and CLI overrides."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .rasterize import DEFAULT_DPI
from .scheduler import DEFAULT_CONCURRENCY
from .transcribe import DEFAULT_BASE_URL, DEFAULT_PROMPT, DEFAULT_TIMEOUT_S

log = logging.getLogger(__name__)

ENV_API_KEY = "OPENROUTER_API_KEY"
ENV_MODEL = "OPENROUTER_MODEL"
ENV_BASE_URL = "OPENROUTER_BASE_URL"
ENV_CONCURRENCY = "BOOKSCRIBE_CONCURRENCY"
ENV_DPI = "BOOKSCRIBE_DPI"
ENV_MAX_ATTEMPTS = "BOOKSCRIBE_MAX_ATTEMPTS"


@dataclass(frozen=True)
class Settings:
    api_key: Optional[str] = None
    model: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    timeout_s: float = DEFAULT_TIMEOUT_S
    concurrency: int = DEFAULT_CONCURRENCY
    dpi: int = DEFAULT_DPI
    max_attempts: int = 4
    base_delay_s: float = 2.0
    max_delay_s: float = 60.0
    prompt: str = DEFAULT_PROMPT

    def require_remote(self) -> None:
        """Raise ConfigError unless the transcription service is usable."""
        if not self.api_key:
            raise ConfigError(f"{ENV_API_KEY} must be set")
        if not self.model:
            raise ConfigError(
                f"Model must be specified via --model or {ENV_MODEL} env var"
            )

    def __repr__(self) -> str:
        masked = "***" if self.api_key else None
        return (
            f"Settings(api_key={masked!r}, model={self.model!r}, "
            f"base_url={self.base_url!r}, concurrency={self.concurrency}, "
            f"dpi={self.dpi}, max_attempts={self.max_attempts})"
        )


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def load_settings(env_file: Optional[Path] = None, **overrides: Any) -> Settings:
    """Build Settings: defaults < ``.env`` < environment < non-None *overrides*."""
    if env_file is not None:
        if not env_file.exists():
            raise ConfigError(f"Env file not found: {env_file}")
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(override=False)

    settings = Settings(
        api_key=os.environ.get(ENV_API_KEY) or None,
        model=os.environ.get(ENV_MODEL) or None,
        base_url=os.environ.get(ENV_BASE_URL) or DEFAULT_BASE_URL,
        concurrency=_env_int(ENV_CONCURRENCY, DEFAULT_CONCURRENCY),
        dpi=_env_int(ENV_DPI, DEFAULT_DPI),
        max_attempts=_env_int(ENV_MAX_ATTEMPTS, Settings.max_attempts),
    )

    known = {f.name for f in fields(Settings)}
    unknown = set(overrides) - known
    if unknown:
        raise TypeError(f"Unknown settings: {sorted(unknown)}")
    applied = {k: v for k, v in overrides.items() if v is not None}
    if applied:
        settings = replace(settings, **applied)

    if settings.concurrency < 1:
        raise ConfigError(f"concurrency must be >= 1, got {settings.concurrency}")
    if settings.dpi < 1:
        raise ConfigError(f"dpi must be >= 1, got {settings.dpi}")
    log.debug("Loaded %r", settings)
    return settings
