"""Environment-driven generator configuration.

Variables (all optional):

    GENERATION_MODE           direct | workflow | auto (default auto)
    GEMINI_API_KEY            required for the direct backend
    GEMINI_BASE_URL           generateContent API root
    GEMINI_MODEL              overrides every entry in MODEL_MAP
    WORKFLOW_API_KEY          enables the workflow backend in auto mode
    WORKFLOW_ENDPOINT         workflow run URL
    WORKFLOW_STREAMING        "true" to use the SSE response mode
    GENERATION_TIMEOUT_MS     per-call timeout (default 300000)
    GOOGLE_MAPS_API_KEY       geocoding + Places evidence
    MAX_REGENERATION_TARGETS  regeneration upper bound (default 3)
    DATA_DIR                  quest store directory

`.env` loading happens at the entry points (app.py, main.py), not here.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

GenerationMode = Literal["direct", "workflow", "auto"]

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_WORKFLOW_ENDPOINT = "https://api.dify.ai/v1/workflows/run"
DEFAULT_TIMEOUT_MS = 300_000
DEFAULT_MAX_REGENERATION_TARGETS = 3
DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigError(ValueError):
    """Raised when a required setting is missing or malformed."""


class GeneratorConfig(BaseModel):
    mode: GenerationMode = "auto"
    gemini_api_key: str = ""
    gemini_base_url: str = DEFAULT_GEMINI_BASE_URL
    gemini_model: str | None = None
    workflow_api_key: str = ""
    workflow_endpoint: str = DEFAULT_WORKFLOW_ENDPOINT
    workflow_streaming: bool = False
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    maps_api_key: str = ""
    max_regeneration_targets: int = Field(default=DEFAULT_MAX_REGENERATION_TARGETS, ge=0)
    data_dir: Path = DEFAULT_DATA_DIR

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _mode_env() -> GenerationMode:
    raw = os.getenv("GENERATION_MODE", "auto").strip().lower() or "auto"
    # Older deployments named the backends after their providers
    raw = {"gemini": "direct", "dify": "workflow"}.get(raw, raw)
    if raw not in ("direct", "workflow", "auto"):
        raise ConfigError(f"GENERATION_MODE must be direct, workflow or auto, got {raw!r}")
    return raw  # type: ignore[return-value]


def config_from_env() -> GeneratorConfig:
    """Build a GeneratorConfig from the process environment."""
    config = GeneratorConfig(
        mode=_mode_env(),
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_base_url=os.getenv("GEMINI_BASE_URL", "") or DEFAULT_GEMINI_BASE_URL,
        gemini_model=os.getenv("GEMINI_MODEL") or None,
        workflow_api_key=os.getenv("WORKFLOW_API_KEY", ""),
        workflow_endpoint=os.getenv("WORKFLOW_ENDPOINT", "") or DEFAULT_WORKFLOW_ENDPOINT,
        workflow_streaming=os.getenv("WORKFLOW_STREAMING", "").strip().lower() in _TRUE_VALUES,
        timeout_ms=_int_env("GENERATION_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
        maps_api_key=os.getenv("GOOGLE_MAPS_API_KEY", ""),
        max_regeneration_targets=_int_env("MAX_REGENERATION_TARGETS", DEFAULT_MAX_REGENERATION_TARGETS),
        data_dir=Path(os.getenv("DATA_DIR", "") or DEFAULT_DATA_DIR),
    )
    logger.debug(
        "config mode=%s gemini_key=%s workflow_key=%s streaming=%s",
        config.mode, bool(config.gemini_api_key), bool(config.workflow_api_key),
        config.workflow_streaming,
    )
    return config
