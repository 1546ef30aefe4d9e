from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

DATA_DIR = Path(__file__).parent / "data"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Settings(BaseModel):
    database_path: Path = Field(
        default_factory=lambda: Path(os.getenv("RESONANCE_DB_PATH", "") or DATA_DIR / "resonance.db")
    )
    llm_provider: str = Field(default_factory=lambda: os.getenv("LLM_PROVIDER", "anthropic"))
    llm_model: str = Field(default_factory=lambda: os.getenv("LLM_MODEL", ""))
    embedding_model: str = Field(
        default_factory=lambda: os.getenv("RESONANCE_EMBEDDING_MODEL", "minishlab/potion-base-32M")
    )
    gateway_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("RESONANCE_GATEWAY_TIMEOUT", 20.0)
    )
    salience_baseline: float = Field(
        default_factory=lambda: _env_float("RESONANCE_SALIENCE_BASELINE", 0.5)
    )
    host: str = "127.0.0.1"
    port: int = 8002

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.database_path}"

    @classmethod
    def from_yaml(cls, path: Path) -> Settings:
        """Build settings from environment defaults overridden by a YAML mapping."""
        return cls(**load_yaml(path))


def load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    override = os.getenv("RESONANCE_CONFIG", "").strip()
    if override:
        return Settings.from_yaml(Path(override).expanduser())
    return Settings()
