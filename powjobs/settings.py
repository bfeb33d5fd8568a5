"""Validated runtime settings loaded from TOML with environment overrides."""
from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field

DEFAULT_SETTINGS_PATH = Path("config/settings.toml")
SETTINGS_ENV = "POWJOBS_SETTINGS"


class JobSettings(BaseModel):
    data_dir: Path = Path("data/jobs")
    persist: bool = True
    save_debounce_seconds: float = Field(default=1.0, ge=0)
    cleanup_max_age_seconds: float = Field(default=3600.0, ge=0)
    metrics_dir: Optional[Path] = None

    @property
    def store_path(self) -> Path:
        return self.data_dir / "jobs.json"


class PowSettings(BaseModel):
    target_difficulty_start: int = Field(default=5, ge=1, le=64)
    warmup_age: int = Field(default=10, ge=0)
    block_interval_seconds: float = Field(default=5.0, gt=0)
    difficulty_check_interval_seconds: float = Field(default=5.0, gt=0)
    default_max_iterations: int = Field(default=1_000_000, ge=1)
    iteration_margin: float = Field(default=2.0, gt=0)


class HeightSettings(BaseModel):
    consensus_api_url: str = "http://localhost:1317"
    consensus_rpc_url: Optional[str] = "http://localhost:26657"
    cache_seconds: float = Field(default=10.0, ge=0)
    timeout_seconds: float = Field(default=5.0, gt=0)


class SignerSettings(BaseModel):
    api_url: str = "http://localhost:8080"
    danger: bool = False
    timeout_seconds: float = Field(default=30.0, gt=0)


class WorkSettings(BaseModel):
    database: Optional[Path] = None


class Settings(BaseModel):
    jobs: JobSettings = Field(default_factory=JobSettings)
    pow: PowSettings = Field(default_factory=PowSettings)
    height: HeightSettings = Field(default_factory=HeightSettings)
    signer: SignerSettings = Field(default_factory=SignerSettings)
    work: WorkSettings = Field(default_factory=WorkSettings)


_ENV_OVERRIDES = {
    "JOBS_DATA_DIR": ("jobs", "data_dir"),
    "PERSIST_JOBS": ("jobs", "persist"),
    "TARGET_DIFFICULTY_START": ("pow", "target_difficulty_start"),
    "CONSENSUS_API_URL": ("height", "consensus_api_url"),
    "CONSENSUS_RPC_URL": ("height", "consensus_rpc_url"),
    "SIGNER_API_URL": ("signer", "api_url"),
    "DANGER": ("signer", "danger"),
    "WORK_DATABASE": ("work", "database"),
}


def _coerce_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "y"}


def apply_env_overrides(raw: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Overlay recognised environment variables onto the raw TOML mapping."""
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        if key in {"persist", "danger"}:
            raw.setdefault(section, {})[key] = _coerce_bool(value)
        else:
            raw.setdefault(section, {})[key] = value
    return raw


def load_settings(path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Read the TOML configuration file and apply environment overrides."""
    environ = os.environ if environ is None else environ
    if path is None:
        path = Path(environ.get(SETTINGS_ENV, DEFAULT_SETTINGS_PATH))
    raw: Dict[str, Any] = {}
    if path.exists():
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    return Settings.model_validate(apply_env_overrides(raw, environ))
