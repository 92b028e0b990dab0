"""
Configuration loader for PATCHLOOP.
Merges defaults with per-repo .patchloop/config.yaml overrides,
then applies a handful of PATCHLOOP_* environment overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError


class ConfigError(Exception):
    """Raised when a config file cannot be parsed or validated."""
    pass


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class RoutingConfig(BaseModel):
    planner: str = "anthropic/claude-3-5-sonnet-20240620"
    generator: str = "anthropic/claude-3-5-sonnet-20240620"
    summarizer: str = "anthropic/claude-3-haiku-20240307"


class LimitsConfig(BaseModel):
    max_tries: int = Field(default=3, ge=1)
    generation_timeout: float = Field(default=300.0, gt=0)
    max_tokens_per_session: int = 400_000
    max_dollars_per_session: float = 10.0


class ContextConfig(BaseModel):
    max_chars: int = Field(default=24_000, ge=1)
    max_excerpt_chars: int = 6_000
    min_excerpt_chars: int = 200
    max_candidates: int = 40
    recent_history: int = 20
    manifest_files: list[str] = Field(default_factory=lambda: [
        "pyproject.toml", "package.json", "Cargo.toml", "go.mod",
        "setup.py", "pom.xml", "build.gradle", "Makefile",
    ])


class VerifierConfig(BaseModel):
    command: str | None = None
    timeout: float = Field(default=600.0, gt=0)
    exit_code_is_error: bool = True
    auto_fix_hints: bool = True


class IndexConfig(BaseModel):
    state_dir: str = ".patchloop"
    summarizer: str = "symbols"  # "symbols" | "model"
    max_file_bytes: int = 512_000
    ignore_dirs: list[str] = Field(default_factory=list)


class WorkspaceConfig(BaseModel):
    worktree_dir: str = ".patchloop/worktrees"
    isolated: bool = False
    base_branch: str = "HEAD"


class PlanningConfig(BaseModel):
    policy: str = "heuristic"  # "single" | "heuristic" | "model"
    max_steps: int = 6


class PatchloopConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    verifier: VerifierConfig = Field(default_factory=VerifierConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    planning: PlanningConfig = Field(default_factory=PlanningConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# env var -> (section, key, cast)
_ENV_OVERRIDES = {
    "PATCHLOOP_MAX_TRIES": ("limits", "max_tries", int),
    "PATCHLOOP_GENERATION_TIMEOUT": ("limits", "generation_timeout", float),
    "PATCHLOOP_CHECK_COMMAND": ("verifier", "command", str),
    "PATCHLOOP_CHECK_TIMEOUT": ("verifier", "timeout", float),
    "PATCHLOOP_GENERATOR_MODEL": ("routing", "generator", str),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config root in {path} must be a mapping")
    return data


def _apply_env(base: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    for var, (section, key, cast) in _ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError as e:
            raise ConfigError(f"{var}={raw!r} is not a valid {cast.__name__}") from e
        base = _deep_merge(base, {section: {key: value}})
    return base


def load_config(
    repo_path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> PatchloopConfig:
    """
    Load config by merging:
      1. Built-in defaults (patchloop/config.yaml)
      2. Repo-level overrides (<repo>/.patchloop/config.yaml)
      3. PATCHLOOP_* environment variable overrides
    """
    base = _read_yaml(_DEFAULT_CONFIG_PATH)

    if repo_path:
        repo_config = repo_path / ".patchloop" / "config.yaml"
        if repo_config.exists():
            base = _deep_merge(base, _read_yaml(repo_config))

    base = _apply_env(base, dict(os.environ) if environ is None else environ)

    try:
        return PatchloopConfig(**base)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GOOGLE_API_KEY":    bool(os.environ.get("GOOGLE_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
