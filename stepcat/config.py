"""Settings resolution: defaults, ``stepcat.yaml``, environment, then CLI flags."""

from __future__ import annotations

import os
from copy import deepcopy
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from stepcat.agents.base import AgentKind
from stepcat.errors import ConfigError

CONFIG_FILENAME = "stepcat.yaml"

_ENV_OVERRIDES = {
    "GITHUB_TOKEN": "github_token",
    "STEPCAT_LOG_LEVEL": "log_level",
    "STEPCAT_MAX_ITERATIONS": "max_iterations_per_step",
    "STEPCAT_BUILD_TIMEOUT": "build_timeout_minutes",
    "STEPCAT_AGENT_TIMEOUT": "agent_timeout_minutes",
}


@dataclass
class Settings:
    build_timeout_minutes: float = 30.0
    agent_timeout_minutes: float = 30.0
    max_iterations_per_step: int = 3
    implementation_agent: str = AgentKind.CLAUDE.value
    review_agent: str = AgentKind.CODEX.value
    poll_interval_seconds: float = 30.0
    github_token: Optional[str] = None
    database_path: Optional[str] = None
    log_level: str = "INFO"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _merge_overrides(base: dict, overrides: Mapping[str, Any]) -> dict:
    merged = deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge_overrides(merged[key], value)
        elif value is not None:
            merged[key] = value
    return merged


def _read_config_file(path: Path) -> dict:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping of settings")
    section = raw.get("stepcat", raw)
    if not isinstance(section, dict):
        raise ConfigError(f"The 'stepcat' section of {path} must be a mapping")
    return section


def _coerce(values: Mapping[str, Any]) -> Settings:
    known = {field.name: field for field in fields(Settings)}
    unknown = sorted(set(values) - set(known))
    if unknown:
        raise ConfigError(f"Unknown setting(s): {', '.join(unknown)}")

    converted: dict[str, Any] = {}
    for name, value in values.items():
        default = known[name].default
        if value is None:
            converted[name] = None
            continue
        try:
            if isinstance(default, bool):
                converted[name] = bool(value)
            elif isinstance(default, int):
                converted[name] = int(value)
            elif isinstance(default, float):
                converted[name] = float(value)
            else:
                converted[name] = str(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value for {name}: {value!r}") from exc

    settings = Settings(**converted)
    if settings.max_iterations_per_step < 1:
        raise ConfigError("max_iterations_per_step must be at least 1")
    for name in ("build_timeout_minutes", "agent_timeout_minutes", "poll_interval_seconds"):
        if getattr(settings, name) <= 0:
            raise ConfigError(f"{name} must be positive")
    for name in ("implementation_agent", "review_agent"):
        try:
            setattr(settings, name, AgentKind.from_string(getattr(settings, name)).value)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
    return settings


def load_settings(
    work_dir: Optional[Path | str] = None,
    *,
    config_path: Optional[Path | str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Resolve settings; later sources win over earlier ones."""

    values: dict[str, Any] = Settings().to_dict()

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        values = _merge_overrides(values, _read_config_file(path))
    elif work_dir is not None and (Path(work_dir) / CONFIG_FILENAME).exists():
        values = _merge_overrides(values, _read_config_file(Path(work_dir) / CONFIG_FILENAME))

    env = os.environ if environ is None else environ
    env_values = {target: env[name] for name, target in _ENV_OVERRIDES.items() if env.get(name)}
    values = _merge_overrides(values, env_values)

    if overrides:
        values = _merge_overrides(values, overrides)

    return _coerce(values)


__all__ = ["CONFIG_FILENAME", "Settings", "load_settings"]
