"""Configuration models and loaders for cmdtools."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from cmdtools.execution.base import DEFAULT_TIMEOUT_S, NULL_DEVICE, ExecConfig, RedirectMode

CONFIG_FILE_NAMES: tuple[str, ...] = ("cmdtools.yaml", "cmdtools.yml", "pyproject.toml")


class ConfigError(ValueError):
    """Raised when a configuration file cannot be parsed."""


@dataclass(frozen=True)
class AppConfig:
    """Top-level configuration for the application.

    Attributes:
        log_level: Logging level name used by the CLI.
        execution: Default execution configuration for commands.
    """

    log_level: str = "INFO"
    execution: ExecConfig = field(default_factory=ExecConfig)


def load_config(path: Path | None = None) -> AppConfig:
    """Load application configuration from disk.

    Args:
        path: Optional path to a configuration file or a directory containing one.

    Returns:
        Parsed AppConfig with defaults applied when no config exists.

    Raises:
        ConfigError: If the file type is unsupported or its content is malformed.
    """

    config_path = _resolve_config_path(path)
    if config_path is None:
        return AppConfig()

    if config_path.suffix in {".yaml", ".yml"}:
        raw_data = _load_yaml(config_path)
    elif config_path.suffix == ".toml":
        raw_data = _load_toml(config_path)
    else:
        raise ConfigError(f"Unsupported config file type: {config_path}")

    return _parse_app_config(raw_data, base_path=config_path.parent)


def config_to_dict(config: AppConfig) -> dict[str, Any]:
    """Serialize an AppConfig into a YAML/JSON-compatible dictionary."""

    execution = config.execution
    return {
        "log_level": config.log_level,
        "execution": {
            "working_dir": str(execution.working_dir),
            "timeout_s": execution.timeout_s,
            "env": dict(execution.env),
            "redirect": execution.redirect.value,
            "output_file": str(execution.output_file),
            "error_file": str(execution.error_file),
        },
    }


def update_execution(config: AppConfig, **changes: Any) -> AppConfig:
    """Return a config copy with selected execution fields replaced."""

    return replace(config, execution=replace(config.execution, **changes))


def _resolve_config_path(path: Path | None) -> Path | None:
    if path is None:
        candidate_paths = [Path(name) for name in CONFIG_FILE_NAMES]
    elif path.is_dir():
        candidate_paths = [path / name for name in CONFIG_FILE_NAMES]
    else:
        candidate_paths = [path]

    for candidate in candidate_paths:
        if candidate.exists():
            return candidate
    return None


def _load_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            data = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    if path.name == "pyproject.toml":
        tool_config = data.get("tool", {}).get("cmdtools", {})
        if not isinstance(tool_config, dict):
            raise ConfigError("tool.cmdtools must be a mapping.")
        return tool_config
    return data


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ConfigError("YAML configuration must be a mapping.")
    return parsed


def _parse_app_config(raw_data: dict[str, Any], base_path: Path) -> AppConfig:
    return AppConfig(
        log_level=str(raw_data.get("log_level", "INFO")),
        execution=_parse_exec_config(raw_data.get("execution", {}), base_path),
    )


def _parse_exec_config(raw: Any, base_path: Path) -> ExecConfig:
    if not isinstance(raw, dict):
        return ExecConfig()
    env = raw.get("env", {})
    if not isinstance(env, dict):
        raise ConfigError("execution.env must be a mapping.")
    redirect = str(raw.get("redirect", RedirectMode.DEFAULT.value)).strip().lower()
    try:
        redirect_mode = RedirectMode(redirect)
    except ValueError as exc:
        raise ConfigError(
            f"execution.redirect must be one of default, omit, custom; got {redirect!r}."
        ) from exc
    try:
        timeout_s = float(raw.get("timeout_s", DEFAULT_TIMEOUT_S))
    except (TypeError, ValueError) as exc:
        raise ConfigError("execution.timeout_s must be a number.") from exc
    if timeout_s <= 0:
        raise ConfigError("execution.timeout_s must be positive.")
    return ExecConfig(
        working_dir=_resolve_path(raw.get("working_dir", "."), base_path),
        timeout_s=timeout_s,
        env={str(key): str(value) for key, value in env.items()},
        redirect=redirect_mode,
        output_file=_optional_path(raw.get("output_file"), base_path),
        error_file=_optional_path(raw.get("error_file"), base_path),
    )


def _resolve_path(value: Any, base_path: Path) -> Path:
    path = Path(str(value))
    if not path.is_absolute():
        path = (base_path / path).resolve()
    return path


def _optional_path(value: Any, base_path: Path) -> Path:
    if value is None or not str(value).strip():
        return NULL_DEVICE
    return _resolve_path(value, base_path)
