"""Configuration loading, validation and saving utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Union

import yaml
from pydantic import ValidationError

from meta_miner.config.models import Config


class ConfigError(Exception):
    """Configuration error."""

    pass


def _format_validation_error(e: ValidationError) -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {loc}: {error['msg']}")
    return "Configuration validation failed:\n" + "\n".join(errors)


def parse_config(raw_config: dict) -> Config:
    """
    Validate an already decoded configuration mapping.

    Raises:
        ConfigError: If the configuration is invalid.
    """
    try:
        return Config.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(_format_validation_error(e)) from e


def _read_yaml(path: Path) -> dict:
    """Read a YAML mapping; an empty file reads as an empty mapping."""
    if not path.is_file():
        raise ConfigError(f"No {path} config file to load")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Can't parse {path} config file: {e}") from e
    except OSError as e:
        raise ConfigError(f"Can't read {path} config file: {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} config file holds a {type(raw).__name__}, not a mapping")
    return raw


def load_config(path: Union[str, Path]) -> Config:
    """
    Load and validate configuration from a YAML file.

    Args:
        path: Path to the configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or the configuration is invalid.
    """
    return parse_config(_read_yaml(Path(path)))


def dump_config(config: Config) -> str:
    """Render the configuration as YAML text."""
    return yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False, default_flow_style=False)


def save_config(config: Config, path: Union[str, Path]) -> None:
    """
    Write the configuration (including augmented algo and perf tables).

    Raises:
        ConfigError: If the file cannot be written.
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(dump_config(config), encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Error saving {path} file: {e}") from e


def validate_config(path: Union[str, Path]) -> tuple[bool, str]:
    """
    Validate a configuration file.

    Args:
        path: Path to the configuration file.

    Returns:
        Tuple of (is_valid, message).
    """
    try:
        config = load_config(path)
        return (
            True,
            f"Configuration valid: {len(config.pools)} pools, {len(config.algos)} algos, "
            f"{len(config.smart_miners)} smart miners",
        )
    except ConfigError as e:
        return False, str(e)
