"""Configuration module for meta miner."""

from meta_miner.config.models import (
    Config,
    LoggingConfig,
    PoolConfig,
    PoolEndpoint,
    ProbeConfig,
    ProxyConfig,
    WatchdogConfig,
)
from meta_miner.config.loader import ConfigError, load_config, save_config, validate_config

__all__ = [
    "Config",
    "ConfigError",
    "LoggingConfig",
    "PoolConfig",
    "PoolEndpoint",
    "ProbeConfig",
    "ProxyConfig",
    "WatchdogConfig",
    "load_config",
    "save_config",
    "validate_config",
]
