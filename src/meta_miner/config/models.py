"""Pydantic configuration models with validation."""

from __future__ import annotations

import re
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Matches "host:port" and "host:sslport" (e.g. "pool.example.com:ssl20001")
_POOL_ADDRESS_RE = re.compile(r"^(?P<address>[^:\s]+):(?P<ssl>ssl)?(?P<port>\d+)$")


class PoolEndpoint(BaseModel):
    """A single upstream pool address, immutable once parsed."""

    model_config = ConfigDict(frozen=True)

    address: str
    port: int = Field(..., ge=1, le=65535)
    use_tls: bool = False

    @classmethod
    def parse(cls, value: str) -> PoolEndpoint:
        """
        Parse a pool address string.

        Args:
            value: ``host:port`` or ``host:sslPORT``.

        Returns:
            Parsed endpoint.

        Raises:
            ValueError: If the string is not in a supported format.
        """
        m = _POOL_ADDRESS_RE.match(value.strip())
        if not m:
            raise ValueError(
                f"Pool '{value}' is in invalid format, use pool_address:pool_port "
                f"or pool_address:sslpool_port"
            )
        return cls(address=m["address"], port=int(m["port"]), use_tls=m["ssl"] is not None)

    def __str__(self) -> str:
        return f"{self.address}:{'ssl' if self.use_tls else ''}{self.port}"


class ProxyConfig(BaseModel):
    """Configuration for the local miner-facing listener."""

    bind_host: str = Field(default="127.0.0.1", description="Address to bind to")
    # 3333 is the standard stratum mining protocol port
    bind_port: int = Field(default=3333, ge=1, le=65535, description="Port to listen on")
    tcp_keepalive: bool = Field(default=True, description="Enable TCP keepalive on the pool socket")
    keepalive_idle: int = Field(default=60, ge=10, description="Seconds before sending keepalive probes")
    keepalive_interval: int = Field(default=10, ge=1, description="Seconds between keepalive probes")
    # 3 failed probes = 60 + (3 * 10) = 90 seconds to detect dead connection
    keepalive_count: int = Field(default=3, ge=1, description="Number of failed probes before connection is dead")


class PoolConfig(BaseModel):
    """Pool connection and failover timing."""

    cooldown: float = Field(default=60, ge=0, description="Seconds to wait after every pool failed")
    primary_retry_interval: float = Field(
        default=90, gt=0, description="Seconds between primary pool retries while on a backup"
    )
    connect_timeout: float = Field(default=30, gt=0, description="Pool connect timeout in seconds")
    keepalive_interval: float = Field(
        default=0, ge=0, description="Seconds between keepalived requests to the pool (0 disables)"
    )


class WatchdogConfig(BaseModel):
    """Miner restart watchdogs."""

    idle_submit_timeout: float = Field(
        default=600, ge=0, description="Restart miner after this many seconds without a submit (0 disables)"
    )
    hashrate_percent: float = Field(
        default=0, ge=0, le=100,
        description="Restart miner if hashrate drops below this percent of benchmark (0 disables)",
    )
    grace_period: float = Field(
        default=120, ge=0, description="Seconds watchdogs stay quiet after an algo or miner change"
    )
    check_interval: float = Field(default=10, gt=0, description="Seconds between watchdog checks")


class ProbeConfig(BaseModel):
    """Startup capability probing and benchmarking."""

    miner_timeout: float = Field(default=60, gt=0, description="Seconds to wait for a probed miner login")
    benchmark_timeout: float = Field(default=300, gt=0, description="Seconds to wait for a benchmark hashrate")
    # xmrig prints n/a for the long averaging windows on its first report
    benchmark_samples: int = Field(default=2, ge=1, description="Hashrate readings required before trusting one")


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field(default="INFO", description="Log level")
    file: Optional[str] = Field(default=None, description="Log file path")
    rotation: str = Field(default="50 MB", description="Log rotation size")
    retention: int = Field(default=10, ge=1, description="Number of rotated files to keep")
    format: str = Field(
        default="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}",
        description="Log message format",
    )
    quiet: bool = Field(default=False, description="Hide miner output during probing and fewer messages")
    debug: bool = Field(default=False, description="Log every pool and miner message")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper


class Config(BaseModel):
    """Main configuration model."""

    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    pools: List[str] = Field(default_factory=list, description="Ordered pool list, first is primary")
    user: Optional[str] = Field(default=None, description="Pool login (taken from the first miner if unset)")
    password: Optional[str] = Field(default=None, description="Pool pass (taken from the first miner if unset)")
    algos: Dict[str, str] = Field(default_factory=dict, description="Algorithm to miner command line")
    algo_perf: Dict[str, float] = Field(default_factory=dict, description="Algorithm to benchmarked hashrate")
    algo_min_time: int = Field(default=0, ge=0, description="Minimum seconds per algorithm hint for the pool")
    default_algo: str = Field(default="cn/1", description="Algorithm assumed for jobs without an algo field")
    smart_miners: List[str] = Field(default_factory=list, description="Miners that report their algos")
    algo_miners: Dict[str, str] = Field(default_factory=dict, description="Miners pinned to one algo")
    pool: PoolConfig = Field(default_factory=PoolConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    no_config_save: bool = Field(default=False, description="Do not write the config file back")

    @field_validator("pools")
    @classmethod
    def validate_pools(cls, v: List[str]) -> List[str]:
        """Ensure every pool address parses."""
        for pool in v:
            PoolEndpoint.parse(pool)
        return [pool.strip() for pool in v]

    @field_validator("algo_perf")
    @classmethod
    def validate_algo_perf(cls, v: Dict[str, float]) -> Dict[str, float]:
        """Hashrates are non-negative, 0 meaning unknown."""
        for algo, hashrate in v.items():
            if hashrate < 0:
                raise ValueError(f"Negative hashrate {hashrate} for {algo} algo")
        return v

    @field_validator("user", "password")
    @classmethod
    def validate_credentials(cls, v: Optional[str]) -> Optional[str]:
        """Pool credentials are sent over JSON-RPC; reject control characters."""
        if not v:
            return v
        for char in v:
            if ord(char) < 32 and char not in ("\t",):
                raise ValueError(
                    f"User/password cannot contain control characters (found \\x{ord(char):02x})"
                )
        return v

    @property
    def endpoints(self) -> List[PoolEndpoint]:
        """Parsed pool endpoints in priority order."""
        return [PoolEndpoint.parse(pool) for pool in self.pools]
