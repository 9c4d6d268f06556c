"""Command-line interface for the meta miner."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional, Tuple

import click
from loguru import logger

from meta_miner import __version__

if TYPE_CHECKING:
    from meta_miner.config.models import Config

DEFAULT_CONFIG_FILE = "mm.yaml"


def find_config_file() -> Optional[Path]:
    """
    Find the configuration file in common locations.

    Returns:
        Path to config file or None.
    """
    search_paths = [
        Path(DEFAULT_CONFIG_FILE),
        Path("mm.yml"),
        Path.home() / ".config" / "meta-miner" / DEFAULT_CONFIG_FILE,
    ]

    if sys.platform == "win32":
        search_paths.append(Path.home() / "AppData" / "Local" / "meta-miner" / DEFAULT_CONFIG_FILE)

    for path in search_paths:
        if path.exists():
            return path

    return None


def add_pool(config: Config, pool: str) -> bool:
    """
    Append a pool given on the command line unless it is invalid or already listed.

    Returns:
        True if the pool was added.
    """
    from meta_miner.config.models import PoolEndpoint

    pool = pool.strip()
    try:
        PoolEndpoint.parse(pool)
    except ValueError as e:
        logger.error(f"{e}; ignoring it")
        return False
    if pool in config.pools:
        logger.info(f"Pool '{pool}' is already in the list of pools")
        return False
    logger.info(f"Added pool '{pool}' to the list of pools")
    config.pools.append(pool)
    return True


def _parse_assignments(ctx: click.Context, param: click.Parameter, values: Tuple[str, ...]) -> Dict[str, str]:
    """Turn repeated ``KEY=VALUE`` options into a dict."""
    result: Dict[str, str] = {}
    for value in values:
        key, sep, rest = value.partition("=")
        if not sep or not key.strip() or not rest.strip():
            raise click.BadParameter(f"'{value}' is not in KEY=VALUE format")
        result[key.strip()] = rest.strip()
    return result


def _parse_perf(ctx: click.Context, param: click.Parameter, values: Tuple[str, ...]) -> Dict[str, float]:
    result: Dict[str, float] = {}
    for algo, rate in _parse_assignments(ctx, param, values).items():
        try:
            hashrate = float(rate)
        except ValueError:
            raise click.BadParameter(f"'{rate}' is not a hashrate for {algo} algo")
        if hashrate < 0:
            raise click.BadParameter(f"Negative hashrate for {algo} algo")
        result[algo] = hashrate
    return result


@click.group()
@click.version_option(version=__version__, prog_name="meta-miner")
def main():
    """Adding algo switching support to *any* stratum miner."""
    pass


@main.command()
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help=f"Configuration file to load before applying options ({DEFAULT_CONFIG_FILE} by default)",
)
@click.option("-p", "--pool", "pools", multiple=True, help="Pool in pool_address:pool_port or pool_address:sslpool_port format")
@click.option("--host", default=None, help="Address the miner server binds to (127.0.0.1 by default)")
@click.option("--port", type=click.IntRange(1, 65535), default=None, help="Port for miner connections (3333 by default)")
@click.option("-u", "--user", default=None, help="Pool user login (taken from the first miner otherwise)")
@click.option("--pass", "password", default=None, help="Pool pass (taken from the first miner otherwise)")
@click.option("-m", "--miner", "smart_miners", multiple=True, help="Command line of a smart miner that reports its algos")
@click.option(
    "--algo-miner",
    "algo_miners",
    multiple=True,
    callback=_parse_assignments,
    metavar="ALGO=CMD",
    help="Command line of a miner for one algo that can't report it itself",
)
@click.option("--perf", multiple=True, callback=_parse_perf, metavar="ALGO=RATE", help="Known hashrate of an algo")
@click.option("-q", "--quiet", is_flag=True, help="Hide miner output during configuration and log less")
@click.option("--debug", is_flag=True, help="Log pool and miner messages")
@click.option("--log", "log_file", default=None, help="Log file name")
@click.option("--no-config-save", is_flag=True, help="Do not save the config file")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Override log level from config",
)
def start(
    config_path: Optional[Path],
    pools: Tuple[str, ...],
    host: Optional[str],
    port: Optional[int],
    user: Optional[str],
    password: Optional[str],
    smart_miners: Tuple[str, ...],
    algo_miners: Dict[str, str],
    perf: Dict[str, float],
    quiet: bool,
    debug: bool,
    log_file: Optional[str],
    no_config_save: bool,
    log_level: Optional[str],
):
    """Start the meta miner."""
    from meta_miner.config.loader import ConfigError, load_config
    from meta_miner.config.models import Config
    from meta_miner.daemon import DaemonManager, MisconfigurationError
    from meta_miner.logging.setup import setup_logging

    if config_path is None:
        config_path = find_config_file() or Path(DEFAULT_CONFIG_FILE)

    try:
        config = load_config(config_path) if config_path.exists() else Config()
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    if log_level:
        config.logging.level = log_level.upper()
    if quiet:
        config.logging.quiet = True
    if debug:
        config.logging.debug = True
    if log_file:
        config.logging.file = log_file
    if no_config_save:
        config.no_config_save = True

    setup_logging(config.logging)
    if config_path.exists():
        logger.info(f"Using configuration: {config_path}")

    for pool in pools:
        add_pool(config, pool)
    if host:
        config.proxy.bind_host = host
    if port:
        logger.info(f"Setting miner port to {port}")
        config.proxy.bind_port = port
    if user is not None:
        logger.info(f"Setting pool user to '{user}'")
        config.user = user
    if password is not None:
        logger.info(f"Setting pool pass to '{password}'")
        config.password = password
    for algo, hashrate in perf.items():
        logger.info(f"Setting performance for {algo} algo to {hashrate:g}")
        config.algo_perf[algo] = hashrate
    for command in smart_miners:
        if command not in config.smart_miners:
            logger.info(f"Adding smart miner: '{command}'")
            config.smart_miners.append(command)
    for algo, command in algo_miners.items():
        logger.info(f"Adding {algo} algo miner: {command}")
        config.algo_miners[algo] = command

    daemon = DaemonManager(config, config_path=str(config_path))
    try:
        daemon.run_foreground()
    except MisconfigurationError as e:
        logger.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nShutdown requested...")
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)


@main.command()
@click.argument("config_path", type=click.Path(exists=True, path_type=Path))
def validate(config_path: Path):
    """Validate a configuration file."""
    from meta_miner.config.loader import load_config, validate_config

    is_valid, message = validate_config(config_path)

    if not is_valid:
        click.echo(f"✗ {message}", err=True)
        sys.exit(1)

    click.echo(f"✓ {message}")
    config = load_config(config_path)

    click.echo("\nPools:")
    for index, endpoint in enumerate(config.endpoints):
        role = "primary" if index == 0 else "backup"
        click.echo(f"  - {endpoint} ({role})")

    if config.algos:
        click.echo("\nAlgos:")
        for algo, command in config.algos.items():
            hashrate = config.algo_perf.get(algo)
            suffix = f" [{hashrate:g}]" if hashrate else ""
            click.echo(f"  - {algo}: {command}{suffix}")

    click.echo(f"\nMiner server: {config.proxy.bind_host}:{config.proxy.bind_port}")


SAMPLE_CONFIG = """# Meta miner configuration

proxy:
  bind_host: "127.0.0.1"          # Miners connect here
  bind_port: 3333
  tcp_keepalive: true             # TCP keepalive on the pool socket

pools:                            # First pool is primary, the rest are backups
  - "gulf.moneroocean.stream:10001"
  # - "gulf.moneroocean.stream:ssl20001"

user: null                        # Taken from the first miner login if null
password: null

smart_miners:                     # Miners that report their algos on login
  - "xmrig --config=xmrig.json"

algo_miners: {}                   # Miners pinned to one algo, e.g.
#   c29s: "SRBMiner-MULTI --algorithm cuckaroo29s --pool localhost:3333"

algos: {}                         # Filled in by miner checks
algo_perf: {}                     # Filled in by benchmarks (or set by hand)
algo_min_time: 0                  # Minimum seconds per algo hint for the pool
default_algo: "cn/1"

pool:
  cooldown: 60                    # Wait after all pools failed (seconds)
  primary_retry_interval: 90      # Retry primary while on a backup (seconds)
  connect_timeout: 30
  keepalive_interval: 0           # keepalived requests to the pool (0 disables)

watchdog:
  idle_submit_timeout: 600        # Restart miner without a submit (0 disables)
  hashrate_percent: 0             # Restart miner below this % of benchmark (0 disables)
  grace_period: 120
  check_interval: 10

probe:
  miner_timeout: 60
  benchmark_timeout: 300
  benchmark_samples: 2

logging:
  level: "INFO"
  file: null
  rotation: "50 MB"
  retention: 10
  format: "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}"
  quiet: false
  debug: false

no_config_save: false
"""


@main.command()
@click.option(
    "-o",
    "--output",
    "dest_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_FILE,
    show_default=True,
    help="Where to write the sample configuration",
)
def init(dest_path: Path):
    """Create a sample configuration file."""
    if dest_path.exists():
        if not click.confirm(f"{dest_path} already exists. Overwrite?"):
            click.echo("Skipping config file creation.")
            return

    dest_path.write_text(SAMPLE_CONFIG, encoding="utf-8")
    click.echo(f"Created {dest_path}")
    click.echo("Edit this file to configure your pools and miners.")


if __name__ == "__main__":
    main()
