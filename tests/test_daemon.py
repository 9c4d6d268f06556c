"""Tests for startup preparation and the command-line interface."""

import shlex
import sys

import pytest
import yaml
from click.testing import CliRunner
from loguru import logger

from meta_miner.cli import add_pool, main
from meta_miner.config.models import Config
from meta_miner.daemon import DaemonManager, MisconfigurationError
from meta_miner.proxy.relay import MetaMinerRelay

SLEEPER = f"{shlex.quote(sys.executable)} -c 'import time; time.sleep(60)'"


def make_config(**kwargs) -> Config:
    config = Config(**kwargs)
    config.proxy.bind_port = 0
    return config


async def prepare(config, path=None):
    daemon = DaemonManager(config, config_path=str(path) if path else None)
    relay = MetaMinerRelay(config)
    try:
        await daemon.prepare(relay)
    finally:
        await relay.shutdown()


async def test_no_pools_is_fatal():
    with pytest.raises(MisconfigurationError, match="No pools"):
        await prepare(make_config(algos={"cn/r": SLEEPER}))


async def test_no_miners_is_fatal():
    with pytest.raises(MisconfigurationError, match="No usable miners"):
        await prepare(make_config(pools=["127.0.0.1:1"]))


async def test_setup_saves_config(tmp_path, log_messages):
    path = tmp_path / "mm.yaml"
    config = make_config(pools=["127.0.0.1:1"], algos={"cn/r": SLEEPER}, algo_perf={"cn/r": 10.0})
    await prepare(config, path)
    assert "SETUP COMPLETE" in log_messages
    saved = yaml.safe_load(path.read_text())
    assert saved["algos"] == {"cn/r": SLEEPER}
    assert saved["algo_perf"] == {"cn/r": 10.0}
    assert saved["pools"] == ["127.0.0.1:1"]


async def test_no_config_save(tmp_path):
    path = tmp_path / "mm.yaml"
    config = make_config(pools=["127.0.0.1:1"], algos={"cn/r": SLEEPER}, algo_perf={"cn/r": 10.0},
                         no_config_save=True)
    await prepare(config, path)
    assert not path.exists()


def test_add_pool_skips_listed_and_invalid_pools(log_messages):
    config = Config(pools=["a.example:3333"])
    assert not add_pool(config, " a.example:3333 ")
    assert not add_pool(config, "no-port")
    assert add_pool(config, "b.example:ssl3334")
    assert not add_pool(config, "b.example:ssl3334")
    assert config.pools == ["a.example:3333", "b.example:ssl3334"]
    assert "Pool 'a.example:3333' is already in the list of pools" in log_messages


@pytest.fixture
def restore_logging():
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.mark.usefixtures("restore_logging")
class TestCli:
    def test_init_and_validate(self, tmp_path):
        runner = CliRunner()
        path = tmp_path / "mm.yaml"
        result = runner.invoke(main, ["init", "-o", str(path)])
        assert result.exit_code == 0
        assert yaml.safe_load(path.read_text())["proxy"]["bind_port"] == 3333

        result = runner.invoke(main, ["validate", str(path)])
        assert result.exit_code == 0
        assert "gulf.moneroocean.stream:10001 (primary)" in result.output

    def test_validate_rejects_bad_pool(self, tmp_path):
        path = tmp_path / "mm.yaml"
        path.write_text("pools: ['no-port']\n")
        result = CliRunner().invoke(main, ["validate", str(path)])
        assert result.exit_code == 1

    def test_start_without_pools_exits_1(self, tmp_path):
        path = tmp_path / "mm.yaml"
        result = CliRunner().invoke(main, ["start", "-c", str(path), "--no-config-save", "--port", "3999"])
        assert result.exit_code == 1
        assert not path.exists()

    def test_start_rejects_bad_assignment(self, tmp_path):
        result = CliRunner().invoke(main, ["start", "-c", str(tmp_path / "mm.yaml"), "--perf", "cn/r"])
        assert result.exit_code == 2
