"""Relay core: pool connections, miner supervision and dialect translation."""

from meta_miner.proxy.relay import MetaMinerRelay
from meta_miner.proxy.benchmark import run_startup_checks

__all__ = ["MetaMinerRelay", "run_startup_checks"]
