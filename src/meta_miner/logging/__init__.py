"""Logging configuration module for meta miner."""

from meta_miner.logging.setup import setup_logging

__all__ = ["setup_logging"]
