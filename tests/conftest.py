"""Shared fixtures for the meta miner tests."""

from __future__ import annotations

from typing import List

import pytest
from loguru import logger

from meta_miner.proxy.stats import RelayStats


@pytest.fixture(autouse=True)
def reset_stats():
    """Every test starts with fresh relay statistics."""
    RelayStats.reset()
    yield
    RelayStats.reset()


@pytest.fixture
def log_messages() -> List[str]:
    """Collect loguru messages emitted during the test."""
    messages: List[str] = []
    handler_id = logger.add(lambda msg: messages.append(msg.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)
