"""Algorithm table helpers: aliases, performance derivation and hashrate parsing."""

from __future__ import annotations

import re
from typing import Dict, List, Optional

from loguru import logger

# Basic algo of each algo class that is used for performance measurements,
# with the rate of each sibling algo relative to the measured one
ALGO_PERF_DERIVATION: Dict[str, Dict[str, float]] = {
    "cn/1": {"cn/0": 1.0, "cn/2": 1.0, "cn/r": 1.0, "cn/xao": 1.0, "cn/rto": 1.0, "cn/half": 2.0,
             "cn/rwz": 4 / 3, "cn/zls": 4 / 3, "cn/double": 0.5},
    "cn/msr": {"cn/fast": 1.0},
    "cn-lite/1": {"cn-lite/0": 1.0},
    "cn-heavy/0": {"cn-heavy/xhv": 1.0, "cn-heavy/tube": 1.0},
    "cn-pico": {"cn-pico/trtl": 1.0},
    "rx/0": {"rx/sfx": 1.0},
    "c29s": {"c29v": 1.0, "c29b": 1.0},
}

# Algorithms whose miners speak the grin request/response dialect
CUCKOO_ALGO_PREFIXES = ("c29", "c31", "c32", "cuckaroo", "cuckatoo", "cuckoo")

_UNIT_MULTIPLIERS = {"": 1.0, "k": 1e3, "K": 1e3, "M": 1e6, "G": 1e9, "T": 1e12}

HASHRATE_REGEXES = [
    # old xmrig
    re.compile(r"\[[^\]]+\]\s+speed 2\.5s/60s/15m [\d.]+ (?P<rate>[\d.]+)"),
    # new xmrig (optionally with the "miner" tag and a unit after the 15m value)
    re.compile(
        r"\[[^\]]+\]\s+(?:miner\s+)?speed 10s/60s/15m [\d.]+ (?P<rate>[\d.]+)"
        r"(?: (?:[\d.]+|n/a) (?P<unit>[kKMGT]?H/s))?"
    ),
    # xmr-stak
    re.compile(r"Totals \(ALL\):\s+(?P<rate>[\d.]+)"),
    # grin-miner
    re.compile(r"Graphs per second: (?P<rate>[\d.]+)"),
    # generic "Total speed: 12.3 MH/s" style summaries
    re.compile(r"Total [Ss]peed:\s+(?P<rate>[\d.]+)\s*(?P<unit>[kKMGT]?)(?:H|Sol|G)/s"),
]


def algo_aliases(algo: str) -> List[str]:
    """
    Return the synonymous spellings of an algorithm name.

    Only the "cryptonight" <-> "cn" family prefix substitution is applied, once,
    in both directions.
    """
    return [algo.replace("cryptonight", "cn", 1), algo.replace("cn", "cryptonight", 1)]


def canonical_algo(algo: str) -> str:
    """Short spelling used for performance bookkeeping."""
    return algo.replace("cryptonight", "cn", 1)


def register_algo(algos: Dict[str, str], algo: str, command: str) -> bool:
    """
    Map an algorithm (and its aliases) to a miner command.

    Args:
        algos: Algorithm table to update.
        algo: Algorithm reported by or pinned to the miner.
        command: Miner command line.

    Returns:
        True if the algo was registered, False if it was already set.
    """
    if algos.get(algo):
        logger.error(f"Algo {algo} is already set to '{algos[algo]}' miner")
        return False
    logger.info(f"Setting {algo} algo to '{command}' miner")
    algos[algo] = command
    for alias in algo_aliases(algo):
        algos[alias] = command
    return True


def is_cuckoo_algo(algo: Optional[str]) -> bool:
    """True for Cuckoo-cycle family algorithms."""
    return bool(algo) and algo.startswith(CUCKOO_ALGO_PREFIXES)


def representative_algo(algo: str) -> str:
    """Return the algo that is benchmarked on behalf of ``algo``."""
    algo = canonical_algo(algo)
    for representative, siblings in ALGO_PERF_DERIVATION.items():
        if algo == representative or algo in siblings:
            return representative
    return algo


def set_perf(perf: Dict[str, float], algos: Dict[str, str], algo: str, hashrate: float) -> List[str]:
    """
    Record a measured hashrate and derive the related algo entries.

    Non-zero entries are never overwritten, so operator supplied values always
    win over benchmark results.

    Args:
        perf: Performance table to update.
        algos: Algorithm table (derived entries are limited to known algos).
        algo: Benchmarked algorithm.
        hashrate: Measured hashrate.

    Returns:
        The algorithm names that were set.
    """
    updated = []

    def _set(name: str, value: float) -> None:
        if perf.get(name):
            return
        perf[name] = value
        updated.append(name)

    _set(algo, hashrate)
    for sibling, ratio in ALGO_PERF_DERIVATION.get(canonical_algo(algo), {}).items():
        if sibling in algos or any(alias in algos for alias in algo_aliases(sibling)):
            _set(sibling, hashrate * ratio)
    return updated


def fill_derived_perf(perf: Dict[str, float], algos: Dict[str, str]) -> List[str]:
    """Derive missing sibling rates from representatives that already have one."""
    updated = []
    for representative in ALGO_PERF_DERIVATION:
        hashrate = perf.get(representative)
        if hashrate:
            updated.extend(set_perf(perf, algos, representative, hashrate))
    return updated


def lookup_perf(perf: Dict[str, float], algo: Optional[str]) -> float:
    """Benchmarked hashrate of an algo, trying its aliases too (0 if unknown)."""
    if not algo:
        return 0.0
    for name in (algo, *algo_aliases(algo)):
        if perf.get(name):
            return perf[name]
    return 0.0


def benchmark_targets(algos: Dict[str, str], perf: Dict[str, float]) -> List[str]:
    """
    Choose the algorithms that still need a benchmark run.

    Each algo class is benchmarked once through its representative when the
    representative has a miner; aliases are never benchmarked twice.
    """
    targets: List[str] = []
    for algo in algos:
        canonical = canonical_algo(algo)
        if canonical != algo and canonical in algos:
            continue
        if lookup_perf(perf, canonical):
            continue
        representative = representative_algo(canonical)
        target = representative if representative in algos else canonical
        if target not in algos or lookup_perf(perf, target) or target in targets:
            continue
        targets.append(target)
    return targets


def parse_hashrate(line: str) -> Optional[float]:
    """
    Extract a hashrate (H/s) from one line of miner output.

    Returns:
        The hashrate, or None if the line carries no usable reading.
    """
    for regex in HASHRATE_REGEXES:
        m = regex.search(line)
        if not m:
            continue
        try:
            rate = float(m["rate"])
        except ValueError:
            continue
        unit = (m.groupdict().get("unit") or "")[:1]
        if unit not in _UNIT_MULTIPLIERS or unit == "H":
            unit = ""
        return rate * _UNIT_MULTIPLIERS[unit]
    return None
