"""Tests for algorithm table helpers."""

import pytest

from meta_miner.proxy.algos import (
    algo_aliases,
    benchmark_targets,
    fill_derived_perf,
    is_cuckoo_algo,
    lookup_perf,
    parse_hashrate,
    register_algo,
    representative_algo,
    set_perf,
)


class TestAliases:
    def test_cryptonight_prefix(self):
        assert "cn/r" in algo_aliases("cryptonight/r")
        assert "cryptonight/r" in algo_aliases("cn/r")

    def test_substitution_applied_once(self):
        assert algo_aliases("cn-cn") == ["cn-cn", "cryptonight-cn"]

    def test_register_sets_aliases(self):
        algos = {}
        assert register_algo(algos, "cn/r", "xmrig")
        assert algos == {"cn/r": "xmrig", "cryptonight/r": "xmrig"}

    def test_register_does_not_overwrite(self, log_messages):
        algos = {"cn/r": "xmrig"}
        assert not register_algo(algos, "cn/r", "other")
        assert algos["cn/r"] == "xmrig"
        assert any("already set" in m for m in log_messages)


def test_cuckoo_detection():
    assert is_cuckoo_algo("c29s")
    assert is_cuckoo_algo("cuckaroo29")
    assert not is_cuckoo_algo("cn/r")
    assert not is_cuckoo_algo(None)


def test_representative():
    assert representative_algo("cn/half") == "cn/1"
    assert representative_algo("cryptonight/2") == "cn/1"
    assert representative_algo("c29b") == "c29s"
    assert representative_algo("argon2/chukwa") == "argon2/chukwa"


class TestPerf:
    def test_set_perf_derives_known_siblings(self):
        algos = {"cn/1": "a", "cn/half": "a", "cn/double": "a"}
        perf = {}
        updated = set_perf(perf, algos, "cn/1", 1000)
        assert perf == {"cn/1": 1000, "cn/half": 2000, "cn/double": 500}
        assert set(updated) == {"cn/1", "cn/half", "cn/double"}

    def test_set_perf_keeps_operator_values(self):
        perf = {"cn/half": 1234.0}
        set_perf(perf, {"cn/1": "a", "cn/half": "a"}, "cn/1", 1000)
        assert perf["cn/half"] == 1234.0

    def test_fill_derived(self):
        perf = {"rx/0": 500.0}
        assert fill_derived_perf(perf, {"rx/0": "a", "rx/sfx": "a"}) == ["rx/sfx"]
        assert perf["rx/sfx"] == 500.0

    def test_lookup_uses_aliases(self):
        assert lookup_perf({"cn/r": 10.0}, "cryptonight/r") == 10.0
        assert lookup_perf({}, "cn/r") == 0.0
        assert lookup_perf({"cn/r": 10.0}, None) == 0.0


class TestBenchmarkTargets:
    def test_one_run_per_class(self):
        algos = {}
        for algo in ("cn/1", "cn/2", "cn/r", "rx/0"):
            register_algo(algos, algo, "xmrig")
        assert benchmark_targets(algos, {}) == ["cn/1", "rx/0"]

    def test_skips_classes_with_known_rate(self):
        algos = {"cn/1": "a", "cn/r": "a", "rx/0": "a"}
        assert benchmark_targets(algos, {"cn/1": 5.0}) == ["rx/0"]

    def test_algo_without_representative_miner(self):
        assert benchmark_targets({"cn/half": "a"}, {}) == ["cn/half"]


class TestParseHashrate:
    @pytest.mark.parametrize(
        "line,expected",
        [
            ("[2019-03-01 10:00:00] speed 2.5s/60s/15m 101.5 99.5 n/a H/s max 110.0 H/s", 99.5),
            ("[2020-06-01 10:00:00.123]  miner    speed 10s/60s/15m 5012.3 5001.0 n/a H/s max 5100.0 H/s", 5001.0),
            ("[2020-06-01 10:00:00] speed 10s/60s/15m 1.5 1.25 1.0 kH/s max 1.6 kH/s", 1250.0),
            ("Totals (ALL):   1420.7   1419.1  0.0 H/s", 1420.7),
            ("Graphs per second: 4.12 - Total Attempts: 102", 4.12),
            ("Total Speed: 31.4 MH/s", 31.4e6),
        ],
    )
    def test_known_formats(self, line, expected):
        assert parse_hashrate(line) == pytest.approx(expected)

    @pytest.mark.parametrize(
        "line",
        [
            "[2020-06-01 10:00:00] speed 10s/60s/15m n/a n/a n/a H/s max n/a H/s",
            "use pool localhost:3333",
            "",
        ],
    )
    def test_no_reading(self, line):
        assert parse_hashrate(line) is None
