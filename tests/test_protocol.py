"""Tests for the line framer."""

import json

import pytest

from meta_miner.stratum.protocol import StratumProtocol, StratumProtocolError, build_request, build_response


class TestFeed:
    def test_complete_lines(self):
        protocol = StratumProtocol()
        assert protocol.feed(b'{"a":1}\n{"b":2}\n') == ['{"a":1}', '{"b":2}']
        assert protocol.pending == b""

    def test_partial_line_carried_over(self):
        protocol = StratumProtocol()
        assert protocol.feed(b'{"a":') == []
        assert protocol.feed(b'1}\n{"b"') == ['{"a":1}']
        assert protocol.pending == b'{"b"'
        assert protocol.feed(b":2}\n") == ['{"b":2}']

    def test_empty_and_blank_lines_ignored(self):
        protocol = StratumProtocol()
        assert protocol.feed(b"\n  \r\n{}\n\n") == ["{}"]

    @pytest.mark.parametrize("chunk_size", [1, 2, 3, 7, 64])
    def test_chunking_does_not_change_lines(self, chunk_size):
        stream = b'{"id":1,"method":"login"}\n{"id":2}\n\n{"method":"job","params":{}}\n'
        protocol = StratumProtocol()
        lines = []
        for i in range(0, len(stream), chunk_size):
            lines.extend(protocol.feed(stream[i:i + chunk_size]))
        assert lines == StratumProtocol().feed(stream)
        assert len(lines) == 3

    def test_buffer_limit(self):
        protocol = StratumProtocol()
        protocol.MAX_BUFFER_SIZE = 16
        with pytest.raises(StratumProtocolError):
            protocol.feed(b"x" * 32)
        assert protocol.pending == b""
        assert protocol.feed(b"{}\n") == ["{}"]


class TestFeedData:
    def test_bad_line_skipped(self, log_messages):
        protocol = StratumProtocol("pool")
        messages = protocol.feed_data(b'{"id":1}\nnot json\n[1,2]\n{"id":2}\n')
        assert messages == [{"id": 1}, {"id": 2}]
        assert sum("Can't parse message from the pool" in m for m in log_messages) == 2


def test_encode_is_compact_line():
    data = StratumProtocol.encode({"id": 1, "result": None})
    assert data.endswith(b"\n")
    assert b" " not in data
    assert json.loads(data) == {"id": 1, "result": None}


def test_encode_failure():
    with pytest.raises(StratumProtocolError):
        StratumProtocol.encode({"bad": object()})


def test_builders():
    assert build_request(1, "login") == {"id": 1, "jsonrpc": "2.0", "method": "login", "params": {}}
    assert build_response(3, True) == {"id": 3, "jsonrpc": "2.0", "error": None, "result": True}
