"""End-to-end relay tests against an in-process pool and a socket miner."""

import asyncio
import json
import shlex
import sys

import pytest

from meta_miner.config.models import Config
from meta_miner.proxy.relay import MetaMinerRelay
from meta_miner.proxy.stats import RelayStats

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX process groups")

CN_MINER = f"{shlex.quote(sys.executable)} -c 'import time; time.sleep(60)'"
RX_MINER = f"{shlex.quote(sys.executable)} -c 'import time; time.sleep(61)'"

JOB = {"blob": "abcd", "algo": "cn/r", "job_id": "1", "target": "b88d0600", "id": "sess", "height": 5}
LOGIN_OK = {"id": 1, "jsonrpc": "2.0", "error": None, "result": {"id": "sess", "job": JOB, "status": "OK"}}


class JsonPeer:
    """One end of a line-delimited JSON socket."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer

    async def send(self, obj: dict) -> None:
        self.writer.write(json.dumps(obj).encode() + b"\n")
        await self.writer.drain()

    async def recv(self, timeout: float = 5.0) -> dict:
        line = await asyncio.wait_for(self.reader.readline(), timeout)
        if not line:
            raise EOFError
        return json.loads(line)

    async def wait_closed(self, timeout: float = 5.0) -> None:
        """Read until the other side closes the socket."""
        while True:
            try:
                await self.recv(timeout)
            except (EOFError, ConnectionError):
                return

    def close(self) -> None:
        self.writer.close()


class FakePoolServer:
    def __init__(self):
        self.peers: asyncio.Queue = asyncio.Queue()
        self.all_peers = []
        self.port = None
        self._server = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._accept, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def _accept(self, reader, writer) -> None:
        peer = JsonPeer(reader, writer)
        self.all_peers.append(peer)
        await self.peers.put(peer)

    async def accept(self) -> JsonPeer:
        return await asyncio.wait_for(self.peers.get(), timeout=5)

    async def stop(self) -> None:
        for peer in self.all_peers:
            peer.close()
        self._server.close()
        await self._server.wait_closed()


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


@pytest.fixture
async def env():
    pool = FakePoolServer()
    await pool.start()
    config = Config(
        pools=[f"127.0.0.1:{pool.port}"],
        algos={"cn/r": CN_MINER, "rx/0": RX_MINER},
        algo_perf={"cn/r": 100.0, "rx/0": 50.0},
    )
    config.proxy.bind_port = 0
    relay = MetaMinerRelay(config)
    stop = asyncio.Event()
    task = asyncio.create_task(relay.run(stop))
    await wait_until(lambda: relay.server.serving)
    yield relay, pool
    stop.set()
    await asyncio.wait_for(task, timeout=15)
    await pool.stop()


async def open_session(relay, pool) -> JsonPeer:
    """Accept the relay's pool connection, answer its login and wait for the miner process."""
    upstream = await pool.accept()
    login = await upstream.recv()
    assert login["method"] == "login"
    await upstream.send(LOGIN_OK)
    await wait_until(lambda: relay.supervisor.command == CN_MINER and relay.pools.current is not None)
    return upstream


async def connect_miner(relay) -> JsonPeer:
    return JsonPeer(*await asyncio.open_connection("127.0.0.1", relay.server.port))


async def login_miner(relay, login="wallet") -> JsonPeer:
    miner = await connect_miner(relay)
    await miner.send({"id": 1, "jsonrpc": "2.0", "method": "login",
                      "params": {"login": login, "pass": "rig1", "agent": "xmrig/6"}})
    return miner


async def test_pool_login_advertises_algos(env):
    relay, pool = env
    upstream = await pool.accept()
    login = await upstream.recv()
    assert login["id"] == 1
    assert login["params"]["algo"] == ["cn/r", "rx/0"]
    assert login["params"]["algo-perf"] == {"cn/r": 100.0, "rx/0": 50.0}
    assert "algo-min-time" not in login["params"]
    assert relay.supervisor.current is None


async def test_default_miner_session(env):
    relay, pool = env
    upstream = await open_session(relay, pool)

    miner = await login_miner(relay)
    reply = await miner.recv()
    assert reply["id"] == 1
    assert reply["result"]["job"]["job_id"] == "1"
    assert relay.config.user == "wallet"
    assert relay.config.password == "rig1"

    await miner.send({"id": 2, "jsonrpc": "2.0", "method": "submit",
                      "params": {"id": "sess", "job_id": "1", "nonce": "aa", "result": "bb"}})
    submit = await upstream.recv()
    assert submit["method"] == "submit"
    assert submit["id"] == 2
    assert relay.activity.last_submit_at > 0

    await upstream.send({"id": 2, "jsonrpc": "2.0", "error": None, "result": {"status": "OK"}})
    ack = await miner.recv()
    assert ack == {"id": 2, "jsonrpc": "2.0", "error": None, "result": {"status": "OK"}}
    assert RelayStats.get_instance().pool(f"127.0.0.1:{pool.port}").accepted_shares == 1

    await upstream.send({"jsonrpc": "2.0", "method": "job", "params": dict(JOB, job_id="2")})
    push = await miner.recv()
    assert push["method"] == "job"
    assert push["params"]["job_id"] == "2"
    miner.close()


async def test_algo_switch_swaps_miner_and_drops_link(env):
    relay, pool = env
    upstream = await open_session(relay, pool)
    miner = await login_miner(relay)
    await miner.recv()
    old = relay.supervisor.current

    await upstream.send({"jsonrpc": "2.0", "method": "job", "params": dict(JOB, algo="rx/0", job_id="3")})
    await miner.wait_closed()
    await wait_until(lambda: relay.supervisor.command == RX_MINER)
    assert old.returncode is not None
    assert relay.current_algo == "rx/0"

    replacement = await login_miner(relay)
    reply = await replacement.recv()
    assert reply["result"]["job"]["job_id"] == "3"
    assert reply["result"]["job"]["algo"] == "rx/0"
    replacement.close()


async def test_unknown_algo_job_is_dropped(env, log_messages):
    relay, pool = env
    upstream = await open_session(relay, pool)
    miner = await login_miner(relay)
    await miner.recv()

    await upstream.send({"jsonrpc": "2.0", "method": "job", "params": dict(JOB, algo="kawpow", job_id="4")})
    await upstream.send({"jsonrpc": "2.0", "method": "job", "params": dict(JOB, job_id="5")})
    push = await miner.recv()
    assert push["params"]["job_id"] == "5"
    assert "Ignoring job with unknown algo kawpow sent by the pool" in log_messages
    assert relay.supervisor.command == CN_MINER
    miner.close()


async def test_second_miner_is_rejected(env, log_messages):
    relay, pool = env
    await open_session(relay, pool)
    first = await login_miner(relay)
    await first.recv()

    second = await connect_miner(relay)
    await second.wait_closed()
    assert f"Miner server on {relay.server.port} port is already connected" in log_messages
    assert relay.linked_miner is not None
    first.close()


async def test_pool_loss_breaks_link(env, log_messages):
    relay, pool = env
    upstream = await open_session(relay, pool)
    miner = await login_miner(relay)
    await miner.recv()

    upstream.close()
    await wait_until(lambda: relay.pools.current is None)
    assert "Pool <-> miner link was broken due to pool socket error" in log_messages

    await miner.send({"id": 3, "method": "submit", "params": {"id": "sess", "job_id": "1", "nonce": "aa"}})
    await wait_until(lambda: "Can't write miner reply to the pool since its socket is closed" in log_messages)
    miner.close()


async def test_eth_miner_session(env):
    relay, pool = env
    upstream = await open_session(relay, pool)
    miner = await connect_miner(relay)

    await miner.send({"id": 1, "method": "mining.subscribe", "params": ["ethminer", "EthereumStratum/1.0.0"]})
    forwarded = await upstream.recv()
    assert forwarded["method"] == "mining.subscribe"
    await upstream.send({"id": 1, "jsonrpc": "2.0", "error": None, "result": [["mining.notify", "x"], "00"]})
    assert (await miner.recv())["result"] == [["mining.notify", "x"], "00"]

    await miner.send({"id": 2, "method": "mining.authorize", "params": ["wallet", "x"]})
    authorized = await miner.recv()
    target = await miner.recv()
    notify = await miner.recv()
    assert authorized["result"] is True
    assert target["method"] == "mining.set_target"
    assert notify["method"] == "mining.notify"
    assert notify["params"][0] == "1"

    await miner.send({"id": 3, "method": "mining.submit", "params": ["wallet", "1", "0x00ff", "hh", "mix"]})
    submit = await upstream.recv()
    assert submit["method"] == "submit"
    assert submit["params"]["nonce"] == "00ff"
    assert submit["params"]["id"] == "sess"
    await upstream.send({"id": 3, "jsonrpc": "2.0", "error": None, "result": {"status": "OK"}})
    ack = await miner.recv()
    assert ack["result"] is True
    miner.close()


async def test_grin_miner_session(env):
    relay, pool = env
    upstream = await open_session(relay, pool)
    miner = await connect_miner(relay)

    await miner.send({"id": "0", "jsonrpc": "2.0", "method": "getjobtemplate", "params": None})
    template = await miner.recv()
    assert template["method"] == "getjobtemplate"
    assert template["result"]["job_id"] == "1"
    assert template["result"]["pre_pow"] == "abcd"

    await miner.send({"id": "1", "jsonrpc": "2.0", "method": "login", "params": {"login": "w", "pass": "x"}})
    assert (await miner.recv())["result"] == "ok"

    await upstream.send({"jsonrpc": "2.0", "method": "job", "params": dict(JOB, job_id="6")})
    push = await miner.recv()
    assert push["id"] == "Stratum"
    assert push["params"]["job_id"] == "6"

    await miner.send({"id": "2", "jsonrpc": "2.0", "method": "submit",
                      "params": {"edge_bits": 29, "height": 5, "job_id": "6", "nonce": 7, "pow": [1, 2, 3]}})
    submit = await upstream.recv()
    assert submit["params"]["id"] == "sess"
    await upstream.send({"id": "2", "jsonrpc": "2.0", "result": None,
                         "error": {"code": -1, "message": "Low difficulty share"}})
    ack = await miner.recv()
    assert ack["error"]["code"] == -32502
    assert RelayStats.get_instance().pool(f"127.0.0.1:{pool.port}").rejected_shares == 1
    miner.close()


async def test_shutdown_kills_miner(env):
    relay, pool = env
    await open_session(relay, pool)
    miner = relay.supervisor.current
    await relay.shutdown()
    assert miner.returncode is not None
    assert relay.supervisor.current is None
    assert not relay.server.serving


async def test_relogin_replaces_miner_process(env):
    relay, pool = env
    await open_session(relay, pool)
    miner = await login_miner(relay)
    await miner.recv()
    old = relay.supervisor.current

    await miner.send({"id": 2, "jsonrpc": "2.0", "method": "login",
                      "params": {"login": "wallet", "pass": "rig1", "agent": "xmrig/6"}})
    await miner.wait_closed()
    await wait_until(lambda: relay.supervisor.current is not None and relay.supervisor.current is not old)
    assert old.returncode is not None
    assert relay.supervisor.current.pid != old.pid
    assert relay.supervisor.command == CN_MINER
    assert relay.linked_miner is None


async def test_miner_lost_during_pool_outage_restarts_on_reconnect(env):
    relay, pool = env
    relay.config.pool.cooldown = 0.3
    upstream = await open_session(relay, pool)
    old = relay.supervisor.current

    upstream.close()
    await wait_until(lambda: relay.pools.current is None)
    old.process.kill()
    await wait_until(lambda: relay.supervisor.current is None)
    assert relay.supervisor.target_command == CN_MINER

    # Same algo as before the outage
    await open_session(relay, pool)
    assert relay.supervisor.current is not old
    assert relay.supervisor.current.returncode is None
