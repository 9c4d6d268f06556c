"""Tests for pool message classification."""

from meta_miner.stratum.messages import (
    EthNotify,
    JobNotify,
    KeepaliveAck,
    LoginReply,
    Notification,
    Reply,
    TargetNotify,
    classify_pool_message,
    is_job_message,
    proves_session,
)

JOB = {"blob": "00ff", "algo": "cn/r", "job_id": "j1", "target": "b88d0600", "id": "sess"}


def test_login_reply():
    msg = classify_pool_message({"id": 1, "error": None, "result": {"id": "sess", "job": JOB, "status": "OK"}})
    assert isinstance(msg, LoginReply)
    assert msg.job.algo == "cn/r"
    assert msg.job.job_id == "j1"
    assert msg.job.target == "b88d0600"
    assert msg.job.session_id == "sess"
    assert msg.result["status"] == "OK"


def test_job_notify_without_algo():
    params = dict(JOB)
    del params["algo"]
    msg = classify_pool_message({"jsonrpc": "2.0", "method": "job", "params": params})
    assert isinstance(msg, JobNotify)
    assert msg.job.algo is None
    assert not msg.job.is_eth_native


def test_eth_notify():
    msg = classify_pool_message({"id": None, "method": "mining.notify", "params": ["j2", "hdr", "seed", "ffff", True]})
    assert isinstance(msg, EthNotify)
    assert msg.job.job_id == "j2"
    assert msg.job.target == "ffff"
    assert msg.job.is_eth_native


def test_target_notify():
    assert isinstance(classify_pool_message({"method": "mining.set_target", "params": ["00ff"]}), TargetNotify)
    assert isinstance(classify_pool_message({"method": "mining.set_difficulty", "params": [2]}), TargetNotify)


def test_keepalive_ack_only_for_own_ids():
    obj = {"id": "keepalive1", "result": {"status": "KEEPALIVED"}, "error": None}
    assert isinstance(classify_pool_message(obj, {"keepalive1"}), KeepaliveAck)
    assert isinstance(classify_pool_message(obj), Reply)


def test_reply_error():
    msg = classify_pool_message({"id": 5, "result": None, "error": {"code": -1, "message": "Low difficulty share"}})
    assert isinstance(msg, Reply)
    assert msg.id == 5
    assert msg.is_error
    assert not proves_session(msg)


def test_other_notification():
    msg = classify_pool_message({"method": "client.show_message", "params": ["hi"]})
    assert isinstance(msg, Notification)
    assert msg.method == "client.show_message"
    assert not is_job_message(msg)
    assert not proves_session(msg)


def test_proves_session():
    ok = classify_pool_message({"id": 7, "result": {"status": "OK"}, "error": None})
    job = classify_pool_message({"method": "job", "params": JOB})
    assert proves_session(ok)
    assert proves_session(job)
    assert is_job_message(job)
