"""Stratum protocol handling module."""

from meta_miner.stratum.protocol import StratumProtocol, StratumProtocolError
from meta_miner.stratum.messages import (
    EthNotify,
    Job,
    JobNotify,
    KeepaliveAck,
    LoginReply,
    Notification,
    PoolMessage,
    Reply,
    StratumMethods,
    TargetNotify,
    classify_pool_message,
)

__all__ = [
    "StratumProtocol",
    "StratumProtocolError",
    "EthNotify",
    "Job",
    "JobNotify",
    "KeepaliveAck",
    "LoginReply",
    "Notification",
    "PoolMessage",
    "Reply",
    "StratumMethods",
    "TargetNotify",
    "classify_pool_message",
]
