"""Pool message kinds and the classifier that produces them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Collection, Optional, Union


class StratumMethods:
    """Constants for stratum method names used by pools and miners."""

    # Pool dialect (login/job/submit with algo extensions)
    LOGIN = "login"
    JOB = "job"
    SUBMIT = "submit"
    KEEPALIVED = "keepalived"

    # Grin dialect
    GETJOBTEMPLATE = "getjobtemplate"
    KEEPALIVE = "keepalive"

    # Eth / raven dialect
    MINING_SUBSCRIBE = "mining.subscribe"
    MINING_AUTHORIZE = "mining.authorize"
    MINING_SUBMIT = "mining.submit"
    MINING_NOTIFY = "mining.notify"
    MINING_SET_TARGET = "mining.set_target"
    MINING_SET_DIFFICULTY = "mining.set_difficulty"
    MINING_EXTRANONCE_SUBSCRIBE = "mining.extranonce.subscribe"


SUBMIT_METHODS = frozenset({StratumMethods.SUBMIT, StratumMethods.MINING_SUBMIT})
KEEPALIVE_METHODS = frozenset({StratumMethods.KEEPALIVED, StratumMethods.KEEPALIVE})
LOGIN_METHODS = frozenset({StratumMethods.LOGIN, StratumMethods.MINING_AUTHORIZE})


@dataclass(frozen=True)
class Job:
    """A unit of work issued by the pool."""

    algo: Optional[str]
    # Job object for the pool's own dialect, params list for eth-native jobs
    payload: Any
    job_id: Optional[str] = None
    target: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def from_params(cls, params: dict) -> Job:
        """Build a job from a ``job`` object (login result or job notification)."""
        algo = params.get("algo")
        return cls(
            algo=algo if isinstance(algo, str) else None,
            payload=params,
            job_id=params.get("job_id"),
            target=params.get("target"),
            session_id=params.get("id"),
        )

    @classmethod
    def from_eth_notify(cls, params: list) -> Job:
        """Build a job from eth-style ``mining.notify`` params."""
        return cls(
            algo=None,
            payload=params,
            job_id=params[0] if params else None,
            target=params[3] if len(params) > 3 else None,
        )

    @property
    def is_eth_native(self) -> bool:
        """True when the payload is already in eth ``mining.notify`` form."""
        return isinstance(self.payload, list)


@dataclass(frozen=True)
class LoginReply:
    """Pool reply to our login carrying the first job."""

    raw: dict
    job: Job

    @property
    def result(self) -> dict:
        return self.raw["result"]


@dataclass(frozen=True)
class JobNotify:
    """Explicit ``job`` notification."""

    raw: dict
    job: Job


@dataclass(frozen=True)
class EthNotify:
    """``mining.notify`` sent by a pool that already speaks the eth substyle."""

    raw: dict
    job: Job


@dataclass(frozen=True)
class TargetNotify:
    """``mining.set_target`` / ``mining.set_difficulty``."""

    raw: dict


@dataclass(frozen=True)
class KeepaliveAck:
    """Pool acknowledgment of a keepalive request sent by the relay itself."""

    raw: dict


@dataclass(frozen=True)
class Reply:
    """Any other reply (usually to a request forwarded from the miner)."""

    raw: dict

    @property
    def id(self) -> Any:
        return self.raw.get("id")

    @property
    def is_error(self) -> bool:
        return self.raw.get("error") is not None


@dataclass(frozen=True)
class Notification:
    """Any other pool-initiated method call."""

    raw: dict

    @property
    def method(self) -> str:
        return self.raw.get("method", "")


PoolMessage = Union[LoginReply, JobNotify, EthNotify, TargetNotify, KeepaliveAck, Reply, Notification]

# Kinds that carry a job and therefore go through algo routing
JOB_MESSAGE_TYPES = (LoginReply, JobNotify, EthNotify)


def classify_pool_message(obj: dict, keepalive_ids: Collection[Any] = ()) -> PoolMessage:
    """
    Turn a decoded pool message into exactly one message kind.

    Args:
        obj: Decoded JSON object from the pool.
        keepalive_ids: Request ids of keepalives the relay sent itself.

    Returns:
        The message kind wrapping ``obj``.
    """
    method = obj.get("method")
    params = obj.get("params")

    if method is None:
        result = obj.get("result")
        if isinstance(result, dict) and isinstance(result.get("job"), dict):
            return LoginReply(raw=obj, job=Job.from_params(result["job"]))
        if obj.get("id") in keepalive_ids:
            return KeepaliveAck(raw=obj)
        return Reply(raw=obj)

    if method == StratumMethods.JOB and isinstance(params, dict):
        return JobNotify(raw=obj, job=Job.from_params(params))
    if method == StratumMethods.MINING_NOTIFY and isinstance(params, list):
        return EthNotify(raw=obj, job=Job.from_eth_notify(params))
    if method in (StratumMethods.MINING_SET_TARGET, StratumMethods.MINING_SET_DIFFICULTY):
        return TargetNotify(raw=obj)
    return Notification(raw=obj)


def is_job_message(msg: PoolMessage) -> bool:
    """True for message kinds that carry a job."""
    return isinstance(msg, JOB_MESSAGE_TYPES)


def proves_session(msg: PoolMessage) -> bool:
    """
    True if the message proves a fresh pool connection good.

    A connection is proven by its first job or by a reply without error.
    """
    if is_job_message(msg):
        return True
    return isinstance(msg, (Reply, KeepaliveAck)) and msg.raw.get("error") is None
