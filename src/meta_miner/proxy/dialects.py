"""Translation between the pool dialect and the three miner dialects."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Set

from loguru import logger

from meta_miner.proxy.algos import is_cuckoo_algo
from meta_miner.stratum.messages import (
    Job,
    JobNotify,
    LoginReply,
    PoolMessage,
    StratumMethods,
    SUBMIT_METHODS,
)
from meta_miner.stratum.protocol import build_response

# Grin miners expect this exact id on pushed jobs
GRIN_JOB_PUSH_ID = "Stratum"
GRIN_SUBMIT_REJECTED_CODE = -32502
GRIN_NO_JOB_CODE = -32000


@dataclass
class JobContext:
    """
    Pool state a dialect needs to answer a miner.

    ``PoolConnection`` exposes the same attributes; the benchmarker builds one
    around its synthetic job.
    """

    login_result: Optional[dict] = None
    last_job: Optional[Job] = None
    last_target: Optional[dict] = None
    miner_session_id: Optional[str] = None


def target_to_difficulty(target: Optional[str]) -> int:
    """
    Convert a little-endian hex share target to a difficulty.

    Args:
        target: 8 or 16 hex digit target as sent by the pool.

    Returns:
        The difficulty, or 0 if the target can't be decoded.
    """
    if not target:
        return 0
    try:
        value = int.from_bytes(bytes.fromhex(target), "little")
    except ValueError:
        return 0
    if value == 0:
        return 0
    base = 0xFFFFFFFF if len(target) <= 8 else 0xFFFFFFFFFFFFFFFF
    return base // value


def job_notification(job: Job) -> dict:
    """A pool-dialect ``job`` notification carrying ``job``."""
    return {"jsonrpc": "2.0", "method": StratumMethods.JOB, "params": job.payload}


class MinerDialect:
    """
    Default dialect: the miner speaks the pool's own login/job/submit shape.

    A dialect instance belongs to one miner link; it remembers which request
    ids were submits so their acknowledgments can be rewritten.
    """

    name = "default"

    def __init__(self):
        self._submit_ids: Set[Any] = set()

    def login_reply(self, request: dict, ctx: Optional[JobContext]) -> List[dict]:
        """
        Messages answering the miner's login.

        The cached login reply is re-wrapped with the miner's request id and
        carries the latest job.
        """
        if ctx is None or ctx.last_job is None:
            logger.error("No first pool job to send to the miner!")
            return []
        job = ctx.last_job
        if ctx.login_result:
            result = dict(ctx.login_result)
        else:
            result = {"id": ctx.miner_session_id or job.session_id, "status": "OK"}
        result["job"] = job.payload
        return [build_response(request.get("id"), result)]

    def job_messages(self, msg: PoolMessage, ctx: Optional[JobContext]) -> List[dict]:
        """Messages pushing a pool job or target change to the miner."""
        if isinstance(msg, LoginReply):
            return [job_notification(msg.job)]
        return [msg.raw]

    def handle_locally(self, request: dict, ctx: Optional[JobContext]) -> Optional[List[dict]]:
        """Answer a miner request without the pool; None forwards it."""
        return None

    def to_pool(self, request: dict, ctx: Optional[JobContext]) -> dict:
        """Translate a miner request for the pool."""
        if request.get("method") in SUBMIT_METHODS:
            self._submit_ids.add(request.get("id"))
        return request

    def take_submit(self, reply_id: Any) -> bool:
        """True (once) if ``reply_id`` answers a share submitted through this link."""
        if reply_id in self._submit_ids:
            self._submit_ids.discard(reply_id)
            return True
        return False

    def submit_ack(self, reply: dict) -> dict:
        """Rewrite the pool's answer to a submit."""
        return reply

    def from_pool(self, reply: dict) -> Optional[dict]:
        """Rewrite any other pool reply; None drops it."""
        return reply


class GrinDialect(MinerDialect):
    """Cuckoo-cycle miners: ``getjobtemplate`` pull plus ``job`` pushes."""

    name = "grin"

    @staticmethod
    def job_template(job: Job) -> dict:
        payload = job.payload if isinstance(job.payload, dict) else {}
        difficulty = payload.get("difficulty") or target_to_difficulty(job.target)
        return {
            "difficulty": difficulty,
            "height": payload.get("height", 0),
            "job_id": job.job_id,
            "pre_pow": payload.get("blob", payload.get("pre_pow")),
        }

    @staticmethod
    def _reply(request_id: Any, method: str, result: Any, error: Any = None) -> dict:
        return {"id": request_id, "jsonrpc": "2.0", "method": method, "result": result, "error": error}

    def login_reply(self, request: dict, ctx: Optional[JobContext]) -> List[dict]:
        # The job is fetched by the miner with getjobtemplate
        return [self._reply(request.get("id"), StratumMethods.LOGIN, "ok")]

    def job_messages(self, msg: PoolMessage, ctx: Optional[JobContext]) -> List[dict]:
        if not isinstance(msg, (LoginReply, JobNotify)):
            return []
        return [{
            "id": GRIN_JOB_PUSH_ID,
            "jsonrpc": "2.0",
            "method": StratumMethods.JOB,
            "params": self.job_template(msg.job),
        }]

    def handle_locally(self, request: dict, ctx: Optional[JobContext]) -> Optional[List[dict]]:
        method = request.get("method")
        request_id = request.get("id")
        if method == StratumMethods.GETJOBTEMPLATE:
            if ctx is None or ctx.last_job is None:
                error = {"code": GRIN_NO_JOB_CODE, "message": "Node is syncing - please wait"}
                return [self._reply(request_id, method, None, error)]
            return [self._reply(request_id, method, self.job_template(ctx.last_job))]
        if method == StratumMethods.KEEPALIVE:
            return [self._reply(request_id, method, "ok")]
        return None

    def to_pool(self, request: dict, ctx: Optional[JobContext]) -> dict:
        if request.get("method") != StratumMethods.SUBMIT:
            return request
        params = dict(request.get("params") or {})
        if ctx is not None and ctx.miner_session_id is not None:
            params["id"] = ctx.miner_session_id
        translated = {"id": request.get("id"), "jsonrpc": "2.0", "method": StratumMethods.SUBMIT, "params": params}
        return super().to_pool(translated, ctx)

    def submit_ack(self, reply: dict) -> dict:
        error = reply.get("error")
        if error is None:
            return self._reply(reply.get("id"), StratumMethods.SUBMIT, "ok")
        message = error.get("message") if isinstance(error, dict) else str(error)
        return self._reply(
            reply.get("id"),
            StratumMethods.SUBMIT,
            None,
            {"code": GRIN_SUBMIT_REJECTED_CODE, "message": message or "Solution rejected"},
        )


class EthDialect(MinerDialect):
    """Ethash / KawPow style miners: subscribe, authorize, set_target and notify."""

    name = "eth"

    def __init__(self):
        super().__init__()
        self._sent_target: Optional[str] = None

    @staticmethod
    def notify_params(job: Job) -> list:
        """``mining.notify`` params built from a pool job."""
        if job.is_eth_native:
            return list(job.payload)
        payload = job.payload
        params = [
            job.job_id,
            payload.get("blob"),
            payload.get("seed_hash"),
            job.target,
            True,
            payload.get("height"),
        ]
        if "bits" in payload:
            params.append(payload["bits"])
        return params

    def _synthesized_target(self, job: Job) -> Optional[dict]:
        """``mining.set_target`` for the job's target if the miner has not seen it yet."""
        if job.is_eth_native or not job.target or job.target == self._sent_target:
            return None
        self._sent_target = job.target
        return {"id": None, "method": StratumMethods.MINING_SET_TARGET, "params": [job.target]}

    def _notify(self, job: Job) -> dict:
        return {"id": None, "method": StratumMethods.MINING_NOTIFY, "params": self.notify_params(job)}

    def login_reply(self, request: dict, ctx: Optional[JobContext]) -> List[dict]:
        messages = [build_response(request.get("id"), True)]
        if ctx is None or ctx.last_job is None:
            logger.error("No first pool job to send to the miner!")
            return messages
        self._sent_target = None
        if ctx.last_target is not None:
            messages.append(ctx.last_target)
        else:
            target = self._synthesized_target(ctx.last_job)
            if target is not None:
                messages.append(target)
        messages.append(self._notify(ctx.last_job))
        return messages

    def job_messages(self, msg: PoolMessage, ctx: Optional[JobContext]) -> List[dict]:
        if not isinstance(msg, (LoginReply, JobNotify)):
            return [msg.raw]
        messages = []
        # Pool-supplied targets reach the miner as their own notifications
        if ctx is None or ctx.last_target is None:
            target = self._synthesized_target(msg.job)
            if target is not None:
                messages.append(target)
        messages.append(self._notify(msg.job))
        return messages

    def handle_locally(self, request: dict, ctx: Optional[JobContext]) -> Optional[List[dict]]:
        if request.get("method") == StratumMethods.MINING_EXTRANONCE_SUBSCRIBE:
            return [build_response(request.get("id"), True)]
        return None

    def to_pool(self, request: dict, ctx: Optional[JobContext]) -> dict:
        if request.get("method") != StratumMethods.MINING_SUBMIT:
            return request
        if ctx is not None and ctx.last_job is not None and ctx.last_job.is_eth_native:
            return super().to_pool(request, ctx)
        params = request.get("params") or []
        nonce = params[2] if len(params) > 2 else ""
        if isinstance(nonce, str) and nonce.startswith("0x"):
            nonce = nonce[2:]
        translated = {
            "id": request.get("id"),
            "jsonrpc": "2.0",
            "method": StratumMethods.SUBMIT,
            "params": {
                "id": ctx.miner_session_id if ctx is not None else None,
                "job_id": params[1] if len(params) > 1 else None,
                "nonce": nonce,
                "header_hash": params[3] if len(params) > 3 else None,
                "mixhash": params[4] if len(params) > 4 else None,
            },
        }
        return super().to_pool(translated, ctx)

    def submit_ack(self, reply: dict) -> dict:
        error = reply.get("error")
        return {"id": reply.get("id"), "jsonrpc": "2.0", "result": error is None, "error": error}


def select_dialect(first_message: dict, current_algo: Optional[str]) -> MinerDialect:
    """
    Pick the dialect for a new miner link from its first message.

    Args:
        first_message: First JSON message the miner sent.
        current_algo: Algorithm currently selected by the pool.

    Returns:
        A fresh dialect instance, fixed for the lifetime of the link.
    """
    method = first_message.get("method")
    if method == StratumMethods.GETJOBTEMPLATE:
        return GrinDialect()
    if method in (StratumMethods.MINING_SUBSCRIBE, StratumMethods.MINING_AUTHORIZE):
        return EthDialect()
    if method == StratumMethods.LOGIN:
        params = first_message.get("params")
        has_algo_list = isinstance(params, dict) and isinstance(params.get("algo"), list)
        if not has_algo_list and is_cuckoo_algo(current_algo):
            return GrinDialect()
    return MinerDialect()


def subscribe_reply(request: dict) -> dict:
    """Local answer to ``mining.subscribe`` when there is no pool to forward it to."""
    return build_response(request.get("id"), [[[StratumMethods.MINING_NOTIFY, "meta_miner"]], "", "0"])
