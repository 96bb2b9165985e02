"""에이전트 RPC 메시지 처리. 전송 계층과 무관하게 dict -> dict."""

from __future__ import annotations

import logging
from typing import Any, Callable

from relaynet import FabricConfig

from .errors import CoordinatorError
from .models import Job, Pipeline
from .scheduler import Coordinator

LOGGER = logging.getLogger(__name__)


def assignment_payload(job: Job, pipeline: Pipeline, fabric: FabricConfig) -> dict[str, Any]:
    """에이전트에 넘길 작업 명세. 클론 주소는 샌드박스 기준으로 바꿔서 보낸다."""
    repository = None
    repo = pipeline.trigger.repository
    if repo is not None:
        repository = {
            "clone_url": fabric.rewrite_url(repo.url),
            "branch": repo.branch,
            "commit": repo.commit,
        }
    return {
        "job_id": job.job_id,
        "pipeline_id": job.pipeline_id,
        "name": job.name,
        "attempt": job.attempt,
        "steps": [step.to_dict() for step in job.steps],
        "capabilities": job.capabilities,
        "volumes": job.volumes,
        "image": job.image,
        "timeout_seconds": job.timeout_seconds,
        "repository": repository,
    }


class RpcDispatcher:
    def __init__(self, coordinator: Coordinator) -> None:
        self._coordinator = coordinator
        self._handlers: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "agent.register": self._register,
            "agent.heartbeat": self._heartbeat,
            "job.claim": self._claim,
            "job.status": self._status,
        }

    def handle(self, message: Any) -> dict[str, Any]:
        if not isinstance(message, dict):
            return _error("bad_request", "message must be a JSON object", None)
        msg_id = message.get("id")
        handler = self._handlers.get(str(message.get("type")))
        if handler is None:
            return _error("bad_request", f"unknown message type {message.get('type')!r}", msg_id)
        try:
            reply = handler(message)
        except CoordinatorError as exc:
            LOGGER.warning("RPC %s rejected: %s (%s)", message.get("type"), exc.code, exc)
            return _error(exc.code, str(exc), msg_id)
        except (KeyError, TypeError, ValueError) as exc:
            return _error("bad_request", f"malformed {message.get('type')} request: {exc}", msg_id)
        reply["reply_to"] = msg_id
        return reply

    def _register(self, message: dict[str, Any]) -> dict[str, Any]:
        identity = str(message["identity"])
        token = self._coordinator.register_agent(
            identity,
            list(message.get("capabilities") or []),
            message.get("address"),
            int(message.get("max_concurrency") or 1),
        )
        config = self._coordinator.config
        return {
            "type": "agent.registered",
            "agent_id": identity,
            "token": token,
            "heartbeat_interval": config.heartbeat_interval,
            "config_version": config.version,
        }

    def _heartbeat(self, message: dict[str, Any]) -> dict[str, Any]:
        reply = self._coordinator.heartbeat(str(message["token"]))
        return {"type": "agent.heartbeat.ack", "cancel": reply.cancel, "config_version": reply.config_version}

    def _claim(self, message: dict[str, Any]) -> dict[str, Any]:
        job = self._coordinator.claim_next_job(str(message["token"]))
        if job is None:
            return {"type": "job.none"}
        pipeline = self._coordinator.get_pipeline(job.pipeline_id)
        return {"type": "job.assign", "job": assignment_payload(job, pipeline, self._coordinator.config.fabric)}

    def _status(self, message: dict[str, Any]) -> dict[str, Any]:
        attempt = message.get("attempt")
        exit_code = message.get("exit_code")
        job = self._coordinator.report_status(
            str(message["token"]),
            str(message["job_id"]),
            str(message["state"]),
            message.get("log") or None,
            attempt=int(attempt) if attempt is not None else None,
            reason=message.get("reason"),
            failed_step=message.get("failed_step"),
            exit_code=int(exit_code) if exit_code is not None else None,
        )
        return {"type": "job.status.ack", "job_id": job.job_id, "state": job.state.value}


def _error(code: str, message: str, msg_id: Any) -> dict[str, Any]:
    return {"type": "error", "code": code, "message": message, "reply_to": msg_id}
