"""cirelay 코디네이터 도메인 모델."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    """작업 상태."""

    PENDING = "pending"
    CLAIMED = "claimed"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELED})
ACTIVE_STATES = frozenset({JobState.CLAIMED, JobState.RUNNING})

# 에이전트가 직접 보고할 수 있는 상태
REPORTABLE_STATES = frozenset({JobState.RUNNING, *TERMINAL_STATES})

_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.CLAIMED, JobState.CANCELED}),
    JobState.CLAIMED: frozenset({JobState.RUNNING, JobState.PENDING, JobState.CANCELED}),
    JobState.RUNNING: frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELED, JobState.PENDING}),
    JobState.SUCCEEDED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.CANCELED: frozenset(),
}


def can_transition(current: JobState, target: JobState) -> bool:
    return target in _TRANSITIONS[current]


class PipelineState(str, Enum):
    """파이프라인 집계 상태."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in {PipelineState.SUCCEEDED, PipelineState.FAILED, PipelineState.CANCELED}


class AgentStatus(str, Enum):
    ONLINE = "online"
    UNREACHABLE = "unreachable"


class FailureReason(str, Enum):
    STEP_FAILURE = "step_failure"
    TIMEOUT = "timeout"
    SANDBOX_ERROR = "sandbox_error"
    UPSTREAM_FAILED = "upstream_failed"
    CANCELED = "canceled"


PRIVILEGED_TAG = "privileged"
NESTED_ISOLATION_TAG = "nested-isolation"
VOLUME_TAG_PREFIX = "volume:"


def volume_tag(name: str) -> str:
    return f"{VOLUME_TAG_PREFIX}{name}"


@dataclass(slots=True)
class Step:
    name: str
    command: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "command": self.command}


@dataclass(slots=True)
class RepositorySpec:
    """파이프라인을 트리거한 레포지토리 스냅샷."""

    url: str
    branch: str | None = None
    commit: str | None = None


@dataclass(slots=True)
class TriggerEvent:
    """push 등 파이프라인을 만든 이벤트."""

    kind: str = "manual"
    repository: RepositorySpec | None = None
    user: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "repository": _repository_dict(self.repository),
            "user": self.user,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TriggerEvent":
        data = data or {}
        repo = data.get("repository")
        repository = None
        if isinstance(repo, dict) and repo.get("url"):
            repository = RepositorySpec(
                url=str(repo["url"]),
                branch=repo.get("branch"),
                commit=repo.get("commit"),
            )
        return cls(kind=str(data.get("kind") or "manual"), repository=repository, user=data.get("user"))


def _repository_dict(repo: RepositorySpec | None) -> dict[str, Any] | None:
    if repo is None:
        return None
    return {"url": repo.url, "branch": repo.branch, "commit": repo.commit}


@dataclass(slots=True)
class Job:
    """파이프라인 스테이지 하나에 해당하는 실행 단위."""

    job_id: str
    pipeline_id: str
    name: str
    steps: list[Step]
    created_at: datetime
    capabilities: list[str] = field(default_factory=list)
    needs: list[str] = field(default_factory=list)
    volumes: list[str] = field(default_factory=list)
    image: str | None = None
    required: bool = True
    timeout_seconds: float = 3600.0
    state: JobState = JobState.PENDING
    agent_id: str | None = None
    attempt: int = 0
    cancel_requested: bool = False
    cancel_requested_at: datetime | None = None
    failure_reason: str | None = None
    failed_step: str | None = None
    exit_code: int | None = None
    claimed_at: datetime | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None
    finished_at: datetime | None = None
    position: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "pipeline_id": self.pipeline_id,
            "name": self.name,
            "steps": [step.to_dict() for step in self.steps],
            "capabilities": self.capabilities,
            "needs": self.needs,
            "volumes": self.volumes,
            "image": self.image,
            "required": self.required,
            "timeout_seconds": self.timeout_seconds,
            "state": self.state.value,
            "agent_id": self.agent_id,
            "attempt": self.attempt,
            "cancel_requested": self.cancel_requested,
            "failure_reason": self.failure_reason,
            "failed_step": self.failed_step,
            "exit_code": self.exit_code,
            "created_at": _iso(self.created_at),
            "claimed_at": _iso(self.claimed_at),
            "started_at": _iso(self.started_at),
            "updated_at": _iso(self.updated_at),
            "finished_at": _iso(self.finished_at),
        }


@dataclass(slots=True)
class Pipeline:
    pipeline_id: str
    name: str
    definition: dict[str, Any]
    trigger: TriggerEvent
    created_at: datetime
    state: PipelineState = PipelineState.PENDING
    failed_job: str | None = None
    cancel_requested: bool = False
    finished_at: datetime | None = None

    def to_dict(self, jobs: Iterable[Job] | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "pipeline_id": self.pipeline_id,
            "name": self.name,
            "state": self.state.value,
            "trigger": self.trigger.to_dict(),
            "failed_job": self.failed_job,
            "cancel_requested": self.cancel_requested,
            "created_at": _iso(self.created_at),
            "finished_at": _iso(self.finished_at),
        }
        if jobs is not None:
            payload["jobs"] = [job.to_dict() for job in jobs]
        return payload


@dataclass(slots=True)
class AgentRecord:
    """등록된 워커 에이전트 정보."""

    agent_id: str
    token: str
    capabilities: list[str]
    address: str | None
    registered_at: datetime
    last_heartbeat: datetime
    max_concurrency: int = 1
    status: AgentStatus = AgentStatus.ONLINE

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "capabilities": self.capabilities,
            "address": self.address,
            "max_concurrency": self.max_concurrency,
            "status": self.status.value,
            "registered_at": _iso(self.registered_at),
            "last_heartbeat": _iso(self.last_heartbeat),
        }


def aggregate_state(jobs: Iterable[Job]) -> PipelineState:
    """작업 상태들로부터 파이프라인 상태를 계산한다."""
    jobs = list(jobs)
    required = [job for job in jobs if job.required]
    if any(job.state == JobState.FAILED for job in required):
        return PipelineState.FAILED
    if required and all(job.state == JobState.SUCCEEDED for job in required):
        return PipelineState.SUCCEEDED
    if all(job.state.is_terminal for job in jobs):
        return PipelineState.CANCELED
    if any(job.state != JobState.PENDING for job in jobs):
        return PipelineState.RUNNING
    return PipelineState.PENDING


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
