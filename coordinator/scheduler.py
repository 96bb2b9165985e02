"""작업 큐, 에이전트 레지스트리, 할당 정책, 파이프라인 상태 머신."""

from __future__ import annotations

import logging
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from .config import CoordinatorConfig
from .definition import is_valid_tag, parse_definition
from .errors import DuplicateIdentity, InvalidDefinition, InvalidTransition, NotFound, NotOwner, UnknownAgent
from .models import (
    ACTIVE_STATES,
    REPORTABLE_STATES,
    AgentRecord,
    AgentStatus,
    FailureReason,
    Job,
    JobState,
    Pipeline,
    PipelineState,
    TriggerEvent,
    aggregate_state,
    can_transition,
    utcnow,
)
from .storage import Storage

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class HeartbeatReply:
    cancel: list[str] = field(default_factory=list)
    config_version: int = 1


@dataclass(slots=True)
class SweepResult:
    unreachable_agents: list[str] = field(default_factory=list)
    requeued_jobs: list[str] = field(default_factory=list)
    canceled_jobs: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.unreachable_agents or self.requeued_jobs or self.canceled_jobs)


class Coordinator:
    """파이프라인을 작업으로 전개하고 에이전트에게 배정하는 중앙 권한."""

    def __init__(
        self,
        storage: Storage,
        config: CoordinatorConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._config = config or CoordinatorConfig()
        self._clock = clock
        # 큐 스캔과 상태 전이를 하나의 임계 구역으로 묶는다
        self._lock = threading.RLock()

    @property
    def config(self) -> CoordinatorConfig:
        return self._config

    def apply_config(self, config: CoordinatorConfig) -> None:
        with self._lock:
            LOGGER.info("Applying coordinator config version %s", config.version)
            self._config = config

    # Ingestion ----------------------------------------------------------

    def enqueue(self, definition: Any, trigger: TriggerEvent | None = None) -> str:
        parsed = parse_definition(definition)
        trigger = trigger or TriggerEvent()
        now = self._clock()
        pipeline = Pipeline(
            pipeline_id=str(uuid.uuid4()),
            name=parsed.name,
            definition=dict(definition),
            trigger=trigger,
            created_at=now,
        )
        default_timeout = parsed.timeout_seconds or self._config.default_job_timeout
        name_to_id = {job.name: str(uuid.uuid4()) for job in parsed.jobs}
        jobs = [
            Job(
                job_id=name_to_id[spec.name],
                pipeline_id=pipeline.pipeline_id,
                name=spec.name,
                steps=spec.steps,
                created_at=now,
                capabilities=spec.capabilities,
                needs=spec.needs,
                volumes=spec.volumes,
                image=spec.image,
                required=spec.required,
                timeout_seconds=spec.timeout_seconds or default_timeout,
                position=position,
            )
            for position, spec in enumerate(parsed.jobs)
        ]
        with self._lock:
            self._storage.insert_pipeline(pipeline, jobs)
        LOGGER.info("Enqueued pipeline %s (%s) with %d job(s)", pipeline.pipeline_id, pipeline.name, len(jobs))
        return pipeline.pipeline_id

    # Agent registry -----------------------------------------------------

    def register_agent(
        self,
        identity: str,
        capabilities: Iterable[str],
        address: str | None = None,
        max_concurrency: int = 1,
    ) -> str:
        identity = str(identity or "").strip()
        if not identity:
            raise InvalidDefinition("agent identity is required")
        tags = sorted({str(tag).strip().lower() for tag in capabilities if str(tag).strip()})
        bad = [tag for tag in tags if not is_valid_tag(tag)]
        if bad:
            raise InvalidDefinition(f"malformed capability tags: {', '.join(bad)}")
        if max_concurrency < 1:
            raise InvalidDefinition("max_concurrency must be at least 1")

        now = self._clock()
        with self._lock:
            agent = self._storage.get_agent(identity)
            if agent is None:
                agent = AgentRecord(
                    agent_id=identity,
                    token=secrets.token_urlsafe(32),
                    capabilities=tags,
                    address=address,
                    registered_at=now,
                    last_heartbeat=now,
                    max_concurrency=max_concurrency,
                )
                LOGGER.info("Registered agent %s (%s)", identity, ", ".join(tags) or "no capabilities")
            else:
                if agent.status == AgentStatus.ONLINE:
                    self._check_reconcilable(agent, set(tags))
                agent.capabilities = tags
                agent.address = address
                agent.max_concurrency = max_concurrency
                agent.last_heartbeat = now
                agent.status = AgentStatus.ONLINE
                LOGGER.info("Re-registered agent %s", identity)
            self._storage.upsert_agent(agent)
            return agent.token

    def _check_reconcilable(self, agent: AgentRecord, capabilities: set[str]) -> None:
        for job in self._storage.list_jobs(agent_id=agent.agent_id, states=list(ACTIVE_STATES)):
            if not set(job.capabilities).issubset(capabilities):
                raise DuplicateIdentity(
                    f"agent {agent.agent_id} is live and holds job {job.job_id} "
                    f"which the new capability set cannot run"
                )

    def heartbeat(self, token: str) -> HeartbeatReply:
        with self._lock:
            agent = self._require_agent(token)
            self._touch(agent)
            cancel = [
                job.job_id
                for job in self._storage.list_jobs(agent_id=agent.agent_id, states=list(ACTIVE_STATES))
                if job.cancel_requested
            ]
        return HeartbeatReply(cancel=cancel, config_version=self._config.version)

    def _touch(self, agent: AgentRecord) -> None:
        if agent.status == AgentStatus.UNREACHABLE:
            LOGGER.info("Agent %s is reachable again", agent.agent_id)
        agent.status = AgentStatus.ONLINE
        agent.last_heartbeat = self._clock()
        self._storage.upsert_agent(agent)

    def _require_agent(self, token: str) -> AgentRecord:
        agent = self._storage.get_agent_by_token(token) if token else None
        if agent is None:
            LOGGER.warning("Rejected request with unknown agent token")
            raise UnknownAgent("unknown agent token")
        return agent

    # Assignment ---------------------------------------------------------

    def claim_next_job(self, token: str) -> Job | None:
        with self._lock:
            agent = self._require_agent(token)
            self._touch(agent)
            active = self._storage.list_jobs(agent_id=agent.agent_id, states=list(ACTIVE_STATES))
            if len(active) >= agent.max_concurrency:
                return None

            capabilities = set(agent.capabilities)
            succeeded: dict[str, set[str]] = {}
            for job in self._storage.iter_jobs(states=[JobState.PENDING]):
                if not set(job.capabilities).issubset(capabilities):
                    continue
                if job.needs and not self._dependencies_met(job, succeeded):
                    continue
                if not self._storage.claim_job(job.job_id, agent.agent_id, self._clock()):
                    continue
                claimed = self._storage.get_job(job.job_id)
                if claimed is None:
                    raise NotFound(f"job {job.job_id} vanished while being claimed")
                self._refresh_pipeline(claimed.pipeline_id)
                LOGGER.info(
                    "Job %s (%s) claimed by %s, attempt %d",
                    claimed.job_id,
                    claimed.name,
                    agent.agent_id,
                    claimed.attempt,
                )
                return claimed
        return None

    def _dependencies_met(self, job: Job, cache: dict[str, set[str]]) -> bool:
        done = cache.get(job.pipeline_id)
        if done is None:
            done = {
                sibling.name
                for sibling in self._storage.list_jobs(pipeline_id=job.pipeline_id)
                if sibling.state == JobState.SUCCEEDED
            }
            cache[job.pipeline_id] = done
        return set(job.needs).issubset(done)

    # Status reports -----------------------------------------------------

    def report_status(
        self,
        token: str,
        job_id: str,
        state: JobState | str,
        log_chunk: str | None = None,
        *,
        attempt: int | None = None,
        reason: str | None = None,
        failed_step: str | None = None,
        exit_code: int | None = None,
    ) -> Job:
        try:
            target = JobState(state)
        except ValueError as exc:
            raise InvalidTransition(f"unknown job state {state!r}") from exc

        with self._lock:
            agent = self._require_agent(token)
            job = self._storage.get_job(job_id)
            if job is None:
                raise NotFound(f"job {job_id} not found")
            if (
                job.agent_id != agent.agent_id
                or job.state not in ACTIVE_STATES
                or (attempt is not None and attempt != job.attempt)
            ):
                LOGGER.warning(
                    "Rejected %s report for job %s from %s: claim not held (state=%s, holder=%s)",
                    target.value,
                    job_id,
                    agent.agent_id,
                    job.state.value,
                    job.agent_id,
                )
                raise NotOwner(f"agent {agent.agent_id} does not hold job {job_id}")
            if target not in REPORTABLE_STATES:
                raise InvalidTransition(f"agents cannot report {target.value}")
            if target != job.state and not can_transition(job.state, target):
                raise InvalidTransition(f"job {job_id} cannot go from {job.state.value} to {target.value}")

            now = self._clock()
            if log_chunk:
                self._storage.append_job_log(job.job_id, job.attempt, log_chunk, now)
            job.updated_at = now
            self._touch(agent)

            if target == job.state:
                self._storage.upsert_job(job)
                return job

            if target == JobState.RUNNING:
                job.started_at = now
            else:
                job.finished_at = now
                job.exit_code = exit_code
                job.failed_step = failed_step if target == JobState.FAILED else None
                if target == JobState.FAILED:
                    job.failure_reason = reason or FailureReason.STEP_FAILURE.value
                elif target == JobState.CANCELED:
                    job.failure_reason = reason or FailureReason.CANCELED.value
            LOGGER.info("Job %s: %s -> %s", job.job_id, job.state.value, target.value)
            job.state = target
            self._storage.upsert_job(job)
            if target.is_terminal:
                self._settle(job)
            return job

    def _settle(self, job: Job) -> None:
        if job.state in (JobState.FAILED, JobState.CANCELED):
            self._cancel_dependents(job)
        self._refresh_pipeline(job.pipeline_id, failed_job=job if job.state == JobState.FAILED else None)

    def _cancel_dependents(self, job: Job) -> None:
        siblings = self._storage.list_jobs(pipeline_id=job.pipeline_id)
        blocked = {job.name}
        changed = True
        while changed:
            changed = False
            for sibling in siblings:
                if sibling.name in blocked or sibling.state != JobState.PENDING:
                    continue
                if blocked.intersection(sibling.needs):
                    blocked.add(sibling.name)
                    changed = True
        now = self._clock()
        for sibling in siblings:
            if sibling.name in blocked and sibling.state == JobState.PENDING:
                sibling.state = JobState.CANCELED
                sibling.failure_reason = FailureReason.UPSTREAM_FAILED.value
                sibling.finished_at = now
                sibling.updated_at = now
                self._storage.upsert_job(sibling)
                LOGGER.info("Job %s skipped: upstream %s did not succeed", sibling.job_id, job.name)

    def _refresh_pipeline(self, pipeline_id: str, *, failed_job: Job | None = None) -> Pipeline:
        pipeline = self._storage.get_pipeline(pipeline_id)
        if pipeline is None:
            raise NotFound(f"pipeline {pipeline_id} not found")
        if failed_job is not None and failed_job.required and pipeline.failed_job is None:
            pipeline.failed_job = failed_job.name
        jobs = self._storage.list_jobs(pipeline_id=pipeline_id)
        state = aggregate_state(jobs)
        if state != pipeline.state:
            LOGGER.info("Pipeline %s: %s -> %s", pipeline_id, pipeline.state.value, state.value)
            pipeline.state = state
        # 선택 작업이 남아 있으면 상태가 확정돼도 아직 끝난 것이 아니다
        if pipeline.finished_at is None and all(job.state.is_terminal for job in jobs):
            pipeline.finished_at = self._clock()
        self._storage.update_pipeline(pipeline)
        return pipeline

    # Cancellation -------------------------------------------------------

    def cancel_pipeline(self, pipeline_id: str) -> Pipeline:
        with self._lock:
            pipeline = self._storage.get_pipeline(pipeline_id)
            if pipeline is None:
                raise NotFound(f"pipeline {pipeline_id} not found")
            if pipeline.finished_at is not None:
                return pipeline
            now = self._clock()
            pipeline.cancel_requested = True
            self._storage.update_pipeline(pipeline)
            for job in self._storage.list_jobs(pipeline_id=pipeline_id):
                if job.state == JobState.PENDING:
                    job.state = JobState.CANCELED
                    job.failure_reason = FailureReason.CANCELED.value
                    job.finished_at = now
                    job.updated_at = now
                    self._storage.upsert_job(job)
                elif job.state in ACTIVE_STATES and not job.cancel_requested:
                    job.cancel_requested = True
                    job.cancel_requested_at = now
                    self._storage.upsert_job(job)
            LOGGER.info("Cancellation requested for pipeline %s", pipeline_id)
            return self._refresh_pipeline(pipeline_id)

    # Staleness sweep ----------------------------------------------------

    def sweep(self, now: datetime | None = None) -> SweepResult:
        """하트비트가 끊긴 에이전트의 작업을 되돌린다. 여러 번 호출해도 결과가 같다."""
        now = now or self._clock()
        result = SweepResult()
        deadline = now - timedelta(seconds=self._config.heartbeat_timeout)
        grace_deadline = now - timedelta(seconds=self._config.cancel_grace)
        job_deadline = now - timedelta(seconds=self._config.job_heartbeat_timeout)
        touched: set[str] = set()
        with self._lock:
            for agent in self._storage.list_agents():
                if agent.status != AgentStatus.ONLINE or agent.last_heartbeat >= deadline:
                    continue
                agent.status = AgentStatus.UNREACHABLE
                self._storage.upsert_agent(agent)
                result.unreachable_agents.append(agent.agent_id)
                LOGGER.warning("Agent %s unreachable (last heartbeat %s)", agent.agent_id, agent.last_heartbeat.isoformat())
                for job in self._storage.list_jobs(agent_id=agent.agent_id, states=list(ACTIVE_STATES)):
                    if job.cancel_requested:
                        self._force_cancel(job, now)
                        result.canceled_jobs.append(job.job_id)
                    else:
                        self._requeue(job, now)
                        result.requeued_jobs.append(job.job_id)
                    touched.add(job.pipeline_id)

            for job in self._storage.list_jobs(states=list(ACTIVE_STATES)):
                if job.cancel_requested and job.cancel_requested_at and job.cancel_requested_at < grace_deadline:
                    LOGGER.warning("Job %s did not acknowledge cancellation in time", job.job_id)
                    self._force_cancel(job, now)
                    result.canceled_jobs.append(job.job_id)
                    touched.add(job.pipeline_id)

            # 에이전트는 살아 있어도 작업 보고가 끊긴 경우 (할당 응답 유실 등)
            for job in self._storage.list_jobs(states=list(ACTIVE_STATES)):
                if job.cancel_requested:
                    continue
                last_report = job.updated_at or job.claimed_at
                if last_report is None or last_report >= job_deadline:
                    continue
                LOGGER.warning(
                    "Job %s (%s) sent no report since %s; taking it back from %s",
                    job.job_id,
                    job.state.value,
                    last_report.isoformat(),
                    job.agent_id,
                )
                self._requeue(job, now)
                result.requeued_jobs.append(job.job_id)
                touched.add(job.pipeline_id)

            for pipeline_id in touched:
                self._refresh_pipeline(pipeline_id)
        return result

    def _requeue(self, job: Job, now: datetime) -> None:
        LOGGER.info("Requeueing job %s previously held by %s", job.job_id, job.agent_id)
        job.state = JobState.PENDING
        job.agent_id = None
        job.claimed_at = None
        job.started_at = None
        job.updated_at = now
        self._storage.upsert_job(job)

    def _force_cancel(self, job: Job, now: datetime) -> None:
        job.state = JobState.CANCELED
        job.agent_id = None
        job.failure_reason = FailureReason.CANCELED.value
        job.finished_at = now
        job.updated_at = now
        self._storage.upsert_job(job)
        self._cancel_dependents(job)

    # Lifecycle ----------------------------------------------------------

    def recover(self) -> list[str]:
        """재시작 직후 호출. 진행 중이던 작업을 정책에 따라 처리한다."""
        now = self._clock()
        requeued: list[str] = []
        with self._lock:
            in_flight = self._storage.list_jobs(states=list(ACTIVE_STATES))
            if self._config.requeue_on_restart:
                for job in in_flight:
                    if job.cancel_requested:
                        self._force_cancel(job, now)
                    else:
                        self._requeue(job, now)
                        requeued.append(job.job_id)
                for pipeline_id in {job.pipeline_id for job in in_flight}:
                    self._refresh_pipeline(pipeline_id)
            else:
                # 재접속 유예: 모든 온라인 에이전트에게 새 하트비트 기한을 준다
                for agent in self._storage.list_agents():
                    if agent.status == AgentStatus.ONLINE:
                        agent.last_heartbeat = now
                        self._storage.upsert_agent(agent)
                for job in in_flight:
                    job.updated_at = now
                    self._storage.upsert_job(job)
        LOGGER.info(
            "Recovered coordinator state: %d in-flight job(s), %d requeued",
            len(in_flight),
            len(requeued),
        )
        return requeued

    def purge_expired(self, now: datetime | None = None) -> list[str]:
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self._config.retention_seconds)
        purged: list[str] = []
        with self._lock:
            for pipeline in self._storage.list_finished_pipelines(cutoff):
                self._storage.delete_pipeline(pipeline.pipeline_id)
                purged.append(pipeline.pipeline_id)
        if purged:
            LOGGER.info("Purged %d expired pipeline(s)", len(purged))
        return purged

    # Read side ----------------------------------------------------------

    def get_pipeline(self, pipeline_id: str) -> Pipeline:
        pipeline = self._storage.get_pipeline(pipeline_id)
        if pipeline is None:
            raise NotFound(f"pipeline {pipeline_id} not found")
        return pipeline

    def list_pipelines(self, limit: int = 50, state: PipelineState | None = None) -> list[Pipeline]:
        return self._storage.list_pipelines(limit=limit, state=state)

    def list_jobs(self, pipeline_id: str) -> list[Job]:
        return sorted(self._storage.list_jobs(pipeline_id=pipeline_id), key=lambda job: job.position)

    def get_job(self, job_id: str) -> Job:
        job = self._storage.get_job(job_id)
        if job is None:
            raise NotFound(f"job {job_id} not found")
        return job

    def job_logs(self, job_id: str, *, limit: int = 200, after_seq: int | None = None) -> list[dict[str, Any]]:
        self.get_job(job_id)
        return self._storage.list_job_logs(job_id, limit=limit, after_seq=after_seq)

    def list_agents(self) -> list[AgentRecord]:
        return self._storage.list_agents()
