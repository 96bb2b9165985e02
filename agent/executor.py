"""할당받은 작업 하나를 샌드박스에서 실행하고 상태를 보고한다."""

from __future__ import annotations

import asyncio
import logging
import shlex
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Protocol

from coordinator.models import NESTED_ISOLATION_TAG, PRIVILEGED_TAG, FailureReason, JobState
from relaynet import FabricConfig

from .sandbox import Mount, ResourceLimits, Sandbox, SandboxError, SandboxHandle

LOGGER = logging.getLogger(__name__)

CHECKOUT_STEP = "checkout"


class ClaimLost(Exception):
    """코디네이터가 이 에이전트의 작업 소유권을 인정하지 않을 때."""


class StatusReporter(Protocol):
    async def __call__(
        self,
        assignment: "JobAssignment",
        state: str,
        log: str | None,
        **details: Any,
    ) -> None:
        ...


@dataclass(slots=True)
class StepSpec:
    name: str
    command: str


@dataclass(slots=True)
class JobAssignment:
    job_id: str
    pipeline_id: str
    name: str
    attempt: int
    steps: list[StepSpec]
    capabilities: list[str] = field(default_factory=list)
    volumes: list[str] = field(default_factory=list)
    image: str | None = None
    timeout_seconds: float = 3600.0
    clone_url: str | None = None
    branch: str | None = None
    commit: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "JobAssignment":
        repository = payload.get("repository") or {}
        return cls(
            job_id=str(payload["job_id"]),
            pipeline_id=str(payload["pipeline_id"]),
            name=str(payload.get("name") or payload["job_id"]),
            attempt=int(payload.get("attempt") or 0),
            steps=[StepSpec(str(step["name"]), str(step["command"])) for step in payload.get("steps") or []],
            capabilities=list(payload.get("capabilities") or []),
            volumes=list(payload.get("volumes") or []),
            image=payload.get("image"),
            timeout_seconds=float(payload.get("timeout_seconds") or 3600.0),
            clone_url=repository.get("clone_url"),
            branch=repository.get("branch"),
            commit=repository.get("commit"),
        )


@dataclass(slots=True)
class JobOutcome:
    state: JobState
    reason: FailureReason | None = None
    failed_step: str | None = None
    exit_code: int | None = None
    reported: bool = True

    def details(self) -> dict[str, Any]:
        return {
            "reason": self.reason.value if self.reason else None,
            "failed_step": self.failed_step,
            "exit_code": self.exit_code,
        }


class LogBuffer:
    """보고 사이에 쌓인 출력 줄. 보고할 때마다 비운다."""

    def __init__(self) -> None:
        self._lines: list[str] = []

    def append(self, line: str) -> None:
        self._lines.append(line)

    async def write(self, line: str) -> None:
        self._lines.append(line)

    def drain(self) -> str | None:
        if not self._lines:
            return None
        text = "\n".join(self._lines)
        self._lines.clear()
        return text


def checkout_command(assignment: JobAssignment) -> str:
    ref = assignment.commit or assignment.branch or "HEAD"
    url = shlex.quote(assignment.clone_url or "")
    return (
        "git init -q . && "
        f"git remote add origin {url} && "
        f"git fetch -q --depth 1 origin {shlex.quote(ref)} && "
        "git checkout -q FETCH_HEAD"
    )


class JobRunner:
    def __init__(
        self,
        sandbox: Sandbox,
        reporter: StatusReporter,
        *,
        volumes: Mapping[str, Mount] | None = None,
        limits: ResourceLimits | None = None,
        fabric: FabricConfig | None = None,
        isolation_socket: str | None = None,
        progress_interval: float = 5.0,
        cancel_grace: float = 10.0,
    ) -> None:
        self._sandbox = sandbox
        self._reporter = reporter
        self._volumes = dict(volumes or {})
        self._limits = limits or ResourceLimits()
        self._fabric = fabric or FabricConfig()
        self._isolation_socket = isolation_socket
        self._progress_interval = progress_interval
        self._cancel_grace = cancel_grace

    async def run(self, assignment: JobAssignment, cancel_event: asyncio.Event | None = None) -> JobOutcome:
        """작업을 끝까지 실행한다. 종료 상태 보고까지 포함."""
        buffer = LogBuffer()
        try:
            await self._reporter(assignment, JobState.RUNNING.value, None)
        except ClaimLost:
            LOGGER.warning("Job %s was taken away before it started", assignment.job_id)
            return JobOutcome(JobState.CANCELED, FailureReason.CANCELED, reported=False)

        lost = asyncio.Event()
        report_lock = asyncio.Lock()
        progress = asyncio.create_task(self._progress_loop(assignment, buffer, lost, report_lock))
        try:
            outcome = await self._execute(assignment, buffer, cancel_event, lost)
        finally:
            # 진행 중인 보고는 끝까지 보낸다
            async with report_lock:
                progress.cancel()
            with suppress(asyncio.CancelledError):
                await progress

        if lost.is_set():
            LOGGER.warning("Job %s claim lost; dropping result %s", assignment.job_id, outcome.state.value)
            outcome.reported = False
            return outcome

        LOGGER.info("Job %s finished: %s", assignment.job_id, outcome.state.value)
        try:
            await self._reporter(assignment, outcome.state.value, buffer.drain(), **outcome.details())
        except ClaimLost:
            LOGGER.warning("Coordinator refused final status of job %s", assignment.job_id)
            outcome.reported = False
        return outcome

    async def _execute(
        self,
        assignment: JobAssignment,
        buffer: LogBuffer,
        cancel_event: asyncio.Event | None,
        lost: asyncio.Event,
    ) -> JobOutcome:
        if assignment.clone_url and not self._fabric.reachable_from_sandbox(assignment.clone_url):
            buffer.append(f"clone address {assignment.clone_url} is not reachable from the sandbox network")
            return JobOutcome(JobState.FAILED, FailureReason.SANDBOX_ERROR, failed_step=CHECKOUT_STEP)

        try:
            async with self._provision(assignment) as handle:
                return await self._supervise(assignment, handle, buffer, cancel_event, lost)
        except SandboxError as exc:
            LOGGER.error("Sandbox failure on job %s: %s", assignment.job_id, exc)
            buffer.append(f"sandbox error: {exc}")
            return JobOutcome(JobState.FAILED, FailureReason.SANDBOX_ERROR)
        except Exception as exc:  # noqa: BLE001
            # 어떤 오류든 최종 보고는 보낸다
            LOGGER.exception("Unexpected error while running job %s", assignment.job_id)
            buffer.append(f"agent error: {exc!r}")
            return JobOutcome(JobState.FAILED, FailureReason.SANDBOX_ERROR)

    async def _supervise(
        self,
        assignment: JobAssignment,
        handle: SandboxHandle,
        buffer: LogBuffer,
        cancel_event: asyncio.Event | None,
        lost: asyncio.Event,
    ) -> JobOutcome:
        body = asyncio.create_task(self._run_steps(assignment, handle, buffer))
        stop_waiters = [asyncio.create_task(lost.wait())]
        if cancel_event is not None:
            stop_waiters.append(asyncio.create_task(cancel_event.wait()))
        try:
            done, _ = await asyncio.wait(
                {body, *stop_waiters},
                timeout=assignment.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in stop_waiters:
                waiter.cancel()
            if not body.done():
                body.cancel()
                with suppress(asyncio.CancelledError):
                    await body

        if body in done:
            return body.result()
        if lost.is_set():
            return JobOutcome(JobState.CANCELED, FailureReason.CANCELED)
        if cancel_event is not None and cancel_event.is_set():
            buffer.append("job canceled")
            return JobOutcome(JobState.CANCELED, FailureReason.CANCELED)
        buffer.append(f"job exceeded its timeout of {assignment.timeout_seconds:g}s")
        return JobOutcome(JobState.FAILED, FailureReason.TIMEOUT)

    @asynccontextmanager
    async def _provision(self, assignment: JobAssignment) -> AsyncIterator[SandboxHandle]:
        mounts = []
        for name in assignment.volumes:
            if name not in self._volumes:
                raise SandboxError(f"volume {name!r} is not configured on this agent")
            mounts.append(self._volumes[name])
        privileged = PRIVILEGED_TAG in assignment.capabilities
        if privileged and not self._sandbox.supports_privileged:
            raise SandboxError(f"{self._sandbox.kind} sandbox cannot run privileged jobs")
        socket = None
        if NESTED_ISOLATION_TAG in assignment.capabilities:
            if not self._isolation_socket:
                raise SandboxError("nested isolation requested but no isolation socket configured")
            socket = self._isolation_socket

        handle = await self._sandbox.create(
            self._limits,
            mounts,
            privileged=privileged,
            isolation_socket=socket,
            image=assignment.image,
        )
        try:
            yield handle
        finally:
            try:
                await asyncio.wait_for(asyncio.shield(self._sandbox.destroy(handle)), timeout=self._cancel_grace)
            except asyncio.TimeoutError:
                LOGGER.error("Sandbox %s of job %s did not shut down in time", handle.sandbox_id, assignment.job_id)

    async def _run_steps(self, assignment: JobAssignment, handle: SandboxHandle, buffer: LogBuffer) -> JobOutcome:
        if assignment.clone_url:
            ref = assignment.commit or assignment.branch or "HEAD"
            buffer.append(f"[{CHECKOUT_STEP}] $ git fetch {assignment.clone_url} {ref}")
            code = await self._sandbox.exec_step(handle, checkout_command(assignment), buffer.write)
            if code != 0:
                buffer.append(f"step {CHECKOUT_STEP} exited with code {code}")
                return JobOutcome(JobState.FAILED, FailureReason.SANDBOX_ERROR, failed_step=CHECKOUT_STEP, exit_code=code)

        for step in assignment.steps:
            buffer.append(f"[{step.name}] $ {step.command}")
            code = await self._sandbox.exec_step(handle, step.command, buffer.write)
            if code != 0:
                buffer.append(f"step {step.name} exited with code {code}")
                return JobOutcome(JobState.FAILED, FailureReason.STEP_FAILURE, failed_step=step.name, exit_code=code)
        return JobOutcome(JobState.SUCCEEDED, exit_code=0)

    async def _progress_loop(
        self,
        assignment: JobAssignment,
        buffer: LogBuffer,
        lost: asyncio.Event,
        report_lock: asyncio.Lock,
    ) -> None:
        while True:
            await asyncio.sleep(self._progress_interval)
            try:
                async with report_lock:
                    await self._reporter(assignment, JobState.RUNNING.value, buffer.drain())
            except ClaimLost:
                LOGGER.warning("Job %s no longer belongs to this agent; aborting", assignment.job_id)
                lost.set()
                return
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                LOGGER.exception("Progress report for job %s failed", assignment.job_id)
