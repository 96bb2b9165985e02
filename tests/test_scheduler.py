from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from conftest import make_definition, make_job
from coordinator.config import CoordinatorConfig
from coordinator.errors import DuplicateIdentity, InvalidDefinition, InvalidTransition, NotFound, NotOwner, UnknownAgent
from coordinator.models import AgentStatus, JobState, PipelineState
from coordinator.scheduler import Coordinator
from coordinator.storage import init_storage


def _job(coordinator: Coordinator, pipeline_id: str, name: str):
    return next(job for job in coordinator.list_jobs(pipeline_id) if job.name == name)


def _finish(coordinator: Coordinator, token: str, job, state: str = "succeeded", **details):
    coordinator.report_status(token, job.job_id, "running", attempt=job.attempt)
    return coordinator.report_status(token, job.job_id, state, attempt=job.attempt, **details)


def test_enqueue_creates_pending_jobs_in_dependency_order(coordinator):
    definition = make_definition(
        make_job("deploy", "echo deploy", needs=["test"]),
        make_job("build", "echo build"),
        make_job("test", "echo test", needs=["build"]),
    )
    pipeline_id = coordinator.enqueue(definition)

    pipeline = coordinator.get_pipeline(pipeline_id)
    jobs = coordinator.list_jobs(pipeline_id)
    assert pipeline.state == PipelineState.PENDING
    assert [job.name for job in jobs] == ["build", "test", "deploy"]
    assert all(job.state == JobState.PENDING for job in jobs)


def test_invalid_definition_creates_nothing(coordinator, storage):
    with pytest.raises(InvalidDefinition):
        coordinator.enqueue(make_definition(make_job("a", needs=["b"]), make_job("b", needs=["a"])))
    assert storage.list_pipelines() == []
    assert storage.list_jobs() == []


def test_job_timeout_falls_back_to_pipeline_then_config(coordinator, config):
    definition = make_definition(make_job("a", timeout=5), make_job("b"))
    pipeline_id = coordinator.enqueue(definition)
    assert _job(coordinator, pipeline_id, "a").timeout_seconds == 5
    assert _job(coordinator, pipeline_id, "b").timeout_seconds == config.default_job_timeout

    pipeline_id = coordinator.enqueue({**make_definition(make_job("c")), "timeout": 42})
    assert _job(coordinator, pipeline_id, "c").timeout_seconds == 42


def test_claim_is_fifo_across_pipelines(coordinator, clock):
    first = coordinator.enqueue(make_definition(make_job("first")))
    clock.advance(1)
    second = coordinator.enqueue(make_definition(make_job("second")))
    token = coordinator.register_agent("agent-1", [], max_concurrency=2)

    assert coordinator.claim_next_job(token).pipeline_id == first
    assert coordinator.claim_next_job(token).pipeline_id == second
    assert coordinator.claim_next_job(token) is None


def test_claim_requires_capability_subset(coordinator):
    pipeline_id = coordinator.enqueue(make_definition(make_job("gpu-test", capabilities=["gpu", "linux"])))
    linux_only = coordinator.register_agent("linux", ["linux"])
    gpu_box = coordinator.register_agent("gpu", ["linux", "gpu", "cuda"])

    assert coordinator.claim_next_job(linux_only) is None
    job = coordinator.claim_next_job(gpu_box)
    assert job is not None
    assert job.pipeline_id == pipeline_id
    assert job.agent_id == "gpu"


def test_ineligible_head_does_not_block_later_jobs(coordinator, clock):
    coordinator.enqueue(make_definition(make_job("needs-arm", capabilities=["arm64"])))
    clock.advance(1)
    later = coordinator.enqueue(make_definition(make_job("anywhere")))
    token = coordinator.register_agent("x86", ["amd64"])

    job = coordinator.claim_next_job(token)
    assert job is not None and job.pipeline_id == later


def test_claim_respects_max_concurrency(coordinator):
    coordinator.enqueue(make_definition(make_job("a"), make_job("b")))
    token = coordinator.register_agent("agent-1", [], max_concurrency=1)

    first = coordinator.claim_next_job(token)
    assert first is not None
    assert coordinator.claim_next_job(token) is None

    _finish(coordinator, token, first)
    assert coordinator.claim_next_job(token) is not None


def test_concurrent_claims_have_exactly_one_winner(coordinator):
    coordinator.enqueue(make_definition(make_job("only")))
    tokens = [coordinator.register_agent(f"agent-{index}", []) for index in range(8)]
    barrier = threading.Barrier(len(tokens))

    def _claim(token: str):
        barrier.wait()
        return coordinator.claim_next_job(token)

    with ThreadPoolExecutor(max_workers=len(tokens)) as pool:
        results = list(pool.map(_claim, tokens))

    winners = [job for job in results if job is not None]
    assert len(winners) == 1
    assert winners[0].attempt == 1


def test_dependent_job_waits_for_upstream_success(coordinator):
    pipeline_id = coordinator.enqueue(make_definition(make_job("build"), make_job("test", needs=["build"])))
    token = coordinator.register_agent("agent-1", [], max_concurrency=2)

    build = coordinator.claim_next_job(token)
    assert build.name == "build"
    assert coordinator.claim_next_job(token) is None

    _finish(coordinator, token, build)
    test = coordinator.claim_next_job(token)
    assert test is not None and test.name == "test"
    assert coordinator.get_pipeline(pipeline_id).state == PipelineState.RUNNING


def test_status_reports_move_forward_only(coordinator):
    pipeline_id = coordinator.enqueue(make_definition(make_job("a")))
    token = coordinator.register_agent("agent-1", [])
    job = coordinator.claim_next_job(token)

    with pytest.raises(InvalidTransition):
        coordinator.report_status(token, job.job_id, "pending", attempt=job.attempt)
    with pytest.raises(InvalidTransition):
        coordinator.report_status(token, job.job_id, "bogus", attempt=job.attempt)

    coordinator.report_status(token, job.job_id, "running", "compiling", attempt=job.attempt)
    coordinator.report_status(token, job.job_id, "running", "still compiling", attempt=job.attempt)
    done = coordinator.report_status(token, job.job_id, "succeeded", "done", attempt=job.attempt)
    assert done.state == JobState.SUCCEEDED
    assert coordinator.get_pipeline(pipeline_id).state == PipelineState.SUCCEEDED

    with pytest.raises(NotOwner):
        coordinator.report_status(token, job.job_id, "running", attempt=job.attempt)
    assert coordinator.get_job(job.job_id).state == JobState.SUCCEEDED
    assert [entry["message"] for entry in coordinator.job_logs(job.job_id)] == ["compiling", "still compiling", "done"]


def test_unknown_token_is_rejected(coordinator):
    coordinator.enqueue(make_definition(make_job("a")))
    with pytest.raises(UnknownAgent):
        coordinator.claim_next_job("not-a-token")
    with pytest.raises(UnknownAgent):
        coordinator.heartbeat("")


def test_report_for_missing_job_is_not_found(coordinator):
    token = coordinator.register_agent("agent-1", [])
    with pytest.raises(NotFound):
        coordinator.report_status(token, "missing", "running")


def test_sweep_requeues_jobs_of_silent_agents(coordinator, clock):
    pipeline_id = coordinator.enqueue(make_definition(make_job("a")))
    token_a = coordinator.register_agent("agent-a", [])
    job = coordinator.claim_next_job(token_a)
    coordinator.report_status(token_a, job.job_id, "running", attempt=job.attempt)

    clock.advance(31)
    result = coordinator.sweep()

    assert result.unreachable_agents == ["agent-a"]
    assert result.requeued_jobs == [job.job_id]
    requeued = coordinator.get_job(job.job_id)
    assert requeued.state == JobState.PENDING
    assert requeued.agent_id is None
    assert coordinator.list_agents()[0].status == AgentStatus.UNREACHABLE

    token_b = coordinator.register_agent("agent-b", [])
    reclaimed = coordinator.claim_next_job(token_b)
    assert reclaimed.job_id == job.job_id
    assert reclaimed.attempt == 2
    assert coordinator.get_pipeline(pipeline_id).state == PipelineState.RUNNING


def test_sweep_is_idempotent(coordinator, clock):
    coordinator.enqueue(make_definition(make_job("a")))
    token = coordinator.register_agent("agent-a", [])
    job = coordinator.claim_next_job(token)

    clock.advance(60)
    first = coordinator.sweep()
    snapshot = coordinator.get_job(job.job_id).to_dict()
    second = coordinator.sweep()

    assert first
    assert not second
    assert coordinator.get_job(job.job_id).to_dict() == snapshot


def test_heartbeating_agent_keeps_its_jobs(coordinator, clock):
    coordinator.enqueue(make_definition(make_job("a")))
    token = coordinator.register_agent("agent-a", [])
    job = coordinator.claim_next_job(token)
    for _ in range(5):
        clock.advance(20)
        coordinator.heartbeat(token)
        assert not coordinator.sweep()
    assert coordinator.get_job(job.job_id).agent_id == "agent-a"


def test_late_report_after_requeue_has_no_effect(coordinator, clock):
    coordinator.enqueue(make_definition(make_job("a")))
    token_a = coordinator.register_agent("agent-a", [])
    stale = coordinator.claim_next_job(token_a)

    clock.advance(31)
    coordinator.sweep()
    token_b = coordinator.register_agent("agent-b", [])
    fresh = coordinator.claim_next_job(token_b)

    with pytest.raises(NotOwner):
        coordinator.report_status(token_a, stale.job_id, "succeeded", "late output", attempt=stale.attempt)

    job = coordinator.get_job(stale.job_id)
    assert job.state == JobState.CLAIMED
    assert job.agent_id == "agent-b"
    assert job.attempt == fresh.attempt
    assert coordinator.job_logs(job.job_id) == []


def test_report_with_stale_attempt_is_rejected_even_from_same_agent(coordinator, clock):
    coordinator.enqueue(make_definition(make_job("a")))
    token = coordinator.register_agent("agent-a", [])
    first = coordinator.claim_next_job(token)

    clock.advance(31)
    coordinator.sweep()
    coordinator.heartbeat(token)
    second = coordinator.claim_next_job(token)
    assert second.attempt == first.attempt + 1

    with pytest.raises(NotOwner):
        coordinator.report_status(token, first.job_id, "failed", attempt=first.attempt)
    assert coordinator.get_job(first.job_id).state == JobState.CLAIMED


def test_required_failure_fails_pipeline_and_cancels_dependents(coordinator):
    definition = make_definition(
        make_job("build"),
        make_job("lint"),
        make_job("test", needs=["build"]),
        make_job("deploy", needs=["test"]),
    )
    pipeline_id = coordinator.enqueue(definition)
    token = coordinator.register_agent("agent-1", [], max_concurrency=2)
    build = coordinator.claim_next_job(token)
    lint = coordinator.claim_next_job(token)

    _finish(coordinator, token, build, "failed", failed_step="step-1", exit_code=2)

    pipeline = coordinator.get_pipeline(pipeline_id)
    assert pipeline.state == PipelineState.FAILED
    assert pipeline.failed_job == "build"
    for name in ("test", "deploy"):
        skipped = _job(coordinator, pipeline_id, name)
        assert skipped.state == JobState.CANCELED
        assert skipped.failure_reason == "upstream_failed"
    assert coordinator.get_job(lint.job_id).state == JobState.CLAIMED

    _finish(coordinator, token, lint)
    assert coordinator.get_pipeline(pipeline_id).state == PipelineState.FAILED


def test_optional_job_failure_does_not_fail_pipeline(coordinator):
    pipeline_id = coordinator.enqueue(make_definition(make_job("build"), make_job("docs", required=False)))
    token = coordinator.register_agent("agent-1", [], max_concurrency=2)
    build = coordinator.claim_next_job(token)
    docs = coordinator.claim_next_job(token)

    _finish(coordinator, token, docs, "failed")
    assert coordinator.get_pipeline(pipeline_id).state == PipelineState.RUNNING
    _finish(coordinator, token, build)
    assert coordinator.get_pipeline(pipeline_id).state == PipelineState.SUCCEEDED


def test_cancel_pipeline_cancels_pending_and_signals_running(coordinator):
    pipeline_id = coordinator.enqueue(make_definition(make_job("a"), make_job("b", capabilities=["never"])))
    token = coordinator.register_agent("agent-1", [])
    running = coordinator.claim_next_job(token)
    coordinator.report_status(token, running.job_id, "running", attempt=running.attempt)

    pipeline = coordinator.cancel_pipeline(pipeline_id)
    assert pipeline.cancel_requested
    assert _job(coordinator, pipeline_id, "b").state == JobState.CANCELED
    assert coordinator.heartbeat(token).cancel == [running.job_id]

    coordinator.report_status(token, running.job_id, "canceled", attempt=running.attempt)
    pipeline = coordinator.get_pipeline(pipeline_id)
    assert pipeline.state == PipelineState.CANCELED
    assert coordinator.heartbeat(token).cancel == []


def test_unacknowledged_cancel_is_forced_after_grace(coordinator, clock):
    pipeline_id = coordinator.enqueue(make_definition(make_job("a")))
    token = coordinator.register_agent("agent-1", [])
    job = coordinator.claim_next_job(token)
    coordinator.cancel_pipeline(pipeline_id)

    clock.advance(5)
    coordinator.heartbeat(token)
    assert not coordinator.sweep()

    clock.advance(6)
    coordinator.heartbeat(token)
    result = coordinator.sweep()
    assert result.canceled_jobs == [job.job_id]
    assert coordinator.get_job(job.job_id).state == JobState.CANCELED
    assert coordinator.get_pipeline(pipeline_id).state == PipelineState.CANCELED


def test_silent_agent_with_cancel_requested_job_is_not_requeued(coordinator, clock):
    pipeline_id = coordinator.enqueue(make_definition(make_job("a")))
    token = coordinator.register_agent("agent-1", [])
    job = coordinator.claim_next_job(token)
    coordinator.cancel_pipeline(pipeline_id)

    clock.advance(31)
    result = coordinator.sweep()
    assert result.canceled_jobs == [job.job_id]
    assert result.requeued_jobs == []
    assert coordinator.get_job(job.job_id).state == JobState.CANCELED


def test_cancel_of_finished_pipeline_is_a_noop(coordinator):
    pipeline_id = coordinator.enqueue(make_definition(make_job("a")))
    token = coordinator.register_agent("agent-1", [])
    job = coordinator.claim_next_job(token)
    _finish(coordinator, token, job)

    pipeline = coordinator.cancel_pipeline(pipeline_id)
    assert pipeline.state == PipelineState.SUCCEEDED
    assert not pipeline.cancel_requested


def test_reregistration_returns_same_token(coordinator):
    token = coordinator.register_agent("agent-1", ["linux"])
    again = coordinator.register_agent("agent-1", ["linux", "docker"])
    assert again == token
    assert coordinator.list_agents()[0].capabilities == ["docker", "linux"]


def test_reregistration_cannot_drop_tags_needed_by_held_jobs(coordinator):
    coordinator.enqueue(make_definition(make_job("a", capabilities=["gpu"])))
    token = coordinator.register_agent("agent-1", ["gpu"])
    assert coordinator.claim_next_job(token) is not None

    with pytest.raises(DuplicateIdentity):
        coordinator.register_agent("agent-1", ["linux"])
    assert coordinator.register_agent("agent-1", ["gpu", "linux"]) == token


def test_register_rejects_malformed_tags(coordinator):
    with pytest.raises(InvalidDefinition):
        coordinator.register_agent("agent-1", ["has space"])


def test_state_survives_restart(db_path, config, clock):
    storage = init_storage(db_path)
    coordinator = Coordinator(storage, config, clock=clock)
    pipeline_id = coordinator.enqueue(make_definition(make_job("a"), make_job("b")))
    token = coordinator.register_agent("agent-1", [])
    claimed = coordinator.claim_next_job(token)
    coordinator.report_status(token, claimed.job_id, "running", "halfway", attempt=claimed.attempt)
    storage.close()

    clock.advance(120)
    storage = init_storage(db_path)
    try:
        restarted = Coordinator(storage, config, clock=clock)
        assert restarted.recover() == []
        job = restarted.get_job(claimed.job_id)
        assert job.state == JobState.RUNNING
        assert job.agent_id == "agent-1"
        assert restarted.get_pipeline(pipeline_id).state == PipelineState.RUNNING
        assert [entry["message"] for entry in restarted.job_logs(claimed.job_id)] == ["halfway"]

        # 재시작 직후 sweep은 유예 기간 덕분에 작업을 회수하지 않는다
        assert not restarted.sweep()
        restarted.report_status(token, claimed.job_id, "succeeded", attempt=claimed.attempt)
        assert restarted.get_job(claimed.job_id).state == JobState.SUCCEEDED
    finally:
        storage.close()


def test_restart_can_requeue_in_flight_jobs(db_path, clock):
    config = CoordinatorConfig(requeue_on_restart=True)
    storage = init_storage(db_path)
    coordinator = Coordinator(storage, config, clock=clock)
    coordinator.enqueue(make_definition(make_job("a")))
    token = coordinator.register_agent("agent-1", [])
    claimed = coordinator.claim_next_job(token)
    storage.close()

    storage = init_storage(db_path)
    try:
        restarted = Coordinator(storage, config, clock=clock)
        assert restarted.recover() == [claimed.job_id]
        assert restarted.get_job(claimed.job_id).state == JobState.PENDING
        with pytest.raises(NotOwner):
            restarted.report_status(token, claimed.job_id, "running", attempt=claimed.attempt)
    finally:
        storage.close()


def test_purge_removes_only_expired_finished_pipelines(coordinator, clock, config):
    old = coordinator.enqueue(make_definition(make_job("a")))
    token = coordinator.register_agent("agent-1", [])
    job = coordinator.claim_next_job(token)
    _finish(coordinator, token, job)
    active = coordinator.enqueue(make_definition(make_job("b")))

    clock.advance(config.retention_seconds + 1)
    assert coordinator.purge_expired() == [old]
    with pytest.raises(NotFound):
        coordinator.get_pipeline(old)
    with pytest.raises(NotFound):
        coordinator.get_job(job.job_id)
    assert coordinator.get_pipeline(active).state == PipelineState.PENDING


def test_claim_scan_reaches_past_a_long_ineligible_backlog(coordinator, clock):
    backlog = [make_job(f"gpu-{index}", capabilities=["gpu"]) for index in range(1001)]
    coordinator.enqueue(make_definition(*backlog, name="gpu-suite"))
    clock.advance(1)
    pipeline_id = coordinator.enqueue(make_definition(make_job("lint")))

    token = coordinator.register_agent("agent-1", [])
    job = coordinator.claim_next_job(token)
    assert job is not None
    assert job.pipeline_id == pipeline_id
    assert job.name == "lint"


def test_iter_jobs_pages_through_every_match(coordinator, storage):
    coordinator.enqueue(make_definition(*[make_job(f"j{index}") for index in range(7)]))
    names = [job.name for job in storage.iter_jobs(states=[JobState.PENDING], page_size=3)]
    assert names == [f"j{index}" for index in range(7)]
    assert len(storage.list_jobs(states=[JobState.PENDING], limit=3, offset=6)) == 1


def test_claim_without_reports_is_taken_back_from_live_agent(coordinator, clock, config):
    coordinator.enqueue(make_definition(make_job("a")))
    token = coordinator.register_agent("agent-1", [])
    lost = coordinator.claim_next_job(token)

    requeued = []
    for _ in range(20):
        clock.advance(25)
        coordinator.heartbeat(token)
        result = coordinator.sweep()
        assert result.unreachable_agents == []
        requeued.extend(result.requeued_jobs)
        if requeued:
            break

    assert requeued == [lost.job_id]
    assert clock.now - lost.claimed_at > timedelta(seconds=config.job_heartbeat_timeout)
    job = coordinator.get_job(lost.job_id)
    assert job.state == JobState.PENDING
    assert job.agent_id is None
    with pytest.raises(NotOwner):
        coordinator.report_status(token, lost.job_id, "running", attempt=lost.attempt)
    assert coordinator.claim_next_job(token).attempt == lost.attempt + 1


def test_job_sending_progress_is_kept(coordinator, clock):
    coordinator.enqueue(make_definition(make_job("a")))
    token = coordinator.register_agent("agent-1", [])
    job = coordinator.claim_next_job(token)
    coordinator.report_status(token, job.job_id, "running", attempt=job.attempt)

    for _ in range(20):
        clock.advance(25)
        coordinator.heartbeat(token)
        coordinator.report_status(token, job.job_id, "running", "still going", attempt=job.attempt)
        assert not coordinator.sweep()
    assert coordinator.get_job(job.job_id).state == JobState.RUNNING


def test_running_optional_job_keeps_pipeline_open(coordinator, clock, config):
    pipeline_id = coordinator.enqueue(make_definition(make_job("build"), make_job("docs", required=False)))
    token = coordinator.register_agent("agent-1", [], max_concurrency=2)
    build = coordinator.claim_next_job(token)
    docs = coordinator.claim_next_job(token)
    coordinator.report_status(token, docs.job_id, "running", attempt=docs.attempt)
    _finish(coordinator, token, build)

    pipeline = coordinator.get_pipeline(pipeline_id)
    assert pipeline.state == PipelineState.SUCCEEDED
    assert pipeline.finished_at is None

    clock.advance(config.retention_seconds + 1)
    coordinator.heartbeat(token)
    coordinator.report_status(token, docs.job_id, "running", attempt=docs.attempt)
    assert coordinator.purge_expired() == []
    assert coordinator.get_job(docs.job_id).state == JobState.RUNNING

    pipeline = coordinator.cancel_pipeline(pipeline_id)
    assert pipeline.cancel_requested
    assert coordinator.heartbeat(token).cancel == [docs.job_id]

    coordinator.report_status(token, docs.job_id, "canceled", attempt=docs.attempt)
    pipeline = coordinator.get_pipeline(pipeline_id)
    assert pipeline.state == PipelineState.SUCCEEDED
    assert pipeline.finished_at == clock.now

    clock.advance(config.retention_seconds + 1)
    assert coordinator.purge_expired() == [pipeline_id]
