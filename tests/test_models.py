from datetime import datetime, timezone

import pytest

from coordinator.models import (
    Job,
    JobState,
    PipelineState,
    Step,
    TriggerEvent,
    aggregate_state,
    can_transition,
)

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _job(name: str, state: JobState, required: bool = True) -> Job:
    return Job(
        job_id=name,
        pipeline_id="p",
        name=name,
        steps=[Step("step-1", "true")],
        created_at=NOW,
        state=state,
        required=required,
    )


@pytest.mark.parametrize(
    "current, target, allowed",
    [
        (JobState.PENDING, JobState.CLAIMED, True),
        (JobState.CLAIMED, JobState.RUNNING, True),
        (JobState.RUNNING, JobState.SUCCEEDED, True),
        (JobState.RUNNING, JobState.PENDING, True),
        (JobState.PENDING, JobState.RUNNING, False),
        (JobState.CLAIMED, JobState.SUCCEEDED, False),
        (JobState.SUCCEEDED, JobState.RUNNING, False),
        (JobState.FAILED, JobState.PENDING, False),
        (JobState.CANCELED, JobState.CLAIMED, False),
    ],
)
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_terminal_states():
    assert JobState.CANCELED.is_terminal
    assert not JobState.CLAIMED.is_terminal
    assert PipelineState.FAILED.is_terminal
    assert not PipelineState.RUNNING.is_terminal


@pytest.mark.parametrize(
    "states, expected",
    [
        ([JobState.PENDING, JobState.PENDING], PipelineState.PENDING),
        ([JobState.CLAIMED, JobState.PENDING], PipelineState.RUNNING),
        ([JobState.SUCCEEDED, JobState.PENDING], PipelineState.RUNNING),
        ([JobState.SUCCEEDED, JobState.SUCCEEDED], PipelineState.SUCCEEDED),
        ([JobState.FAILED, JobState.RUNNING], PipelineState.FAILED),
        ([JobState.CANCELED, JobState.SUCCEEDED], PipelineState.CANCELED),
    ],
)
def test_aggregate_state(states, expected):
    jobs = [_job(f"j{index}", state) for index, state in enumerate(states)]
    assert aggregate_state(jobs) == expected


def test_optional_failure_is_ignored_by_aggregate():
    jobs = [_job("build", JobState.SUCCEEDED), _job("docs", JobState.FAILED, required=False)]
    assert aggregate_state(jobs) == PipelineState.SUCCEEDED


def test_trigger_round_trip_keeps_repository():
    trigger = TriggerEvent.from_dict(
        {"kind": "push", "repository": {"url": "http://git.example/app.git", "branch": "main", "commit": "abc"}}
    )
    assert trigger.repository is not None
    assert trigger.to_dict()["repository"] == {"url": "http://git.example/app.git", "branch": "main", "commit": "abc"}
    assert TriggerEvent.from_dict(None).kind == "manual"
