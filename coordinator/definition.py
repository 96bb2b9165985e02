"""파이프라인 정의 검증 및 작업 전개."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from .errors import InvalidDefinition
from .models import Step, volume_tag

TAG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.:/-]*$")
NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass(slots=True)
class JobDefinition:
    name: str
    steps: list[Step]
    capabilities: list[str] = field(default_factory=list)
    needs: list[str] = field(default_factory=list)
    volumes: list[str] = field(default_factory=list)
    image: str | None = None
    required: bool = True
    timeout_seconds: float | None = None


@dataclass(slots=True)
class PipelineDefinition:
    name: str
    jobs: list[JobDefinition]
    timeout_seconds: float | None = None


def parse_definition(data: Any) -> PipelineDefinition:
    """원본 dict를 검증하고 위상 정렬된 작업 목록으로 만든다."""
    if not isinstance(data, Mapping):
        raise InvalidDefinition("definition must be a JSON object")

    name = str(data.get("name") or "pipeline").strip()
    pipeline_timeout = _parse_timeout(data.get("timeout"), "timeout")

    raw_jobs = data.get("jobs")
    if not isinstance(raw_jobs, list) or not raw_jobs:
        raise InvalidDefinition("jobs must be a non-empty list")

    jobs: list[JobDefinition] = []
    seen: set[str] = set()
    for index, raw_job in enumerate(raw_jobs):
        job = _parse_job(raw_job, index)
        if job.name in seen:
            raise InvalidDefinition(f"duplicate job name {job.name!r}")
        seen.add(job.name)
        jobs.append(job)

    for job in jobs:
        for dependency in job.needs:
            if dependency == job.name:
                raise InvalidDefinition(f"job {job.name!r} needs itself")
            if dependency not in seen:
                raise InvalidDefinition(f"job {job.name!r} needs unknown job {dependency!r}")

    if not any(job.required for job in jobs):
        raise InvalidDefinition("at least one job must be required")

    return PipelineDefinition(name=name, jobs=_topological_order(jobs), timeout_seconds=pipeline_timeout)


def _parse_job(raw: Any, index: int) -> JobDefinition:
    where = f"jobs[{index}]"
    if not isinstance(raw, Mapping):
        raise InvalidDefinition(f"{where} must be an object")

    name = raw.get("name")
    if not isinstance(name, str) or not NAME_PATTERN.match(name.strip()):
        raise InvalidDefinition(f"{where}.name is missing or malformed")
    name = name.strip()
    where = f"job {name!r}"

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise InvalidDefinition(f"{where} must have at least one step")
    steps = [_parse_step(item, position, where) for position, item in enumerate(raw_steps, start=1)]

    capabilities = _parse_tags(raw.get("capabilities", []), f"{where}.capabilities")
    volumes = _parse_tags(raw.get("volumes", []), f"{where}.volumes")
    for volume in volumes:
        if ":" in volume or "/" in volume:
            raise InvalidDefinition(f"{where}.volumes entry {volume!r} must be a plain name")
    capabilities = sorted(set(capabilities) | {volume_tag(volume) for volume in volumes})

    needs = raw.get("needs", [])
    if not isinstance(needs, list) or not all(isinstance(item, str) and item.strip() for item in needs):
        raise InvalidDefinition(f"{where}.needs must be a list of job names")

    required = raw.get("required", True)
    if not isinstance(required, bool):
        raise InvalidDefinition(f"{where}.required must be a boolean")

    image = raw.get("image")
    if image is not None and (not isinstance(image, str) or not image.strip()):
        raise InvalidDefinition(f"{where}.image must be a non-empty string")

    return JobDefinition(
        name=name,
        steps=steps,
        capabilities=capabilities,
        needs=list(dict.fromkeys(item.strip() for item in needs)),
        volumes=volumes,
        image=image.strip() if image else None,
        required=required,
        timeout_seconds=_parse_timeout(raw.get("timeout"), f"{where}.timeout"),
    )


def _parse_step(raw: Any, position: int, where: str) -> Step:
    if isinstance(raw, str):
        command = raw.strip()
        step_name = f"step-{position}"
    elif isinstance(raw, Mapping):
        command = str(raw.get("run") or "").strip()
        step_name = str(raw.get("name") or f"step-{position}").strip()
    else:
        raise InvalidDefinition(f"{where} step {position} must be a string or an object")
    if not command:
        raise InvalidDefinition(f"{where} step {position} has an empty command")
    return Step(name=step_name, command=command)


def _parse_tags(raw: Any, where: str) -> list[str]:
    if not isinstance(raw, list):
        raise InvalidDefinition(f"{where} must be a list")
    tags: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            raise InvalidDefinition(f"{where} entries must be strings")
        tag = item.strip().lower()
        if not TAG_PATTERN.match(tag):
            raise InvalidDefinition(f"{where} entry {item!r} is malformed")
        if tag not in tags:
            tags.append(tag)
    return tags


def _parse_timeout(raw: Any, where: str) -> float | None:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0:
        raise InvalidDefinition(f"{where} must be a positive number of seconds")
    return float(raw)


def _topological_order(jobs: list[JobDefinition]) -> list[JobDefinition]:
    # 선언 순서를 최대한 유지하는 Kahn 알고리즘
    remaining = {job.name: set(job.needs) for job in jobs}
    ordered: list[JobDefinition] = []
    while remaining:
        ready = [job for job in jobs if job.name in remaining and not remaining[job.name]]
        if not ready:
            cycle = ", ".join(sorted(remaining))
            raise InvalidDefinition(f"job dependencies form a cycle: {cycle}")
        for job in ready:
            ordered.append(job)
            del remaining[job.name]
        for deps in remaining.values():
            deps.difference_update(job.name for job in ready)
    return ordered


def is_valid_tag(tag: str) -> bool:
    return bool(TAG_PATTERN.match(tag))
