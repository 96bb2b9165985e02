"""cirelay 코디네이터: 작업 큐, 에이전트 레지스트리, 파이프라인 상태 머신."""

from .errors import (
    CoordinatorError,
    DuplicateIdentity,
    InvalidDefinition,
    InvalidTransition,
    NotFound,
    NotOwner,
    UnknownAgent,
)
from .models import AgentStatus, JobState, PipelineState
from .scheduler import Coordinator

__all__ = [
    "AgentStatus",
    "Coordinator",
    "CoordinatorError",
    "DuplicateIdentity",
    "InvalidDefinition",
    "InvalidTransition",
    "JobState",
    "NotFound",
    "NotOwner",
    "PipelineState",
    "UnknownAgent",
]
