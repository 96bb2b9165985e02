"""cirelay 워커 에이전트."""

from .client import RemoteError, WorkerAgent
from .config import AgentConfig, ConfigError, load_agent_config
from .executor import ClaimLost, JobAssignment, JobOutcome, JobRunner
from .sandbox import DockerSandbox, Mount, ProcessSandbox, ResourceLimits, Sandbox, SandboxError, SandboxHandle

__all__ = [
    "AgentConfig",
    "ClaimLost",
    "ConfigError",
    "DockerSandbox",
    "JobAssignment",
    "JobOutcome",
    "JobRunner",
    "Mount",
    "ProcessSandbox",
    "RemoteError",
    "ResourceLimits",
    "Sandbox",
    "SandboxError",
    "SandboxHandle",
    "WorkerAgent",
    "load_agent_config",
]
