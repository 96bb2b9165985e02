"""에이전트 설정: JSON 파일 -> CIRELAY_* 환경 변수 -> CLI 인자."""

from __future__ import annotations

import json
import logging
import os
import socket
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from coordinator.definition import is_valid_tag
from coordinator.models import NESTED_ISOLATION_TAG, PRIVILEGED_TAG, VOLUME_TAG_PREFIX, volume_tag
from relaynet import FabricConfig

from .sandbox import Mount, ResourceLimits

LOGGER = logging.getLogger(__name__)

SANDBOX_KINDS = ("process", "docker")

_ENV_PREFIX = "CIRELAY_"
_TRUE_VALUES = {"1", "true", "yes", "on"}
_OPTIONAL_NUMBERS = {"cpus": float, "pids_limit": int}


class ConfigError(ValueError):
    """에이전트 설정이 잘못되었을 때 발생."""


@dataclass(slots=True)
class AgentConfig:
    version: int = 1
    identity: str = field(default_factory=socket.gethostname)
    capabilities: list[str] = field(default_factory=list)
    address: str | None = None
    max_concurrency: int = 1
    heartbeat_interval: float = 10.0
    poll_interval: float = 2.0
    progress_interval: float = 5.0
    cancel_grace: float = 10.0
    rpc_timeout: float = 30.0
    reconnect_max_delay: float = 60.0
    sandbox: str = "process"
    image: str = "alpine:3.20"
    workdir_root: str = "/tmp/cirelay-jobs"
    volumes: dict[str, str] = field(default_factory=dict)
    allow_privileged: bool = False
    allow_nested_isolation: bool = False
    isolation_socket: str = "/var/run/docker.sock"
    cpus: float | None = None
    memory: str | None = None
    pids_limit: int | None = None
    fabric: FabricConfig = field(default_factory=FabricConfig)

    def advertised_capabilities(self) -> list[str]:
        """코디네이터에 광고할 태그. 예약 태그는 설정 플래그에서만 나온다."""
        tags = list(dict.fromkeys(tag.lower() for tag in self.capabilities))
        tags += [volume_tag(name) for name in sorted(self.volumes)]
        if self.allow_privileged:
            tags.append(PRIVILEGED_TAG)
        if self.allow_nested_isolation:
            tags.append(NESTED_ISOLATION_TAG)
        return tags

    def mounts(self) -> dict[str, Mount]:
        return {name: Mount.parse(spec) for name, spec in self.volumes.items()}

    def limits(self) -> ResourceLimits:
        return ResourceLimits(cpus=self.cpus, memory=self.memory, pids=self.pids_limit)

    def to_dict(self) -> dict[str, Any]:
        payload = {item.name: getattr(self, item.name) for item in fields(self) if item.name != "fabric"}
        payload["fabric"] = self.fabric.to_dict()
        return payload


def load_agent_config(
    path: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> AgentConfig:
    data: dict[str, Any] = {}
    if path is not None:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigError(f"cannot read config file {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"config file {path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"config file {path} must contain a JSON object")

    data.update(_from_env(os.environ if env is None else env))
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key == "volumes":
            data["volumes"] = {**_volumes(data.get("volumes") or {}), **_volumes(value)}
        elif key == "fabric":
            data["fabric"] = {**(data.get("fabric") or {}), **value}
        else:
            data[key] = value
    return _build(data)


def _from_env(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for item in fields(AgentConfig):
        if item.name == "fabric":
            continue
        raw = env.get(_ENV_PREFIX + item.name.upper())
        if raw is not None:
            values[item.name] = raw
    fabric: dict[str, Any] = {}
    if env.get(_ENV_PREFIX + "COORDINATOR_URL"):
        fabric["coordinator_url"] = env[_ENV_PREFIX + "COORDINATOR_URL"]
    if env.get(_ENV_PREFIX + "SANDBOX_NETWORK"):
        fabric["sandbox_network"] = env[_ENV_PREFIX + "SANDBOX_NETWORK"]
    if fabric:
        values["fabric"] = fabric
    return values


def _volumes(value: Any) -> dict[str, str]:
    """`name=src:dst[:ro],...` 문자열 또는 dict."""
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items()}
    if isinstance(value, str):
        value = [item for item in value.split(",") if item.strip()]
    result: dict[str, str] = {}
    for item in value:
        name, sep, spec = str(item).partition("=")
        if not sep or not name.strip():
            raise ConfigError(f"volume must look like NAME=SRC:DST[:ro], got {item!r}")
        result[name.strip()] = spec.strip()
    return result


def _tags(value: Any) -> list[str]:
    if isinstance(value, str):
        value = value.split(",")
    return [str(tag).strip().lower() for tag in value if str(tag).strip()]


def _build(data: Mapping[str, Any]) -> AgentConfig:
    known = {item.name for item in fields(AgentConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(unknown)}")

    defaults = AgentConfig()
    kwargs: dict[str, Any] = {}
    try:
        for name, value in data.items():
            if name == "fabric":
                fabric_data = defaults.fabric.to_dict()
                fabric_data.update(value or {})
                kwargs[name] = FabricConfig.from_dict(fabric_data)
            elif name == "capabilities":
                kwargs[name] = _tags(value)
            elif name == "volumes":
                kwargs[name] = _volumes(value)
            elif name in _OPTIONAL_NUMBERS:
                kwargs[name] = _OPTIONAL_NUMBERS[name](value) if value not in (None, "") else None
            else:
                default = getattr(defaults, name)
                if isinstance(default, bool):
                    kwargs[name] = value if isinstance(value, bool) else str(value).strip().lower() in _TRUE_VALUES
                elif isinstance(default, int):
                    kwargs[name] = int(value)
                elif isinstance(default, float):
                    kwargs[name] = float(value)
                else:
                    kwargs[name] = str(value).strip() if value is not None else None
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigError(f"invalid config value: {exc}") from exc

    config = replace(defaults, **kwargs)
    _validate(config)
    return config


def _validate(config: AgentConfig) -> None:
    if not config.identity:
        raise ConfigError("identity must not be empty")
    if config.sandbox not in SANDBOX_KINDS:
        raise ConfigError(f"sandbox must be one of {', '.join(SANDBOX_KINDS)}")
    if config.max_concurrency < 1:
        raise ConfigError("max_concurrency must be at least 1")
    for name in ("heartbeat_interval", "poll_interval", "progress_interval", "cancel_grace", "rpc_timeout"):
        if getattr(config, name) <= 0:
            raise ConfigError(f"{name} must be positive")
    for tag in config.capabilities:
        if tag in (PRIVILEGED_TAG, NESTED_ISOLATION_TAG) or tag.startswith(VOLUME_TAG_PREFIX):
            raise ConfigError(f"tag {tag!r} is reserved; use the matching agent option instead")
        if not is_valid_tag(tag):
            raise ConfigError(f"invalid capability tag {tag!r}")
    if config.allow_privileged and config.sandbox != "docker":
        raise ConfigError("allow_privileged needs the docker sandbox")
    try:
        config.mounts()
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    for name in config.volumes:
        if not is_valid_tag(volume_tag(name)):
            raise ConfigError(f"invalid volume name {name!r}")
