"""코디네이터 설정 로딩과 재적용."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from relaynet import FabricConfig

LOGGER = logging.getLogger(__name__)

# 바인딩 주소와 DB 경로는 재시작해야 반영된다
RESTART_ONLY_FIELDS = ("host", "port", "http_host", "http_port", "db_path")

_ENV_PREFIX = "CIRELAY_"
_TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigError(ValueError):
    """설정 파일/값이 잘못되었을 때 발생."""


@dataclass(slots=True)
class CoordinatorConfig:
    version: int = 1
    host: str = "0.0.0.0"
    port: int = 8765
    http_host: str | None = None
    http_port: int = 8080
    db_path: str = "var/cirelay.db"
    heartbeat_interval: float = 10.0
    heartbeat_timeout: float = 30.0
    sweep_interval: float = 5.0
    cancel_grace: float = 30.0
    job_heartbeat_timeout: float = 120.0
    default_job_timeout: float = 3600.0
    retention_seconds: float = 7 * 24 * 3600.0
    requeue_on_restart: bool = False
    webhook_secret: str = ""
    definitions_dir: str | None = None
    fabric: FabricConfig = field(default_factory=FabricConfig)

    def to_dict(self, *, mask_secrets: bool = True) -> dict[str, Any]:
        payload = {item.name: getattr(self, item.name) for item in fields(self) if item.name != "fabric"}
        payload["fabric"] = self.fabric.to_dict()
        if mask_secrets:
            payload["webhook_secret"] = _mask_secret(self.webhook_secret)
        return payload


def load_config(
    path: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> CoordinatorConfig:
    """파일 -> 환경 변수 -> CLI 인자 순서로 덮어써 설정을 만든다."""
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
    data.update({key: value for key, value in (overrides or {}).items() if value is not None})
    return _build(data)


def reload_config(
    current: CoordinatorConfig,
    path: str | Path,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> tuple[CoordinatorConfig, list[str]]:
    """설정 파일을 다시 읽는다. 재시작이 필요한 필드는 현재 값을 유지한다."""
    candidate = load_config(path, env=env, overrides=overrides)
    if candidate.version < current.version:
        raise ConfigError(f"config version {candidate.version} is older than running version {current.version}")

    pending_restart = [name for name in RESTART_ONLY_FIELDS if getattr(candidate, name) != getattr(current, name)]
    if pending_restart:
        LOGGER.warning("Config fields %s change only after a restart", ", ".join(pending_restart))
        candidate = replace(candidate, **{name: getattr(current, name) for name in pending_restart})
    return candidate, pending_restart


def _from_env(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for item in fields(CoordinatorConfig):
        if item.name == "fabric":
            continue
        raw = env.get(_ENV_PREFIX + item.name.upper())
        if raw is not None:
            values[item.name] = raw
    fabric_url = env.get(_ENV_PREFIX + "COORDINATOR_URL")
    sandbox_network = env.get(_ENV_PREFIX + "SANDBOX_NETWORK")
    if fabric_url or sandbox_network:
        fabric: dict[str, Any] = {}
        if fabric_url:
            fabric["coordinator_url"] = fabric_url
        if sandbox_network:
            fabric["sandbox_network"] = sandbox_network
        values["fabric"] = fabric
    return values


def _build(data: Mapping[str, Any]) -> CoordinatorConfig:
    known = {item.name for item in fields(CoordinatorConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(unknown)}")

    defaults = CoordinatorConfig()
    kwargs: dict[str, Any] = {}
    try:
        for name, value in data.items():
            if name == "fabric":
                fabric_data = defaults.fabric.to_dict()
                fabric_data.update(value or {})
                kwargs[name] = FabricConfig.from_dict(fabric_data)
                continue
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
    for name in (
        "heartbeat_interval",
        "heartbeat_timeout",
        "sweep_interval",
        "cancel_grace",
        "job_heartbeat_timeout",
        "default_job_timeout",
    ):
        if getattr(config, name) <= 0:
            raise ConfigError(f"{name} must be positive")
    if config.heartbeat_timeout <= config.heartbeat_interval:
        raise ConfigError("heartbeat_timeout must be longer than heartbeat_interval")
    if config.definitions_dir == "":
        config.definitions_dir = None
    return config


def _mask_secret(value: str) -> str:
    value = value or ""
    if not value:
        return ""
    if len(value) <= 4:
        return "*" * len(value)
    return f"{value[:2]}{'*' * (len(value) - 4)}{value[-2:]}"
