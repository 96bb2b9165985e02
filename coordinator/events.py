"""레포지토리 이벤트(GitLab push hook) 수집."""

from __future__ import annotations

import hmac
import json
import logging
from pathlib import Path
from typing import Any, Mapping

from .errors import InvalidDefinition, NotFound
from .models import RepositorySpec, TriggerEvent

LOGGER = logging.getLogger(__name__)

PUSH_HOOK_EVENT = "Push Hook"
_ZERO_SHA = "0" * 40


class WebhookRejected(Exception):
    """인증 실패 등으로 웹훅 요청을 거부할 때 발생."""


def verify_token(expected: str, provided: str | None) -> None:
    if not expected:
        return
    if not provided or not hmac.compare_digest(expected.encode(), provided.encode()):
        raise WebhookRejected("invalid webhook token")


def parse_push_event(payload: Any) -> tuple[str, TriggerEvent] | None:
    """push 이벤트를 (프로젝트 경로, 트리거)로 바꾼다. 브랜치 삭제면 None."""
    if not isinstance(payload, Mapping):
        raise InvalidDefinition("push event must be a JSON object")
    if payload.get("object_kind") not in (None, "push"):
        raise InvalidDefinition(f"unsupported event kind {payload.get('object_kind')!r}")

    commit = payload.get("checkout_sha") or payload.get("after")
    if not commit or commit == _ZERO_SHA:
        return None

    project = payload.get("project")
    if not isinstance(project, Mapping):
        raise InvalidDefinition("push event has no project")
    path = str(project.get("path_with_namespace") or "").strip()
    url = str(project.get("git_http_url") or project.get("http_url") or "").strip()
    if not path or not url:
        raise InvalidDefinition("push event project needs path_with_namespace and git_http_url")

    ref = str(payload.get("ref") or "")
    branch = ref.removeprefix("refs/heads/") if ref.startswith("refs/heads/") else None
    trigger = TriggerEvent(
        kind="push",
        repository=RepositorySpec(url=url, branch=branch, commit=str(commit)),
        user=payload.get("user_username") or payload.get("user_name"),
    )
    return path, trigger


class DefinitionCatalog:
    """프로젝트 경로별 파이프라인 정의 파일을 찾는다."""

    def __init__(self, root: str | Path | None) -> None:
        self._root = Path(root) if root else None

    def path_for(self, project_path: str) -> Path:
        if self._root is None:
            raise NotFound("no pipeline definitions directory configured")
        name = project_path.strip("/").replace("/", "__")
        if not name or name.startswith(".") or ".." in name:
            raise NotFound(f"no pipeline definition for {project_path!r}")
        return self._root / f"{name}.json"

    def load(self, project_path: str) -> dict[str, Any]:
        path = self.path_for(project_path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise NotFound(f"no pipeline definition for {project_path!r}") from None
        except json.JSONDecodeError as exc:
            raise InvalidDefinition(f"{path.name} is not valid JSON: {exc}") from exc
        LOGGER.debug("Loaded pipeline definition %s", path)
        return data
