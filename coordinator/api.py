"""REST API 라우트."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from aiohttp import web

from .errors import CoordinatorError
from .events import PUSH_HOOK_EVENT, DefinitionCatalog, WebhookRejected, parse_push_event, verify_token
from .models import PipelineState, TriggerEvent
from .scheduler import Coordinator

LOGGER = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except CoordinatorError as exc:
        if exc.http_status >= 500:
            LOGGER.exception("Unhandled coordinator error on %s", request.path)
        return web.json_response({"error": exc.code, "message": str(exc)}, status=exc.http_status)


class ApiHandler:
    def __init__(self, coordinator: Coordinator) -> None:
        self._coordinator = coordinator

    def routes(self) -> tuple[web.RouteDef, ...]:
        return (
            web.get("/api/pipelines", self.list_pipelines),
            web.post("/api/pipelines", self.create_pipeline),
            web.get("/api/pipelines/{pipeline_id}", self.get_pipeline),
            web.post("/api/pipelines/{pipeline_id}/cancel", self.cancel_pipeline),
            web.get("/api/jobs/{job_id}", self.get_job),
            web.get("/api/jobs/{job_id}/logs", self.list_job_logs),
            web.get("/api/agents", self.list_agents),
            web.post("/api/events/push", self.push_event),
        )

    async def list_pipelines(self, request: web.Request) -> web.Response:
        state_param = request.query.get("state")
        try:
            state = PipelineState(state_param) if state_param else None
        except ValueError:
            raise web.HTTPBadRequest(text="invalid state") from None
        pipelines = self._coordinator.list_pipelines(limit=100, state=state)
        return web.json_response({"pipelines": [pipeline.to_dict() for pipeline in pipelines]})

    async def create_pipeline(self, request: web.Request) -> web.Response:
        data = await _read_json(request)
        definition = data.get("definition")
        if definition is None:
            raise web.HTTPBadRequest(text="definition is required")
        trigger = TriggerEvent.from_dict(data.get("trigger") if isinstance(data.get("trigger"), dict) else None)
        pipeline_id = self._coordinator.enqueue(definition, trigger)
        return web.json_response({"pipeline": self._pipeline_payload(pipeline_id)}, status=201)

    async def get_pipeline(self, request: web.Request) -> web.Response:
        return web.json_response({"pipeline": self._pipeline_payload(request.match_info["pipeline_id"])})

    async def cancel_pipeline(self, request: web.Request) -> web.Response:
        pipeline_id = request.match_info["pipeline_id"]
        self._coordinator.cancel_pipeline(pipeline_id)
        return web.json_response({"pipeline": self._pipeline_payload(pipeline_id)})

    async def get_job(self, request: web.Request) -> web.Response:
        job = self._coordinator.get_job(request.match_info["job_id"])
        return web.json_response({"job": job.to_dict()})

    async def list_job_logs(self, request: web.Request) -> web.Response:
        job_id = request.match_info["job_id"]
        try:
            limit = min(int(request.query.get("limit", 200)), 1000)
            after_seq = request.query.get("after")
            after_value = int(after_seq) if after_seq is not None else None
        except ValueError:
            raise web.HTTPBadRequest(text="limit and after must be integers") from None
        logs = self._coordinator.job_logs(job_id, limit=limit, after_seq=after_value)
        return web.json_response({"logs": logs})

    async def list_agents(self, _: web.Request) -> web.Response:
        agents = self._coordinator.list_agents()
        return web.json_response({"agents": [agent.to_dict() for agent in agents]})

    async def push_event(self, request: web.Request) -> web.Response:
        config = self._coordinator.config
        try:
            verify_token(config.webhook_secret, request.headers.get("X-Gitlab-Token"))
        except WebhookRejected as exc:
            LOGGER.warning("Rejected push hook from %s: %s", request.remote, exc)
            raise web.HTTPUnauthorized(text=str(exc)) from None

        event_header = request.headers.get("X-Gitlab-Event")
        if event_header and event_header != PUSH_HOOK_EVENT:
            return web.json_response({"status": "ignored", "reason": f"unsupported event {event_header}"}, status=202)

        parsed = parse_push_event(await _read_json(request))
        if parsed is None:
            return web.json_response({"status": "ignored", "reason": "branch deleted"}, status=202)
        project_path, trigger = parsed
        definition = DefinitionCatalog(config.definitions_dir).load(project_path)
        pipeline_id = self._coordinator.enqueue(definition, trigger)
        LOGGER.info("Push to %s triggered pipeline %s", project_path, pipeline_id)
        return web.json_response({"pipeline": self._pipeline_payload(pipeline_id)}, status=201)

    def _pipeline_payload(self, pipeline_id: str) -> dict[str, Any]:
        pipeline = self._coordinator.get_pipeline(pipeline_id)
        return pipeline.to_dict(self._coordinator.list_jobs(pipeline_id))


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        data = await request.json()
    except Exception:  # noqa: BLE001
        raise web.HTTPBadRequest(text="invalid json") from None
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text="JSON object expected")
    return data
