"""cirelay 코디네이터 서버: 에이전트 RPC(WebSocket) + REST API(HTTP) + 상태 점검 루프."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import time
import uuid
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from http import HTTPStatus
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from aiohttp import web
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from .api import ApiHandler, error_middleware
from .config import ConfigError, CoordinatorConfig, load_config, reload_config
from .models import utcnow
from .rpc import RpcDispatcher
from .scheduler import Coordinator
from .storage import Storage, init_storage

LOGGER = logging.getLogger(__name__)


@dataclass
class Client:
    """코디네이터에 연결된 에이전트 세션."""

    uid: str
    connection: ServerConnection
    connected_at: float
    last_seen: float
    agent_id: str | None = None


class CoordinatorServer:
    def __init__(
        self,
        coordinator: Coordinator,
        *,
        config_path: str | Path | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._config_path = config_path
        self._overrides = dict(overrides or {})
        self._config_updated_at = utcnow()
        self._dispatcher = RpcDispatcher(coordinator)
        self._clients: Dict[ServerConnection, Client] = {}
        self._server: Server | None = None
        self._sweep_task: asyncio.Task | None = None
        self._web_app = web.Application(middlewares=[error_middleware])
        self._api_handler = ApiHandler(coordinator)
        self._web_app.add_routes(
            [
                web.get("/api/status", self._handle_status),
                web.get("/api/config", self._handle_config_get),
                web.post("/api/config/reload", self._handle_config_reload),
            ]
        )
        self._web_app.add_routes(self._api_handler.routes())
        self._web_runner: web.AppRunner | None = None
        self._web_site: web.TCPSite | None = None

    @property
    def config(self) -> CoordinatorConfig:
        return self._coordinator.config

    @property
    def web_app(self) -> web.Application:
        return self._web_app

    @property
    def dispatcher(self) -> RpcDispatcher:
        return self._dispatcher

    async def start(self) -> None:
        config = self.config
        self._coordinator.recover()
        problems = config.fabric.problems()
        for problem in problems:
            LOGGER.warning("Fabric: %s", problem)
        LOGGER.info("Starting agent RPC endpoint on %s:%s", config.host, config.port)
        self._server = await serve(
            self._handler,
            config.host,
            config.port,
            process_request=self._process_ws_request,
        )
        await self._start_http()
        self._start_sweeper()

    async def stop(self) -> None:
        LOGGER.info("Stopping coordinator")
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
        await self._cleanup_clients()
        await self._stop_http()
        await self._stop_sweeper()

    async def _cleanup_clients(self) -> None:
        if not self._clients:
            return
        LOGGER.info("Closing %d agent connection(s)", len(self._clients))
        await asyncio.gather(
            *(client.connection.close(code=1001, reason="Server shutdown") for client in self._clients.values()),
            return_exceptions=True,
        )
        self._clients.clear()

    async def _start_http(self) -> None:
        if self._web_runner is not None:
            return
        config = self.config
        http_host = config.http_host or config.host
        self._web_runner = web.AppRunner(self._web_app)
        await self._web_runner.setup()
        self._web_site = web.TCPSite(self._web_runner, http_host, config.http_port)
        await self._web_site.start()
        LOGGER.info("HTTP API available on http://%s:%s", http_host, config.http_port)

    async def _stop_http(self) -> None:
        if self._web_site is not None:
            await self._web_site.stop()
            self._web_site = None
        if self._web_runner is not None:
            await self._web_runner.cleanup()
            self._web_runner = None

    def _start_sweeper(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _stop_sweeper(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._sweep_task
        self._sweep_task = None

    async def _sweep_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.config.sweep_interval)
                self.sweep_once()
        except asyncio.CancelledError:
            LOGGER.debug("Staleness sweep stopped")

    def sweep_once(self) -> None:
        try:
            result = self._coordinator.sweep()
            if result:
                LOGGER.info(
                    "Sweep: %d agent(s) unreachable, %d job(s) requeued, %d job(s) canceled",
                    len(result.unreachable_agents),
                    len(result.requeued_jobs),
                    len(result.canceled_jobs),
                )
            self._coordinator.purge_expired()
        except Exception:  # noqa: BLE001
            LOGGER.exception("Sweep failed")

    async def _handler(self, connection: ServerConnection) -> None:
        now = time.time()
        client = Client(uid=str(uuid.uuid4()), connection=connection, connected_at=now, last_seen=now)
        self._clients[connection] = client
        LOGGER.info("Agent connection %s opened", client.uid)
        try:
            async for raw_message in connection:
                client.last_seen = time.time()
                reply = self.handle_raw(raw_message, client)
                await connection.send(json.dumps(reply))
        except ConnectionClosed as exc:
            LOGGER.info("Agent connection %s closed (%s)", client.uid, exc)
        finally:
            self._clients.pop(connection, None)

    def handle_raw(self, raw_message: str | bytes, client: Client | None = None) -> dict[str, Any]:
        try:
            message = json.loads(raw_message)
        except json.JSONDecodeError:
            LOGGER.warning("Dropping non-JSON frame from %s", client.uid if client else "unknown")
            return {"type": "error", "code": "bad_request", "message": "invalid json", "reply_to": None}
        reply = self._dispatcher.handle(message)
        if client is not None and reply.get("type") == "agent.registered":
            client.agent_id = reply.get("agent_id")
        return reply

    async def _handle_status(self, _: web.Request) -> web.Response:
        payload = {
            "status": "ok",
            "config_version": self.config.version,
            "connected_agents": len(self._clients),
            "connections": [
                {
                    "id": client.uid,
                    "agent_id": client.agent_id,
                    "connected_at": datetime.fromtimestamp(client.connected_at).isoformat(timespec="seconds"),
                    "last_seen": datetime.fromtimestamp(client.last_seen).isoformat(timespec="seconds"),
                }
                for client in self._clients.values()
            ],
        }
        return web.json_response(payload)

    async def _handle_config_get(self, _: web.Request) -> web.Response:
        return web.json_response(
            {
                "config": self.config.to_dict(),
                "updated_at": self._config_updated_at.isoformat(timespec="seconds"),
            }
        )

    async def _handle_config_reload(self, _: web.Request) -> web.Response:
        if self._config_path is None:
            return web.json_response({"error": "no config file to reload"}, status=409)
        try:
            new_config, pending_restart = reload_config(self.config, self._config_path, overrides=self._overrides)
        except ConfigError as exc:
            LOGGER.warning("Config reload rejected: %s", exc)
            return web.json_response({"error": str(exc)}, status=400)
        self._coordinator.apply_config(new_config)
        self._config_updated_at = utcnow()
        return web.json_response({"config": new_config.to_dict(), "pending_restart": pending_restart, "status": "ok"})

    async def _process_ws_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        """일반 HTTP 요청이 WebSocket 엔드포인트로 들어오면 안내 메시지 반환."""
        if request.headers.get("Upgrade", "").lower() != "websocket":
            return connection.respond(HTTPStatus.UPGRADE_REQUIRED, "This endpoint expects a WebSocket upgrade.\n")
        return None


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(asctime)s] %(levelname)s %(name)s: %(message)s")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="cirelay 코디네이터")
    parser.add_argument("--config", default=None, help="JSON 설정 파일")
    parser.add_argument("--host", default=None, help="에이전트 RPC 바인드 주소")
    parser.add_argument("--port", type=int, default=None, help="에이전트 RPC 포트")
    parser.add_argument("--http-host", default=None, help="HTTP API 바인드 주소 (기본: --host)")
    parser.add_argument("--http-port", type=int, default=None, help="HTTP API 포트")
    parser.add_argument("--db-path", default=None, help="파이프라인/작업/에이전트를 저장할 SQLite 파일")
    parser.add_argument("--heartbeat-timeout", type=float, default=None, help="에이전트를 응답 없음으로 볼 때까지의 초")
    parser.add_argument("--sweep-interval", type=float, default=None, help="상태 점검 주기(초)")
    parser.add_argument(
        "--requeue-on-restart",
        action="store_true",
        default=None,
        help="재시작 시 진행 중이던 작업을 바로 대기열로 되돌림",
    )
    parser.add_argument("--verbose", action="store_true", help="디버그 로그 출력")
    return parser.parse_args(argv)


def _cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    keys = ("host", "port", "http_host", "http_port", "db_path", "heartbeat_timeout", "sweep_interval", "requeue_on_restart")
    return {key: getattr(args, key) for key in keys if getattr(args, key) is not None}


async def _run_server(config: CoordinatorConfig, args: argparse.Namespace) -> None:
    storage: Storage = init_storage(config.db_path)
    coordinator = Coordinator(storage, config)
    server = CoordinatorServer(coordinator, config_path=args.config, overrides=_cli_overrides(args))
    await server.start()

    stop_event = asyncio.Event()

    def _handle_signal(*_: signal.Signals) -> None:
        LOGGER.info("Received shutdown signal")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, _handle_signal)

    try:
        await stop_event.wait()
    finally:
        await server.stop()
        storage.close()


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    _configure_logging(args.verbose)
    try:
        config = load_config(args.config, overrides=_cli_overrides(args))
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2
    try:
        asyncio.run(_run_server(config, args))
    except KeyboardInterrupt:
        LOGGER.info("Keyboard interrupt received")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
