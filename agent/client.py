"""cirelay 코디네이터에 접속해 작업을 가져와 실행하는 워커 에이전트."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import uuid
from contextlib import AbstractAsyncContextManager, asynccontextmanager, suppress
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Protocol, Sequence

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import WebSocketException

from relaynet import FabricError

from .config import AgentConfig, ConfigError, load_agent_config
from .executor import ClaimLost, JobAssignment, JobOutcome, JobRunner
from .retry import exponential_backoff
from .sandbox import DockerSandbox, ProcessSandbox, Sandbox

LOGGER = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)

# 이 코드들은 작업 소유권이 사라졌다는 뜻
_CLAIM_LOST_CODES = {"not_owner", "not_found", "invalid_transition"}


class RemoteError(RuntimeError):
    """코디네이터가 error 프레임으로 응답했을 때."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class RpcChannel(Protocol):
    async def call(self, message: dict[str, Any]) -> dict[str, Any]:
        ...

    async def wait_closed(self) -> None:
        ...


class WebSocketChannel:
    """요청마다 id를 붙이고 reply_to로 응답을 짝지어 준다."""

    def __init__(self, websocket: ClientConnection, timeout: float) -> None:
        self._websocket = websocket
        self._timeout = timeout
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._reader: asyncio.Task | None = None

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read_loop())

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            with suppress(asyncio.CancelledError):
                await self._reader

    async def call(self, message: dict[str, Any]) -> dict[str, Any]:
        msg_id = uuid.uuid4().hex
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        try:
            await self._websocket.send(json.dumps({**message, "id": msg_id}))
            return await asyncio.wait_for(future, self._timeout)
        finally:
            self._pending.pop(msg_id, None)

    async def wait_closed(self) -> None:
        if self._reader is not None:
            await self._reader

    async def _read_loop(self) -> None:
        try:
            async for raw in self._websocket:
                try:
                    reply = json.loads(raw)
                except json.JSONDecodeError:
                    LOGGER.warning("수신한 메시지를 JSON으로 파싱할 수 없습니다: %s", raw)
                    continue
                future = self._pending.get(str(reply.get("reply_to")))
                if future is None or future.done():
                    LOGGER.debug("Unmatched frame from coordinator: %s", reply)
                    continue
                future.set_result(reply)
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionError("coordinator connection closed"))


@asynccontextmanager
async def open_channel(url: str, timeout: float) -> AsyncIterator[WebSocketChannel]:
    async with connect(url, open_timeout=timeout) as websocket:
        channel = WebSocketChannel(websocket, timeout)
        channel.start()
        try:
            yield channel
        finally:
            await channel.close()


Connector = Callable[[], AbstractAsyncContextManager[RpcChannel]]


@dataclass
class RunningJob:
    assignment: JobAssignment
    task: asyncio.Task
    cancel_event: asyncio.Event


class WorkerAgent:
    def __init__(self, config: AgentConfig, sandbox: Sandbox, *, connector: Connector | None = None) -> None:
        self._config = config
        self._connector = connector or (lambda: open_channel(config.fabric.coordinator_url, config.rpc_timeout))
        self._channel: RpcChannel | None = None
        self._connected = asyncio.Event()
        self._stopping = asyncio.Event()
        self._token: str | None = None
        self._heartbeat_interval = config.heartbeat_interval
        self._jobs: dict[str, RunningJob] = {}
        self._runner = JobRunner(
            sandbox,
            self._report,
            volumes=config.mounts(),
            limits=config.limits(),
            fabric=config.fabric,
            isolation_socket=config.isolation_socket if config.allow_nested_isolation else None,
            progress_interval=config.progress_interval,
            cancel_grace=config.cancel_grace,
        )

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def connected(self) -> asyncio.Event:
        return self._connected

    @property
    def active_jobs(self) -> list[str]:
        return list(self._jobs)

    async def run(self) -> None:
        """연결이 끊기면 백오프 후 다시 접속해 재등록한다. stop()까지 반복."""
        attempt = 0
        while not self._stopping.is_set():
            try:
                async with self._connector() as channel:
                    self._channel = channel
                    await self._register()
                    self._connected.set()
                    attempt = 0
                    await self._serve(channel)
            except RemoteError as exc:
                if exc.code == "duplicate_identity":
                    LOGGER.error("Coordinator refused identity %s: %s", self._config.identity, exc)
                    raise
                LOGGER.warning("Coordinator rejected agent request (%s): %s", exc.code, exc)
            except TRANSIENT_ERRORS as exc:
                LOGGER.warning("코디네이터 연결 오류: %s", exc)
            finally:
                self._connected.clear()
                self._channel = None

            if self._stopping.is_set():
                break
            delay = exponential_backoff(attempt, 1.0, self._config.reconnect_max_delay)
            attempt += 1
            LOGGER.info("Reconnecting to %s in %.1fs", self._config.fabric.coordinator_url, delay)
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), delay)

    async def stop(self) -> None:
        """종료 시 실행 중인 작업은 보고 없이 버린다. 코디네이터 sweep이 회수한다."""
        self._stopping.set()
        await self.abandon_jobs()

    async def abandon_jobs(self) -> None:
        jobs = list(self._jobs.values())
        if not jobs:
            return
        LOGGER.info("Abandoning %d running job(s)", len(jobs))
        for job in jobs:
            job.task.cancel()
        await asyncio.gather(*(job.task for job in jobs), return_exceptions=True)

    async def _serve(self, channel: RpcChannel) -> None:
        tasks = {
            asyncio.create_task(self._heartbeat_loop()),
            asyncio.create_task(self._claim_loop()),
            asyncio.create_task(channel.wait_closed()),
            asyncio.create_task(self._stopping.wait()),
        }
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        for task in done:
            exc = task.exception()
            if exc:
                raise exc
        if not self._stopping.is_set():
            raise ConnectionError("coordinator closed the connection")

    async def _register(self) -> None:
        reply = await self._request(
            {
                "type": "agent.register",
                "identity": self._config.identity,
                "capabilities": self._config.advertised_capabilities(),
                "address": self._config.address,
                "max_concurrency": self._config.max_concurrency,
            }
        )
        self._token = str(reply["token"])
        advertised = reply.get("heartbeat_interval")
        if advertised:
            self._heartbeat_interval = min(self._config.heartbeat_interval, float(advertised))
        LOGGER.info("Registered with coordinator as %s", self._config.identity)

    async def _request(self, message: dict[str, Any]) -> dict[str, Any]:
        channel = self._channel
        if channel is None:
            raise ConnectionError("not connected to coordinator")
        reply = await channel.call(message)
        if reply.get("type") == "error":
            raise RemoteError(str(reply.get("code")), str(reply.get("message")))
        return reply

    async def _heartbeat_loop(self) -> None:
        while True:
            reply = await self._request({"type": "agent.heartbeat", "token": self._token})
            for job_id in reply.get("cancel") or []:
                job = self._jobs.get(job_id)
                if job is not None and not job.cancel_event.is_set():
                    LOGGER.info("작업 취소 요청 수신: %s", job_id)
                    job.cancel_event.set()
            await asyncio.sleep(self._heartbeat_interval)

    async def _claim_loop(self) -> None:
        while True:
            if len(self._jobs) >= self._config.max_concurrency:
                await asyncio.sleep(self._config.poll_interval)
                continue
            reply = await self._request({"type": "job.claim", "token": self._token})
            if reply.get("type") == "job.assign":
                self._start_job(JobAssignment.from_payload(reply["job"]))
                continue
            await asyncio.sleep(self._config.poll_interval)

    def _start_job(self, assignment: JobAssignment) -> None:
        LOGGER.info("Claimed job %s (%s, attempt %d)", assignment.job_id, assignment.name, assignment.attempt)
        cancel_event = asyncio.Event()
        task = asyncio.create_task(self._run_job(assignment, cancel_event))
        self._jobs[assignment.job_id] = RunningJob(assignment, task, cancel_event)

    async def _run_job(self, assignment: JobAssignment, cancel_event: asyncio.Event) -> JobOutcome | None:
        try:
            return await self._runner.run(assignment, cancel_event)
        except asyncio.CancelledError:
            LOGGER.info("Job %s abandoned", assignment.job_id)
            raise
        except Exception:  # noqa: BLE001
            LOGGER.exception("Job %s 실행 중 오류", assignment.job_id)
            return None
        finally:
            self._jobs.pop(assignment.job_id, None)

    async def _report(self, assignment: JobAssignment, state: str, log: str | None, **details: Any) -> None:
        """상태 보고. 연결 문제는 재시도하고 소유권 상실은 ClaimLost로 알린다."""
        message: dict[str, Any] = {
            "type": "job.status",
            "job_id": assignment.job_id,
            "attempt": assignment.attempt,
            "state": state,
            "log": log,
        }
        message.update({key: value for key, value in details.items() if value is not None})
        attempt = 0
        while True:
            await self._connected.wait()
            try:
                await self._request({**message, "token": self._token})
                return
            except RemoteError as exc:
                if exc.code in _CLAIM_LOST_CODES:
                    raise ClaimLost(str(exc)) from exc
                if exc.code != "unknown_agent":
                    raise
                LOGGER.warning("Coordinator no longer knows this agent; waiting for re-registration")
            except TRANSIENT_ERRORS as exc:
                LOGGER.warning("Status report for job %s failed: %s", assignment.job_id, exc)
            await asyncio.sleep(exponential_backoff(attempt, 0.5, self._config.reconnect_max_delay))
            attempt += 1


def build_sandbox(config: AgentConfig) -> Sandbox:
    if config.sandbox == "docker":
        return DockerSandbox(default_image=config.image, fabric=config.fabric)
    return ProcessSandbox(config.workdir_root)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="cirelay 워커 에이전트")
    parser.add_argument("--config", default=None, help="JSON 설정 파일")
    parser.add_argument("--coordinator-url", default=None, help="코디네이터 WebSocket 주소 (ws://host:port)")
    parser.add_argument("--identity", default=None, help="에이전트 식별자 (기본: 호스트 이름)")
    parser.add_argument("--capabilities", default=None, help="광고할 태그 목록(콤마 구분)")
    parser.add_argument("--address", default=None, help="코디네이터에 알릴 주소")
    parser.add_argument("--max-concurrency", type=int, default=None, help="동시에 실행할 작업 수")
    parser.add_argument("--sandbox", choices=("process", "docker"), default=None, help="샌드박스 종류")
    parser.add_argument("--image", default=None, help="docker 샌드박스 기본 이미지")
    parser.add_argument("--workdir-root", default=None, help="프로세스 샌드박스 작업 디렉터리 루트")
    parser.add_argument(
        "--volume",
        action="append",
        default=None,
        metavar="NAME=SRC:DST[:ro]",
        help="이름 있는 볼륨 (여러 번 지정 가능)",
    )
    parser.add_argument("--sandbox-network", default=None, help="샌드박스가 붙을 네트워크 (기본: host)")
    parser.add_argument("--allow-privileged", action="store_true", default=None, help="privileged 작업 허용")
    parser.add_argument(
        "--allow-nested-isolation",
        action="store_true",
        default=None,
        help="호스트 격리 소켓을 필요로 하는 작업 허용",
    )
    parser.add_argument("--verbose", action="store_true", help="디버그 로그 출력")
    return parser.parse_args(argv)


def _cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    keys = (
        "identity",
        "capabilities",
        "address",
        "max_concurrency",
        "sandbox",
        "image",
        "workdir_root",
        "allow_privileged",
        "allow_nested_isolation",
    )
    overrides: dict[str, Any] = {key: getattr(args, key) for key in keys if getattr(args, key) is not None}
    if args.volume:
        overrides["volumes"] = args.volume
    fabric: dict[str, Any] = {}
    if args.coordinator_url:
        fabric["coordinator_url"] = args.coordinator_url
    if args.sandbox_network:
        fabric["sandbox_network"] = args.sandbox_network
    if fabric:
        overrides["fabric"] = fabric
    return overrides


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(asctime)s] %(levelname)s %(name)s: %(message)s")


async def _run_agent(config: AgentConfig) -> None:
    agent = WorkerAgent(config, build_sandbox(config))
    runner = asyncio.create_task(agent.run())
    stop_event = asyncio.Event()

    def _handle_signal(*_: signal.Signals) -> None:
        LOGGER.info("Received shutdown signal")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, _handle_signal)

    stopper = asyncio.create_task(stop_event.wait())
    done, _ = await asyncio.wait({runner, stopper}, return_when=asyncio.FIRST_COMPLETED)
    if runner in done:
        stopper.cancel()
        runner.result()
        return
    await agent.stop()
    await runner


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    _configure_logging(args.verbose)
    try:
        config = load_agent_config(args.config, overrides=_cli_overrides(args))
        config.fabric.ensure_consistent()
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2
    except FabricError as exc:
        for problem in exc.problems:
            LOGGER.error("Fabric: %s", problem)
        return 2
    LOGGER.info("Agent %s advertising %s", config.identity, ", ".join(config.advertised_capabilities()) or "no tags")
    try:
        asyncio.run(_run_agent(config))
    except RemoteError as exc:
        LOGGER.error("Agent stopped: %s", exc)
        return 1
    except KeyboardInterrupt:
        LOGGER.info("클라이언트 종료")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
