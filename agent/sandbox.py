"""작업 하나에 묶이는 일회용 실행 샌드박스."""

from __future__ import annotations

import abc
import asyncio
import asyncio.subprocess
import logging
import os
import resource
import shutil
import signal
import tempfile
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from relaynet import FabricConfig

LOGGER = logging.getLogger(__name__)

OutputCallback = Callable[[str], Awaitable[None]]

CONTAINER_SOCKET_PATH = "/var/run/docker.sock"
READ_CHUNK_BYTES = 64 * 1024
MAX_LINE_BYTES = 64 * 1024


class SandboxError(RuntimeError):
    """샌드박스 생성/실행 실패."""


@dataclass(slots=True)
class ResourceLimits:
    cpus: float | None = None
    memory: str | None = None
    pids: int | None = None


@dataclass(slots=True)
class Mount:
    source: str
    target: str
    read_only: bool = False

    @classmethod
    def parse(cls, spec: str) -> "Mount":
        """`src:dst[:ro]` 형식."""
        parts = spec.split(":")
        if len(parts) not in (2, 3) or not parts[0] or not parts[1]:
            raise ValueError(f"mount must look like SRC:DST[:ro], got {spec!r}")
        if len(parts) == 3 and parts[2] not in ("ro", "rw"):
            raise ValueError(f"mount mode must be ro or rw, got {parts[2]!r}")
        return cls(source=parts[0], target=parts[1], read_only=len(parts) == 3 and parts[2] == "ro")

    def to_docker(self) -> str:
        return f"{self.source}:{self.target}{':ro' if self.read_only else ''}"


@dataclass
class SandboxHandle:
    sandbox_id: str
    workdir: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    container_id: str | None = None
    privileged: bool = False
    isolation_socket: str | None = None
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    processes: set[asyncio.subprocess.Process] = field(default_factory=set)
    destroyed: bool = False


class Sandbox(abc.ABC):
    """샌드박스 구현이 따라야 하는 인터페이스. destroy는 여러 번 불려도 안전해야 한다."""

    kind = "abstract"

    @abc.abstractmethod
    async def create(
        self,
        limits: ResourceLimits,
        mounts: list[Mount],
        *,
        privileged: bool = False,
        isolation_socket: str | None = None,
        image: str | None = None,
    ) -> SandboxHandle:
        """격리 환경을 만든다."""

    @abc.abstractmethod
    async def exec_step(self, handle: SandboxHandle, command: str, on_output: OutputCallback) -> int:
        """명령 하나를 실행하고 종료 코드를 돌려준다. 출력은 줄 단위로 on_output에 전달."""

    @abc.abstractmethod
    async def destroy(self, handle: SandboxHandle) -> None:
        """샌드박스를 정리한다."""

    @property
    def supports_privileged(self) -> bool:
        return False


async def _pump(process: asyncio.subprocess.Process, on_output: OutputCallback) -> int:
    """출력을 줄 단위로 넘긴다. MAX_LINE_BYTES를 넘는 줄은 잘라서 여러 줄로 보낸다."""
    if process.stdout is None:
        raise SandboxError("step output is not captured")
    pending = b""
    while True:
        chunk = await process.stdout.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        *lines, pending = (pending + chunk).split(b"\n")
        for line in lines:
            for start in range(0, max(len(line), 1), MAX_LINE_BYTES):
                await on_output(_decode(line[start : start + MAX_LINE_BYTES]))
        while len(pending) >= MAX_LINE_BYTES:
            await on_output(_decode(pending[:MAX_LINE_BYTES]))
            pending = pending[MAX_LINE_BYTES:]
    if pending:
        await on_output(_decode(pending))
    return await process.wait()


def _decode(line: bytes) -> str:
    return line.decode(errors="replace").rstrip("\r")


async def _follow(handle: SandboxHandle, process: asyncio.subprocess.Process, on_output: OutputCallback) -> int:
    handle.processes.add(process)
    try:
        return await _pump(process, on_output)
    finally:
        handle.processes.discard(process)
        if process.returncode is None:
            _kill_group(process)
            with suppress(ProcessLookupError):
                await process.wait()


def _kill_group(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)


class ProcessSandbox(Sandbox):
    """임시 작업 디렉터리와 정리된 환경 변수로 호스트 프로세스를 실행한다."""

    kind = "process"

    def __init__(self, workdir_root: str | Path | None = None, *, shell: str = "/bin/sh") -> None:
        self._workdir_root = Path(workdir_root) if workdir_root else None
        self._shell = shell

    async def create(
        self,
        limits: ResourceLimits,
        mounts: list[Mount],
        *,
        privileged: bool = False,
        isolation_socket: str | None = None,
        image: str | None = None,
    ) -> SandboxHandle:
        if privileged:
            raise SandboxError("process sandbox cannot grant privileged execution")
        if image:
            LOGGER.debug("Process sandbox ignores image %s", image)
        if self._workdir_root is not None:
            self._workdir_root.mkdir(parents=True, exist_ok=True)

        sandbox_id = uuid.uuid4().hex[:12]
        workdir = Path(tempfile.mkdtemp(prefix=f"cirelay-{sandbox_id}-", dir=self._workdir_root))
        handle = SandboxHandle(sandbox_id=sandbox_id, workdir=workdir, isolation_socket=isolation_socket, limits=limits)
        try:
            (workdir / "tmp").mkdir()
            handle.env = {
                "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
                "HOME": str(workdir),
                "TMPDIR": str(workdir / "tmp"),
                "CI": "true",
            }
            if isolation_socket:
                handle.env["DOCKER_HOST"] = f"unix://{isolation_socket}"
            for mount in mounts:
                link = workdir / mount.target.lstrip("/")
                link.parent.mkdir(parents=True, exist_ok=True)
                link.symlink_to(mount.source)
        except OSError as exc:
            shutil.rmtree(workdir, ignore_errors=True)
            raise SandboxError(f"cannot prepare sandbox directory: {exc}") from exc
        LOGGER.debug("Created process sandbox %s at %s", sandbox_id, workdir)
        return handle

    async def exec_step(self, handle: SandboxHandle, command: str, on_output: OutputCallback) -> int:
        if handle.destroyed or handle.workdir is None:
            raise SandboxError(f"sandbox {handle.sandbox_id} is gone")
        try:
            process = await asyncio.create_subprocess_exec(
                self._shell,
                "-c",
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=str(handle.workdir),
                env=handle.env,
                start_new_session=True,
                preexec_fn=_rlimit_setter(handle.limits),
            )
        except OSError as exc:
            raise SandboxError(f"cannot start {self._shell}: {exc}") from exc
        return await _follow(handle, process, on_output)

    async def destroy(self, handle: SandboxHandle) -> None:
        if handle.destroyed:
            return
        handle.destroyed = True
        for process in list(handle.processes):
            _kill_group(process)
        handle.processes.clear()
        if handle.workdir is not None:
            await asyncio.to_thread(shutil.rmtree, handle.workdir, True)
        LOGGER.debug("Destroyed process sandbox %s", handle.sandbox_id)


def _rlimit_setter(limits: ResourceLimits) -> Callable[[], None] | None:
    memory = _memory_bytes(limits.memory)
    if memory is None:
        return None

    def _apply() -> None:
        resource.setrlimit(resource.RLIMIT_AS, (memory, memory))

    return _apply


def _memory_bytes(value: str | None) -> int | None:
    if not value:
        return None
    units = {"k": 1024, "m": 1024**2, "g": 1024**3}
    text = value.strip().lower().rstrip("b")
    if text and text[-1] in units:
        return int(float(text[:-1]) * units[text[-1]])
    return int(text)


class DockerSandbox(Sandbox):
    """`docker` CLI로 작업마다 컨테이너 하나를 띄워 단계를 exec 한다."""

    kind = "docker"

    def __init__(
        self,
        *,
        default_image: str = "alpine:3.20",
        fabric: FabricConfig | None = None,
        docker: str = "docker",
        workdir: str = "/workspace",
    ) -> None:
        self._default_image = default_image
        self._fabric = fabric or FabricConfig()
        self._docker = docker
        self._workdir = workdir

    @property
    def supports_privileged(self) -> bool:
        return True

    def run_arguments(
        self,
        name: str,
        limits: ResourceLimits,
        mounts: list[Mount],
        *,
        privileged: bool,
        isolation_socket: str | None,
        image: str | None,
    ) -> list[str]:
        args = [self._docker, "run", "-d", "--name", name, "--label", "cirelay.sandbox=true", "-w", self._workdir]
        if self._fabric.sandbox_network:
            args += ["--network", self._fabric.sandbox_network]
        for host, address in sorted(self._fabric.extra_hosts.items()):
            args += ["--add-host", f"{host}:{address}"]
        if limits.cpus:
            args += ["--cpus", str(limits.cpus)]
        if limits.memory:
            args += ["--memory", limits.memory]
        if limits.pids:
            args += ["--pids-limit", str(limits.pids)]
        for mount in mounts:
            args += ["-v", mount.to_docker()]
        if privileged:
            args.append("--privileged")
        if isolation_socket:
            args += ["-v", f"{isolation_socket}:{CONTAINER_SOCKET_PATH}", "-e", f"DOCKER_HOST=unix://{CONTAINER_SOCKET_PATH}"]
        args += [
            "-e",
            "CI=true",
            "--entrypoint",
            "/bin/sh",
            image or self._default_image,
            "-c",
            "trap 'exit 0' TERM; while :; do sleep 3600 & wait $!; done",
        ]
        return args

    async def create(
        self,
        limits: ResourceLimits,
        mounts: list[Mount],
        *,
        privileged: bool = False,
        isolation_socket: str | None = None,
        image: str | None = None,
    ) -> SandboxHandle:
        sandbox_id = uuid.uuid4().hex[:12]
        name = f"cirelay-{sandbox_id}"
        args = self.run_arguments(
            name, limits, mounts, privileged=privileged, isolation_socket=isolation_socket, image=image
        )
        code, output = await self._capture(args)
        if code != 0:
            await self._capture([self._docker, "rm", "-f", name])
            raise SandboxError(f"docker run failed ({code}): {output.strip()}")
        LOGGER.debug("Started container %s for sandbox %s", output.strip()[:12], sandbox_id)
        return SandboxHandle(
            sandbox_id=sandbox_id,
            container_id=output.strip() or name,
            privileged=privileged,
            isolation_socket=isolation_socket,
        )

    async def exec_step(self, handle: SandboxHandle, command: str, on_output: OutputCallback) -> int:
        if handle.destroyed or handle.container_id is None:
            raise SandboxError(f"sandbox {handle.sandbox_id} is gone")
        try:
            process = await asyncio.create_subprocess_exec(
                self._docker,
                "exec",
                "-w",
                self._workdir,
                handle.container_id,
                "/bin/sh",
                "-c",
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise SandboxError(f"cannot run {self._docker}: {exc}") from exc
        return await _follow(handle, process, on_output)

    async def destroy(self, handle: SandboxHandle) -> None:
        if handle.destroyed:
            return
        handle.destroyed = True
        for process in list(handle.processes):
            _kill_group(process)
        handle.processes.clear()
        if handle.container_id is None:
            return
        code, output = await self._capture([self._docker, "rm", "-f", handle.container_id])
        if code != 0:
            LOGGER.error("Failed to remove container %s: %s", handle.container_id, output.strip())

    async def _capture(self, args: list[str]) -> tuple[int, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise SandboxError(f"cannot run {args[0]}: {exc}") from exc
        stdout, _ = await process.communicate()
        return process.returncode or 0, stdout.decode(errors="replace")
