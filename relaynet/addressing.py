"""코디네이터/에이전트/샌드박스 사이의 주소 규약."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import urlsplit, urlunsplit

HOST_NETWORK = "host"
DEFAULT_COORDINATOR_URL = "ws://127.0.0.1:8765"
_LOOPBACK_NAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}


class FabricError(ValueError):
    """주소 설정이 서로 맞지 않을 때 발생."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("; ".join(problems))
        self.problems = problems


def is_loopback(host: str | None) -> bool:
    if not host:
        return False
    host = host.strip("[]").lower()
    if host in _LOOPBACK_NAMES:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def _split_hostport(value: str) -> tuple[str, int | None]:
    value = value.strip()
    if value.startswith("["):
        host, _, rest = value[1:].partition("]")
        port = rest.lstrip(":")
        return host.lower(), int(port) if port else None
    host, sep, port = value.rpartition(":")
    if not sep or not port.isdigit():
        return value.lower(), None
    return host.lower(), int(port)


@dataclass(slots=True)
class HostAlias:
    """광고된 주소(advertised)를 샌드박스에서 도달 가능한 주소로 매핑."""

    advertised: str
    reachable: str

    def matches(self, host: str, port: int | None) -> bool:
        alias_host, alias_port = _split_hostport(self.advertised)
        if alias_host != host.lower():
            return False
        return alias_port is None or alias_port == port


@dataclass(slots=True)
class FabricConfig:
    coordinator_url: str = DEFAULT_COORDINATOR_URL
    sandbox_network: str | None = None
    host_aliases: list[HostAlias] = field(default_factory=list)
    extra_hosts: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "FabricConfig":
        data = data or {}
        aliases_raw = data.get("host_aliases") or {}
        if isinstance(aliases_raw, Mapping):
            aliases = [HostAlias(str(k), str(v)) for k, v in aliases_raw.items()]
        else:
            aliases = []
            for item in aliases_raw:
                if not isinstance(item, Mapping) or "advertised" not in item or "reachable" not in item:
                    raise FabricError([f"host alias entry needs advertised and reachable: {item!r}"])
                aliases.append(HostAlias(str(item["advertised"]), str(item["reachable"])))
        return cls(
            coordinator_url=str(data.get("coordinator_url", DEFAULT_COORDINATOR_URL)),
            sandbox_network=data.get("sandbox_network") or None,
            host_aliases=aliases,
            extra_hosts={str(k): str(v) for k, v in (data.get("extra_hosts") or {}).items()},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "coordinator_url": self.coordinator_url,
            "sandbox_network": self.sandbox_network,
            "host_aliases": {alias.advertised: alias.reachable for alias in self.host_aliases},
            "extra_hosts": dict(self.extra_hosts),
        }

    @property
    def sandbox_on_host_network(self) -> bool:
        return self.sandbox_network in (None, HOST_NETWORK)

    def rewrite_url(self, url: str) -> str:
        """광고된 클론 주소를 샌드박스가 실제로 쓰는 주소로 바꾼다."""
        parts = urlsplit(url)
        try:
            port = parts.port
        except ValueError:
            # 잘못된 포트는 그대로 두고 checkout 단계에서 실패하게 한다
            return url
        if not parts.hostname:
            return url
        for alias in self.host_aliases:
            if not alias.matches(parts.hostname, port):
                continue
            userinfo, _, _ = parts.netloc.rpartition("@")
            netloc = f"{userinfo}@{alias.reachable}" if userinfo else alias.reachable
            _, target_port = _split_hostport(alias.reachable)
            if target_port is None and port is not None:
                netloc = f"{netloc}:{port}"
            return urlunsplit(parts._replace(netloc=netloc))
        return url

    def reachable_from_sandbox(self, url: str) -> bool:
        host = urlsplit(url).hostname
        if self.sandbox_on_host_network:
            return True
        if host in self.extra_hosts:
            return not is_loopback(self.extra_hosts[host])
        return not is_loopback(host)

    def problems(self, clone_urls: list[str] | None = None) -> list[str]:
        found: list[str] = []
        coordinator = urlsplit(self.coordinator_url)
        if coordinator.scheme not in ("ws", "wss") or not coordinator.hostname:
            found.append(f"coordinator_url must be a ws:// or wss:// address: {self.coordinator_url!r}")
        for alias in self.host_aliases:
            reachable_host, _ = _split_hostport(alias.reachable)
            if not self.sandbox_on_host_network and is_loopback(reachable_host):
                found.append(
                    f"alias {alias.advertised} -> {alias.reachable} is loopback but sandboxes join "
                    f"network {self.sandbox_network!r}"
                )
        for name, ip in self.extra_hosts.items():
            try:
                ipaddress.ip_address(ip)
            except ValueError:
                found.append(f"extra_hosts entry {name} has invalid address {ip!r}")
        for url in clone_urls or []:
            rewritten = self.rewrite_url(url)
            if not self.reachable_from_sandbox(rewritten):
                found.append(
                    f"clone address {rewritten} is loopback; sandboxes on network "
                    f"{self.sandbox_network!r} cannot reach it (add a host alias)"
                )
        return found

    def ensure_consistent(self, clone_urls: list[str] | None = None) -> None:
        found = self.problems(clone_urls)
        if found:
            raise FabricError(found)
