"""코디네이터와 에이전트가 공유하는 네트워크 주소 규약."""

from .addressing import DEFAULT_COORDINATOR_URL, HOST_NETWORK, FabricConfig, FabricError, HostAlias, is_loopback

__all__ = [
    "DEFAULT_COORDINATOR_URL",
    "HOST_NETWORK",
    "FabricConfig",
    "FabricError",
    "HostAlias",
    "is_loopback",
]
