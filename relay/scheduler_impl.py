import asyncio
import hashlib
import logging

from relay.registry import BackendRegistry
from relay.scheduler import Scheduler

logger = logging.getLogger(__name__)

ALGORITHMS = ("roundrobin", "least", "iphash")


class RoundRobinScheduler(Scheduler):
    name = "roundrobin"

    def __init__(self) -> None:
        # never reset; may skew briefly when the healthy set changes size
        self._cursor = 0
        self._lock = asyncio.Lock()

    async def select(self, healthy: list[int], client_ip: str) -> int | None:
        if not healthy:
            return None
        async with self._lock:
            index = healthy[self._cursor % len(healthy)]
            self._cursor += 1
            return index


class LeastConnectionsScheduler(Scheduler):
    name = "least"

    def __init__(self, registry: BackendRegistry) -> None:
        self._registry = registry

    async def select(self, healthy: list[int], client_ip: str) -> int | None:
        if not healthy:
            return None
        return await self._registry.least_loaded_among(healthy)


class IpHashScheduler(Scheduler):
    """Source-address affinity.

    The mapping only holds while the healthy set keeps its size: any health
    flip changes the modulus and can move a client to another backend.
    """

    name = "iphash"

    async def select(self, healthy: list[int], client_ip: str) -> int | None:
        if not healthy:
            return None
        hash_val = int(hashlib.md5(client_ip.encode()).hexdigest(), 16)
        return healthy[hash_val % len(healthy)]


def get_scheduler(algo: str | None, registry: BackendRegistry) -> Scheduler:
    match (algo or "").strip().lower():
        case "least" | "least_conn" | "least_connections":
            return LeastConnectionsScheduler(registry)
        case "iphash" | "ip_hash" | "source_hash":
            return IpHashScheduler()
        case "roundrobin" | "round_robin":
            return RoundRobinScheduler()
        case _:
            logger.debug(f"Unknown scheduling algo {algo!r}, using roundrobin")
            return RoundRobinScheduler()
