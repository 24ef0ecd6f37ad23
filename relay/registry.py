import asyncio
import logging
import os
import tempfile
from collections.abc import Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from relay.config import BackendAddress

logger = logging.getLogger(__name__)


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


# read once at import, os.umask has no read-only form
_FILE_MODE = 0o666 & ~_current_umask()


def write_atomic(target: Path, text: str):
    """Replace ``target`` with ``text`` through a temp file and a rename.

    The temp file is chmod-ed to what a plain ``open()`` would have created,
    so readers of the status file keep their access.
    """
    fd, tmp_name = tempfile.mkstemp(
        dir=target.parent, prefix=f".{target.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w") as tmp:
            os.fchmod(tmp.fileno(), _FILE_MODE)
            tmp.write(text)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


@dataclass
class Backend:
    address: BackendAddress
    healthy: bool = True
    request_count: int = 0
    active_connections: int = 0


class BackendRegistry:
    """Fixed, index-addressed set of backends and their live state.

    Health flags, request counters and active-connection counters are each
    guarded by their own lock, so a probe round never waits on the
    forwarding path and the other way round.
    """

    def __init__(self, addresses: Sequence[BackendAddress]) -> None:
        self._backends = tuple(Backend(addr) for addr in addresses)
        self._health_lock = asyncio.Lock()
        self._request_lock = asyncio.Lock()
        self._active_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._backends)

    @property
    def backends(self) -> tuple[Backend, ...]:
        return self._backends

    def address(self, index: int) -> BackendAddress:
        return self._backends[index].address

    async def healthy_indices(self) -> list[int]:
        async with self._health_lock:
            return [i for i, b in enumerate(self._backends) if b.healthy]

    async def set_health(self, index: int, healthy: bool) -> bool:
        async with self._health_lock:
            backend = self._backends[index]
            previous = backend.healthy
            backend.healthy = healthy
            return previous

    async def increment_requests(self, index: int):
        async with self._request_lock:
            self._backends[index].request_count += 1

    async def increment_active(self, index: int) -> int:
        async with self._active_lock:
            backend = self._backends[index]
            backend.active_connections += 1
            return backend.active_connections

    async def decrement_active(self, index: int) -> int:
        async with self._active_lock:
            backend = self._backends[index]
            if backend.active_connections > 0:
                backend.active_connections -= 1
            else:
                logger.error(f"Active count for {backend.address} already at zero")
            return backend.active_connections

    @asynccontextmanager
    async def active(self, index: int):
        await self.increment_active(index)
        try:
            yield self._backends[index]
        finally:
            await self.decrement_active(index)

    async def least_loaded_among(self, indices: Sequence[int]) -> int | None:
        async with self._active_lock:
            selected = None
            min_active = None
            for idx in indices:
                active = self._backends[idx].active_connections
                if min_active is None or active < min_active:
                    min_active = active
                    selected = idx
            return selected

    async def _copy_state(self) -> list[tuple[BackendAddress, bool, int, int]]:
        # one lock at a time, never nested
        async with self._health_lock:
            health = [b.healthy for b in self._backends]
        async with self._request_lock:
            requests = [b.request_count for b in self._backends]
        async with self._active_lock:
            active = [b.active_connections for b in self._backends]
        addresses = [b.address for b in self._backends]
        return list(zip(addresses, health, requests, active))

    async def render_status(self) -> str:
        lines = ["Health Status:"]
        for address, healthy, requests, active in await self._copy_state():
            label = "healthy" if healthy else "unhealthy"
            lines.append(
                f"{address.host}:{address.port} [{label}] "
                f"Requests: {requests} Active: {active}"
            )
        return "\n".join(lines) + "\n"

    async def snapshot(self, path: str | os.PathLike):
        """Overwrite ``path`` with the current status in a single write."""
        text = await self.render_status()
        await asyncio.to_thread(write_atomic, Path(path), text)

    async def describe(self) -> list[dict]:
        return [
            {
                "index": i,
                "backend": str(address),
                "healthy": healthy,
                "requests": requests,
                "active_connections": active,
            }
            for i, (address, healthy, requests, active) in enumerate(
                await self._copy_state()
            )
        ]
