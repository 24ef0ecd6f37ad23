import asyncio
import logging
import os
import time
from contextlib import suppress

from relay.config import BackendAddress
from relay.metrics import MetricsCollector
from relay.registry import BackendRegistry

logger = logging.getLogger(__name__)

HEALTHY_STATUS_LINES = (b"HTTP/1.1 200", b"HTTP/1.0 200")


class HealthMonitor:
    """Probes every backend once per interval and publishes the snapshot.

    State per backend is just the registry's health flag, overwritten with
    the latest probe result: no thresholds, no backoff.
    """

    def __init__(
        self,
        registry: BackendRegistry,
        status_file: str | os.PathLike,
        interval: float = 5.0,
        timeout: float = 2.0,
        read_size: int = 1024,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.registry = registry
        self.status_file = status_file
        self.metrics = metrics
        self._interval = interval
        self._timeout = timeout
        self._read_size = read_size
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    def start(self):
        if self._task is None:
            self._stopping.clear()
            self._task = asyncio.create_task(self._health_check_loop())

    async def stop(self):
        """Wait for the round in progress, if any, then end the loop."""
        if self._task:
            self._stopping.set()
            await self._task
            self._task = None

    async def _health_check_loop(self):
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), self._interval)
                break
            except asyncio.TimeoutError:
                pass
            await self.run_round()
        logger.info("Health monitor stopped")

    async def probe(self, address: BackendAddress) -> bool:
        request = (
            f"GET /health HTTP/1.1\r\n"
            f"Host: {address.host}\r\n"
            f"Connection: close\r\n\r\n"
        ).encode()
        writer = None
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(address.host, address.port), self._timeout
            )
            writer.write(request)
            await asyncio.wait_for(writer.drain(), self._timeout)
            data = await asyncio.wait_for(reader.read(self._read_size), self._timeout)
        except (OSError, UnicodeError, asyncio.TimeoutError) as e:
            logger.debug(f"Probe of {address} failed: {e!r}")
            return False
        finally:
            if writer is not None:
                writer.close()
                with suppress(OSError):
                    await writer.wait_closed()
        return any(line in data for line in HEALTHY_STATUS_LINES)

    async def run_round(self):
        for index in range(len(self.registry)):
            address = self.registry.address(index)
            start_time = time.time()
            try:
                healthy = await self.probe(address)
            except Exception:
                logger.exception(f"Unexpected error probing {address}")
                healthy = False
            latency = (time.time() - start_time) * 1000
            was_healthy = await self.registry.set_health(index, healthy)

            if was_healthy and not healthy:
                logger.warning(f"Backend {address} is unhealthy")
            elif healthy and not was_healthy:
                logger.info(f"Backend {address} recovered")
            logger.debug(
                f"Health check: {address} - "
                f"{'healthy' if healthy else 'unhealthy'} ({latency:.2f}ms)"
            )

            if self.metrics:
                await self.metrics.record_histogram(
                    "backend.health_check.latency.ms",
                    latency,
                    {"backend": str(address)},
                )
                await self.metrics.increment_counter(
                    "backend.health_check.total",
                    {
                        "backend": str(address),
                        "status": "healthy" if healthy else "unhealthy",
                    },
                )

        try:
            await self.registry.snapshot(self.status_file)
        except OSError as e:
            logger.error(f"Could not write status file {self.status_file}: {e}")
