"""Single-shot store-and-forward relay.

One client connection is relayed to one backend with exactly one receive in
each direction. Nothing is parsed or re-framed, so a request or response
larger than one read is truncated; this is a TCP-level relay, not an HTTP
proxy.
"""

import asyncio
import enum
import logging
import time
from contextlib import suppress

from relay.metrics import MetricsCollector
from relay.registry import Backend, BackendRegistry
from relay.scheduler import Scheduler

logger = logging.getLogger(__name__)

SERVICE_UNAVAILABLE = (
    b"HTTP/1.1 503 Service Unavailable\r\n"
    b"Content-Length: 0\r\n"
    b"Connection: close\r\n\r\n"
)
BACKEND_CONNECTION_FAILED = (
    b"HTTP/1.1 503 Backend Connection Failed\r\n"
    b"Content-Length: 0\r\n"
    b"Connection: close\r\n\r\n"
)


class Outcome(enum.Enum):
    FORWARDED = "forwarded"
    NO_BACKEND = "no_backend"
    CONNECT_FAILED = "connect_failed"
    ABORTED = "aborted"
    FAILED = "failed"


async def close_writer(writer: asyncio.StreamWriter):
    writer.close()
    with suppress(OSError):
        await writer.wait_closed()


class ConnectionForwarder:
    def __init__(
        self,
        registry: BackendRegistry,
        scheduler: Scheduler,
        relay_timeout: float = 10.0,
        read_size: int = 8192,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.registry = registry
        self.scheduler = scheduler
        self.metrics = metrics
        self._timeout = relay_timeout
        self._read_size = read_size

    async def handle(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
    ) -> Outcome:
        peer = client_writer.get_extra_info("peername")
        client_ip = peer[0] if peer else ""
        try:
            outcome = await self._forward(client_ip, client_reader, client_writer)
        except Exception:
            logger.exception(f"Unexpected error relaying for {client_ip}")
            outcome = Outcome.FAILED
        finally:
            await close_writer(client_writer)
        if self.metrics and outcome is not Outcome.FORWARDED:
            await self.metrics.increment_counter(
                "client.rejected.total", {"reason": outcome.value}
            )
        return outcome

    async def _forward(
        self,
        client_ip: str,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
    ) -> Outcome:
        healthy = await self.registry.healthy_indices()
        index = await self.scheduler.select(healthy, client_ip)
        if index is None:
            logger.info(f"No healthy backend for {client_ip}, sending 503")
            await self._reply(client_writer, SERVICE_UNAVAILABLE)
            return Outcome.NO_BACKEND

        address = self.registry.address(index)
        start_time = time.time()
        try:
            backend_reader, backend_writer = await asyncio.wait_for(
                asyncio.open_connection(address.host, address.port), self._timeout
            )
        except (OSError, UnicodeError, asyncio.TimeoutError) as e:
            # health flag is left alone; the next probe round decides
            logger.warning(f"Connection to backend {address} failed: {e!r}")
            await self._reply(client_writer, BACKEND_CONNECTION_FAILED)
            return Outcome.CONNECT_FAILED

        try:
            async with self.registry.active(index) as backend:
                await self._set_active_gauge(backend)
                try:
                    sent = await self._relay_once(client_reader, backend_writer)
                except (OSError, asyncio.TimeoutError) as e:
                    logger.debug(f"{client_ip} -> {address} aborted: {e!r}")
                    sent = 0
                if not sent:
                    return Outcome.ABORTED

                try:
                    received = await self._relay_once(backend_reader, client_writer)
                except (OSError, asyncio.TimeoutError) as e:
                    logger.debug(f"{address} -> {client_ip} response lost: {e!r}")
                    received = 0

                await self.registry.increment_requests(index)
        finally:
            await close_writer(backend_writer)
            await self._set_active_gauge(self.registry.backends[index])

        duration = (time.time() - start_time) * 1000
        logger.debug(
            f"{client_ip} -> {address}: {sent}B in, {received}B out "
            f"- {duration:.2f}ms"
        )
        if self.metrics:
            await self.metrics.increment_counter(
                "backend.requests.total", {"backend": str(address)}
            )
            await self.metrics.record_histogram(
                "backend.relay.latency.ms", duration, {"backend": str(address)}
            )
        return Outcome.FORWARDED

    async def _relay_once(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> int:
        data = await asyncio.wait_for(reader.read(self._read_size), self._timeout)
        if not data:
            return 0
        writer.write(data)
        await asyncio.wait_for(writer.drain(), self._timeout)
        return len(data)

    async def _reply(self, writer: asyncio.StreamWriter, payload: bytes):
        try:
            writer.write(payload)
            await asyncio.wait_for(writer.drain(), self._timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Could not deliver local response: {e!r}")

    async def _set_active_gauge(self, backend: Backend):
        if self.metrics:
            await self.metrics.set_gauge(
                "backend.active_connections",
                backend.active_connections,
                {"backend": str(backend.address)},
            )
