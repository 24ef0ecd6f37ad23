import asyncio
import logging

from relay import (
    BackendRegistry,
    BalancerConfig,
    ConnectionForwarder,
    HealthMonitor,
    MetricsCollector,
    get_scheduler,
)

logger = logging.getLogger(__name__)


class LoadBalancer:
    def __init__(
        self,
        config: BalancerConfig | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.config = config or BalancerConfig()
        self.metrics = metrics
        self.registry = BackendRegistry(self.config.backends)
        self.scheduler = get_scheduler(self.config.algorithm, self.registry)
        self.forwarder = ConnectionForwarder(
            self.registry,
            self.scheduler,
            relay_timeout=self.config.relay_timeout,
            read_size=self.config.read_size,
            metrics=metrics,
        )
        self.monitor = HealthMonitor(
            self.registry,
            self.config.status_file,
            interval=self.config.health_check_interval,
            timeout=self.config.probe_timeout,
            read_size=self.config.probe_read_size,
            metrics=metrics,
        )
        self._server: asyncio.Server | None = None

    @property
    def port(self) -> int | None:
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self):
        """Bind the listening socket and start probing.

        Raises OSError when the port cannot be bound.
        """
        if self._server is not None:
            return
        # one task per accepted connection, spawned by the server itself
        self._server = await asyncio.start_server(
            self.forwarder.handle,
            self.config.listen_host,
            self.config.listen_port,
            reuse_address=True,
        )
        self.monitor.start()
        logger.info(
            f"Load balancer running on {self.config.listen_host}:{self.port} "
            f"({self.scheduler.name}, "
            f"{', '.join(str(b) for b in self.config.backends)})"
        )

    async def stop(self):
        """Stop accepting; in-flight forwarders are not drained."""
        if self._server is None:
            return
        self._server.close()
        self._server = None
        await self.monitor.stop()
        logger.info("Load balancer stopped")
