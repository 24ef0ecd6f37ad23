import asyncio
import logging

from fakes import HEALTH_OK, FakeBackend, closed_port, wait_until
from relay.config import BackendAddress
from relay.health import HealthMonitor
from relay.metrics import MetricsCollector
from relay.registry import BackendRegistry


def probe(reply: bytes = HEALTH_OK, hold: bool = False) -> tuple[bool, bytes]:
    async def run():
        backend = await FakeBackend(reply=reply, hold=hold).start()
        registry = BackendRegistry([backend.address])
        monitor = HealthMonitor(registry, "unused", timeout=0.3)
        healthy = await monitor.probe(backend.address)
        await backend.close()
        return healthy, backend.received[0]

    return asyncio.run(run())


class TestProbe:
    def test_http11_200_is_healthy(self):
        assert probe(HEALTH_OK)[0] is True

    def test_http10_200_is_healthy(self):
        assert probe(b"HTTP/1.0 200 OK\r\n\r\n")[0] is True

    def test_non_200_is_unhealthy(self):
        assert probe(b"HTTP/1.1 500 Internal Server Error\r\n\r\n")[0] is False

    def test_garbage_is_unhealthy(self):
        assert probe(b"hello")[0] is False

    def test_empty_reply_is_unhealthy(self):
        assert probe(b"")[0] is False

    def test_silent_backend_times_out(self):
        assert probe(hold=True)[0] is False

    def test_sends_health_request(self):
        _, request = probe()
        assert request.startswith(b"GET /health HTTP/1.1\r\n")
        assert b"Host: 127.0.0.1\r\n" in request
        assert b"Connection: close\r\n" in request
        assert request.endswith(b"\r\n\r\n")

    def test_refused_is_unhealthy(self):
        address = BackendAddress("127.0.0.1", closed_port())
        monitor = HealthMonitor(BackendRegistry([address]), "unused", timeout=0.3)
        assert asyncio.run(monitor.probe(address)) is False


class TestProbeRound:
    def test_failure_only_affects_its_backend(self, tmp_path):
        status = tmp_path / "status.txt"

        async def run():
            ok_a = await FakeBackend(reply=HEALTH_OK).start()
            ok_b = await FakeBackend(reply=HEALTH_OK).start()
            dead = BackendAddress("127.0.0.1", closed_port())
            registry = BackendRegistry([ok_a.address, dead, ok_b.address])
            monitor = HealthMonitor(registry, status, timeout=0.3)
            await monitor.run_round()
            return registry, await registry.healthy_indices()

        registry, healthy = asyncio.run(run())
        assert healthy == [0, 2]
        lines = status.read_text().splitlines()
        assert lines[0] == "Health Status:"
        assert lines[1].endswith("[healthy] Requests: 0 Active: 0")
        assert lines[2] == f"{registry.address(1)} [unhealthy] Requests: 0 Active: 0"
        assert lines[3].endswith("[healthy] Requests: 0 Active: 0")

    def test_backend_recovers(self, tmp_path):
        async def run():
            backend = await FakeBackend(reply=HEALTH_OK).start()
            registry = BackendRegistry([backend.address])
            await registry.set_health(0, False)
            monitor = HealthMonitor(registry, tmp_path / "status.txt", timeout=0.3)
            await monitor.run_round()
            return await registry.healthy_indices()

        assert asyncio.run(run()) == [0]

    def test_records_metrics(self, tmp_path):
        metrics = MetricsCollector()

        async def run():
            dead = BackendAddress("127.0.0.1", closed_port())
            monitor = HealthMonitor(
                BackendRegistry([dead]),
                tmp_path / "status.txt",
                timeout=0.3,
                metrics=metrics,
            )
            await monitor.run_round()
            return await metrics.get_metrics()

        counters = asyncio.run(run())["counters"]["backend.health_check.total"]
        assert list(counters.values()) == [1]
        assert 'status="unhealthy"' in next(iter(counters))

    def test_unresolvable_host_name_is_unhealthy(self, tmp_path):
        status = tmp_path / "status.txt"

        async def run():
            backend = await FakeBackend(reply=HEALTH_OK).start()
            bad = BackendAddress("a" * 64 + ".example", 80)
            registry = BackendRegistry([bad, backend.address])
            monitor = HealthMonitor(registry, status, timeout=0.3)
            await monitor.run_round()
            return await registry.healthy_indices()

        assert asyncio.run(run()) == [1]
        assert "[unhealthy]" in status.read_text().splitlines()[1]

    def test_unexpected_error_stays_with_its_backend(self, tmp_path, caplog):
        status = tmp_path / "status.txt"

        async def run():
            backend = await FakeBackend(reply=HEALTH_OK).start()
            registry = BackendRegistry([BackendAddress("127.0.0.1", 1), backend.address])
            monitor = HealthMonitor(registry, status, timeout=0.3)
            real_probe = monitor.probe

            async def probe(address):
                if address.port == 1:
                    raise RuntimeError("boom")
                return await real_probe(address)

            monitor.probe = probe
            await monitor.run_round()
            return await registry.healthy_indices()

        with caplog.at_level(logging.ERROR, logger="relay.health"):
            assert asyncio.run(run()) == [1]
        assert "Unexpected error probing 127.0.0.1:1" in caplog.text
        assert status.exists()

    def test_unwritable_status_file_does_not_raise(self, tmp_path):
        async def run():
            backend = await FakeBackend(reply=HEALTH_OK).start()
            registry = BackendRegistry([backend.address])
            monitor = HealthMonitor(
                registry, tmp_path / "missing" / "status.txt", timeout=0.3
            )
            await monitor.run_round()
            return await registry.healthy_indices()

        assert asyncio.run(run()) == [0]


class TestMonitorLoop:
    def test_loop_probes_and_stops(self, tmp_path):
        status = tmp_path / "status.txt"

        async def run():
            dead = BackendAddress("127.0.0.1", closed_port())
            registry = BackendRegistry([dead])
            monitor = HealthMonitor(registry, status, interval=0.05, timeout=0.3)
            monitor.start()
            await wait_until(status.exists)
            await asyncio.wait_for(monitor.stop(), 2)
            return await registry.healthy_indices()

        assert asyncio.run(run()) == []
        assert "[unhealthy]" in status.read_text()

    def test_loop_survives_unresolvable_host_name(self, tmp_path):
        status = tmp_path / "status.txt"

        async def run():
            bad = BackendAddress("a" * 64 + ".example", 80)
            monitor = HealthMonitor(
                BackendRegistry([bad]), status, interval=0.05, timeout=0.3
            )
            monitor.start()
            await wait_until(status.exists)
            status.unlink()
            # a second round proves the loop is still running
            await wait_until(status.exists)
            alive = not monitor._task.done()
            await asyncio.wait_for(monitor.stop(), 2)
            return alive

        assert asyncio.run(run()) is True

    def test_no_probe_before_first_interval(self, tmp_path):
        status = tmp_path / "status.txt"

        async def run():
            dead = BackendAddress("127.0.0.1", closed_port())
            registry = BackendRegistry([dead])
            monitor = HealthMonitor(registry, status, interval=30, timeout=0.3)
            monitor.start()
            await asyncio.sleep(0.05)
            healthy = await registry.healthy_indices()
            await asyncio.wait_for(monitor.stop(), 2)
            return healthy

        assert asyncio.run(run()) == [0]
        assert not status.exists()
