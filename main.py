from balancer import LoadBalancer
from relay import ALGORITHMS, BackendAddress, BalancerConfig, DEFAULT_BACKENDS
from relay import MetricsCollector
from aiohttp import web
import argparse
import asyncio
import logging
import signal
import sys


def setup_logging(log_level: str, log_file: str | None):
    level = getattr(logging, log_level.upper())
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
    )
    return logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Health-checked single-shot TCP/HTTP load balancer"
    )
    parser.add_argument(
        "algorithm",
        nargs="?",
        default="roundrobin",
        help=f"Selection policy: {', '.join(ALGORITHMS)} "
        "(case-insensitive, unknown values use roundrobin)",
    )
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument(
        "--backend",
        dest="backends",
        action="append",
        metavar="HOST:PORT",
        help="Backend address, repeatable (default: 127.0.0.1:9001-9003)",
    )
    parser.add_argument(
        "--status-file", default="status.txt", help="Health snapshot file"
    )
    parser.add_argument(
        "--health-interval",
        type=float,
        default=5.0,
        help="Seconds between probe rounds",
    )
    parser.add_argument(
        "--metrics-port", type=int, default=9090, help="Port for metrics server"
    )
    parser.add_argument(
        "--enable-metrics",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Enable metrics collection",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument(
        "--log-file", default=None, help="Optional file path for logging"
    )
    return parser


def config_from_args(
    args: argparse.Namespace, parser: argparse.ArgumentParser
) -> BalancerConfig:
    backends = list(DEFAULT_BACKENDS)
    if args.backends:
        try:
            backends = [BackendAddress.parse(text) for text in args.backends]
        except ValueError as e:
            parser.error(str(e))
    return BalancerConfig(
        listen_port=args.port,
        backends=backends,
        algorithm=args.algorithm,
        health_check_interval=args.health_interval,
        status_file=args.status_file,
    )


def main():
    parser = build_parser()
    args = parser.parse_args()
    config = config_from_args(args, parser)

    logger = setup_logging(args.log_level, args.log_file)
    sys.exit(
        asyncio.run(run_app(config, args.metrics_port, args.enable_metrics, logger))
    )


async def run_app(
    config: BalancerConfig, metrics_port: int, enable_metrics: bool, logger
) -> int:
    metrics = MetricsCollector() if enable_metrics else None
    lb = LoadBalancer(config, metrics=metrics)
    shutdown_event = asyncio.Event()
    metrics_runner = None

    try:
        await lb.start()
    except OSError as e:
        logger.critical(f"Cannot listen on port {config.listen_port}: {e}")
        return 1

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    try:
        if metrics:
            metrics_app = web.Application()

            async def metrics_handler(request):
                accept = request.headers.get("Accept", "")
                if request.path.endswith("/json") or "application/json" in accept:
                    return web.json_response(await metrics.get_metrics())
                return web.Response(
                    text=await metrics.export_prometheus(), content_type="text/plain"
                )

            async def list_backends(request):
                return web.json_response(
                    {
                        "algorithm": lb.scheduler.name,
                        "backends": await lb.registry.describe(),
                    }
                )

            metrics_app.router.add_get("/metrics", metrics_handler)
            metrics_app.router.add_get("/metrics/json", metrics_handler)
            metrics_app.router.add_get("/_control/list", list_backends)

            metrics_runner = web.AppRunner(metrics_app)
            await metrics_runner.setup()
            metrics_site = web.TCPSite(metrics_runner, "127.0.0.1", metrics_port)
            try:
                await metrics_site.start()
            except OSError as e:
                logger.critical(f"Cannot listen on metrics port {metrics_port}: {e}")
                return 1
            logger.info(
                f"Metrics server running on http://127.0.0.1:{metrics_port}/metrics"
            )

        await shutdown_event.wait()
        logger.info("Shutdown requested")

    finally:
        await lb.stop()
        if metrics_runner:
            await metrics_runner.cleanup()

    return 0


if __name__ == "__main__":
    main()
