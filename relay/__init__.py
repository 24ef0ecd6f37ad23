from .config import BackendAddress, BalancerConfig, DEFAULT_BACKENDS
from .metrics import MetricsCollector
from .registry import Backend, BackendRegistry
from .scheduler import Scheduler
from .scheduler_impl import (
    ALGORITHMS,
    RoundRobinScheduler,
    LeastConnectionsScheduler,
    IpHashScheduler,
    get_scheduler,
)
from .health import HealthMonitor
from .forwarder import ConnectionForwarder, Outcome
