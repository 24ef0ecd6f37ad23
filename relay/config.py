from dataclasses import dataclass, field


@dataclass(frozen=True)
class BackendAddress:
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def parse(cls, text: str) -> "BackendAddress":
        """Parse a ``host:port`` string."""
        host, sep, port = text.strip().rpartition(":")
        if not sep or not host:
            raise ValueError(f"backend must look like host:port, got {text!r}")
        try:
            port_num = int(port)
        except ValueError:
            raise ValueError(f"invalid port in backend {text!r}") from None
        if not 0 < port_num < 65536:
            raise ValueError(f"port out of range in backend {text!r}")
        try:
            host.encode("idna")
        except UnicodeError:
            raise ValueError(f"invalid host name in backend {text!r}") from None
        return cls(host, port_num)


DEFAULT_BACKENDS = (
    BackendAddress("127.0.0.1", 9001),
    BackendAddress("127.0.0.1", 9002),
    BackendAddress("127.0.0.1", 9003),
)


@dataclass
class BalancerConfig:
    listen_host: str = "0.0.0.0"
    listen_port: int = 8080
    backends: list[BackendAddress] = field(
        default_factory=lambda: list(DEFAULT_BACKENDS)
    )
    algorithm: str = "roundrobin"
    health_check_interval: float = 5.0
    probe_timeout: float = 2.0
    relay_timeout: float = 10.0
    status_file: str = "status.txt"
    read_size: int = 8192
    probe_read_size: int = 1024
