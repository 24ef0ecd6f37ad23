from abc import ABC, abstractmethod


class Scheduler(ABC):
    name: str

    @abstractmethod
    async def select(self, healthy: list[int], client_ip: str) -> int | None:
        """Pick one registry index from ``healthy``, or None if it is empty."""
        pass
