"""
Metrics sinks.

The runtime reports counters (messages generated, regenerations, token usage,
function-call outcomes) to a 'MetricsSink'. Reporting is fire-and-forget:
callers go through 'emit_safely', so a broken sink is logged and otherwise
ignored, and can never fail a chat turn or a function call.
"""

from abc import ABC, abstractmethod
from collections import defaultdict

from loguru import logger


class MetricsSink(ABC):
    @abstractmethod
    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        pass


class NullMetricsSink(MetricsSink):
    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        pass


class LoggingMetricsSink(MetricsSink):
    """Keeps counters in process and logs every increment at DEBUG level."""

    def __init__(self) -> None:
        self.counters: defaultdict[tuple[str, tuple[tuple[str, str], ...]], int] = defaultdict(int)

    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        key = (name, tuple(sorted((tags or {}).items())))
        self.counters[key] += value
        logger.debug(f"metric {name} +{value} {tags or {}}")

    def get(self, name: str, tags: dict[str, str] | None = None) -> int:
        return self.counters.get((name, tuple(sorted((tags or {}).items()))), 0)

    def total(self, name: str) -> int:
        """Sum of a counter across all tag combinations."""
        return sum(value for (counter, _), value in self.counters.items() if counter == name)


def emit_safely(sink: MetricsSink, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
    try:
        sink.increment(name, value, tags)
    except Exception:
        logger.exception(f"Metrics sink {type(sink).__name__} failed on {name}; ignoring")
