"""Loguru sinks for the core.

Every record carries ``extra["component"]``: ``core`` unless the module
logs through :func:`component_logger`. Sinks print it, and file sinks can
be scoped to a single component.
"""

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

DEFAULT_COMPONENT = "core"

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> <level>{level.name:.1}</level> "
    "<magenta>[{extra[component]}]</magenta> {message}"
)
_FILE_FORMAT = "{time:YYYY-MM-DDTHH:mm:ss.SSSZ} | {level} | {extra[component]} | {module}.{function}:{line} | {message}"

_STREAMS = ("stderr", "stdout")


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


def _component_filter(component: str | None) -> Callable[[dict], bool] | None:
    if component is None:
        return None
    return lambda record: record["extra"].get("component") == component


class ConsoleLogConsumer:
    def __init__(self, stream: str = "stderr", colorize: bool | None = None):
        if stream not in _STREAMS:
            raise ValueError(f"Console stream must be one of {_STREAMS}, got {stream!r}")
        self._stream = stream
        self._colorize = colorize

    def register(self, level: str) -> None:
        # Resolved at registration so redirected streams are honoured.
        logger.add(getattr(sys, self._stream), level=level, format=_CONSOLE_FORMAT, colorize=self._colorize)

    def describe(self, level: str) -> str:
        return f"console ({self._stream}, {level})"


class FileLogConsumer:
    """Rotating text log. ``component`` keeps only that component's records."""

    def __init__(
        self,
        path: str = ".counsel/core.log",
        rotation: str = "10 MB",
        retention: str = "14 days",
        component: str | None = None,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._component = component

    def sink_options(self) -> dict[str, Any]:
        return {"format": _FILE_FORMAT}

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            rotation=self._rotation,
            retention=self._retention,
            filter=_component_filter(self._component),
            **self.sink_options(),
        )

    def describe(self, level: str) -> str:
        scope = f", {self._component} only" if self._component else ""
        return f"file ({self._path}, {level}{scope})"


class PaymentAuditConsumer(FileLogConsumer):
    """JSON lines holding only ledger records.

    Support reconciles paid sessions and partial bookkeeping failures from
    this file without reading the main log.
    """

    def __init__(self, path: str = ".counsel/payments.jsonl", rotation: str = "50 MB", retention: str = "365 days"):
        super().__init__(path, rotation, retention, component="ledger")

    def sink_options(self) -> dict[str, Any]:
        return {"serialize": True}

    def describe(self, level: str) -> str:
        return f"payment audit ({self._path}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
    "payment_audit": PaymentAuditConsumer,
}

_DEFAULT_CONSUMERS: list[dict[str, Any]] = [
    {"type": "console"},
    {"type": "file"},
    {"type": "payment_audit"},
]


def component_logger(component: str):
    return logger.bind(component=component)


def _build_consumer(config: dict[str, Any]) -> LogConsumer | None:
    options = dict(config)
    cls = _CONSUMER_TYPES.get(options.pop("type", ""))
    options.pop("level", None)
    if cls is None:
        return None
    return cls(**options)


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace all sinks with the configured consumers.

    Each entry is ``{"type": ..., "level": ..., **consumer options}``.
    Returns a description of every sink that was registered.
    """
    logger.remove()
    logger.configure(extra={"component": DEFAULT_COMPONENT})

    descriptions: list[str] = []
    for config in _DEFAULT_CONSUMERS if consumers is None else consumers:
        consumer = _build_consumer(config)
        if consumer is None:
            logger.warning(f"Skipping unknown log consumer {config.get('type')!r}")
            continue
        sink_level = config.get("level", level)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))
    return descriptions
