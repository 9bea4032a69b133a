"""Logging configuration for nodeforge.

Structured logging via loguru. Logging is disabled by default (library
behavior) and enabled by the CLI, or by calling setup_logging yourself.

Records carry the scope they were logged from as loguru extras: ``host``
for convergence on a machine, ``provider`` for backend calls and
``component`` for the orchestrator. Both sinks render that scope as a
short tag, so interleaved output from parallel hosts stays readable::

    12:04:31.207 | INFO     | node2    | nodeforge.convergence.engine:_converge_host:131 - ...
    12:04:31.212 | DEBUG    | vagrant  | nodeforge.providers.vagrant.provider:create:88 - ...

Example:
    from nodeforge.logging import LogConfig, setup_logging, teardown_logging

    handlers = setup_logging(LogConfig(level="DEBUG", file="nodeforge.log"))
    try:
        report = await orchestrator.up()
    finally:
        teardown_logging(handlers)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loguru import logger

logger.disable("nodeforge")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

# Most specific first: engine records on a host win over the provider.
SCOPE_KEYS = ("host", "provider", "component")
SCOPE_WIDTH = 8


def scope_of(extra: dict[str, Any]) -> str | None:
    """Key of the most specific scope bound on a record, if any."""
    return next((k for k in SCOPE_KEYS if k in extra), None)


def _scope_field(record: Any, width: int) -> str:
    key = scope_of(record["extra"])
    if key is None:
        return " " * width
    # Reference the extra instead of inlining it, so hostnames are never
    # parsed as format or markup.
    return f"{{extra[{key}]: <{width}}}"


def console_format(record: Any) -> str:
    return (
        "<green>{time:HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        f"<magenta>{_scope_field(record, SCOPE_WIDTH)}</magenta> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>\n{exception}"
    )


def file_format(record: Any) -> str:
    return (
        "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
        f"{_scope_field(record, SCOPE_WIDTH)} | "
        "{name}:{function}:{line} - {message} | {extra}\n{exception}"
    )


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum console log level.
        file: Path to log file. If provided, everything from DEBUG up is written there.
        console: Whether to log to stderr.
        rotation: File rotation policy (e.g., "50 MB", "1 day").
        retention: Number of old log files to keep.
        serialize: Write the log file as JSON lines instead of text, for
            feeding convergence runs into a log pipeline.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10
    serialize: bool = False


def setup_logging(config: LogConfig) -> list[int]:
    """Enable nodeforge logging and return the added handler IDs."""
    logger.enable("nodeforge")
    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(
            logger.add(
                sys.stderr,
                level=config.level,
                format=console_format,
                colorize=True,
                filter="nodeforge",
            )
        )

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handler_ids.append(
            logger.add(
                config.file,
                level="DEBUG",
                format="{message}" if config.serialize else file_format,
                serialize=config.serialize,
                rotation=config.rotation,
                retention=config.retention,
                diagnose=False,  # Don't expose credentials in tracebacks
                enqueue=True,
                filter="nodeforge",
            )
        )

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove handlers and disable logging again."""
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("nodeforge")
