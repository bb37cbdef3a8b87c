"""
Structured logging for the sidecar, built on structlog.

Log lines carry the component name plus whatever identity the coordinator
binds once it knows the driver (driver name, leader identity). Levels may
be given by name or as a klog-style verbosity number, which is how the
sidecar is usually configured in deployment manifests.
"""

import logging
import sys
from typing import Any, Union

import structlog
from structlog.types import EventDict, Processor

COMPONENT = "csi-provisioner"

# klog verbosity to stdlib level, anything above 4 is debug
_VERBOSITY_LEVELS = {0: logging.WARNING, 1: logging.INFO, 2: logging.INFO, 3: logging.INFO}


def resolve_level(level: Union[str, int]) -> int:
    """
    Translate a level name or a klog verbosity into a stdlib level.

    Args:
        level: "DEBUG".."ERROR", or a verbosity such as 2 or "5"

    Returns:
        Numeric logging level

    Raises:
        ValueError: If the level is neither
    """
    text = str(level).strip()
    if text.lstrip("-").isdigit():
        verbosity = int(text)
        if verbosity < 0:
            raise ValueError(f"verbosity must not be negative: {level!r}")
        return _VERBOSITY_LEVELS.get(verbosity, logging.DEBUG)

    numeric = logging.getLevelName(text.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"unknown log level: {level!r}")
    return numeric


def _add_component(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("component", COMPONENT)
    return event_dict


def configure_logging(
    log_level: Union[str, int] = "INFO",
    log_format: str = "json",
    log_output: str = "stderr",
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: Level name or klog verbosity
        log_format: json for machines, console for humans
        log_output: stdout or stderr
    """
    stream = sys.stdout if log_output == "stdout" else sys.stderr
    logging.basicConfig(format="%(message)s", stream=stream, level=resolve_level(log_level))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _add_component,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=stream.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_identity(**values: Any) -> None:
    """Attach values such as the driver name to every following log line."""
    structlog.contextvars.bind_contextvars(**{k: v for k, v in values.items() if v})


def clear_identity() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
