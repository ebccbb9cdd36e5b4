"""
Logging Configuration

Applications embedding the registry client call configure_logging() (or
configure_from_settings()) once at startup. Modules in this package obtain
their loggers through get_logger(), named after the component that logs.
"""
import structlog
import logging
import sys
from typing import List

# kazoo logs every reconnect attempt and ping at INFO
NOISY_LOGGERS = ("kazoo", "kazoo.client", "kazoo.protocol.connection", "asyncio")


def _processors(json_format: bool) -> List:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_format:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def configure_logging(
    service_name: str = "zkregistry",
    log_level: str = "INFO",
    json_format: bool = False
) -> None:
    """
    Configure structured logging for a process using registry clients.

    Args:
        service_name: Bound as ``service`` on every log line
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines instead of console output
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=_processors(json_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # force: reconfiguring replaces the handler instead of stacking another
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)

    structlog.contextvars.bind_contextvars(service=service_name)

    noisy_level = max(level, logging.WARNING)
    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(noisy_level)


def configure_from_settings(settings) -> None:
    """Configure logging from a Settings instance"""
    configure_logging(
        service_name=settings.REGISTRY_NAME,
        log_level=settings.LOG_LEVEL,
        json_format=settings.LOG_JSON or settings.is_production,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger named after a component, e.g. "registry-client" """
    return structlog.get_logger(name)
