"""
Structured logging configuration.

Every reconciliation decision is logged as a structlog event. Request ids
and order numbers travel through contextvars so that events emitted deep in
the service layer still carry them.
"""
import logging
import sys
from typing import Any, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from payment_reconciliation.config import get_settings

NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "aiosqlite")


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Stamp every event with the application name and environment."""
    settings = get_settings()
    event_dict.setdefault("app_name", settings.app_name)
    event_dict.setdefault("app_env", settings.app_env)
    if settings.is_sandbox:
        event_dict.setdefault("gateway_mode", "sandbox")
    return event_dict


def bind_order_context(order_number: str, **extra: Any) -> None:
    """Attach an order number (and any extra keys) to subsequent events."""
    structlog.contextvars.bind_contextvars(order_number=order_number, **extra)


def _processors(json_output: bool) -> List[Any]:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_app_context,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    return processors


def _stdlib_handler(json_output: bool) -> logging.Handler:
    if not json_output:
        # CLI output goes to stdout; keep logs out of the way
        return logging.StreamHandler(sys.stderr)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={
                "asctime": "@timestamp",
                "levelname": "level",
                "name": "logger",
            },
        )
    )
    return handler


def setup_logging(json_output: bool = True, level: Optional[str] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        json_output: JSON lines for services, key/value lines for the CLI
        level: Overrides ``LOG_LEVEL`` from settings
    """
    settings = get_settings()
    log_level = (level or settings.log_level).upper()

    structlog.configure(
        processors=_processors(json_output),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level))
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(_stdlib_handler(json_output))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=log_level,
        json_output=json_output,
    )
