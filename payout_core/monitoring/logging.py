"""
Structured logging for the payout core.

Every service logs through structlog with snake_case event names and bound
ids (transaction_id, refund_id, dispute_id, batch_id). Output is one JSON
object per line on stdout; stdlib loggers (uvicorn, sqlalchemy, stripe)
share the same stream through python-json-logger.
"""
import logging
import sys
from typing import Any, Callable, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

from payout_core.config import Settings, get_settings

REDACTED = "[redacted]"

# Keys that may carry card data or credentials
SENSITIVE_KEYS = frozenset(
    {
        "payment_token",
        "card_number",
        "cvc",
        "stripe_secret_key",
        "api_key",
        "authorization",
    }
)

Processor = Callable[[Any, str, Dict[str, Any]], Dict[str, Any]]


def redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask payment tokens and credentials, including one level of nesting."""
    for key, value in list(event_dict.items()):
        if key in SENSITIVE_KEYS and value is not None:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if k in SENSITIVE_KEYS and v is not None else v
                for k, v in value.items()
            }
    return event_dict


def service_context(settings: Settings) -> Processor:
    """Processor stamping the service name and environment on each event."""

    def add_service_context(
        logger: Any, method_name: str, event_dict: Dict[str, Any]
    ) -> Dict[str, Any]:
        event_dict.setdefault("service", settings.app_name)
        event_dict.setdefault("env", settings.app_env)
        return event_dict

    return add_service_context


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the root logger.

    Args:
        settings: Source of the log level and service context (defaults to
            the cached settings)
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            service_context(settings),
            redact_sensitive,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    logging.getLogger("stripe").setLevel(max(level, logging.INFO))
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        storage_backend=settings.storage_backend,
    )
