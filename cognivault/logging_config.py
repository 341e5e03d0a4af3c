"""
Structured logging for CogniVault.

Every module logs through the shared structlog `logger`. Request-scoped
values (request_id) are bound with structlog.contextvars in main.py and
merged into each event. Console output in development, JSON lines when
LOG_JSON is set.
"""
import logging
import sys
from typing import Dict

import structlog

SERVICE_NAME = "cognivault"

# Third-party loggers that are chatty at INFO
LIBRARY_LEVELS: Dict[str, int] = {
    "neo4j": logging.WARNING,
    "httpx": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sentence_transformers": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def _add_service(environment: str):
    def processor(_logger, _method_name, event_dict):
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("env", environment)
        return event_dict
    return processor


def setup_logging(log_level: str = "INFO", json_logs: bool = False, environment: str = "development"):
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_logs: JSON lines instead of the coloured console renderer
        environment: Added to every event as `env`

    Returns:
        A structlog logger bound to the new configuration
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level, force=True)
    for name, level in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(max(level, numeric_level))

    processors = [
        structlog.contextvars.merge_contextvars,
        _add_service(environment),
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        # main.py reconfigures after import; cached loggers would keep the old level
        cache_logger_on_first_use=False,
    )
    return structlog.get_logger()


logger = setup_logging()
