"""structlog configuration module."""

import logging
import sys

import structlog

# SDK loggers that are chatty at INFO (one line per HTTP call to Stripe/Supabase)
QUIET_LOGGERS = ("stripe", "httpx", "httpcore", "hpack")


def _renderer(debug: bool):
    if debug:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(debug: bool = False) -> None:
    """
    Configure structlog for the entitlements API.

    Debug mode renders coloured console lines; otherwise one JSON object per
    event, carrying the request_id/path/user_id bound by the middleware and
    the auth dependency.
    """
    level = logging.DEBUG if debug else logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(debug),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
