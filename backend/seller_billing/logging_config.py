"""structlog configuration module."""

import logging
import sys

import structlog

# Substrings of event keys whose values never reach the log output
SECRET_KEY_MARKERS = ("secret", "token", "authorization", "signature", "password", "api_key")

REDACTED = "[redacted]"


def redact_secrets(logger, method_name: str, event_dict: dict) -> dict:
    """structlog processor: mask values of secret-looking keys."""
    for key in list(event_dict):
        lowered = key.lower()
        if any(marker in lowered for marker in SECRET_KEY_MARKERS):
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(debug: bool = False) -> None:
    """
    Configure structlog and stdlib logging.

    In debug mode: colored, human-readable console output.
    In production mode: JSON output for log aggregation.

    Args:
        debug: If True, use ConsoleRenderer; otherwise use JSONRenderer.
    """

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id, method, path, seller_id
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if debug:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if debug else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # uvicorn and httpx log through stdlib
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.DEBUG if debug else logging.INFO,
    )
