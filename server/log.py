"""
structlog setup for the relay.
"""

import logging

import structlog


def configure_logging(level: str = "INFO", json_output: bool = False):
    """Configure structlog once at startup"""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=False,
    )


def short_id(session_id: str) -> str:
    """Truncated session id for log lines"""
    return session_id[:8] if session_id else "-"
