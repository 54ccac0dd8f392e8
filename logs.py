"""Structured logging with structlog.

``configure_logging`` is idempotent and called from ``create_app``. Request
handlers bind context (path, method, user_id, clinic_id) through structlog
contextvars so every event emitted during a request carries it.
"""

import logging
import sys

import structlog

_configured = False


def _level(name):
    return getattr(logging, str(name).upper(), logging.INFO)


def configure_logging(level='INFO', fmt='console'):
    global _configured
    if _configured:
        return

    logging.basicConfig(format='%(message)s', stream=sys.stdout, level=_level(level))

    renderer = structlog.processors.JSONRenderer() if fmt == 'json' else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt='iso', utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name=None):
    return structlog.get_logger(name)


def bind_request_context(**values):
    payload = {k: v for k, v in values.items() if v is not None}
    if payload:
        structlog.contextvars.bind_contextvars(**payload)


def clear_request_context():
    structlog.contextvars.clear_contextvars()
