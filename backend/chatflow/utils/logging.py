# /chatflow/utils/logging.py

import logging
import re
import sys
from typing import Optional

import structlog

from chatflow.config.settings import settings

HANDLER_NAME = "chatflow"

# Chatty at INFO: one line per HTTP request or scheduler tick
QUIET_LOGGERS = ("uvicorn.access", "apscheduler", "httpx")

_BOT_TOKEN = re.compile(r"/bot[^/\s]+/")


def redact_bot_token(logger, method_name, event_dict):
    """Bot API urls carry the bot token in their path; it never reaches a log line."""
    for key, value in event_dict.items():
        if isinstance(value, str) and "/bot" in value:
            event_dict[key] = _BOT_TOKEN.sub("/bot<redacted>/", value)
    return event_dict


def setup_logging(level: Optional[int] = None) -> None:
    """
    Sends engine events (structlog) and service/library records (stdlib)
    to stdout through one processor chain: console output in development,
    JSON lines elsewhere. Calling it again replaces the earlier handler.
    """
    chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        redact_bot_token,
    ]
    development = settings.environment == "development"

    structlog.configure(
        processors=chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.name = HANDLER_NAME
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer() if development else structlog.processors.JSONRenderer(),
        foreign_pre_chain=chain,
    ))

    root = logging.getLogger()
    root.handlers = [h for h in root.handlers if h.name != HANDLER_NAME]
    root.addHandler(handler)
    root.setLevel(level or (logging.DEBUG if development else logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
