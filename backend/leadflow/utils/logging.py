# backend/leadflow/utils/logging.py

import logging
import re
import sys
from contextlib import contextmanager
from typing import Optional

import structlog
from leadflow.config.settings import settings

# Every process (api, queue workers, scheduler) logs through the same
# structlog pipeline; stdlib records from the services and libraries are
# rendered by it as well.

HANDLER_NAME = "leadflow"

NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "apscheduler.executors.default": logging.WARNING,
    "httpx": logging.WARNING,
    "pymongo": logging.WARNING,
}

# WhatsApp numbers in E.164 without the plus sign
_PHONE = re.compile(r"(?<![\w.-])\+?(\d{6,11})(\d{4})\b")
_PHONE_KEYS = ("phone", "to_phone", "contact_phone", "wa_id")


def _mask(text: str) -> str:
    return _PHONE.sub(lambda m: "*" * len(m.group(1)) + m.group(2), text)


def mask_phone_numbers(_, __, event_dict):
    """Keeps only the last four digits of phone numbers, in the message and in known fields."""
    event = event_dict.get("event")
    if isinstance(event, str):
        event_dict["event"] = _mask(event)
    for key in _PHONE_KEYS:
        value = event_dict.get(key)
        if value is not None:
            event_dict[key] = _mask(str(value))
    return event_dict


def add_service(service: str):
    def processor(_, __, event_dict):
        event_dict.setdefault("service", service)
        return event_dict
    return processor


def _level(name: Optional[str]) -> int:
    level = logging.getLevelName((name or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(service: str = "api", level: Optional[str] = None):
    """
    Configures structlog on top of the standard logging module.

    ``service`` tags every record with the process that wrote it. The level
    comes from LOG_LEVEL unless given. Safe to call more than once: only the
    handler installed by a previous call is replaced.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service(service),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        mask_phone_numbers,
    ]

    if settings.environment == "development":
        final_processor = structlog.dev.ConsoleRenderer()
    else:
        final_processor = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=final_processor,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(_level(level or settings.log_level))

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)
    return handler


@contextmanager
def bind_execution(execution):
    """Tags every log line written while an execution is being driven."""
    with structlog.contextvars.bound_contextvars(
        execution_id=execution.id,
        flow_id=execution.flow_id,
        company_id=execution.company_id,
    ):
        yield
