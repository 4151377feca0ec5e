# wordslop_lobby/logging/logger_setup.py

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional

import pytz
from pythonjsonlogger import jsonlogger

from . import log_models
from .log_models import LogLevel, LogSection, LogSubsection, StructuredLogEntry
from .rabbitmq_handler import RabbitMQHandler

# Handlers that need an async close, registered by setup_application_logging
_rabbitmq_handlers: List[RabbitMQHandler] = []


class StructuredFormatter(jsonlogger.JsonFormatter):
    """Renders StructuredLogEntry records as-is and everything else through JsonFormatter."""

    def format(self, record):
        entry = getattr(record, "structured_data", None)
        if entry is not None:
            return entry.to_json_string()
        return super().format(record)


class StructuredLogger:
    """
    Thin wrapper over a stdlib logger. Every call needs a section and a
    subsection; `bind()` returns a copy that adds a user and/or lobby id to
    each entry it writes.
    """

    def __init__(self, logger_name: str, user_id: Optional[str] = None, lobby_id: Optional[str] = None):
        self.logger = logging.getLogger(logger_name)
        self.user_id = user_id
        self.lobby_id = lobby_id

    def bind(self, user_id: Optional[str] = None, lobby_id: Optional[str] = None) -> "StructuredLogger":
        return StructuredLogger(self.logger.name, user_id or self.user_id, lobby_id or self.lobby_id)

    @staticmethod
    def _caller(depth: int = 3) -> Dict[str, Any]:
        # _caller <- _log <- info/warning/... <- the code that logged
        try:
            frame = sys._getframe(depth)
        except ValueError:
            return {}
        return {
            "source_file": os.path.basename(frame.f_code.co_filename),
            "source_function": frame.f_code.co_name,
            "source_line": frame.f_lineno,
        }

    def _log(self, level: LogLevel, section: LogSection, subsection: str, message: str,
             extra_data: Optional[Dict[str, Any]] = None, user_id: Optional[str] = None,
             lobby_id: Optional[str] = None):
        levelno = getattr(logging, level.value)
        if not self.logger.isEnabledFor(levelno):
            return

        entry = StructuredLogEntry(
            level=level,
            section=section,
            subsection=subsection,
            message=message,
            extra_data={**(extra_data or {}), **self._caller()},
            user_id=user_id or self.user_id,
            lobby_id=lobby_id or self.lobby_id,
        )
        record = self.logger.makeRecord(self.logger.name, levelno, "", 0, message, (), None)
        record.structured_data = entry
        self.logger.handle(record)

    def debug(self, section: LogSection, subsection: str, message: str, **kwargs):
        self._log(LogLevel.DEBUG, section, subsection, message, **kwargs)

    def info(self, section: LogSection, subsection: str, message: str, **kwargs):
        self._log(LogLevel.INFO, section, subsection, message, **kwargs)

    def warning(self, section: LogSection, subsection: str, message: str, **kwargs):
        self._log(LogLevel.WARNING, section, subsection, message, **kwargs)

    def error(self, section: LogSection, subsection: str, message: str, **kwargs):
        self._log(LogLevel.ERROR, section, subsection, message, **kwargs)

    def critical(self, section: LogSection, subsection: str, message: str, **kwargs):
        self._log(LogLevel.CRITICAL, section, subsection, message, **kwargs)


def get_structured_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)


def setup_application_logging(settings=None):
    """
    Route every log record through the structured JSON formatter.

    Console and rotating file output are configured from Settings; WARNING and
    above additionally go to RabbitMQ when RABBITMQ_LOGGING is on.
    """
    if settings is None:
        from wordslop_lobby.core.config import settings

    log_models.log_timezone = pytz.timezone(settings.LOG_TIMEZONE)
    formatter = StructuredFormatter()
    handlers: List[logging.Handler] = []

    if settings.CONSOLE_LOGGING:
        handlers.append(logging.StreamHandler())

    if settings.LOG_FILE:
        log_dir = os.path.dirname(settings.LOG_FILE)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(RotatingFileHandler(
            settings.LOG_FILE,
            maxBytes=settings.LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        ))

    _rabbitmq_handlers.clear()
    if settings.RABBITMQ_LOGGING:
        rabbitmq_handler = RabbitMQHandler(settings.RABBITMQ_URL, settings.RABBITMQ_EXCHANGE,
                                           settings.RABBITMQ_ROUTING_KEY)
        handlers.append(rabbitmq_handler)
        _rabbitmq_handlers.append(rabbitmq_handler)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(settings.LOG_LEVEL.upper())
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    get_structured_logger(__name__).info(
        section=LogSection.SYSTEM,
        subsection=LogSubsection.SYSTEM.INITIALIZATION,
        message="Structured logging initialized",
        extra_data={
            "log_level": settings.LOG_LEVEL,
            "log_file": settings.LOG_FILE,
            "console": settings.CONSOLE_LOGGING,
            "rabbitmq": settings.RABBITMQ_LOGGING,
        }
    )


async def close_all_rabbitmq_connections():
    while _rabbitmq_handlers:
        handler = _rabbitmq_handlers.pop()
        logging.getLogger().removeHandler(handler)
        await handler.aclose()
