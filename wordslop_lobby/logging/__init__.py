# wordslop_lobby/logging/__init__.py

from .logger_setup import (
    StructuredFormatter,
    StructuredLogger,
    close_all_rabbitmq_connections,
    get_structured_logger,
    setup_application_logging,
)
from .log_models import LogLevel, LogSection, LogSubsection, StructuredLogEntry
from .rabbitmq_handler import RabbitMQHandler

get_logger = get_structured_logger

__all__ = [
    'setup_application_logging',
    'get_structured_logger',
    'get_logger',
    'StructuredFormatter',
    'StructuredLogger',
    'StructuredLogEntry',
    'LogLevel',
    'LogSection',
    'LogSubsection',
    'RabbitMQHandler',
    'close_all_rabbitmq_connections',
]
