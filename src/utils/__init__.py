"""Utility modules for the issue grouping service.

Provides:
- Structured logging configuration
"""

from .logging import configure_logging, get_logger, LogContext, log_operation

__all__ = [
    "configure_logging",
    "get_logger",
    "LogContext",
    "log_operation",
]
