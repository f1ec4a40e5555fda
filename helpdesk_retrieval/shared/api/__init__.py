"""
Shared API
==========

FastAPI middleware and exception handlers used by the host application.
"""

from helpdesk_retrieval.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
    status_code_for,
)

__all__ = [
    "CorrelationIDMiddleware",
    "LoggingMiddleware",
    "application_exception_handler",
    "global_exception_handler",
    "status_code_for",
]
