"""
Exception Mail Plugin

Mails unhandled exceptions raised while dispatching HTTP requests in a
FastAPI / Starlette application.
"""

from .capture import current_handler, report_exception
from .config import MailExceptionConfig, MailExceptionSettings, send_report
from .core.errors import ConfigurationError, ReportingError
from .middleware import MailExceptionMiddleware, install
from .report.message import Report
from .report.models import CapturedException, Frame, RequestContext

__all__ = [
    "install",
    "MailExceptionMiddleware",
    "report_exception",
    "current_handler",
    "MailExceptionConfig",
    "MailExceptionSettings",
    "send_report",
    "ConfigurationError",
    "ReportingError",
    "Report",
    "CapturedException",
    "Frame",
    "RequestContext",
]
