"""
Report Package

Captured-exception models, the report message and its formatter.
"""

from .formatter import build_report, compose_subject, format_exception, format_request
from .message import Report
from .models import CapturedException, Frame, RequestContext

__all__ = [
    "build_report",
    "compose_subject",
    "format_exception",
    "format_request",
    "Report",
    "CapturedException",
    "Frame",
    "RequestContext",
]
