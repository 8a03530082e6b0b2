"""
Fatal-Error Capture

A fatal-error handler bound to the request currently being dispatched.

The handler lives in a context variable. ``scoped_handler()`` installs it for
the duration of one dispatch and restores the previous value on every exit
path, so concurrent requests on the same event loop never see each other's
handler and nothing outlives the request.
"""

from __future__ import annotations

import contextlib
import inspect
import logging
import sys
from contextvars import ContextVar
from typing import Any, Callable, Iterator, Optional

from .config import MailExceptionConfig
from .report.formatter import build_report
from .report.models import (
    CapturedException,
    RequestContext,
    frames_from_stack,
    frames_from_traceback,
)

logger = logging.getLogger("mail_exception.capture")

# Marker set on exceptions that already produced a report
_REPORTED_ATTR = "__mail_exception_reported__"

_current_handler: ContextVar[Optional["FatalErrorHandler"]] = ContextVar(
    "mail_exception_handler", default=None
)


def current_handler() -> Optional["FatalErrorHandler"]:
    return _current_handler.get()


@contextlib.contextmanager
def scoped_handler(handler: "FatalErrorHandler") -> Iterator["FatalErrorHandler"]:
    token = _current_handler.set(handler)
    try:
        yield handler
    finally:
        _current_handler.reset(token)


def _already_reported(value: Any) -> bool:
    return isinstance(value, BaseException) and getattr(value, _REPORTED_ATTR, False)


def _mark_reported(value: Any) -> None:
    if isinstance(value, BaseException):
        try:
            setattr(value, _REPORTED_ATTR, True)
        except AttributeError:
            logger.debug("Cannot mark %s as reported", type(value).__name__)


class FatalErrorHandler:
    """
    Turns one failure of the current request into one email report.

    Parameters
    ----------
    config : MailExceptionConfig
        Resolved plugin configuration.
    request_context : callable
        Returns the ``RequestContext`` of the current request. Called lazily
        so the body read so far is included.
    """

    def __init__(
        self,
        config: MailExceptionConfig,
        request_context: Callable[[], RequestContext],
    ) -> None:
        self._config = config
        self._request_context = request_context

    def capture(self, value: Any, caller: Optional[Any] = None) -> CapturedException:
        context = self._config.context_lines

        if not isinstance(value, BaseException):
            frame = caller or sys._getframe(1)
            captured = CapturedException.from_value(
                value, frame.f_code.co_filename, frame.f_lineno, context
            )
            return captured.with_frames(
                frames_from_stack(frame, exclude_modules=(__package__,))
            )

        captured = CapturedException.from_exception(value, context)
        return captured.with_frames(
            frames_from_traceback(value, exclude_modules=(__package__,))
        )

    async def __call__(self, value: Any, caller: Optional[Any] = None) -> bool:
        """
        Report ``value`` once. Returns ``True`` if a report was handed to the
        send function. Never raises.
        """
        if _already_reported(value):
            return False
        _mark_reported(value)

        try:
            captured = self.capture(value, caller or sys._getframe(1))
            report = build_report(captured, self._request_context(), self._config)
        except Exception:
            logger.exception("Failed to build exception report")
            return False

        try:
            result = self._config.send(report, captured)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Failed to send exception report for %s", captured.message)

        return True


async def report_exception(value: Any) -> bool:
    """
    Report ``value`` through the handler of the request being dispatched.

    Use this for errors the application handles itself but still wants
    mailed. Returns ``False`` when called outside a wrapped request.
    """
    handler = current_handler()
    if handler is None:
        logger.warning("report_exception() called outside of a wrapped request")
        return False
    return await handler(value, sys._getframe(1))
