"""
Error Types

This module defines the exception taxonomy used by the exception mailer.

Categories
----------
- Configuration errors: raised synchronously from ``install()`` and fatal to
  plugin setup.
- Reporting errors: raised while composing or delivering a report. These never
  leave the capture handler; they are logged and discarded there.

Application errors (the exceptions raised by request handlers) are not
wrapped: they are reported and then re-raised unchanged.
"""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised at registration time when the plugin configuration is invalid."""


class ReportingError(RuntimeError):
    """Raised when a report cannot be delivered."""
