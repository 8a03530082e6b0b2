"""
Report Message

A multipart email that knows how to deliver itself. Composition uses the
standard library ``email`` package; delivery goes through ``aiosmtplib``.
"""

from __future__ import annotations

import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import aiosmtplib

from ..core.errors import ReportingError

logger = logging.getLogger("mail_exception.report")


class Report(MIMEMultipart):
    """
    Email carrying one captured exception.

    ``transport`` holds the SMTP settings used by :meth:`send`; a report built
    without one can still be inspected or handed to a custom send function.
    """

    def __init__(
        self,
        from_addr: str,
        to: str,
        subject: str,
        transport: Optional[Any] = None,
    ) -> None:
        super().__init__("mixed")
        self["From"] = from_addr
        self["To"] = to
        self["Subject"] = subject
        self.transport = transport

    def attach_text(
        self,
        text: str,
        filename: Optional[str] = None,
        disposition: Optional[str] = None,
    ) -> MIMEText:
        part = MIMEText(text, "plain", "utf-8")
        if disposition:
            if filename:
                part.add_header("Content-Disposition", disposition, filename=filename)
            else:
                part.add_header("Content-Disposition", disposition)
        self.attach(part)
        return part

    def add(self, name: str, value: str) -> None:
        """Add a header, keeping any existing header of the same name."""
        self[name] = value

    def _smtp_options(self) -> Dict[str, Any]:
        transport = self.transport
        options: Dict[str, Any] = {
            "hostname": transport.smtp_host,
            "port": transport.smtp_port,
            "use_tls": transport.smtp_use_tls,
            "start_tls": transport.smtp_start_tls,
            "timeout": transport.smtp_timeout,
        }
        if transport.smtp_username:
            options["username"] = transport.smtp_username
            if transport.smtp_password is not None:
                options["password"] = transport.smtp_password.get_secret_value()
        return options

    async def send(self) -> None:
        """
        Deliver the report over SMTP.

        Raises
        ------
        ReportingError
            If no transport is configured or the SMTP exchange fails.
        """
        if self.transport is None:
            raise ReportingError("report has no SMTP transport configured")

        try:
            await aiosmtplib.send(self, **self._smtp_options())
        except aiosmtplib.SMTPException as exc:
            raise ReportingError(f"SMTP delivery failed: {exc}") from exc
        except OSError as exc:
            raise ReportingError(
                f"SMTP server {self.transport.smtp_host}:{self.transport.smtp_port} "
                f"unreachable: {exc}"
            ) from exc

        logger.info("Exception report sent to %s", self["To"])
