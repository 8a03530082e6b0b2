"""
Report Formatter

Renders a captured exception and its request into a :class:`Report`.

Every function here is pure: the same captured exception, request context and
configuration always produce the same message.
"""

from __future__ import annotations

import logging
from email.charset import BASE64, Charset
from email.header import Header
from typing import List

from ..config import MailExceptionConfig
from .message import Report
from .models import CapturedException, RequestContext

logger = logging.getLogger("mail_exception.report")

DEFAULT_LINE_WIDTH = 5


def _utf8_base64() -> Charset:
    charset = Charset("utf-8")
    charset.header_encoding = BASE64
    return charset


def compose_subject(subject: str, request: RequestContext) -> str:
    """
    Return ``"<subject> (<METHOD>: <URL>)"``, MIME "B" encoded when it
    contains non-ASCII text.
    """
    text = "%s (%s: %s)" % (subject, request.method, request.url)
    if text.isascii():
        return text
    return Header(text, _utf8_base64()).encode()


def _line_width(captured: CapturedException) -> int:
    if captured.lines_after:
        return len(str(captured.lines_after[-1][0]))
    return DEFAULT_LINE_WIDTH


def format_exception(captured: CapturedException) -> str:
    width = _line_width(captured)
    out: List[str] = ["Exception\n", "~~~~~~~~~\n", captured.message, "\n"]

    for number, source in captured.lines_before:
        out.append("   %*d %s\n" % (width, number, source))
    out.append(" * %*d %s\n" % (width, captured.line[0], captured.line[1]))
    for number, source in captured.lines_after:
        out.append("   %*d %s\n" % (width, number, source))

    if captured.frames:
        out.extend(["\n", "Stack\n", "~~~~~\n"])
        for frame in captured.frames:
            out.append("    %s: %d\n" % (frame.file, frame.line))

    return "".join(out)


def format_request(request: RequestContext) -> str:
    indented = "".join("    " + line for line in request.text.splitlines(keepends=True))
    return "Request\n~~~~~~~\n" + indented


def encodable(text: str) -> str:
    """
    Make ``text`` safe to encode as UTF-8.

    Text carrying lone surrogates (for instance from ``surrogateescape``
    decoding) is replaced by its backslash-escaped form.
    """
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        logger.debug("Report text is not valid UTF-8, escaping it")
        return text.encode("utf-8", errors="backslashreplace").decode("utf-8")
    return text


def build_report(
    captured: CapturedException,
    request: RequestContext,
    config: MailExceptionConfig,
) -> Report:
    report = Report(
        from_addr=config.from_addr,
        to=config.to,
        subject=compose_subject(config.subject, request),
        transport=config.settings,
    )

    report.attach_text(encodable(format_exception(captured)))
    report.attach_text(
        encodable(format_request(request)),
        filename="request.txt",
        disposition="inline",
    )

    for name, value in config.headers.items():
        report.add(name, value)

    return report
