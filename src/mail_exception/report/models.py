"""
Report Models

Structured, immutable representations of a captured error and of the request
that triggered it. Both are built once per failing request and discarded
after the report has been sent.
"""

from __future__ import annotations

import linecache
import traceback
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, List, Sequence, Tuple

from starlette.requests import Request
from starlette.types import Scope


SourceLine = Tuple[int, str]


@dataclass(frozen=True)
class Frame:
    """One entry of the call stack attached to a captured exception."""
    file: str
    line: int
    function: str = ""


def _source_context(
    filename: str,
    lineno: int,
    context: int,
) -> Tuple[List[SourceLine], SourceLine, List[SourceLine]]:
    lines = linecache.getlines(filename)
    if not lines or not 0 < lineno <= len(lines):
        return [], (lineno, ""), []

    def numbered(start: int, stop: int) -> List[SourceLine]:
        return [(n, lines[n - 1].rstrip("\r\n")) for n in range(start, stop)]

    before = numbered(max(1, lineno - context), lineno)
    after = numbered(lineno + 1, min(len(lines), lineno + context) + 1)
    return before, (lineno, lines[lineno - 1].rstrip("\r\n")), after


@dataclass(frozen=True)
class CapturedException:
    """
    An error prepared for reporting.

    Attributes
    ----------
    message : str
        One-line summary, e.g. ``ZeroDivisionError: division by zero``.
    file : str
        Source file of the failing line.
    lines_before, lines_after : list of (line number, text)
        Source context around the failing line, in file order.
    line : (line number, text)
        The failing line itself.
    frames : list of Frame
        Call stack, innermost first. Empty until attached.
    exception : object
        The original raised value.
    """

    message: str
    file: str
    line: SourceLine
    lines_before: List[SourceLine] = field(default_factory=list)
    lines_after: List[SourceLine] = field(default_factory=list)
    frames: List[Frame] = field(default_factory=list)
    exception: Any = None

    @classmethod
    def from_exception(cls, exc: BaseException, context: int = 3) -> "CapturedException":
        """Build from a raised exception, using its innermost traceback entry."""
        message = "".join(traceback.format_exception_only(type(exc), exc)).strip()
        entries = traceback.extract_tb(exc.__traceback__)
        if not entries:
            return cls(message=message, file="", line=(0, ""), exception=exc)

        last = entries[-1]
        before, line, after = _source_context(last.filename, last.lineno or 0, context)
        return cls(
            message=message,
            file=last.filename,
            line=line,
            lines_before=before,
            lines_after=after,
            exception=exc,
        )

    @classmethod
    def from_value(
        cls,
        value: Any,
        file: str,
        lineno: int,
        context: int = 3,
    ) -> "CapturedException":
        """Wrap a value that is not an exception, located at ``file:lineno``."""
        before, line, after = _source_context(file, lineno, context)
        return cls(
            message=str(value),
            file=file,
            line=line,
            lines_before=before,
            lines_after=after,
            exception=value,
        )

    def with_frames(self, frames: Iterable[Frame]) -> "CapturedException":
        return replace(self, frames=list(frames))


def frames_from_traceback(
    exc: BaseException,
    exclude_modules: Sequence[str] = (),
) -> List[Frame]:
    """
    Walk the traceback of ``exc`` and return its frames innermost first,
    skipping frames whose module name starts with one of ``exclude_modules``.
    """
    frames: List[Frame] = []
    tb = exc.__traceback__
    while tb is not None:
        if not _excluded(tb.tb_frame.f_globals.get("__name__", ""), exclude_modules):
            code = tb.tb_frame.f_code
            frames.append(Frame(code.co_filename, tb.tb_lineno, code.co_name))
        tb = tb.tb_next
    frames.reverse()
    return frames


def _excluded(module: str, exclude_modules: Sequence[str]) -> bool:
    return any(module == m or module.startswith(m + ".") for m in exclude_modules)


def frames_from_stack(
    frame: Any,
    exclude_modules: Sequence[str] = (),
) -> List[Frame]:
    """Walk outward from ``frame`` and return the call stack innermost first."""
    frames: List[Frame] = []
    while frame is not None:
        if not _excluded(frame.f_globals.get("__name__", ""), exclude_modules):
            code = frame.f_code
            frames.append(Frame(code.co_filename, frame.f_lineno, code.co_name))
        frame = frame.f_back
    return frames


@dataclass(frozen=True)
class RequestContext:
    """The request that triggered a report: method, absolute URL, raw text."""
    method: str
    url: str
    text: str

    @classmethod
    def from_scope(cls, scope: Scope, body: bytes = b"") -> "RequestContext":
        request = Request(scope)
        return cls(
            method=request.method,
            url=str(request.url),
            text=render_request(scope, body),
        )


def render_request(scope: Scope, body: bytes = b"") -> str:
    """
    Render an HTTP request the way it arrived on the wire: request line,
    headers, a blank line, then the body decoded as UTF-8.
    """
    target = scope.get("raw_path") or scope.get("path", "/").encode("utf-8")
    query = scope.get("query_string") or b""
    if query:
        target += b"?" + query

    lines = [
        "%s %s HTTP/%s" % (
            scope.get("method", "GET"),
            target.decode("latin-1"),
            scope.get("http_version", "1.1"),
        )
    ]
    for name, value in scope.get("headers") or []:
        lines.append("%s: %s" % (name.decode("latin-1"), value.decode("latin-1")))
    lines.append("")

    text = "\n".join(lines) + "\n"
    if body:
        text += body.decode("utf-8", errors="replace")
    return text
