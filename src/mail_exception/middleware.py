"""
Exception Mail Middleware

Registration entry point and the ASGI middleware that mails unhandled request
exceptions.

Usage
-----
    app = FastAPI()
    install(
        app,
        from_addr="robot@my.site.com",
        to="mail1@my.domain.com, mail2@his.domain.com",
        subject="My site crashed!",
        headers={"X-MySite": "crashed"},
    )

The middleware never produces a response of its own: after a report has been
handed to the send function the original exception is re-raised, and
Starlette's ``ServerErrorMiddleware`` answers the client as usual.
"""

from __future__ import annotations

import logging
from typing import List, Mapping, Optional, Union

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .capture import FatalErrorHandler, scoped_handler
from .config import MailExceptionConfig, MailExceptionSettings, SendFunction, resolve_config
from .report.models import RequestContext

logger = logging.getLogger("mail_exception.install")


class MailExceptionMiddleware:
    """Wraps every HTTP dispatch with a request-scoped fatal-error handler."""

    def __init__(self, app: ASGIApp, config: MailExceptionConfig) -> None:
        self.app = app
        self.config = config

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        body = bytearray()
        limit = self.config.max_body_size

        async def buffered_receive() -> Message:
            message = await receive()
            if message["type"] == "http.request" and len(body) < limit:
                body.extend(message.get("body", b"")[: limit - len(body)])
            return message

        handler = FatalErrorHandler(
            self.config,
            lambda: RequestContext.from_scope(scope, bytes(body)),
        )

        with scoped_handler(handler):
            try:
                await self.app(scope, buffered_receive, send)
            except Exception as exc:
                await handler(exc)
                raise


def install(
    app,
    *,
    send: Optional[SendFunction] = None,
    headers: Optional[Mapping[str, str]] = None,
    from_addr: Optional[str] = None,
    to: Optional[Union[str, List[str]]] = None,
    subject: Optional[str] = None,
    settings: Optional[MailExceptionSettings] = None,
) -> MailExceptionConfig:
    """
    Validate the configuration and register the middleware on ``app``.

    Explicit keyword options take precedence over ``settings``, which
    defaults to the ``MAIL_EXCEPTION_*`` environment.

    Raises
    ------
    ConfigurationError
        Immediately, before any request is served, if ``send`` is not
        callable or ``headers`` is not a mapping of strings.
    """
    config = resolve_config(
        send=send,
        headers=headers,
        from_addr=from_addr,
        to=to,
        subject=subject,
        base=settings,
    )

    app.add_middleware(MailExceptionMiddleware, config=config)

    logger.info(
        "Exception mails enabled: from=%s to=%s headers=%s",
        config.from_addr,
        config.to,
        sorted(config.headers),
    )
    return config
