import asyncio
import logging
import os

import pytest
from unittest.mock import AsyncMock, patch
from fastapi import FastAPI, Request
from httpx import AsyncClient, ASGITransport

import mail_exception
from mail_exception import (
    CapturedException,
    MailExceptionSettings,
    Report,
    current_handler,
    install,
    report_exception,
)


class Outbox:
    """Send function that keeps every (report, exception) pair."""

    def __init__(self):
        self.sent = []

    def __call__(self, report, exception):
        self.sent.append((report, exception))


def create_app(send=None, **options) -> FastAPI:
    app = FastAPI()
    install(app, send=send, settings=MailExceptionSettings(), **options)

    @app.get("/widgets")
    async def widgets():
        return 1 / 0

    @app.post("/widgets")
    async def create_widget(request: Request):
        await request.body()
        raise RuntimeError("cannot store widget")

    @app.get("/ok")
    async def ok():
        assert current_handler() is not None
        return {"status": "ok"}

    @app.get("/handled")
    async def handled():
        try:
            {}["missing"]
        except KeyError as exc:
            return {"reported": await report_exception(exc)}

    @app.get("/reported-then-raised")
    async def reported_then_raised():
        try:
            raise LookupError("gone")
        except LookupError as exc:
            await report_exception(exc)
            raise

    return app


@pytest.fixture
def outbox():
    return Outbox()


async def send_request(app, method, path, **kwargs):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://host") as client:
        return await client.request(method, path, **kwargs)


def parts(report):
    return [part.get_payload(decode=True).decode("utf-8") for part in report.get_payload()]


@pytest.mark.asyncio
async def test_unhandled_exception_is_mailed_and_reraised(outbox):
    app = create_app(send=outbox)

    with pytest.raises(ZeroDivisionError) as excinfo:
        await send_request(app, "GET", "/widgets")

    assert len(outbox.sent) == 1
    report, captured = outbox.sent[0]

    assert isinstance(report, Report)
    assert isinstance(captured, CapturedException)
    assert captured.exception is excinfo.value
    assert report["Subject"] == "Caught exception (GET: http://host/widgets)"

    exception_text, request_text = parts(report)
    number, source = captured.line
    assert source.strip() == "return 1 / 0"
    assert "ZeroDivisionError: division by zero" in exception_text
    assert " * %d %s" % (number, source) in exception_text
    assert "Stack\n~~~~~\n    %s: %d\n" % (__file__, number) in exception_text

    assert report.get_payload()[1].get_filename() == "request.txt"
    assert request_text.startswith("Request\n~~~~~~~\n    GET /widgets HTTP/1.1\n")
    assert "    host: host\n" in request_text


@pytest.mark.asyncio
async def test_capture_frames_skip_plugin_code(outbox):
    app = create_app(send=outbox)

    with pytest.raises(ZeroDivisionError):
        await send_request(app, "GET", "/widgets")

    _, captured = outbox.sent[0]
    assert captured.frames[0].function == "widgets"
    plugin_dir = os.path.dirname(mail_exception.__file__)
    assert not any(frame.file.startswith(plugin_dir) for frame in captured.frames)


@pytest.mark.asyncio
async def test_configured_headers_are_added(outbox):
    app = create_app(send=outbox, headers={"X-Env": "staging"})

    with pytest.raises(ZeroDivisionError):
        await send_request(app, "GET", "/widgets")

    report, _ = outbox.sent[0]
    assert report.get_all("X-Env") == ["staging"]


@pytest.mark.asyncio
async def test_request_body_is_included(outbox):
    app = create_app(send=outbox)

    with pytest.raises(RuntimeError, match="cannot store widget"):
        await send_request(
            app,
            "POST",
            "/widgets",
            content=b'{"name": "gear"}',
            headers={"content-type": "application/json"},
        )

    report, _ = outbox.sent[0]
    _, request_text = parts(report)
    assert request_text.startswith("Request\n~~~~~~~\n    POST /widgets HTTP/1.1\n")
    assert request_text.endswith('\n    {"name": "gear"}')


@pytest.mark.asyncio
async def test_failing_send_does_not_mask_original_error(caplog):
    calls = []

    def broken_send(report, exception):
        calls.append(report)
        raise ConnectionRefusedError("smtp down")

    app = create_app(send=broken_send)

    with caplog.at_level(logging.ERROR, logger="mail_exception.capture"):
        with pytest.raises(ZeroDivisionError):
            await send_request(app, "GET", "/widgets")

    assert len(calls) == 1
    assert "Failed to send exception report" in caplog.text


@pytest.mark.asyncio
async def test_coroutine_send_is_awaited():
    send = AsyncMock()
    app = create_app(send=send)

    with pytest.raises(ZeroDivisionError):
        await send_request(app, "GET", "/widgets")

    send.assert_awaited_once()


@pytest.mark.asyncio
async def test_default_send_delivers_over_smtp():
    app = create_app()

    with patch("mail_exception.report.message.aiosmtplib.send", new_callable=AsyncMock) as smtp:
        with pytest.raises(ZeroDivisionError):
            await send_request(app, "GET", "/widgets")

    smtp.assert_awaited_once()
    message = smtp.call_args.args[0]
    assert message["From"] == "root@localhost"
    assert message["To"] == "webmaster@localhost"


@pytest.mark.asyncio
async def test_client_gets_framework_error_response(outbox):
    app = create_app(send=outbox)
    transport = ASGITransport(app=app, raise_app_exceptions=False)

    async with AsyncClient(transport=transport, base_url="http://host") as client:
        resp = await client.get("/widgets")

    assert resp.status_code == 500
    assert len(outbox.sent) == 1


@pytest.mark.asyncio
async def test_successful_request_sends_nothing(outbox):
    app = create_app(send=outbox)

    resp = await send_request(app, "GET", "/ok")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert outbox.sent == []


@pytest.mark.asyncio
async def test_handler_scoped_to_request(outbox):
    app = create_app(send=outbox)

    assert current_handler() is None
    await send_request(app, "GET", "/ok")
    assert current_handler() is None

    with pytest.raises(ZeroDivisionError):
        await send_request(app, "GET", "/widgets")
    assert current_handler() is None


@pytest.mark.asyncio
async def test_report_exception_inside_request(outbox):
    app = create_app(send=outbox)

    resp = await send_request(app, "GET", "/handled")

    assert resp.json() == {"reported": True}
    assert len(outbox.sent) == 1
    assert outbox.sent[0][1].message == "KeyError: 'missing'"


@pytest.mark.asyncio
async def test_reported_then_reraised_mails_once(outbox):
    app = create_app(send=outbox)

    with pytest.raises(LookupError):
        await send_request(app, "GET", "/reported-then-raised")

    assert len(outbox.sent) == 1


@pytest.mark.asyncio
async def test_report_exception_outside_request():
    assert await report_exception(RuntimeError("no request")) is False


@pytest.mark.asyncio
async def test_report_plain_value_inside_request(outbox):
    app = FastAPI()
    install(app, send=outbox, settings=MailExceptionSettings())

    @app.get("/warn")
    async def warn():
        return {"reported": await report_exception("quota almost exhausted")}

    resp = await send_request(app, "GET", "/warn")

    assert resp.json() == {"reported": True}
    _, captured = outbox.sent[0]
    assert captured.message == "quota almost exhausted"
    assert captured.file == __file__
    assert "report_exception" in captured.line[1]
    assert captured.frames[0].function == "warn"
    assert captured.frames[0].file == __file__

    exception_text, _ = parts(outbox.sent[0][0])
    assert "Stack\n~~~~~\n    %s: %d\n" % (__file__, captured.line[0]) in exception_text


@pytest.mark.asyncio
async def test_report_build_failure_is_swallowed(outbox, caplog):
    app = create_app(send=outbox)
    failure = patch("mail_exception.capture.build_report", side_effect=ValueError("bad template"))

    with failure, caplog.at_level(logging.ERROR, logger="mail_exception.capture"):
        with pytest.raises(ZeroDivisionError):
            await send_request(app, "GET", "/widgets")

    assert outbox.sent == []
    assert "Failed to build exception report" in caplog.text


@pytest.mark.asyncio
async def test_concurrent_requests_keep_their_own_handler(outbox):
    app = create_app(send=outbox)
    both_started = asyncio.Event()
    started = []

    async def wait_for_other():
        started.append(current_handler())
        if len(started) == 2:
            both_started.set()
        await both_started.wait()

    @app.get("/slow-fail")
    async def slow_fail():
        await wait_for_other()
        raise ValueError("slow failure")

    @app.get("/slow-ok")
    async def slow_ok():
        await wait_for_other()
        return {"status": "ok"}

    failed, succeeded = await asyncio.gather(
        send_request(app, "GET", "/slow-fail"),
        send_request(app, "GET", "/slow-ok"),
        return_exceptions=True,
    )

    assert isinstance(failed, ValueError)
    assert succeeded.status_code == 200
    assert started[0] is not started[1]

    assert len(outbox.sent) == 1
    report, _ = outbox.sent[0]
    _, request_text = parts(report)
    assert report["Subject"] == "Caught exception (GET: http://host/slow-fail)"
    assert "/slow-ok" not in request_text
    assert current_handler() is None
