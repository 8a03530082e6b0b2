from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.errors import ConfigurationError


class MailExceptionSettings(BaseSettings):
    from_addr: str = "root@localhost"
    to: Union[str, List[str]] = "webmaster@localhost"
    subject: str = "Caught exception"

    # Added verbatim to every outgoing report
    headers: Dict[str, str] = {}

    # Source lines shown around the failing line
    context_lines: int = 3
    # Request body bytes kept for request.txt
    max_body_size: int = 65536

    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_username: Optional[str] = None
    smtp_password: Optional[SecretStr] = None
    smtp_use_tls: bool = False
    smtp_start_tls: bool = False
    smtp_timeout: float = 30.0

    model_config = SettingsConfigDict(
        env_prefix="MAIL_EXCEPTION_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("to")
    @classmethod
    def _join_recipients(cls, value: Union[str, List[str]]) -> str:
        if isinstance(value, str):
            return value
        return ", ".join(value)

    @field_validator("context_lines", "max_body_size")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value


settings = MailExceptionSettings()


SendFunction = Callable[[Any, Any], Any]


@dataclass(frozen=True)
class MailExceptionConfig:
    """
    Configuration resolved once at registration time.

    Instances are immutable for the lifetime of the process; the header
    mapping is exposed read-only.
    """

    from_addr: str
    to: str
    subject: str
    headers: Mapping[str, str]
    send: SendFunction
    settings: MailExceptionSettings

    @property
    def context_lines(self) -> int:
        return self.settings.context_lines

    @property
    def max_body_size(self) -> int:
        return self.settings.max_body_size


async def send_report(report: Any, exception: Any) -> None:
    """Default send function: the report delivers itself."""
    await report.send()


def _validate_headers(headers: Any) -> Dict[str, str]:
    if not isinstance(headers, Mapping):
        raise ConfigurationError("headers must be a mapping of header name to value")
    for name, value in headers.items():
        if not isinstance(name, str) or not isinstance(value, str):
            raise ConfigurationError(
                f"header {name!r} must map a string name to a string value"
            )
    return dict(headers)


def resolve_config(
    *,
    send: Optional[SendFunction] = None,
    headers: Optional[Mapping[str, str]] = None,
    from_addr: Optional[str] = None,
    to: Optional[Union[str, List[str]]] = None,
    subject: Optional[str] = None,
    base: Optional[MailExceptionSettings] = None,
) -> MailExceptionConfig:
    """
    Merge explicit options over ``base`` (or the environment settings) and
    validate the result.

    Empty ``from_addr``, ``to`` and ``subject`` values count as unset and
    fall back to ``base``.

    Raises
    ------
    ConfigurationError
        If ``send`` is not callable, ``headers`` is not a string mapping, or
        a value fails settings validation.
    """
    if send is not None and not callable(send):
        raise ConfigurationError(
            "send must be callable as send(report, exception), "
            f"got {type(send).__name__}"
        )

    base = base if base is not None else settings

    overrides: Dict[str, Any] = {}
    if headers is not None:
        overrides["headers"] = _validate_headers(headers)
    if from_addr:
        overrides["from_addr"] = from_addr
    if to:
        overrides["to"] = to
    if subject:
        overrides["subject"] = subject

    try:
        resolved = MailExceptionSettings.model_validate(
            {**base.model_dump(), **overrides}
        )
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc

    return MailExceptionConfig(
        from_addr=resolved.from_addr,
        to=resolved.to,
        subject=resolved.subject,
        headers=MappingProxyType(_validate_headers(resolved.headers)),
        send=send or send_report,
        settings=resolved,
    )
