"""Outbound transports used by channel backends.

- ``HttpTransport``: JSON POST with bounded exponential backoff
- ``MessageTransport`` protocol: ``(recipients, subject, body)`` senders
- ``SmtpTransport``: email over SMTP with STARTTLS

Retries live here and only here: a backend calls its transport once and
reports the final outcome.
"""

from __future__ import annotations

import json
import logging
import smtplib
import ssl
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Raised when a transport gives up on a send."""


class RetryPolicy(BaseModel):
    """Bounded exponential backoff."""

    max_attempts: int = Field(3, ge=1)
    base_delay: float = Field(0.5, ge=0)
    backoff_factor: float = Field(2.0, ge=1)
    max_delay: float = Field(8.0, ge=0)

    def delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based)."""
        return min(self.base_delay * self.backoff_factor ** (attempt - 1), self.max_delay)


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, urllib.error.HTTPError):
        return exc.code == 429 or exc.code >= 500
    return isinstance(exc, (urllib.error.URLError, TimeoutError, ConnectionError))


class HttpTransport:
    """POST JSON payloads. Uses stdlib urllib.request."""

    def __init__(
        self,
        retry: RetryPolicy | None = None,
        _sleep: Callable[[float], None] | None = None,
        _monotonic: Callable[[], float] | None = None,
    ) -> None:
        self._retry = retry or RetryPolicy()
        self._sleep = _sleep or time.sleep
        self._monotonic = _monotonic or time.monotonic

    @property
    def retry(self) -> RetryPolicy:
        return self._retry

    def post_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
    ) -> int:
        """POST *payload* and return the HTTP status.

        *timeout* bounds the whole call, retries and backoff included: no
        attempt starts or runs past it.

        Raises TransportError once retries are exhausted, the time budget
        is spent, or on a non-retryable failure.
        """
        body = json.dumps(payload, sort_keys=True).encode("utf-8")
        attempts = self._retry.max_attempts
        deadline = self._monotonic() + timeout
        for attempt in range(1, attempts + 1):
            remaining = deadline - self._monotonic()
            if remaining <= 0:
                raise TransportError(f"POST {url} timed out after {timeout:g}s")
            req = urllib.request.Request(
                url,
                data=body,
                headers={"Content-Type": "application/json", **(headers or {})},
                method="POST",
            )
            try:
                with urllib.request.urlopen(req, timeout=remaining) as resp:  # noqa: S310
                    return resp.status
            except Exception as exc:
                if not _is_retryable(exc):
                    raise TransportError(f"POST {url} failed: {exc}") from exc
                if attempt == attempts:
                    raise TransportError(
                        f"POST {url} failed after {attempts} attempts: {exc}"
                    ) from exc
                delay = self._retry.delay(attempt)
                if self._monotonic() + delay >= deadline:
                    raise TransportError(
                        f"POST {url} failed after {attempt} attempt(s), "
                        f"no retry fits in {timeout:g}s: {exc}"
                    ) from exc
                logger.warning(
                    "POST %s failed (attempt %d/%d): %s; retrying in %.1fs",
                    url, attempt, attempts, exc, delay,
                )
                self._sleep(delay)
        raise TransportError(f"POST {url} was never attempted")


@runtime_checkable
class MessageTransport(Protocol):
    """Protocol for email/SMS senders."""

    def send(self, recipients: list[str], subject: str, body: str) -> None:
        """Deliver one message to every recipient. Raise on failure."""
        ...


class SmtpTransport:
    """Send plain-text email over SMTP with STARTTLS."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        from_address: str = "alerts@localhost",
        from_name: str = "Lotysis Alerts",
        use_tls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._from_address = from_address
        self._from_name = from_name
        self._use_tls = use_tls
        self._timeout = timeout

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> SmtpTransport:
        return cls(
            host=config["host"],
            port=int(config.get("port", 587)),
            username=config.get("username"),
            password=config.get("password"),
            from_address=config.get("from_address", "alerts@localhost"),
            from_name=config.get("from_name", "Lotysis Alerts"),
            use_tls=bool(config.get("use_tls", True)),
            timeout=float(config.get("timeout", 10.0)),
        )

    def send(self, recipients: list[str], subject: str, body: str) -> None:
        if not recipients:
            raise TransportError("No email recipients")

        msg = MIMEText(body, "plain", "utf-8")
        msg["From"] = formataddr((self._from_name, self._from_address))
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)

        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                if self._use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self._username and self._password:
                    server.login(self._username, self._password)
                server.sendmail(self._from_address, recipients, msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportError(f"SMTP send to {self._host} failed: {exc}") from exc
        logger.info("Email sent to %d recipient(s): %s", len(recipients), subject)
