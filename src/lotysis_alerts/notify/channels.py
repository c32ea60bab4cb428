"""Channel backends: one payload shape per channel type.

Every backend receives the same ``Notification`` (alert plus rendered
subject/body) and the target ``Channel``, and raises on failure. The
dispatcher turns exceptions into failed ``DeliveryResult`` entries.

Built-in backends:
- WebhookBackend: generic JSON POST
- SlackBackend: Slack incoming webhook with a coloured attachment
- TeamsBackend: Office 365 connector MessageCard
- DiscordBackend: Discord webhook embed
- EmailBackend / SmsBackend: ``(recipients, subject, body)`` handed to a
  ``MessageTransport``

Custom backends just need a ``deliver(notification, channel) -> None`` method.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from lotysis_alerts.alerts.store import format_number
from lotysis_alerts.models import Channel, ChannelType, Notification, Severity
from lotysis_alerts.notify.transport import (
    HttpTransport,
    MessageTransport,
    TransportError,
)

SEVERITY_COLORS: dict[str, str] = {
    Severity.CRITICAL: "#FF0000",
    Severity.HIGH: "#FF8C00",
    Severity.MEDIUM: "#FFD700",
    Severity.LOW: "#0080FF",
}
DEFAULT_COLOR = "#808080"


class ChannelDeliveryError(Exception):
    """Raised when a notification could not be delivered to a channel."""


def severity_color(severity: str) -> str:
    return SEVERITY_COLORS.get(severity, DEFAULT_COLOR)


def _value_summary(notification: Notification) -> str:
    alert = notification.alert
    return (
        f"{format_number(alert.metric_value)} "
        f"(threshold: {format_number(alert.threshold)})"
    )


@runtime_checkable
class ChannelBackend(Protocol):
    """Protocol for channel delivery backends."""

    def deliver(self, notification: Notification, channel: Channel) -> None:
        """Deliver one notification. Raise ChannelDeliveryError on failure."""
        ...


class _HttpBackend:
    """Shared POST plumbing for the webhook-style backends."""

    url_key = "webhook_url"

    def __init__(
        self,
        http: HttpTransport | None = None,
        timeout: float = 10.0,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._http = http or HttpTransport()
        self._timeout = timeout
        self._clock = _clock or (lambda: datetime.now(tz=UTC))

    def _url(self, channel: Channel) -> str:
        url = channel.config.get(self.url_key)
        if not url:
            raise ChannelDeliveryError(
                f"Channel '{channel.id}' has no '{self.url_key}' configured"
            )
        return str(url)

    def _post(
        self,
        channel: Channel,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> None:
        try:
            self._http.post_json(
                self._url(channel), payload, headers=headers, timeout=self._timeout,
            )
        except TransportError as exc:
            raise ChannelDeliveryError(str(exc)) from exc


class WebhookBackend(_HttpBackend):
    url_key = "url"

    def build_payload(self, notification: Notification) -> dict[str, Any]:
        alert = notification.alert
        return {
            "alert_id": alert.id,
            "severity": str(alert.severity),
            "rule_name": alert.rule_name,
            "message": alert.message,
            "triggered_at": alert.triggered_at.isoformat(),
            "subject": notification.message.subject,
            "body": notification.message.body,
            "timestamp": self._clock().isoformat(),
        }

    def deliver(self, notification: Notification, channel: Channel) -> None:
        headers = {
            k: v for k, v in (channel.config.get("headers") or {}).items()
            if k.lower() != "content-type"
        }
        self._post(channel, self.build_payload(notification), headers=headers)


class SlackBackend(_HttpBackend):
    def build_payload(
        self, notification: Notification, channel: Channel,
    ) -> dict[str, Any]:
        alert = notification.alert
        payload: dict[str, Any] = {
            "attachments": [
                {
                    "color": severity_color(alert.severity),
                    "title": notification.message.subject,
                    "text": notification.message.body,
                    "fields": [
                        {"title": "Severity", "value": str(alert.severity), "short": True},
                        {"title": "Metric", "value": _value_summary(notification), "short": True},
                    ],
                    "ts": int(alert.triggered_at.timestamp()),
                },
            ],
        }
        for key in ("channel", "username", "icon_emoji"):
            if channel.config.get(key):
                payload[key] = channel.config[key]
        return payload

    def deliver(self, notification: Notification, channel: Channel) -> None:
        self._post(channel, self.build_payload(notification, channel))


class TeamsBackend(_HttpBackend):
    subtitle = "Lotysis monitoring"

    def build_payload(self, notification: Notification) -> dict[str, Any]:
        alert = notification.alert
        subject = notification.message.subject
        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": severity_color(alert.severity),
            "summary": subject,
            "sections": [
                {
                    "activityTitle": subject,
                    "activitySubtitle": self.subtitle,
                    "text": notification.message.body,
                    "facts": [
                        {"name": "Severity", "value": str(alert.severity)},
                        {"name": "Rule", "value": alert.rule_name},
                        {"name": "Value", "value": _value_summary(notification)},
                    ],
                },
            ],
        }

    def deliver(self, notification: Notification, channel: Channel) -> None:
        self._post(channel, self.build_payload(notification))


class DiscordBackend(_HttpBackend):
    def build_payload(self, notification: Notification) -> dict[str, Any]:
        alert = notification.alert
        return {
            "embeds": [
                {
                    "title": notification.message.subject,
                    "description": notification.message.body,
                    "color": int(severity_color(alert.severity).lstrip("#"), 16),
                    "fields": [
                        {"name": "Severity", "value": str(alert.severity), "inline": True},
                        {"name": "Value", "value": _value_summary(notification), "inline": True},
                        {"name": "Alert ID", "value": alert.id, "inline": False},
                    ],
                    "timestamp": alert.triggered_at.isoformat(),
                },
            ],
        }

    def deliver(self, notification: Notification, channel: Channel) -> None:
        self._post(channel, self.build_payload(notification))


class _MessageBackend:
    """Recipient-addressed delivery through a MessageTransport."""

    recipients_key = ""
    kind = ""

    def __init__(self, transport: MessageTransport | None = None) -> None:
        self._transport = transport

    def recipients(self, notification: Notification, channel: Channel) -> list[str]:
        configured = channel.config.get(self.recipients_key) or []
        if isinstance(configured, str):
            configured = [configured]
        merged = list(configured)
        for extra in notification.extra_recipients:
            if extra not in merged:
                merged.append(extra)
        return merged

    def deliver(self, notification: Notification, channel: Channel) -> None:
        if self._transport is None:
            raise ChannelDeliveryError(f"No {self.kind} transport configured")
        recipients = self.recipients(notification, channel)
        if not recipients:
            raise ChannelDeliveryError(
                f"Channel '{channel.id}' has no {self.kind} recipients"
            )
        try:
            self._transport.send(
                recipients, notification.message.subject, notification.message.body,
            )
        except Exception as exc:
            raise ChannelDeliveryError(f"{self.kind} send failed: {exc}") from exc


class EmailBackend(_MessageBackend):
    recipients_key = "to_emails"
    kind = "email"


class SmsBackend(_MessageBackend):
    recipients_key = "to_numbers"
    kind = "sms"


def build_backends(
    http: HttpTransport | None = None,
    email_transport: MessageTransport | None = None,
    sms_transport: MessageTransport | None = None,
    timeout: float = 10.0,
    _clock: Callable[[], datetime] | None = None,
) -> dict[ChannelType, ChannelBackend]:
    """Build one backend per channel type around shared transports."""
    http = http or HttpTransport()
    return {
        ChannelType.WEBHOOK: WebhookBackend(http, timeout, _clock),
        ChannelType.SLACK: SlackBackend(http, timeout, _clock),
        ChannelType.TEAMS: TeamsBackend(http, timeout, _clock),
        ChannelType.DISCORD: DiscordBackend(http, timeout, _clock),
        ChannelType.EMAIL: EmailBackend(email_transport),
        ChannelType.SMS: SmsBackend(sms_transport),
    }
