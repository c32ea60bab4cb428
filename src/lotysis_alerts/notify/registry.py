"""Channel and template registry (CRUD, defaults, persistence)."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from lotysis_alerts.models import Channel, ChannelTestStatus, ChannelType, Template
from lotysis_alerts.notify.templates import DEFAULT_TEMPLATES, default_templates

logger = logging.getLogger(__name__)

FALLBACK_TEMPLATE_ID = "alert-triggered"


def default_channels(browser_url: str | None = None) -> list[Channel]:
    """Channels installed when none are persisted.

    The browser hook is enabled only when *browser_url* is given; every
    other default ships disabled until configured.
    """
    return [
        Channel(
            id="browser",
            name="Browser notifications",
            type=ChannelType.WEBHOOK,
            enabled=browser_url is not None,
            config={"url": browser_url} if browser_url else {},
        ),
        Channel(
            id="email-admin",
            name="Administrator email",
            type=ChannelType.EMAIL,
            enabled=False,
            config={"to_emails": ["admin@lotysis.com"]},
        ),
        Channel(
            id="sms-admin",
            name="Administrator SMS",
            type=ChannelType.SMS,
            enabled=False,
            config={"to_numbers": []},
        ),
        Channel(
            id="webhook-generic",
            name="Generic webhook",
            type=ChannelType.WEBHOOK,
            enabled=False,
            config={"url": "", "headers": {}},
        ),
        Channel(
            id="slack-alerts",
            name="Slack #alerts",
            type=ChannelType.SLACK,
            enabled=False,
            config={
                "webhook_url": "",
                "channel": "#alerts",
                "username": "Lotysis Monitor",
                "icon_emoji": ":warning:",
            },
        ),
    ]


class ChannelRegistry:
    """Holds channels and templates. Thread-safe via a single lock."""

    def __init__(
        self,
        channels: Iterable[Channel] | None = None,
        templates: Iterable[Template] | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._clock = _clock or (lambda: datetime.now(tz=UTC))
        self._lock = threading.Lock()
        self._channels: dict[str, Channel] = {c.id: c for c in channels or []}
        self._templates: dict[str, Template] = {t.id: t for t in templates or []}

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def add_channel(self, channel: Channel) -> Channel:
        with self._lock:
            if channel.id in self._channels:
                raise ValueError(f"Channel '{channel.id}' already exists")
            self._channels[channel.id] = channel
        return channel

    def update_channel(self, channel_id: str, **changes: Any) -> Channel | None:
        """Apply *changes* to a channel. Returns None if not found."""
        with self._lock:
            existing = self._channels.get(channel_id)
            if existing is None:
                return None
            changes.pop("id", None)
            updated = Channel(**{**existing.model_dump(), **changes})
            self._channels[channel_id] = updated
        return updated

    def delete_channel(self, channel_id: str) -> bool:
        with self._lock:
            return self._channels.pop(channel_id, None) is not None

    def get_channel(self, channel_id: str) -> Channel | None:
        with self._lock:
            return self._channels.get(channel_id)

    def list_channels(self, enabled_only: bool = False) -> list[Channel]:
        with self._lock:
            channels = list(self._channels.values())
        if enabled_only:
            channels = [c for c in channels if c.enabled]
        return channels

    def resolve_channels(
        self, channel_ids: Iterable[str],
    ) -> tuple[list[Channel], list[str]]:
        """Split ids into known channels and unknown ids, keeping order."""
        found: list[Channel] = []
        unknown: list[str] = []
        with self._lock:
            for cid in channel_ids:
                channel = self._channels.get(cid)
                if channel is None:
                    unknown.append(cid)
                else:
                    found.append(channel)
        return found, unknown

    def mark_used(self, channel_id: str, when: datetime | None = None) -> None:
        with self._lock:
            channel = self._channels.get(channel_id)
            if channel is not None:
                self._channels[channel_id] = channel.model_copy(
                    update={"last_used": when or self._clock()},
                )

    def set_test_status(self, channel_id: str, status: ChannelTestStatus) -> None:
        with self._lock:
            channel = self._channels.get(channel_id)
            if channel is not None:
                self._channels[channel_id] = channel.model_copy(
                    update={"test_status": status},
                )

    def load_channels(self, channels: Iterable[Channel | dict[str, Any]]) -> int:
        loaded = _parse_all(Channel, channels, "channel")
        with self._lock:
            self._channels = {c.id: c for c in loaded}
        return len(loaded)

    def export_channels(self) -> list[dict[str, Any]]:
        return [c.model_dump(mode="json") for c in self.list_channels()]

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def add_template(self, template: Template) -> Template:
        with self._lock:
            if template.id in self._templates:
                raise ValueError(f"Template '{template.id}' already exists")
            self._templates[template.id] = template
        return template

    def update_template(self, template_id: str, **changes: Any) -> Template | None:
        with self._lock:
            existing = self._templates.get(template_id)
            if existing is None:
                return None
            changes.pop("id", None)
            updated = Template(**{**existing.model_dump(), **changes})
            self._templates[template_id] = updated
        return updated

    def delete_template(self, template_id: str) -> bool:
        with self._lock:
            return self._templates.pop(template_id, None) is not None

    def get_template(self, template_id: str) -> Template | None:
        with self._lock:
            return self._templates.get(template_id)

    def template_or_default(
        self, template_id: str, channel_type: ChannelType | None = None,
    ) -> Template:
        """Look up a template, falling back to the built-in one of the same id,
        then to ``alert-triggered``.

        With *channel_type*, a template whose ``channel_types`` exclude that
        type is replaced by ``alert-triggered`` for the channel.
        """
        template = self._lookup_template(template_id)
        if (
            channel_type is None
            or template.applies_to(channel_type)
            or template.id == FALLBACK_TEMPLATE_ID
        ):
            return template
        logger.debug(
            "Template %s does not apply to %s channels, using %s",
            template.id, channel_type, FALLBACK_TEMPLATE_ID,
        )
        return self._lookup_template(FALLBACK_TEMPLATE_ID)

    def _lookup_template(self, template_id: str) -> Template:
        template = self.get_template(template_id)
        if template is not None:
            return template
        builtin = {t.id: t for t in DEFAULT_TEMPLATES}
        if template_id in builtin:
            return builtin[template_id]
        logger.warning("Unknown template '%s', using %s", template_id, FALLBACK_TEMPLATE_ID)
        return builtin[FALLBACK_TEMPLATE_ID]

    def channels_for_template(self, template_id: str) -> list[Channel]:
        """Enabled channels whose type the template applies to."""
        template = self._lookup_template(template_id)
        return [
            c for c in self.list_channels(enabled_only=True) if template.applies_to(c.type)
        ]

    def list_templates(self) -> list[Template]:
        with self._lock:
            return list(self._templates.values())

    def load_templates(self, templates: Iterable[Template | dict[str, Any]]) -> int:
        loaded = _parse_all(Template, templates, "template")
        with self._lock:
            self._templates = {t.id: t for t in loaded}
        return len(loaded)

    def export_templates(self) -> list[dict[str, Any]]:
        return [t.model_dump(mode="json") for t in self.list_templates()]

    @classmethod
    def with_defaults(
        cls,
        browser_url: str | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> ChannelRegistry:
        return cls(default_channels(browser_url), default_templates(), _clock=_clock)


def _parse_all(model: type, items: Iterable[Any], kind: str) -> list[Any]:
    parsed = []
    for raw in items:
        if isinstance(raw, model):
            parsed.append(raw)
            continue
        try:
            parsed.append(model(**raw))
        except (ValidationError, TypeError) as exc:
            logger.warning("Skipping invalid %s %r: %s", kind, raw, exc)
    return parsed
