"""Notification fan-out.

One alert is rendered once per applicable template and delivered to every
target channel concurrently, each channel on its own worker. Every channel is
bounded by the same deadline counted from the start of the fan-out; a failure
or hang in one channel never cancels or delays its siblings. The dispatcher does
not retry: retries belong to the transports.

Usage::

    dispatcher = NotificationDispatcher(registry, build_backends())
    results = dispatcher.dispatch(alert, registry.list_channels(enabled_only=True))
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import UTC, datetime
from typing import Any

from lotysis_alerts.models import (
    Alert,
    Channel,
    ChannelTestStatus,
    ChannelType,
    DeliveryResult,
    Notification,
    Severity,
)
from lotysis_alerts.notify.channels import ChannelBackend
from lotysis_alerts.notify.registry import ChannelRegistry
from lotysis_alerts.notify.templates import (
    DEFAULT_TIMESTAMP_FORMAT,
    alert_context,
    render_template,
)

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_ID = "alert-triggered"


class NotificationDispatcher:
    """Render and fan out notifications, one worker per channel."""

    def __init__(
        self,
        registry: ChannelRegistry,
        backends: Mapping[ChannelType, ChannelBackend],
        channel_timeout: float = 10.0,
        timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._backends = dict(backends)
        self._channel_timeout = channel_timeout
        self._timestamp_format = timestamp_format
        self._clock = _clock or (lambda: datetime.now(tz=UTC))

    @property
    def registry(self) -> ChannelRegistry:
        return self._registry

    def dispatch(
        self,
        alert: Alert,
        channels: list[Channel],
        template_id: str = DEFAULT_TEMPLATE_ID,
        context: Mapping[str, Any] | None = None,
        extra_recipients: list[str] | None = None,
    ) -> list[DeliveryResult]:
        """Deliver *alert* to every channel. Never raises for a channel failure.

        Each channel gets *template_id* if the template applies to its type,
        otherwise the ``alert-triggered`` template; each distinct template
        is rendered once. Returns one result per channel, in the order given.
        """
        if not channels:
            return []

        values = alert_context(alert, extra=context)
        recipients = list(extra_recipients or [])
        rendered: dict[str, Notification] = {}
        notifications: list[Notification] = []
        for channel in channels:
            template = self._registry.template_or_default(template_id, channel.type)
            if template.id not in rendered:
                message = render_template(template, values, self._timestamp_format)
                if message.missing_variables:
                    logger.debug(
                        "Template %s rendered with unresolved placeholders: %s",
                        template.id, ", ".join(message.missing_variables),
                    )
                rendered[template.id] = Notification(
                    alert=alert, message=message, extra_recipients=recipients,
                )
            notifications.append(rendered[template.id])

        pool = ThreadPoolExecutor(
            max_workers=len(channels), thread_name_prefix="notify",
        )
        try:
            futures: list[tuple[Channel, Future[float]]] = [
                (channel, pool.submit(self._deliver, notification, channel))
                for channel, notification in zip(channels, notifications)
            ]
            deadline = time.monotonic() + self._channel_timeout
            results = [
                self._collect(channel, future, max(0.0, deadline - time.monotonic()))
                for channel, future in futures
            ]
        finally:
            # Hung workers are left to finish on their own.
            pool.shutdown(wait=False, cancel_futures=True)

        for result in results:
            if result.success:
                self._registry.mark_used(result.channel_id, result.delivered_at)
        return results

    def _deliver(self, notification: Notification, channel: Channel) -> float:
        backend = self._backends.get(channel.type)
        if backend is None:
            raise LookupError(f"No backend for channel type '{channel.type}'")
        start = time.monotonic()
        backend.deliver(notification, channel)
        return (time.monotonic() - start) * 1000

    def _collect(
        self, channel: Channel, future: Future[float], remaining: float,
    ) -> DeliveryResult:
        base: dict[str, Any] = {
            "channel_id": channel.id,
            "channel_name": channel.name,
            "channel_type": channel.type,
        }
        try:
            duration_ms = future.result(timeout=remaining)
        except FutureTimeout:
            future.cancel()
            logger.warning(
                "Delivery to channel %s timed out after %ss",
                channel.id, self._channel_timeout,
            )
            return DeliveryResult(
                **base,
                success=False,
                error=f"timed out after {self._channel_timeout:g}s",
                delivered_at=self._clock(),
                duration_ms=self._channel_timeout * 1000,
            )
        except Exception as exc:
            logger.warning("Delivery to channel %s failed: %s", channel.id, exc)
            return DeliveryResult(
                **base,
                success=False,
                error=str(exc) or type(exc).__name__,
                delivered_at=self._clock(),
            )
        return DeliveryResult(
            **base, success=True, delivered_at=self._clock(), duration_ms=duration_ms,
        )

    def test_channel(self, channel_id: str) -> DeliveryResult | None:
        """Send a synthetic alert to one channel and record its test status.

        Returns None if the channel does not exist. Disabled channels are
        tested too.
        """
        channel = self._registry.get_channel(channel_id)
        if channel is None:
            return None
        probe = Alert(
            id=f"test-{channel_id}",
            rule_id="channel-test",
            rule_name="Channel test",
            message=f"Test notification for channel {channel.name}",
            severity=Severity.MEDIUM,
            triggered_at=self._clock(),
            metric_value=75,
            threshold=80,
            metadata={"metric": "test", "operator": "gt", "channels": [channel_id]},
        )
        [result] = self.dispatch(probe, [channel])
        self._registry.set_test_status(
            channel_id,
            ChannelTestStatus.SUCCESS if result.success else ChannelTestStatus.FAILED,
        )
        return result
