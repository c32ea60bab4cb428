"""``{{variable}}`` template rendering.

Placeholders are substituted from a flat context dict. A placeholder with no
value in the context is left verbatim and reported in
``RenderedMessage.missing_variables``; only strict rendering raises.
Timestamps (``datetime`` values, and ISO strings under ``*_at`` keys) are
formatted for humans.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from lotysis_alerts.alerts.store import format_number
from lotysis_alerts.models import (
    Alert,
    AlertRule,
    ChannelType,
    RenderedMessage,
    ServiceHealth,
    Template,
)

DEFAULT_TIMESTAMP_FORMAT = "%d/%m/%Y %H:%M:%S"

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class RenderError(Exception):
    """Raised in strict mode when a placeholder has no value."""


def _format_value(
    key: str, value: Any, timestamp_format: str,
) -> str:
    if isinstance(value, datetime):
        return value.strftime(timestamp_format)
    if isinstance(value, str) and key.endswith("_at"):
        try:
            return datetime.fromisoformat(value).strftime(timestamp_format)
        except ValueError:
            return value
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        return format_number(value)
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def render_text(
    text: str,
    context: Mapping[str, Any],
    timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT,
    missing: list[str] | None = None,
) -> str:
    """Substitute placeholders in *text*; unknown names are appended to *missing*."""

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in context or context[key] is None:
            if missing is not None and key not in missing:
                missing.append(key)
            return match.group(0)
        return _format_value(key, context[key], timestamp_format)

    return _PLACEHOLDER.sub(_sub, text)


def render_template(
    template: Template,
    context: Mapping[str, Any],
    timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT,
    strict: bool = False,
) -> RenderedMessage:
    missing: list[str] = []
    subject = render_text(template.subject, context, timestamp_format, missing)
    body = render_text(template.body, context, timestamp_format, missing)
    if strict and missing:
        raise RenderError(
            f"Template '{template.id}' has no value for: {', '.join(missing)}"
        )
    return RenderedMessage(subject=subject, body=body, missing_variables=missing)


def alert_context(
    alert: Alert,
    rule: AlertRule | None = None,
    extra: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Flatten an alert (and optionally its rule) into template variables."""
    context: dict[str, Any] = {
        "alert_id": alert.id,
        "rule_id": alert.rule_id,
        "rule_name": alert.rule_name,
        "message": alert.message,
        "severity": str(alert.severity),
        "severity_upper": str(alert.severity).upper(),
        "status": str(alert.status),
        "triggered_at": alert.triggered_at,
        "acknowledged_at": alert.acknowledged_at,
        "acknowledged_by": alert.acknowledged_by,
        "resolved_at": alert.resolved_at,
        "metric_value": alert.metric_value,
        "threshold": alert.threshold,
    }
    for key, value in alert.metadata.items():
        context.setdefault(key, value)
    if rule is not None:
        context.update({
            "metric": rule.metric,
            "operator": str(rule.operator),
            "rule_severity": str(rule.severity),
        })
    if extra:
        context.update(extra)
    return context


def health_report_context(
    status: str,
    results: Mapping[str, ServiceHealth],
    active_alerts: int,
    timestamp: datetime,
) -> dict[str, Any]:
    lines = [
        f"- {h.service}: {h.status}"
        + (f" ({h.error_message})" if h.error_message else "")
        for h in results.values()
    ]
    return {
        "status": status,
        "services": "\n".join(lines) or "- no services probed",
        "active_alerts": active_alerts,
        "timestamp": timestamp,
    }


_ALL_TYPES = list(ChannelType)

DEFAULT_TEMPLATES: tuple[Template, ...] = (
    Template(
        id="alert-triggered",
        name="Alert triggered",
        subject="[{{severity_upper}}] {{rule_name}}",
        body=(
            "Alert {{rule_name}} triggered at {{triggered_at}}.\n\n"
            "{{message}}\n\n"
            "Metric: {{metric}}\n"
            "Current value: {{metric_value}}\n"
            "Threshold: {{threshold}}\n"
            "Severity: {{severity}}"
        ),
        variables=[
            "severity_upper", "rule_name", "triggered_at", "message", "metric",
            "metric_value", "threshold", "severity",
        ],
        channel_types=_ALL_TYPES,
    ),
    Template(
        id="alert-escalated",
        name="Alert escalated",
        subject="[ESCALATION] {{rule_name}} unacknowledged",
        body=(
            "Alert {{rule_name}} has not been acknowledged for "
            "{{duration}} minutes.\n\n"
            "{{message}}\n\n"
            "Severity: {{severity}}\n"
            "Triggered at: {{triggered_at}}\n"
            "Immediate action required."
        ),
        variables=["rule_name", "duration", "message", "severity", "triggered_at"],
        channel_types=_ALL_TYPES,
    ),
    Template(
        id="system-health",
        name="System health report",
        subject="System health: {{status}}",
        body=(
            "System health report ({{timestamp}})\n\n"
            "Overall status: {{status}}\n"
            "Active alerts: {{active_alerts}}\n\n"
            "Services:\n{{services}}"
        ),
        variables=["status", "timestamp", "active_alerts", "services"],
        channel_types=[ChannelType.EMAIL, ChannelType.SLACK, ChannelType.TEAMS],
    ),
)


def default_templates() -> list[Template]:
    return [t.model_copy(deep=True) for t in DEFAULT_TEMPLATES]
