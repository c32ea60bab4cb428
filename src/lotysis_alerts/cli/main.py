"""lotysis-alerts CLI: operator interface for the alerting engine.

Commands:
    init              Scaffold a config file and state store
    run               Run the engine until interrupted
    collect           Sample metrics once and evaluate rules
    status            Show system status
    alerts list       List alerts
    alerts ack        Acknowledge an alert
    alerts resolve    Resolve an alert
    audit show        Show recent audit entries
    channels list     List notification channels
    channels test     Send a test notification to a channel
    config export     Export all engine state as JSON
    config import     Import engine state from JSON
"""

from __future__ import annotations

import json
import logging
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import click

from lotysis_alerts import __version__
from lotysis_alerts.alerts.store import AlertNotFoundError
from lotysis_alerts.config import CONFIG_FILENAME, EngineConfig, load_config
from lotysis_alerts.engine import AlertingEngine
from lotysis_alerts.models import AlertStatus, AuditAction, HealthStatus
from lotysis_alerts.store.base import PersistenceError
from lotysis_alerts.store.sqlite import SqliteStore

DEFAULT_STORE = "./lotysis-alerts.db"

_SEVERITY_COLORS = {
    "low": "blue", "medium": "yellow", "high": "red", "critical": "magenta",
}
_STATUS_COLORS = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.DEGRADED: "yellow",
    HealthStatus.UNHEALTHY: "red",
}


def _severity_badge(severity: str) -> str:
    color = _SEVERITY_COLORS.get(severity, "white")
    return click.style(f"[{severity}]", fg=color)


def _load(config_path: str | None) -> EngineConfig:
    try:
        return load_config(config_path)
    except (FileNotFoundError, ValueError) as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)


@contextmanager
def _engine(config_path: str | None) -> Iterator[AlertingEngine]:
    """Open the configured store, yield an engine, stop it afterwards."""
    cfg = _load(config_path)
    try:
        store = SqliteStore(cfg.store_path or DEFAULT_STORE)
    except PersistenceError as exc:
        click.echo(f"Store error: {exc}", err=True)
        sys.exit(1)
    engine = AlertingEngine(cfg, store=store)
    try:
        yield engine
    finally:
        engine.stop(grace=cfg.shutdown_grace)
        store.close()


config_option = click.option(
    "--config", "config_path", default=None,
    help=f"Path to {CONFIG_FILENAME} (default: auto-discover)",
)
json_option = click.option("--json-output", is_flag=True, help="Output as JSON")


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Lotysis alerts: metrics-driven alerting engine."""


# --- init command ---


_INIT_CONFIG = """\
# Lotysis alerting engine configuration

# State store (relative to this file)
store_path: ./lotysis-alerts.db

# Cadences, in seconds
metrics_interval: 30
health_interval: 60
escalation_interval: 120

# Services probed by the health checker
# api_url: http://127.0.0.1:3000/api/health
# external_api_url: https://example.com/health

# Browser notification hook (enables the default "browser" channel)
# browser_webhook_url: http://127.0.0.1:3000/api/notifications

# smtp:
#   host: smtp.example.com
#   port: 587
#   username: alerts
#   password: change-me
#   from_address: alerts@example.com
"""


@cli.command()
@click.argument("directory", default=".")
def init(directory: str) -> None:
    """Scaffold a config file and initialise the state store."""
    root = Path(directory)
    root.mkdir(parents=True, exist_ok=True)

    config_file = root / CONFIG_FILENAME
    if config_file.exists():
        click.echo(f"  skip  {CONFIG_FILENAME} (already exists)")
    else:
        config_file.write_text(_INIT_CONFIG, encoding="utf-8")
        click.echo(click.style("Created:", fg="green", bold=True))
        click.echo(f"  + {CONFIG_FILENAME}")

    with _engine(str(config_file)) as engine:
        engine.persist()
        rules = engine.rules.list_rules()
        channels = engine.registry.list_channels()
    click.echo(
        f"\nState store ready: {len(rules)} rule(s), {len(channels)} channel(s)."
    )


# --- run command ---


@cli.command()
@config_option
@click.option(
    "--log-level", default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level",
)
def run(config_path: str | None, log_level: str) -> None:
    """Run the engine until interrupted (Ctrl+C)."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    with _engine(config_path) as engine:
        engine.start()
        click.echo("Alerting engine running. Press Ctrl+C to stop.")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            click.echo("\nStopping...")


# --- collect command ---


@cli.command()
@config_option
@json_option
def collect(config_path: str | None, json_output: bool) -> None:
    """Sample metrics once and evaluate rules against the snapshot."""
    with _engine(config_path) as engine:
        before = {a.id for a in engine.alerts.list()}
        snapshot = engine.collect_now()
        engine.wait_for_dispatches(timeout=engine.config.channel_timeout * 2)
        triggered = [a for a in engine.alerts.list() if a.id not in before]

    if json_output:
        click.echo(json.dumps({
            "snapshot": snapshot.model_dump(mode="json"),
            "triggered": [a.model_dump(mode="json") for a in triggered],
        }, indent=2))
        return

    click.echo(click.style("Snapshot", bold=True) + f"  {snapshot.timestamp.isoformat()[:19]}")
    for field, value in snapshot.model_dump(exclude={"timestamp", "errors"}).items():
        click.echo(f"  {field:<16} {value:>10.1f}")
    for field, error in snapshot.errors.items():
        click.echo(click.style(f"  ! {field}: {error}", fg="yellow"))
    if triggered:
        click.echo(click.style(f"\n{len(triggered)} alert(s) triggered:", bold=True))
        for alert in triggered:
            click.echo(f"  {_severity_badge(alert.severity)} {alert.message}")
    else:
        click.echo("\nNo alerts triggered.")


# --- status command ---


@cli.command()
@config_option
@json_option
@click.option("--refresh/--no-refresh", default=True, help="Run health checks first")
@click.option(
    "--send-report", is_flag=True, help="Send the system-health report to its channels",
)
def status(
    config_path: str | None, json_output: bool, refresh: bool, send_report: bool,
) -> None:
    """Show overall status, service health and open alerts."""
    with _engine(config_path) as engine:
        report = engine.system_status(refresh=refresh)
        delivered = engine.report_health(report.services) if send_report else []

    if json_output:
        click.echo(json.dumps(report.model_dump(mode="json"), indent=2))
        return

    color = _STATUS_COLORS.get(report.status, "white")
    click.echo(
        "Status: " + click.style(report.status.value.upper(), fg=color, bold=True)
    )
    for name, health in report.services.items():
        line = f"  {name:<16} {health.status.value:<10} {health.response_time_ms:>8.1f} ms"
        if health.error_message:
            line += f"  {health.error_message}"
        click.echo(line)
    click.echo(f"Active alerts: {report.active_alerts}")
    for severity, count in sorted(report.active_by_severity.items()):
        click.echo(f"  {_severity_badge(severity)} {count}")
    if send_report:
        sent = sum(1 for r in delivered if r.success)
        click.echo(f"Health report sent to {sent}/{len(delivered)} channel(s)")


# --- alerts group ---


@cli.group()
def alerts() -> None:
    """Alert lifecycle commands."""


@alerts.command("list")
@config_option
@json_option
@click.option(
    "--status", "status_filter", default=None,
    type=click.Choice([s.value for s in AlertStatus]),
    help="Filter by status",
)
def alerts_list(
    config_path: str | None, json_output: bool, status_filter: str | None,
) -> None:
    """List alerts, newest first."""
    with _engine(config_path) as engine:
        items = engine.alerts.list(AlertStatus(status_filter) if status_filter else None)

    if json_output:
        click.echo(json.dumps([a.model_dump(mode="json") for a in items], indent=2))
        return
    if not items:
        click.echo("No alerts found.")
        return
    for alert in items:
        click.echo(
            f"  {alert.triggered_at.isoformat()[:19]}  {alert.id:<20} "
            f"{alert.status.value:<13} {_severity_badge(alert.severity)} {alert.message}"
        )
    click.echo(f"\n{len(items)} alert(s) shown.")


@alerts.command("ack")
@click.argument("alert_id")
@click.option("--by", "actor", required=True, help="Who acknowledges the alert")
@config_option
def alerts_ack(alert_id: str, actor: str, config_path: str | None) -> None:
    """Acknowledge an active alert."""
    with _engine(config_path) as engine:
        try:
            updated = engine.acknowledge(alert_id, actor)
        except (AlertNotFoundError, ValueError) as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
    if updated is None:
        click.echo(f"Alert {alert_id} is not active; nothing changed.")
    else:
        click.echo(click.style("ACKNOWLEDGED", fg="yellow", bold=True) + f" {alert_id} by {actor}")


@alerts.command("resolve")
@click.argument("alert_id")
@click.option("--by", "actor", default=None, help="Who resolves the alert")
@config_option
def alerts_resolve(alert_id: str, actor: str | None, config_path: str | None) -> None:
    """Resolve an alert."""
    with _engine(config_path) as engine:
        try:
            updated = engine.resolve(alert_id, actor)
        except AlertNotFoundError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
    if updated is None:
        click.echo(f"Alert {alert_id} is already resolved.")
    else:
        click.echo(click.style("RESOLVED", fg="green", bold=True) + f" {alert_id}")


# --- audit group ---


@cli.group()
def audit() -> None:
    """Audit log commands."""


@audit.command("show")
@config_option
@json_option
@click.option("--last", "count", default=20, help="Number of entries to show")
@click.option("--alert-id", default=None, help="Only entries for this alert")
@click.option(
    "--action", default=None,
    type=click.Choice([a.value for a in AuditAction]),
    help="Filter by action",
)
def audit_show(
    config_path: str | None,
    json_output: bool,
    count: int,
    alert_id: str | None,
    action: str | None,
) -> None:
    """Show recent audit entries, newest first."""
    with _engine(config_path) as engine:
        entries = engine.audit.query(
            limit=count,
            alert_id=alert_id,
            action=AuditAction(action) if action else None,
        )

    if json_output:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return
    if not entries:
        click.echo("No audit entries found.")
        return
    colors = {
        AuditAction.SENT: "green",
        AuditAction.FAILED: "red",
        AuditAction.ESCALATED: "magenta",
        AuditAction.RESOLVED: "blue",
        AuditAction.ACKNOWLEDGED: "yellow",
    }
    for entry in entries:
        click.echo(
            f"  {entry.timestamp.isoformat()[:19]}  "
            + click.style(f"{entry.action.value.upper():<13}", fg=colors.get(entry.action, "white"))
            + f" alert={entry.alert_id}"
            + (f"  channel={entry.channel_id}" if entry.channel_id else "")
            + (f"  by={entry.user_id}" if entry.user_id else "")
            + (f"  error={entry.details['error']}" if "error" in entry.details else "")
        )
    click.echo(f"\n{len(entries)} entry(ies) shown.")


# --- channels group ---


@cli.group()
def channels() -> None:
    """Notification channel commands."""


@channels.command("list")
@config_option
@json_option
def channels_list(config_path: str | None, json_output: bool) -> None:
    """List notification channels."""
    with _engine(config_path) as engine:
        items = engine.registry.list_channels()

    if json_output:
        click.echo(json.dumps([c.model_dump(mode="json") for c in items], indent=2))
        return
    for channel in items:
        state = click.style("on ", fg="green") if channel.enabled else click.style("off", fg="red")
        test = channel.test_status.value if channel.test_status else "-"
        click.echo(
            f"  {state} {channel.id:<18} {channel.type.value:<8} test={test:<8} {channel.name}"
        )


@channels.command("test")
@click.argument("channel_id")
@config_option
def channels_test(channel_id: str, config_path: str | None) -> None:
    """Send a test notification to a channel."""
    with _engine(config_path) as engine:
        result = engine.test_channel(channel_id)
    if result is None:
        click.echo(f"Channel not found: {channel_id}", err=True)
        sys.exit(1)
    if result.success:
        click.echo(click.style("OK", fg="green", bold=True) + f" {channel_id} ({result.duration_ms:.0f} ms)")
    else:
        click.echo(click.style("FAILED", fg="red", bold=True) + f" {channel_id}: {result.error}")
        sys.exit(1)


# --- config group ---


@cli.group("config")
def config_group() -> None:
    """Export and import engine state."""


@config_group.command("export")
@click.argument("output", default="-")
@config_option
def config_export(output: str, config_path: str | None) -> None:
    """Export all engine state as JSON (to OUTPUT, or stdout)."""
    with _engine(config_path) as engine:
        data = engine.export_configuration()
    text = json.dumps(data, indent=2)
    if output == "-":
        click.echo(text)
    else:
        Path(output).write_text(text + "\n", encoding="utf-8")
        click.echo(f"Exported to {output}")


@config_group.command("import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False))
@config_option
def config_import(source: str, config_path: str | None) -> None:
    """Import engine state from a JSON export."""
    try:
        data = json.loads(Path(source).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        click.echo(f"Invalid JSON in {source}: {exc}", err=True)
        sys.exit(1)
    with _engine(config_path) as engine:
        ok = engine.import_configuration(data)
    if not ok:
        click.echo(click.style("REJECTED", fg="red", bold=True) + f" {source} is not a valid export")
        sys.exit(1)
    click.echo(click.style("IMPORTED", fg="green", bold=True) + f" {source}")
