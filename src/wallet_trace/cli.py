"""CLI entry point for Wallet Trace."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click
from pydantic import BaseModel, ValidationError, field_validator

from wallet_trace.advice import AdviceError, AdviceGenerator, advice_or_fallback
from wallet_trace.annotations import (
    NOT_ANNOTATED,
    AnnotatedActivity,
    AnnotationError,
    SpendingStatus,
    save_annotation,
)
from wallet_trace.dashboard import ActivityDashboard
from wallet_trace.stats import (
    format_hour,
    histogram_by_day,
    histogram_by_hour,
    histogram_by_month,
)
from wallet_trace.store import (
    SqliteDocumentStore,
    StoreError,
    activity_path,
    devices_path,
)
from wallet_trace.timestamps import is_parseable, normalize

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "wallet-trace" / "store.db"

logger = logging.getLogger(__name__)


class ImportedActivity(BaseModel):
    """One wallet-open line from an activity export."""

    id: str
    timestamp: Any

    @field_validator("timestamp")
    @classmethod
    def _timestamp_parseable(cls, value: Any) -> Any:
        if not is_parseable(normalize(value)):
            raise ValueError(f"unparseable timestamp: {value!r}")
        return value


def format_relative_time(instant: datetime, *, now: datetime | None = None) -> str:
    """Format an instant as relative time (e.g., '5 minutes ago').

    Args:
        instant: Timezone-aware datetime
        now: Optional current time for testing (defaults to UTC now)
    """
    if now is None:
        now = datetime.now(timezone.utc)
    seconds = (now - instant).total_seconds()
    if seconds < 60:
        # Includes future timestamps from device clock skew
        return "just now"
    elif seconds < 3600:
        minutes = int(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    elif seconds < 86400:
        hours = int(seconds / 3600)
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    else:
        days = int(seconds / 86400)
        return f"{days} day{'s' if days != 1 else ''} ago"


def format_occurred_at(instant: datetime) -> str:
    """Format as 'Jan 5, 2024 at 3:07 PM' in local time."""
    local = instant.astimezone()
    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return (
        f"{local.strftime('%b')} {local.day}, {local.year} "
        f"at {hour}:{local.minute:02d} {meridiem}"
    )


def format_spending(item: AnnotatedActivity) -> str:
    status = item.spending_status
    if status is SpendingStatus.SPENT:
        return f"spent: {item.spent_with}"
    if status is SpendingStatus.NOT_SPENT:
        return "not spent"
    return "not recorded"


def make_progress_bar(value: int, max_value: int, width: int = 16) -> str:
    """Create ASCII progress bar.

    Args:
        value: Current value.
        max_value: Maximum value (100%).
        width: Total width of bar (default: 16).

    Returns:
        Progress bar string like '████████░░░░░░░░'.
    """
    if max_value == 0 or value == 0:
        return "░" * width
    filled = max(1, min(width, round((value / max_value) * width)))
    return "█" * filled + "░" * (width - filled)


def open_store(db: Path) -> SqliteDocumentStore:
    db.parent.mkdir(parents=True, exist_ok=True)
    return SqliteDocumentStore.open(db)


def load_dashboard(store: SqliteDocumentStore, user: str) -> ActivityDashboard:
    """Start a dashboard; the local store delivers every snapshot synchronously."""
    dashboard = ActivityDashboard(store, user)
    dashboard.start()
    return dashboard


db_option = click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=DEFAULT_DB_PATH,
    envvar="WALLET_TRACE_DB",
    show_envvar=True,
    help="Path to SQLite database",
)
user_option = click.option(
    "--user",
    default="local",
    envvar="WALLET_TRACE_USER",
    show_envvar=True,
    help="User ID that owns the devices",
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Wallet Trace local CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.group("devices")
def devices_group() -> None:
    """Manage registered devices."""


@devices_group.command("add")
@click.argument("device_id")
@click.argument("name")
@db_option
@user_option
def devices_add(device_id: str, name: str, db: Path, user: str) -> None:
    """Register a device whose wallet opens should be tracked."""
    if not device_id.strip() or not name.strip():
        click.echo("Device ID and name cannot be empty.", err=True)
        sys.exit(1)

    with open_store(db) as store:
        doc_id = store.add_document(
            devices_path(user),
            {
                "deviceId": device_id.strip(),
                "name": name.strip(),
                "userId": user,
                "createdAt": int(datetime.now(timezone.utc).timestamp() * 1000),
            },
        )
    click.echo(f"Added device {name.strip()} ({doc_id})")


@devices_group.command("list")
@db_option
@user_option
def devices_list(db: Path, user: str) -> None:
    """List registered devices, newest first."""
    with open_store(db) as store:
        dashboard = load_dashboard(store, user)
        devices = dashboard.devices
        counts: dict[str, int] = {}
        for item in dashboard.view:
            source_id = item.activity.source_id
            counts[source_id] = counts.get(source_id, 0) + 1
        dashboard.close()

    if not devices:
        click.echo("No devices registered")
        return

    for device in devices:
        registered = datetime.fromtimestamp(device.created_at / 1000, tz=timezone.utc)
        click.echo(
            f"  {device.id}  {device.label} ({device.device_id}): "
            f"{counts.get(device.id, 0)} opens, added {format_relative_time(registered)}"
        )


@main.command("import")
@click.option("--device", "device", required=True, help="Device document ID")
@db_option
@user_option
def import_activity(device: str, db: Path, user: str) -> None:
    """Import wallet-open activity for a device from stdin (JSONL format).

    Each line is an object with an "id" and a "timestamp" in any supported
    encoding. Re-importing the same ID overwrites it.

    Example usage:
        cat opens.jsonl | wallet-trace import --device abc123
    """
    imported_count = 0
    has_input = False

    with open_store(db) as store:
        if store.get_document(f"{devices_path(user)}/{device}") is None:
            click.echo(f"Unknown device: {device}", err=True)
            sys.exit(1)

        collection = activity_path(user, device)
        for line_number, line in enumerate(sys.stdin, 1):
            stripped = line.strip()
            if not stripped:
                continue

            has_input = True

            try:
                data = json.loads(stripped)
                activity = ImportedActivity.model_validate(data)
                store.write_document(
                    f"{collection}/{activity.id}",
                    {"timestamp": activity.timestamp, "userId": user, "deviceId": device},
                )
                imported_count += 1
            except json.JSONDecodeError as e:
                click.echo(f"Warning: line {line_number}: invalid JSON: {e}", err=True)
            except ValidationError as e:
                click.echo(f"Warning: line {line_number}: validation error: {e}", err=True)

    click.echo(f"Imported {imported_count} wallet opens")

    # Exit code 1 if we had input but no valid lines
    if has_input and imported_count == 0:
        sys.exit(1)


@main.command("timeline")
@click.option("--limit", type=int, help="Maximum number of records to show")
@db_option
@user_option
def timeline_command(limit: int | None, db: Path, user: str) -> None:
    """Show wallet opens across all devices, newest first."""
    with open_store(db) as store:
        dashboard = load_dashboard(store, user)
        view = dashboard.view
        dashboard.close()

    if not view:
        click.echo("No records found.")
        return

    for item in view[:limit] if limit is not None else view:
        activity = item.activity
        click.echo(
            f"{activity.id}  {format_occurred_at(activity.occurred_at)}  "
            f"{activity.display_source}  [{format_spending(item)}]"
        )


@main.command("stats")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.option("--days", type=click.IntRange(min=1), default=7, help="Daily window")
@click.option("--months", type=click.IntRange(min=1), default=12, help="Monthly window")
@db_option
@user_option
def stats_command(output_json: bool, days: int, months: int, db: Path, user: str) -> None:
    """Show wallet-open statistics and histograms."""
    with open_store(db) as store:
        dashboard = load_dashboard(store, user)
        view = dashboard.view
        summary = dashboard.summary()
        dashboard.close()

    by_hour = histogram_by_hour(view)
    by_day = histogram_by_day(view, days)
    by_month = histogram_by_month(view, months)

    if output_json:
        output = {
            "total_opens": summary.total_opens,
            "opens_today": summary.opens_today,
            "device_count": summary.device_count,
            "peak_hour": summary.peak_hour,
            "spent": summary.spent_count,
            "not_spent": summary.not_spent_count,
            "not_recorded": summary.unannotated_count,
            "by_hour": by_hour,
            "by_day": [
                {"date": b.key.isoformat(), "label": b.label, "opens": b.count} for b in by_day
            ],
            "by_month": [
                {"month": b.key.strftime("%Y-%m"), "label": b.label, "opens": b.count}
                for b in by_month
            ],
        }
        click.echo(json.dumps(output, indent=2))
        return

    click.echo(f"Total wallet opens:  {summary.total_opens}")
    click.echo(f"Wallet opens today:  {summary.opens_today}")
    click.echo(f"Registered devices:  {summary.device_count}")
    click.echo(f"Peak activity hour:  {summary.peak_hour}")
    click.echo(
        f"Spending:            {summary.spent_count} spent, "
        f"{summary.not_spent_count} not spent, {summary.unannotated_count} not recorded"
    )
    click.echo()

    click.echo("By Hour:")
    max_hour = max(by_hour)
    for hour, count in enumerate(by_hour):
        click.echo(f"  {format_hour(hour):>5} {count:>5}   {make_progress_bar(count, max_hour)}")
    click.echo()

    click.echo(f"Last {days} Days:")
    max_day = max(b.count for b in by_day)
    for bucket in by_day:
        click.echo(
            f"  {bucket.label} {bucket.detail:<6} {bucket.count:>5}   "
            f"{make_progress_bar(bucket.count, max_day)}"
        )
    click.echo()

    click.echo(f"Last {months} Months:")
    max_month = max(b.count for b in by_month)
    for bucket in by_month:
        click.echo(
            f"  {bucket.detail:<8} {bucket.count:>5}   {make_progress_bar(bucket.count, max_month)}"
        )


@main.command("annotate")
@click.argument("activity_id")
@click.option("--spent", "spent_with", help="What the money was spent on")
@click.option("--not-spent", is_flag=True, help="The wallet was opened without spending")
@db_option
@user_option
def annotate_command(
    activity_id: str, spent_with: str | None, not_spent: bool, db: Path, user: str
) -> None:
    """Record whether a wallet open ended in spending money."""
    if (spent_with is None) == (not not_spent):
        click.echo("Pass exactly one of --spent WITH or --not-spent.", err=True)
        sys.exit(1)

    with open_store(db) as store:
        dashboard = load_dashboard(store, user)
        known = any(item.activity.id == activity_id for item in dashboard.view)
        existing = dashboard.joiner.annotation_for(activity_id)
        dashboard.close()

        if not known:
            click.echo(f"Activity not found: {activity_id}", err=True)
            sys.exit(1)

        try:
            save_annotation(
                store,
                user,
                activity_id,
                is_spent=spent_with is not None,
                spent_with=spent_with or "",
                existing=None if existing is NOT_ANNOTATED else existing,
            )
        except AnnotationError as e:
            click.echo(f"Validation error: {e}", err=True)
            sys.exit(1)
        except StoreError as e:
            click.echo(f"Could not save spending record: {e}", err=True)
            sys.exit(1)

    click.echo("Your spending record has been saved.")


@main.command("advice")
@db_option
@user_option
def advice_command(db: Path, user: str) -> None:
    """Show personalized spending advice for the recorded activity."""
    with open_store(db) as store:
        dashboard = load_dashboard(store, user)
        summary = dashboard.summary()
        dashboard.close()

    try:
        generator: AdviceGenerator | None = AdviceGenerator()
    except AdviceError as e:
        logger.warning("%s", e)
        generator = None

    click.echo(
        advice_or_fallback(
            generator,
            summary.total_opens,
            summary.spent_count,
            summary.not_spent_count,
        )
    )


if __name__ == "__main__":
    main()
