"""CLI output formatting functions.

This module contains functions for displaying sync plans, run and tick
history, mirrored users, policies and connection diagnostics.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

import click

if TYPE_CHECKING:
    from dirsync.api.graph_api import ConnectionReport
    from dirsync.sync.reconciler import ReconcilePlan

# Items listed per section before truncating
MAX_LISTED = 10

STATUS_COLORS = {
    "completed": "green",
    "success": "green",
    "active": "green",
    "running": "cyan",
    "skipped": "yellow",
    "inactive": "yellow",
    "failed": "red",
}


def format_timestamp(value: Optional[datetime]) -> str:
    """Format a timestamp for display, or 'Never' when missing."""
    if value is None:
        return "Never"
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


def styled_status(status: str) -> str:
    """Return a status word colored by its meaning."""
    return click.style(status, fg=STATUS_COLORS.get(status))


def _show_truncated(title: str, items: list[str], marker: str) -> None:
    if not items:
        return
    click.echo(f"\n{title}:")
    for item in items[:MAX_LISTED]:
        click.echo(f"  {marker} {item}")
    if len(items) > MAX_LISTED:
        click.echo(f"  ... and {len(items) - MAX_LISTED} more")


def show_plan_details(plan: "ReconcilePlan") -> None:
    """
    Display the users a dry run would create, update and deactivate.

    Args:
        plan: The ReconcilePlan to display
    """
    click.echo("\n=== Detailed Changes ===")

    if not plan.has_changes() and not plan.ineligible:
        click.echo("\nNo changes.")
        return

    _show_truncated(
        "Users to create",
        [f"{r.display_name or r.external_id} <{r.email}>" for r in plan.to_create],
        "+",
    )
    _show_truncated(
        "Users to update",
        [f"{r.display_name or r.external_id} <{r.email}>" for r in plan.to_update],
        "~",
    )
    _show_truncated("Users to mark inactive", plan.to_deactivate, "-")
    _show_truncated(
        "Ineligible users (not mirrored)",
        [
            f"{r.display_name or r.external_id} "
            f"(enabled={r.account_enabled}, department={r.org_unit!r})"
            for r in plan.ineligible
        ],
        "x",
    )


def show_run_logs(logs: list[dict[str, Any]]) -> None:
    """Display sync run history, most recent first."""
    if not logs:
        click.echo("No sync runs recorded.")
        return

    for log in logs:
        click.echo(
            f"{format_timestamp(log['started_at'])}  {styled_status(log['status']):<10}  "
            f"{log['trigger']:<9}  processed={log['users_processed']} "
            f"created={log['users_created']} updated={log['users_updated']} "
            f"inactive={log['users_deactivated']} "
            f"ineligible={log['users_ineligible']} errors={log['row_errors']}"
        )
        if log.get("error_message"):
            click.echo(
                click.style(
                    f"    {log.get('error_type') or 'Error'}: {log['error_message']}",
                    fg="red",
                )
            )


def show_tick_logs(logs: list[dict[str, Any]]) -> None:
    """Display scheduler tick history, most recent first."""
    if not logs:
        click.echo("No scheduler ticks recorded.")
        return

    for log in logs:
        line = (
            f"{format_timestamp(log['run_at'])}  "
            f"due={'yes' if log['sync_was_due'] else 'no':<3}  "
            f"triggered={'yes' if log['sync_triggered'] else 'no':<3}  "
            f"{log['execution_time_ms']}ms"
        )
        click.echo(line)
        for outcome in log.get("sync_result") or []:
            detail = outcome.get("error") or outcome.get("message") or ""
            click.echo(
                f"    {outcome['sync_type']}: {styled_status(outcome['status'])}"
                + (f" ({detail})" if detail else "")
            )
        if log.get("error_message"):
            click.echo(click.style(f"    Error: {log['error_message']}", fg="red"))


def show_users(users: list[dict[str, Any]]) -> None:
    """Display mirrored users."""
    if not users:
        click.echo("No users found.")
        return

    for user in users:
        click.echo(
            f"{styled_status(user['sync_status']):<10}  "
            f"{user['display_name'] or '(no name)'}  <{user['email']}>  "
            f"{user.get('org_unit') or '-'}  "
            f"last synced {format_timestamp(user.get('last_synced'))}"
        )


def show_policies(policies: list[dict[str, Any]]) -> None:
    """Display sync policies."""
    if not policies:
        click.echo("No sync policies configured.")
        return

    for policy in policies:
        enabled = (
            click.style("enabled", fg="green")
            if policy["is_enabled"]
            else click.style("disabled", fg="yellow")
        )
        next_run = policy.get("next_run_at")
        click.echo(
            f"{policy['sync_type']:<20} {enabled:<8}  every {policy['frequency_hours']}h  "
            f"last run: {format_timestamp(policy.get('last_run_at'))}  "
            f"next run: {format_timestamp(next_run) if next_run else 'not scheduled'}"
        )


def show_connection_report(report: "ConnectionReport") -> None:
    """Display the result of a connectivity diagnostic."""
    click.echo("=== Configuration ===\n")
    for name, info in report.config.items():
        if info["present"]:
            state = click.style("set", fg="green") + f" ({info['length']} chars)"
        else:
            state = click.style("missing", fg="red")
        click.echo(f"  {name}: {state}")

    click.echo("\n=== Token Request ===\n")
    if report.token_ok:
        click.echo(f"  {click.style('OK', fg='green')}")
    else:
        status = f" (HTTP {report.token_status})" if report.token_status else ""
        click.echo(click.style(f"  Failed{status}: {report.token_error}", fg="red"))

    click.echo("\n=== Directory API ===\n")
    if report.graph_ok:
        click.echo(
            f"  {click.style('OK', fg='green')} "
            f"({report.sample_user_count} user(s) returned by the users request)"
        )
    elif report.token_ok:
        status = f" (HTTP {report.graph_status})" if report.graph_status else ""
        click.echo(click.style(f"  Failed{status}: {report.graph_error}", fg="red"))
    else:
        click.echo("  Skipped (no token)")
