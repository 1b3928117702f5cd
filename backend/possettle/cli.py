# Overview: Flask CLI command groups for schema setup, session inspection, and cash reports.

# backend/possettle/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Cash session inspection:
# - python -m flask sessions list --status OPEN --limit 20
#   List recent cash sessions with optional filters.
# - python -m flask sessions show 5
#   Show one session with balances, per-kind totals and its movements.
#
# Reports:
# - python -m flask reports cash --from 2026-01-01 --to 2026-01-31 --location-id 1
#   Movement totals and signed net cash over a range.

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import cash_session_service, reporting_service
from .services.errors import SettlementEngineError
from .validation import coerce_datetime, ValidationError


def _money(cents) -> str:
    if cents is None:
        return "-"
    return f"${cents / 100:,.2f}"


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('sessions')
def sessions_group():
    """Cash session inspection commands."""


@sessions_group.command('list')
@click.option('--status', type=click.Choice(['OPEN', 'CLOSED']), help='Filter by status')
@click.option('--operator-id', type=int, help='Filter by operator ID')
@click.option('--location-id', type=int, help='Filter by location ID')
@click.option('--limit', type=int, default=20, help='Max sessions to show')
@with_appcontext
def list_sessions_cli(status, operator_id, location_id, limit):
    """
    List cash sessions.

    Example:
        flask sessions list
        flask sessions list --status OPEN
        flask sessions list --operator-id 3 --location-id 1
    """
    sessions = cash_session_service.list_sessions(
        status=status,
        operator_id=operator_id,
        location_id=location_id,
        limit=limit,
    )

    if not sessions:
        click.echo("No sessions found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Operator':<9} {'Location':<9} {'Status':<8} {'Opened':<20} {'Float':<12} {'Variance':<12}")
    click.echo("="*100)

    for session in sessions:
        variance_str = "-"
        if session.variance_cents is not None:
            variance_str = f"{session.variance_cents / 100:+.2f}"

        click.echo(f"{session.id:<5} {session.operator_id:<9} {session.location_id:<9} {session.status:<8} "
                   f"{str(session.opened_at)[:19]:<20} {_money(session.opening_float_cents):<12} {variance_str:<12}")

    click.echo("="*100 + "\n")


@sessions_group.command('show')
@click.argument('session_id', type=int)
@with_appcontext
def show_session_cli(session_id):
    """
    Show a session summary and its movements.

    Example:
        flask sessions show 5
    """
    try:
        summary = reporting_service.session_summary(session_id)
        movements = cash_session_service.filter_movements(session_id)
    except SettlementEngineError as e:
        raise click.ClickException(str(e))

    session = summary["session"]
    click.echo(f"\nSession {session['id']} ({session['status']})")
    click.echo(f"   Operator: {session['operator_id']}  Location: {session['location_id']}")
    click.echo(f"   Opening float: {_money(summary['opening_float_cents'])}")
    click.echo(f"   Theoretical cash: {_money(summary['theoretical_cents'])}")
    click.echo(f"   Total recognized: {_money(summary['total_recognized_cents'])}")
    click.echo(f"   Sales: {summary['sales_count']} ({_money(summary['sales_total_cents'])})")
    if summary["is_closed"]:
        click.echo(f"   Counted: {_money(summary['counted_cents'])}  Variance: {_money(summary['variance_cents'])}")

    click.echo("\n   Totals by kind:")
    for kind, total in summary["totals_by_kind"].items():
        click.echo(f"   - {kind:<24} {_money(total)}")

    if not movements:
        click.echo("\n   No movements.")
        return

    click.echo("\n" + "-"*90)
    click.echo(f"{'#':<4} {'Kind':<24} {'Amount':<12} {'Posted':<20} {'Note'}")
    click.echo("-"*90)
    for m in movements:
        note = m.note[:30] if m.note else "-"
        click.echo(f"{m.sequence:<4} {m.kind:<24} {_money(m.amount_cents):<12} {str(m.posted_at)[:19]:<20} {note}")
    click.echo("-"*90 + "\n")


@click.group('reports')
def reports_group():
    """Cash reporting commands."""


@reports_group.command('cash')
@click.option('--from', 'start', help='Range start (ISO-8601)')
@click.option('--to', 'end', help='Range end (ISO-8601)')
@click.option('--location-id', type=int, help='Filter by location ID')
@click.option('--operator-id', type=int, help='Filter by operator ID')
@with_appcontext
def cash_report_cli(start, end, location_id, operator_id):
    """
    Movement totals over a range.

    Example:
        flask reports cash --from 2026-01-01 --to 2026-01-31
    """
    try:
        start_dt = coerce_datetime("from", start)
        end_dt = coerce_datetime("to", end)
    except ValidationError as e:
        raise click.BadParameter(str(e))

    report = reporting_service.cash_report(
        start=start_dt,
        end=end_dt,
        location_id=location_id,
        operator_id=operator_id,
    )

    click.echo(f"\nCash report: {report['movement_count']} movements across {report['session_count']} sessions")
    for kind, total in report["totals_by_kind"].items():
        click.echo(f"   - {kind:<24} {_money(total)}")
    click.echo(f"   Net cash: {_money(report['net_cash_cents'])}")
    click.echo(f"   Recognized: {_money(report['recognized_cents'])}\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sessions_group)
    app.cli.add_command(reports_group)
