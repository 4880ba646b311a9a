"""
Apartment ledger CLI - maintenance entry point.
Built with Click for a rich command-line interface.
"""

import logging
import sys
from datetime import date

import click
from rich.console import Console
from rich.table import Table
from tqdm import tqdm

from . import __version__
from .audit import setup_audit_logging
from .config import LedgerConfig
from .exceptions import LedgerError

console = Console()


def get_config(config_path=None):
    """Load ledger configuration from a YAML file, or from the environment."""
    if config_path:
        return LedgerConfig.from_yaml(config_path)
    return LedgerConfig.from_env()


def get_session_manager(config):
    from .engine import create_engine_from_config
    from .session import SessionManager

    engine = create_engine_from_config(config.database)
    return SessionManager(engine)


def parse_date(value):
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise click.BadParameter(f"Invalid date '{value}', expected YYYY-MM-DD")


def fail(error):
    console.print(f"[red]{error.kind}: {error.message}[/red]")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name='apartment-ledger')
@click.option('--config', '-c', default=None, help='Path to ledger config YAML (default: environment)')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, config, verbose):
    """Apartment Ledger - balances, recurring charges and maintenance."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    ctx.ensure_object(dict)
    ctx.obj['config'] = get_config(config)
    setup_audit_logging(ctx.obj['config'].audit_log_dir, debug=verbose)


# =============================================================================
# Schema
# =============================================================================

@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create the ledger tables if they do not exist."""
    from .engine import create_engine_from_config, init_schema

    config = ctx.obj['config']
    engine = create_engine_from_config(config.database)
    init_schema(engine)
    console.print(f"[green]Schema ready on {config.database.db_type.value}[/green]")


# =============================================================================
# Balances
# =============================================================================

@cli.command()
@click.argument('apartment_id', type=int)
@click.option('--period', '-p', type=int, default=None, help='Scope to one occupancy period')
@click.option('--limit', '-n', default=20, help='Number of ledger entries to show')
@click.pass_context
def balance(ctx, apartment_id, period, limit):
    """Show an apartment's balance and recent ledger entries."""
    from .balance import BalanceAccumulator
    from .ledger_store import LedgerStore
    from .periods import PeriodRepository

    session_manager = get_session_manager(ctx.obj['config'])
    try:
        with session_manager.session_scope() as session:
            check = BalanceAccumulator(session).verify(apartment_id)
            store = LedgerStore(session)
            totals = store.totals(apartment_id)

            summary = Table(title=f"Apartment {apartment_id}")
            summary.add_column("Property", style="cyan")
            summary.add_column("Value", style="green")
            summary.add_row("Balance", f"{check.computed:.2f}")
            summary.add_row("Cached balance", f"{check.cached:.2f}")
            summary.add_row("Total debits", f"{totals['debit']:.2f}")
            summary.add_row("Total credits", f"{totals['credit']:.2f}")
            if period is not None:
                summary.add_row(f"Period {period} balance", f"{store.get_balance(apartment_id, period):.2f}")
            console.print(summary)

            periods = PeriodRepository(session).periods_for(apartment_id)
            if periods:
                periods_table = Table(title="Occupancy Periods")
                periods_table.add_column("ID", style="cyan")
                periods_table.add_column("Tenant")
                periods_table.add_column("Start")
                periods_table.add_column("End")
                periods_table.add_column("Status")
                periods_table.add_column("Closing", justify="right")
                for p in periods:
                    periods_table.add_row(
                        str(p.id),
                        p.tenant_name or p.tenant_id or '-',
                        p.start_date.isoformat(),
                        p.end_date.isoformat() if p.end_date else '-',
                        "[green]open[/green]" if p.is_open else "closed",
                        f"{p.closing_balance:.2f}" if p.closing_balance is not None else '-',
                    )
                console.print(periods_table)

            entries = Table(title="Ledger Entries")
            entries.add_column("ID", style="cyan")
            entries.add_column("Date")
            entries.add_column("Type", style="magenta")
            entries.add_column("Amount", justify="right")
            entries.add_column("Reference", style="yellow")
            entries.add_column("Description")
            for entry in store.entries(apartment_id, period_id=period, limit=limit):
                sign = '+' if entry.is_credit else '-'
                entries.add_row(
                    str(entry.id),
                    entry.created_at.strftime('%Y-%m-%d %H:%M'),
                    entry.entry_type,
                    f"{sign}{entry.amount:.2f}",
                    f"{entry.reference_type}:{entry.reference_id}",
                    entry.description or '',
                )
            console.print(entries)
    except LedgerError as e:
        fail(e)


@cli.command()
@click.option('--dry-run', is_flag=True, help='Report drift without writing')
@click.pass_context
def recalculate(ctx, dry_run):
    """Recompute every cached balance from the ledger and report drift."""
    from .audit import AuditEvent, audit_log
    from .balance import BalanceAccumulator
    from .models import Apartment
    from .operations import lock_apartment
    from .session import after_commit

    session_manager = get_session_manager(ctx.obj['config'])
    with session_manager.session_scope() as session:
        apartment_ids = [row.id for row in session.query(Apartment.id).order_by(Apartment.id)]

    drifted = []
    with tqdm(total=len(apartment_ids), desc="  Recalculating balances", unit="apt") as pbar:
        for apartment_id in apartment_ids:
            with session_manager.session_scope() as session:
                accumulator = BalanceAccumulator(session)
                if not dry_run:
                    lock_apartment(session, apartment_id)
                check = accumulator.verify(apartment_id)
                if not check.is_consistent:
                    drifted.append(check)
                    if not dry_run:
                        accumulator.refresh_cached_balance(apartment_id)
                        after_commit(
                            session, audit_log, AuditEvent.BALANCE_DRIFT,
                            f"apartment={apartment_id} cached={check.cached} computed={check.computed}",
                            None, 'WARNING',
                        )
            pbar.update(1)

    if not drifted:
        console.print(f"[green]All {len(apartment_ids)} balances consistent[/green]")
        return

    table = Table(title="Balance Drift" + (" (dry run)" if dry_run else " (fixed)"))
    table.add_column("Apartment", style="cyan")
    table.add_column("Cached", justify="right")
    table.add_column("Ledger", justify="right")
    table.add_column("Drift", justify="right", style="red")
    for check in drifted:
        table.add_row(str(check.apartment_id), f"{check.cached:.2f}", f"{check.computed:.2f}", f"{check.drift:.2f}")
    console.print(table)


# =============================================================================
# Recurring charges
# =============================================================================

@cli.command('generate-subscriptions')
@click.option('--as-of', default=None, help='Charge up to this date (YYYY-MM-DD, default today)')
@click.pass_context
def generate_subscriptions(ctx, as_of):
    """Post missing monthly subscription charges."""
    from .recurring import generate_monthly_subscriptions

    session_manager = get_session_manager(ctx.obj['config'])
    processed = generate_monthly_subscriptions(session_manager, parse_date(as_of))
    console.print(f"[green]Processed {processed} apartment(s)[/green]")


@cli.command('process-recurring')
@click.option('--as-of', default=None, help='Generate up to this date (YYYY-MM-DD, default today)')
@click.pass_context
def process_recurring(ctx, as_of):
    """Generate missing monthly children of recurring expenses."""
    from .recurring import process_recurring_expenses

    config = ctx.obj['config']
    session_manager = get_session_manager(config)
    created = process_recurring_expenses(session_manager, parse_date(as_of), config.backfill_policy)
    console.print(f"[green]Created {created} child expense(s)[/green]")


# =============================================================================
# Adjustments
# =============================================================================

@cli.command('write-off')
@click.argument('apartment_id', type=int)
@click.option('--user', '-u', required=True, help='Id of the user authorizing the write-off')
@click.confirmation_option(prompt='Write off the full balance of this apartment?')
@click.pass_context
def write_off(ctx, apartment_id, user):
    """Zero an apartment's balance with a single write-off entry."""
    from .reversals import ReversalEngine

    session_manager = get_session_manager(ctx.obj['config'])
    try:
        with session_manager.session_scope() as session:
            entry = ReversalEngine(session).write_off_balance(apartment_id, user)
            console.print(
                f"[green]Wrote off {entry.amount:.2f} ({entry.entry_type}) on apartment {apartment_id}[/green]"
            )
    except LedgerError as e:
        fail(e)


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
