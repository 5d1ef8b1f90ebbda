"""
Main CLI entry point for the order settlement core

Back-office commands: inspect the tier schedule, quote payouts, reconcile
balances, administer payout requests and move orders along their lifecycle.
"""

import asyncio
import json
import sys
from decimal import Decimal
from typing import Optional, Dict, Any, List

import click

from ..core.coordinator import SettlementCoordinator, DEDICATED_TRANSITIONS
from ..core.exceptions import SettlementError
from ..models.order import OrderStatus
from ..models.payout import PayoutStatus
from ..services.earnings_engine import EarningsEngine
from ..utils.config import SettlementConfig, load_config
from ..utils.database import DatabaseManager
from ..utils.memory_store import InMemoryStore
from ..utils.logger import setup_logger


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.option('--database-url', '-d', help='Database connection URL')
@click.option('--log-level', '-l', help='Log level (overrides the config file)')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def cli(ctx, config, database_url, log_level, verbose):
    """Order Settlement CLI"""

    # Ensure context object exists
    ctx.ensure_object(dict)

    try:
        settings = load_config(config, database_url=database_url, log_level=log_level)
    except SettlementError as e:
        raise click.ClickException(e.message)

    # Set up logging
    logger = setup_logger(
        "order_settlement",
        level=settings.log_level,
        structured=settings.structured_logging and not verbose,
        log_file=settings.log_file
    )
    ctx.obj['logger'] = logger

    # Store configuration
    ctx.obj['settings'] = settings
    ctx.obj['verbose'] = verbose


@cli.group()
@click.pass_context
def balances(ctx):
    """Worker balance commands"""
    pass


@cli.group()
@click.pass_context
def payout(ctx):
    """Payout request administration"""
    pass


@cli.group()
@click.pass_context
def order(ctx):
    """Order lifecycle commands"""
    pass


@cli.group()
@click.pass_context
def db(ctx):
    """Database management commands"""
    pass


def _run(ctx, action, error_prefix: str):
    """Run an async command body against a started coordinator, reporting settlement errors."""

    async def _wrapped():
        coordinator = _build_coordinator(ctx)
        try:
            await coordinator.start()
            return await action(coordinator)
        finally:
            await coordinator.stop()

    try:
        return asyncio.run(_wrapped())
    except SettlementError as e:
        click.echo(f"{error_prefix}: {e.message}", err=True)
        if ctx.obj['verbose']:
            click.echo(json.dumps(e.to_dict(), indent=2, default=str), err=True)
        sys.exit(1)


def _build_coordinator(ctx) -> SettlementCoordinator:
    """Create a coordinator over the configured database"""
    settings: SettlementConfig = ctx.obj['settings']
    if not settings.database_url:
        raise click.UsageError("A database URL is required (--database-url or ORDER_SETTLEMENT_DATABASE_URL)")
    store = DatabaseManager(settings.database_url, pool_size=settings.pool_size,
                            max_overflow=settings.max_overflow)
    return SettlementCoordinator(store, config=settings)


def _offline_engine(settings: SettlementConfig) -> EarningsEngine:
    """Earnings engine for pure calculations that never touch storage"""
    return EarningsEngine(
        InMemoryStore(),
        tiers=settings.tier_schedule(),
        slide_rate=settings.slide_rate,
        technical_categories=settings.technical_categories
    )


# Earnings Commands
@cli.command('tiers')
@click.pass_context
def show_tiers(ctx):
    """Show the earnings tier schedule"""
    settings: SettlementConfig = ctx.obj['settings']
    _display_tiers_table([tier.to_dict() for tier in settings.tier_schedule()], ctx.obj['verbose'])


@cli.command('quote')
@click.option('--pages', type=int, default=0, help='Page count')
@click.option('--slides', type=int, default=0, help='Slide count')
@click.option('--work-type', default='', help='Work type (e.g. essay, programming)')
@click.option('--level', type=int, default=1, help='Tier level')
@click.pass_context
def quote(ctx, pages, slides, work_type, level):
    """Compute the worker payout for an order"""
    engine = _offline_engine(ctx.obj['settings'])
    try:
        amount = engine.compute_worker_payout(pages, slides, work_type, level)
    except SettlementError as e:
        click.echo(f"Error computing quote: {e.message}", err=True)
        sys.exit(1)

    tier = engine.get_tier(level)
    click.echo(f"Payout: {amount}")
    click.echo(f"Level: {tier.level} ({tier.label})")
    click.echo(f"Technical: {'yes' if engine.is_technical(work_type) else 'no'}")
    click.echo(f"Rate: {tier.rate_for(engine.is_technical(work_type))} per page, {engine.slide_rate} per slide")


@cli.command('progress')
@click.argument('worker_id')
@click.pass_context
def progress(ctx, worker_id):
    """Show a worker's tier progress"""

    async def _progress(coordinator: SettlementCoordinator):
        report = await coordinator.earnings.progress_report(worker_id)
        _display_progress(report.to_dict(), ctx.obj['verbose'])

    _run(ctx, _progress, "Error getting progress")


@balances.command('recalculate')
@click.argument('worker_id', required=False)
@click.option('--all', 'all_workers', is_flag=True, help='Recalculate every worker')
@click.pass_context
def recalculate(ctx, worker_id, all_workers):
    """Reconcile worker balances from settled orders and payouts"""
    if not worker_id and not all_workers:
        raise click.UsageError("Give a WORKER_ID or --all")

    async def _recalculate(coordinator: SettlementCoordinator):
        if all_workers:
            results = await coordinator.recalculate_all_balances()
        else:
            results = {worker_id: await coordinator.recalculate_balance(worker_id)}
        _display_balances_table(results)

    _run(ctx, _recalculate, "Error recalculating balances")


# Payout Commands
@payout.command('list')
@click.option('--worker', 'worker_id', help='Only this worker')
@click.option('--status', type=click.Choice([status.value for status in PayoutStatus]), help='Only this status')
@click.pass_context
def list_payouts(ctx, worker_id, status):
    """List payout requests"""

    async def _list(coordinator: SettlementCoordinator):
        payouts = await coordinator.payouts.list_payouts(worker_id=worker_id, status=status)
        _display_payouts_table([p.to_dict() for p in payouts], ctx.obj['verbose'])

    _run(ctx, _list, "Error listing payouts")


@payout.command('approve')
@click.argument('request_id')
@click.option('--admin', 'admin_id', required=True, help='Approving administrator')
@click.pass_context
def approve_payout(ctx, request_id, admin_id):
    """Approve a pending payout request"""

    async def _approve(coordinator: SettlementCoordinator):
        result = await coordinator.approve_payout(request_id, admin_id)
        click.echo(f"Payout {result.request_id} approved")

    _run(ctx, _approve, "Error approving payout")


@payout.command('reject')
@click.argument('request_id')
@click.option('--admin', 'admin_id', required=True, help='Rejecting administrator')
@click.option('--reason', required=True, help='Reason shown to the worker')
@click.pass_context
def reject_payout(ctx, request_id, admin_id, reason):
    """Reject a payout request and refund the reserved amount"""

    async def _reject(coordinator: SettlementCoordinator):
        result = await coordinator.reject_payout(request_id, admin_id, reason)
        click.echo(f"Payout {result.request_id} rejected; {result.amount} returned to {result.worker_id}")

    _run(ctx, _reject, "Error rejecting payout")


@payout.command('process')
@click.argument('request_id')
@click.option('--reference', help='Transaction reference of the transfer')
@click.option('--admin', 'admin_id', help='Processing administrator')
@click.pass_context
def process_payout(ctx, request_id, reference, admin_id):
    """Send an approved payout through the payment processor"""

    async def _process(coordinator: SettlementCoordinator):
        result = await coordinator.process_payout(request_id, reference, admin_id)
        click.echo(f"Payout {result.request_id} completed (reference: {result.processor_reference})")

    _run(ctx, _process, "Error processing payout")


@payout.command('resolve')
@click.argument('request_id')
@click.option('--admin', 'admin_id', required=True, help='Resolving administrator')
@click.option('--reference', help='Reference of a transfer that went through; omit to return the request to approved')
@click.pass_context
def resolve_payout(ctx, request_id, admin_id, reference):
    """Settle a payout request left in processing"""

    async def _resolve(coordinator: SettlementCoordinator):
        result = await coordinator.resolve_payout(request_id, admin_id, reference)
        click.echo(f"Payout {result.request_id} is now {result.status.value}")

    _run(ctx, _resolve, "Error resolving payout")


# Order Commands
@order.command('transition')
@click.argument('order_id')
@click.argument('target', type=click.Choice([status.value for status in OrderStatus if status not in DEDICATED_TRANSITIONS]))
@click.option('--actor', default='admin', help='Who is making the change')
@click.option('--note', help='Note for the status log')
@click.pass_context
def transition_order(ctx, order_id, target, actor, note):
    """Move an order to a new status"""

    async def _transition(coordinator: SettlementCoordinator):
        result = await coordinator.transition_order(order_id, target, actor, note=note)
        click.echo(f"Order {result.order_id} is now {result.status.value}")

    _run(ctx, _transition, "Error transitioning order")


@order.command('confirm-payment')
@click.argument('order_id')
@click.option('--admin', 'admin_id', required=True, help='Administrator confirming the payment')
@click.pass_context
def confirm_payment(ctx, order_id, admin_id):
    """Confirm the client's payment for a delivered or approved order"""

    async def _confirm(coordinator: SettlementCoordinator):
        result = await coordinator.confirm_payment(order_id, admin_id)
        click.echo(f"Order {result.order_id} is now {result.status.value}")

    _run(ctx, _confirm, "Error confirming payment")


@order.command('complete')
@click.argument('order_id')
@click.option('--actor', default='admin', help='Who is completing the order')
@click.pass_context
def complete_order(ctx, order_id, actor):
    """Complete a paid order and credit the worker"""

    async def _complete(coordinator: SettlementCoordinator):
        result = await coordinator.complete_order(order_id, actor)
        click.echo(f"Order {result.order_id} completed")

    _run(ctx, _complete, "Error completing order")


@order.command('history')
@click.argument('order_id')
@click.pass_context
def order_history(ctx, order_id):
    """Show an order's status history"""

    async def _history(coordinator: SettlementCoordinator):
        logs = await coordinator.get_order_history(order_id)
        if not logs:
            click.echo("No status changes recorded")
            return
        for log in logs:
            click.echo(f"{log.created_at.isoformat()[:19]}  {log.old_status.value:<12} -> "
                       f"{log.new_status.value:<12} by {log.actor}")

    _run(ctx, _history, "Error getting order history")


# Database Commands
@db.command('init-schema')
@click.option('--seed-tiers/--no-seed-tiers', default=True, help='Write the configured tier schedule')
@click.pass_context
def init_schema(ctx, seed_tiers):
    """Create tables and seed the tier schedule"""
    settings: SettlementConfig = ctx.obj['settings']
    if not settings.database_url:
        raise click.UsageError("A database URL is required (--database-url or ORDER_SETTLEMENT_DATABASE_URL)")

    async def _init():
        manager = DatabaseManager(settings.database_url, pool_size=settings.pool_size,
                                  max_overflow=settings.max_overflow)
        await manager.initialize()
        try:
            await manager.initialize_schema()
            if seed_tiers:
                count = await manager.seed_tiers(settings.tier_schedule())
                click.echo(f"Seeded {count} tiers")
        finally:
            await manager.close()

    try:
        asyncio.run(_init())
    except SettlementError as e:
        click.echo(f"Error initializing schema: {e.message}", err=True)
        sys.exit(1)
    click.echo("Schema initialized")


def _display_tiers_table(tiers: List[Dict[str, Any]], verbose: bool):
    """Display the tier schedule in table format"""
    click.echo(f"{'Level':<6} {'Label':<12} {'From':<6} {'Standard':<10} {'Technical':<10}")
    click.echo("-" * 48)
    for tier in tiers:
        click.echo(f"{tier['level']:<6} {tier['label']:<12} {tier['min_completed_orders']:<6} "
                   f"{tier['standard_rate']:<10} {tier['technical_rate']:<10}")
        if verbose and tier.get('description'):
            click.echo(f"       {tier['description']}")


def _display_progress(report: Dict[str, Any], verbose: bool):
    """Display a worker's tier progress"""
    click.echo(f"Worker: {report['worker_id']}")
    click.echo(f"Level: {report['current_level']} ({report['level_label']})")
    click.echo(f"Completed Orders: {report['total_completed_orders']}")
    click.echo(f"Current Rate: {report['current_rate']}")
    if report['next_level'] is not None:
        click.echo(f"Next Level Rate: {report['next_level_rate']}")
        click.echo(f"Progress: {report['progress_percent']:.1f}% "
                   f"({report['orders_to_next_level']} orders to level {report['next_level']})")
    click.echo(report['message'])
    if verbose:
        click.echo(json.dumps(report, indent=2, default=str))


def _display_balances_table(results: Dict[str, Decimal]):
    """Display recalculated balances"""
    if not results:
        click.echo("No workers found")
        return
    click.echo(f"{'Worker ID':<36} {'Balance':>12}")
    click.echo("-" * 49)
    for worker_id, balance in results.items():
        click.echo(f"{worker_id:<36} {str(balance):>12}")


def _display_payouts_table(payouts: List[Dict[str, Any]], verbose: bool):
    """Display payout requests in table format"""
    if not payouts:
        click.echo("No payout requests found")
        return

    click.echo(f"{'Request ID':<34} {'Worker':<20} {'Amount':>10} {'Method':<7} {'Status':<10}")
    click.echo("-" * 85)
    for item in payouts:
        click.echo(f"{item['request_id']:<34} {item['worker_id']:<20} {item['amount']:>10} "
                   f"{item['method']:<7} {item['status']:<10}")
        if verbose and item.get('rejection_reason'):
            click.echo(f"    Reason: {item['rejection_reason']}")


def main():
    """Main CLI entry point"""
    cli()


if __name__ == '__main__':
    main()
