import click
from flask.cli import with_appcontext
from flask import current_app

from fleak.errors import FlakeError
from fleak.services import flake_service


def _broadcast(result):
    from fleak.services.oracle_queue import get_oracle_queue

    oracle_queue = get_oracle_queue()
    return oracle_queue.submit_and_wait(result["contractAddress"], result["calldata"])


@click.command('refund-expired')
@click.option('--broadcast/--no-broadcast', default=True, help='Send openRefunds through the oracle key')
@with_appcontext
def refund_expired_command(broadcast):
    """
    Open refunds for every flake whose deadline passed before all stakes arrived.
    Run this command periodically (cron job or scheduler)

    Usage: flask refund-expired
    """
    click.echo("🔍 Checking for expired, unstaked flakes...")
    flake_ids = flake_service.find_expired_unstaked()

    if not flake_ids:
        click.echo("✓ No flakes to refund")
        return

    opened, failed = 0, 0
    for flake_id in flake_ids:
        try:
            if broadcast:
                # stored only once the chain accepted it, so a failed send is retried next sweep
                tx_hash = _broadcast(flake_service.prepare_open_refunds(flake_id))
                flake_service.open_refunds(flake_id, tx_hash=tx_hash)
                click.echo(f"   {flake_id}: refunds opened ({tx_hash})")
            else:
                result = flake_service.open_refunds(flake_id)
                click.echo(f"   {flake_id}: refunds opened, calldata {result['calldata']}")
            opened += 1
        except FlakeError as e:
            failed += 1
            current_app.logger.warning(f"Refund sweep failed for {flake_id}: {e.message}")
            click.echo(f"❌ {flake_id}: {e.message}", err=True)

    click.echo(f"✅ Opened refunds for {opened} flake(s), {failed} failed")


@click.command('oracle-resolve')
@click.argument('flake_id')
@click.argument('winner_id')
@click.argument('winner_address')
@with_appcontext
def oracle_resolve_command(flake_id, winner_id, winner_address):
    """
    Resolve a flake and broadcast resolveFlake with the oracle key

    Usage: flask oracle-resolve <flake_id> <winner_id> 0xWinner...
    """
    try:
        tx_hash = _broadcast(flake_service.prepare_resolution(flake_id, winner_id, winner_address))
        flake_service.resolve_flake(flake_id, winner_id, winner_address, tx_hash=tx_hash)
    except FlakeError as e:
        click.echo(f"❌ Error: {e.message}", err=True)
        raise click.exceptions.Exit(1)

    click.echo(f"✅ Flake {flake_id} resolved to {winner_id}")
    click.echo(f"   Tx: {tx_hash}")


@click.command('list-flakes')
@click.option('--status', 'statuses', multiple=True, help='Filter by status (repeatable)')
@click.option('--participant', help='Only flakes this participant belongs to')
@with_appcontext
def list_flakes_command(statuses, participant):
    """
    List flakes with their lifecycle status

    Usage:
        flask list-flakes
        flask list-flakes --status ACTIVE --participant 42
    """
    from fleak.models.flake import FlakeStatus
    from fleak.services.flake_store import FlakeStore

    try:
        status_filter = [FlakeStatus(s.upper()) for s in statuses] or list(FlakeStatus)
    except ValueError as e:
        click.echo(f"❌ Error: {e}", err=True)
        raise click.exceptions.Exit(1)

    if participant:
        flakes = FlakeStore.find_for_participant(participant, statuses=status_filter)
    else:
        flakes = FlakeStore.find_by_status_and_type(status_filter)

    if not flakes:
        click.echo("No flakes found.\n")
        return

    click.echo(f"\n{'Flake':<38} {'Status':<18} {'Type':<10} {'Staked':<8} {'Deadline'}")
    click.echo("-" * 95)
    for f in flakes:
        staked = sum(1 for p in f.participants if p.status.value == 'staked')
        click.echo(
            f"{f.flake_id:<38} {f.status.value:<18} {f.verification_type.value:<10} "
            f"{staked}/{len(f.participants):<6} {f.deadline.strftime('%Y-%m-%d %H:%M')}"
        )

    click.echo(f"\nTotal: {len(flakes)} flake(s)\n")
