import json

import click
from flask import current_app
from flask.cli import with_appcontext
from plansync.extensions import db
from plansync.models import UserPlan, BillingLedgerEntry
from plansync.billing import MalformedPayload, parse_envelope

@click.group()
def billing():
    """Plan reconciliation ops."""

@billing.command("show-plan")
@click.argument("user_id")
@with_appcontext
def billing_show_plan(user_id):
    row = db.session.get(UserPlan, user_id)
    if not row:
        raise click.ClickException(f"No plan row for user {user_id}")
    click.echo(json.dumps(row.to_dict(), indent=2))

@billing.command("ledger")
@click.argument("user_id")
@click.option("--limit", type=int, default=20, show_default=True)
@with_appcontext
def billing_ledger(user_id, limit):
    rows = (
        db.session.query(BillingLedgerEntry)
        .filter_by(user_id=user_id)
        .order_by(BillingLedgerEntry.id.desc())
        .limit(limit)
        .all()
    )
    if not rows:
        click.echo(f"No ledger entries for user {user_id}")
        return
    for r in rows:
        reason = f" reason={r.failure_reason!r}" if r.failure_reason else ""
        click.echo(f"{r.id} {r.event_type} {r.status} {r.amount} {r.currency} event={r.event_id}{reason}")

@billing.command("replay")
@click.argument("event_file", type=click.File("r"))
@with_appcontext
def billing_replay(event_file):
    """
    Re-run a stored Stripe event envelope (e.g. copied from the dashboard)
    through the router. Skips signature and freshness checks: operator input
    is trusted. Processed-event dedup still applies.
    """
    try:
        event = parse_envelope(json.load(event_file))
    except ValueError as exc:
        raise click.ClickException(f"Not valid JSON: {exc}")
    except MalformedPayload as exc:
        raise click.ClickException(f"Invalid event envelope: {exc.message}")

    outcome = current_app.extensions["event_router"].dispatch(event, meta={"processed_via": "cli_replay"})
    click.echo(json.dumps({"status": outcome.status_code, **outcome.body}))
    if not outcome.acknowledged:
        raise click.ClickException(f"Replay of {event.id} failed with status {outcome.status_code}")

def register_cli(app):
    app.cli.add_command(billing)
