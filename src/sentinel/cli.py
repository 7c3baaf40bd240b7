"""
Sentinel CLI — operator surface for the payment authorization pipeline.

Commands:
    sentinel pay          Run a payment request through the pipeline
    sentinel setpin       Configure the approval PIN
    sentinel changepin    Replace the approval PIN
    sentinel audit        Show recent audit events
    sentinel export-logs  Write the audit log to CSV
    sentinel verify-audit Check the audit hash chain
    sentinel status       Velocity, reputation and ledger summary
    sentinel demo         Run the end-to-end simulated flow offline
"""

from __future__ import annotations

import logging
import sys
import tempfile
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .approval import ApprovalState
from .audit import DEFAULT_CSV_ROWS
from .config import SentinelConfig
from .errors import (
    ApprovalError,
    AuthFailure,
    ConfigError,
    LockedOut,
    PinError,
    PinNotConfigured,
    SentinelError,
)
from .money import format_amount
from .offline import OfflineBackend
from .pipeline import PipelineResult, PipelineStatus, Sentinel

DEFAULT_USER = "operator"


def _sentinel(offline: bool = False, config: Optional[SentinelConfig] = None) -> Sentinel:
    try:
        config = config or SentinelConfig.from_env()
        backend = OfflineBackend() if offline else None
        return Sentinel.from_config(config, backend=backend)
    except ConfigError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)


def _echo_result(result: PipelineResult) -> None:
    if result.status == PipelineStatus.ERROR:
        click.echo(f"❌ {result.message}", err=True)
        return
    if result.status == PipelineStatus.BLOCKED:
        click.echo(f"🚫 {result.message}")
        if result.decision:
            click.echo(f"   Risk score: {result.decision.risk_score}")
        return

    intent = result.intent
    click.echo(f"✅ Audit passed (risk {result.decision.risk_score}) | proof {result.proof.handle[:18]}…")
    click.echo(f"   Recipient: {intent.recipient_name}{' (verified)' if intent.verified else ' (unverified)'}")
    click.echo(f"   Amount:    {format_amount(intent.amount)}")
    if result.saved > 0:
        click.echo(f"   Saved:     {format_amount(result.saved)}")
    click.echo(f"   Mandate:   {result.mandate.content_hash}")
    click.echo(f"   Expires:   {result.mandate.expiry}")
    click.echo(f"   Agent:     {result.badge}")
    if result.settlement:
        click.echo(f"   Reference: {result.settlement.reference}")
    click.echo(f"   {result.message}")


def _drive_approval(sentinel: Sentinel, user: str) -> None:
    if not click.confirm("Approve this payment?", default=False):
        sentinel.reject(user)
        click.echo("Payment rejected.")
        return

    try:
        step = sentinel.approve(user)
    except PinNotConfigured as e:
        click.echo(f"🔐 {e}", err=True)
        sys.exit(1)
    except ApprovalError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    while step.state == ApprovalState.AWAITING_MULTISIG:
        click.echo(f"👥 {step.message}")
        approver = click.prompt("Approver ID")
        step = sentinel.approve_multisig(user, approver)

    while step.state == ApprovalState.AWAITING_PIN:
        pin = click.prompt("PIN", hide_input=True)
        try:
            step = sentinel.submit_pin(user, pin)
        except LockedOut as e:
            click.echo(f"❌ {e}", err=True)
            sys.exit(1)
        except AuthFailure as e:
            click.echo(f"❌ {e}", err=True)
            if e.locked_until is not None:
                sys.exit(1)

    if step.state != ApprovalState.EXECUTED:
        click.echo(f"❌ Approval ended in {step.state.value}", err=True)
        sys.exit(1)
    click.echo(f"✅ {step.message}")


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Log pipeline activity to stderr")
def main(verbose: bool):
    """Sentinel — mandate authorization and settlement for agent payments."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.argument("text")
@click.option("--user", default=DEFAULT_USER, help="User ID requesting the payment")
@click.option("--production", is_flag=True, help="Execute a real transfer after approval")
@click.option("--offline", is_flag=True, help="Use the offline rule backend instead of the inference API")
def pay(text: str, user: str, production: bool, offline: bool):
    """Run TEXT (e.g. "Pay 50 to AWS for servers") through the pipeline."""
    sentinel = _sentinel(offline)
    try:
        result = sentinel.pay(user, text, production=production)
    except SentinelError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    _echo_result(result)
    if result.status in (PipelineStatus.ERROR, PipelineStatus.BLOCKED):
        sys.exit(1)
    if result.status == PipelineStatus.NEEDS_APPROVAL:
        try:
            _drive_approval(sentinel, user)
        except SentinelError as e:
            click.echo(f"❌ {e}", err=True)
            sys.exit(1)


@main.command()
@click.option("--user", default=DEFAULT_USER, help="User ID")
@click.option("--pin", prompt=True, hide_input=True, confirmation_prompt=True, help="4-digit PIN")
def setpin(user: str, pin: str):
    """Configure the approval PIN."""
    try:
        _sentinel(offline=True).set_pin(user, pin)
    except PinError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo("✅ PIN configured")


@main.command()
@click.option("--user", default=DEFAULT_USER, help="User ID")
@click.option("--old-pin", prompt=True, hide_input=True, help="Current PIN")
@click.option("--new-pin", prompt=True, hide_input=True, confirmation_prompt=True, help="New 4-digit PIN")
def changepin(user: str, old_pin: str, new_pin: str):
    """Replace the approval PIN."""
    try:
        _sentinel(offline=True).change_pin(user, old_pin, new_pin)
    except PinError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo("✅ PIN changed")


@main.command()
@click.option("--limit", type=int, default=5, help="Number of events")
def audit(limit: int):
    """Show the most recent audit events."""
    events = _sentinel(offline=True).ledger.query(limit=limit)
    if not events:
        click.echo("No audit events found.")
        return
    for event in events:
        status = "✅" if event.status == "SUCCESS" else "❌" if event.status in ("FAILED", "BLOCKED") else "•"
        click.echo(f"  {event.timestamp} {status} {event.kind} {event.action} [{event.status}]")


@main.command("export-logs")
@click.option("--output", type=click.Path(dir_okay=False, path_type=Path), default=None, help="CSV path")
@click.option("--limit", type=int, default=DEFAULT_CSV_ROWS, help="Number of most recent events")
def export_logs(output: Optional[Path], limit: int):
    """Write recent audit events to CSV."""
    config = SentinelConfig.from_env()
    path = output or config.data_dir / "audit_export.csv"
    written = _sentinel(offline=True, config=config).ledger.export_csv(path, limit=limit)
    click.echo(f"✅ Audit log exported to {written}")


@main.command("verify-audit")
def verify_audit():
    """Recompute the audit hash chain."""
    try:
        count = _sentinel(offline=True).ledger.verify_chain()
    except RuntimeError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Audit chain intact ({count} events)")


@main.command()
def status():
    """Show velocity usage, agent reputation and ledger totals."""
    info = _sentinel(offline=True).status()
    click.echo(f"Agent:         {info['agent']}")
    click.echo(f"Hourly volume: {info['hourly_used']} / {info['hourly_limit']}")
    click.echo(f"Reputation:    {info['reputation']['badge']}")
    click.echo(f"Audit events:  {info['audit']['total_events']} ({info['audit']['failures']} failures)")


@main.command()
def demo():
    """Run the simulated pipeline end to end with the offline backend."""
    click.echo("🎬 Sentinel Demo — Mandate Authorization Flow")
    click.echo("=" * 50)

    with tempfile.TemporaryDirectory() as tmp:
        config = SentinelConfig(data_dir=Path(tmp))
        sentinel = _sentinel(offline=True, config=config)

        requests = [
            "Pay 50 to AWS for servers",
            "Pay 20 to Stripe for processing fees",
            "Pay 5000 to Lucky Casino for gambling",
        ]
        for i, text in enumerate(requests, start=1):
            click.echo(f"\n{i}️⃣  {text}")
            _echo_result(sentinel.pay("demo", text))

        click.echo("\n🔒 Velocity check (usage near the hourly limit)...")
        sentinel.auditor.velocity.set_used(sentinel.auditor.velocity.limit - 30)
        _echo_result(sentinel.pay("demo", "Pay 50 to AWS for servers"))

        click.echo("\n📜 Audit trail (last 10 events)...")
        for event in sentinel.ledger.query(limit=10):
            click.echo(f"   {event.timestamp} {event.kind} {event.action} [{event.status}]")
        count = sentinel.ledger.verify_chain()

    click.echo("\n" + "=" * 50)
    click.echo(f"🎉 Demo complete! {count} audit events, hash chain intact.")


if __name__ == "__main__":
    main()
