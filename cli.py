"""cleanleads CLI: clean lead lists from the command line.

Commands:
  clean          Clean a CSV file down to rows with verified emails
  verify         Verify a single email address (1 credit)
  credits show   Show the balance for an account or IP
  credits grant  Add credits for a payment id (applied once)
  stats          Show ledger totals from a DuckDB ledger
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import click
from tqdm import tqdm

from engine.cleaner import clean_csv
from engine.credits import CreditGate
from engine.csv_io import CLEANED_FILENAME, write_csv
from engine.errors import CleanLeadsError, InsufficientCredit
from engine.models import CreditPolicy, Identity
from engine.oracle import OracleClient
from engine.syntax import normalize
from engine.verifier import DEFAULT_BATCH_DELAY_SECONDS, DEFAULT_BATCH_SIZE
from store.ledger import CreditLedger, ledger_from_env


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )


def _open_ledger(ledger_path: Optional[str]) -> CreditLedger:
    if ledger_path:
        from store.duckdb_ledger import DuckDBLedger

        return DuckDBLedger(Path(ledger_path))
    return ledger_from_env()


def _oracle_client() -> OracleClient:
    return OracleClient()


def _identity(account: Optional[str], ip: str) -> Identity:
    return Identity.account(account) if account else Identity.ip(ip)


identity_options = [
    click.option("--account", default=None, help="Charge this account id"),
    click.option("--ip", default="127.0.0.1", show_default=True, help="Charge this IP when no account is given"),
    click.option("--ledger", "ledger_path", type=click.Path(), help="Path to a DuckDB credit ledger"),
]


def with_identity(fn):
    for option in reversed(identity_options):
        fn = option(fn)
    return fn


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """cleanleads: keep only the rows whose emails verify."""
    _setup_logging(verbose)


@main.command()
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), help=f"Output CSV path (default: {CLEANED_FILENAME})")
@click.option(
    "--policy",
    type=click.Choice([p.value for p in CreditPolicy]),
    default=CreditPolicy.per_address.value,
    show_default=True,
)
@click.option("--batch-size", type=int, default=DEFAULT_BATCH_SIZE, show_default=True)
@click.option("--batch-delay", type=float, default=DEFAULT_BATCH_DELAY_SECONDS, show_default=True)
@click.option("--sequential", is_flag=True, help="One oracle call at a time within a batch")
@with_identity
def clean(
    input_file: str,
    output: str,
    policy: str,
    batch_size: int,
    batch_delay: float,
    sequential: bool,
    account: str,
    ip: str,
    ledger_path: str,
):
    """Clean INPUT_FILE and write only the rows with a verified email."""
    identity = _identity(account, ip)
    ledger = _open_ledger(ledger_path)
    gate = CreditGate(ledger)
    data = Path(input_file).read_bytes()

    pbar = tqdm(total=100, desc="Verifying", unit="%")

    def on_progress(percent: float) -> None:
        pbar.update(max(0.0, percent - pbar.n))

    async def _run():
        async with _oracle_client() as client:
            return await clean_csv(
                data,
                identity=identity,
                gate=gate,
                verify_fn=client.verify_or_fallback,
                policy=CreditPolicy(policy),
                progress_callback=on_progress,
                batch_size=batch_size,
                batch_delay_seconds=batch_delay,
                sequential=sequential,
            )

    try:
        result = asyncio.run(_run())
    except InsufficientCredit as e:
        raise click.ClickException(
            f"{e.message} ({e.credits_consumed} credits used, {e.required} emails not verified)"
        )
    except CleanLeadsError as e:
        raise click.ClickException(e.message)
    finally:
        pbar.close()
        ledger.close()

    output_path = Path(output) if output else Path(CLEANED_FILENAME)
    output_path.write_bytes(write_csv(result.rows))

    click.echo(f"\nVerified {result.verified_emails}/{result.total_emails} emails")
    click.echo(f"Kept {len(result.rows) - 1} rows -> {output_path}")
    click.echo(f"Credits used: {result.credits_consumed}, remaining: {result.remaining_credits}")


@main.command()
@click.argument("email")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@with_identity
def verify(email: str, json_output: bool, account: str, ip: str, ledger_path: str):
    """Verify a single email address."""
    address = normalize(email)
    if address is None:
        raise click.ClickException(f"Not a plausible email address: {email}")

    identity = _identity(account, ip)
    ledger = _open_ledger(ledger_path)
    try:
        remaining = CreditGate(ledger).consume_one(identity)
    except CleanLeadsError as e:
        raise click.ClickException(e.message)
    finally:
        ledger.close()

    async def _run():
        async with _oracle_client() as client:
            return await client.verify_or_fallback(address)

    verdict = asyncio.run(_run())

    if json_output:
        click.echo(json.dumps({"result": verdict.to_public(), "credits": remaining}, indent=2))
        return

    icon = "✓" if verdict.verified else "✗"
    click.echo(f"\n{icon} {verdict.email}")
    click.echo(f"  Verified:   {verdict.verified}")
    click.echo(f"  Syntax:     {verdict.syntax}")
    click.echo(f"  MX record:  {verdict.mx_record}")
    click.echo(f"  SMTP:       {verdict.smtp}")
    click.echo(f"  Disposable: {verdict.disposable}")
    if verdict.error:
        click.echo(f"  Error:      {verdict.error}")
    click.echo(f"Credits remaining: {remaining}")


@main.group()
def credits():
    """Inspect and top up credit balances."""


@credits.command("show")
@with_identity
def credits_show(account: str, ip: str, ledger_path: str):
    identity = _identity(account, ip)
    ledger = _open_ledger(ledger_path)
    try:
        acct = CreditGate(ledger).account(identity)
    finally:
        ledger.close()
    click.echo(f"{acct.key}: {acct.credits} credits ({acct.total_used} used)")


@credits.command("grant")
@click.argument("amount", type=int)
@click.option("--payment-id", required=True, help="Idempotency key; a repeated id is ignored")
@with_identity
def credits_grant(amount: int, payment_id: str, account: str, ip: str, ledger_path: str):
    """Add AMOUNT credits, e.g. for a manual refund."""
    if amount <= 0:
        raise click.BadParameter("must be positive", param_hint="AMOUNT")
    identity = _identity(account, ip)
    ledger = _open_ledger(ledger_path)
    try:
        gate = CreditGate(ledger)
        applied = gate.add_credits(identity, amount, payment_id)
        balance = gate.check_balance(identity)
    finally:
        ledger.close()

    if applied:
        click.echo(f"Added {amount} credits to {identity}; balance {balance}")
    else:
        click.echo(f"Payment {payment_id} was already applied; balance {balance}")


@main.command()
@click.option("--ledger", "ledger_path", type=click.Path(), help="Path to a DuckDB credit ledger")
def stats(ledger_path: str):
    """Show totals from a DuckDB credit ledger."""
    from store.duckdb_ledger import DuckDBLedger

    ledger = _open_ledger(ledger_path)
    try:
        if not isinstance(ledger, DuckDBLedger):
            raise click.ClickException(f"stats needs a DuckDB ledger, got {ledger.backend}")
        s = ledger.stats()
    finally:
        ledger.close()

    click.echo(f"Accounts:            {s['accounts']}")
    click.echo(f"Credits outstanding: {s['credits_outstanding']}")
    click.echo(f"Credits used:        {s['credits_used']}")
    click.echo(f"Purchases applied:   {s['purchases']}")


if __name__ == "__main__":
    main()
