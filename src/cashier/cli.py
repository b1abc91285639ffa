"""
Cashier CLI — Policy-gated micro-payments for unattended agents.

Commands:
    cashier policy    Show the active policy thresholds
    cashier evaluate  Run the decision engine on a hypothetical order
    cashier order     Evaluate an order and run it through the pipeline
    cashier audit     View audit trail
    cashier demo      Run a full demo flow
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource
from eth_account import Account

from . import __version__
from .amounts import format_amount
from .audit import AuditTrail
from .config import PolicyConfig
from .decision import CheckOutcome, Decision, DecisionContext, DecisionEngine, DecisionResult
from .errors import AuditIntegrityError, CashierError
from .models import Intent, OrderRequest, OrderResponse, StageRole
from .orchestrator import create_orchestrator
from .settlement import DryRunSettlementExecutor, HttpSettlementExecutor
from .signing import EthAccountAttestationSigner


OUTCOME_ICONS = {CheckOutcome.PASS: "✓", CheckOutcome.WARN: "⚠", CheckOutcome.FAIL: "✗"}
DECISION_ICONS = {
    Decision.APPROVE: "✅",
    Decision.REJECT: "❌",
    Decision.CONFIRM: "⚠️ ",
    Decision.DELAY: "⏳",
}
DEMO_MENU = [
    ("Latte", "0.03"),
    ("Espresso", "0.02"),
    ("Premium Gold Coffee", "1.5"),
]


def _load_config() -> PolicyConfig:
    try:
        return PolicyConfig.from_env()
    except ValueError as e:
        click.echo(f"❌ Invalid configuration: {e}", err=True)
        sys.exit(1)


def _audit_trail(ctx: click.Context) -> Optional[AuditTrail]:
    if ctx.obj.get("no_audit"):
        return None
    path = ctx.obj.get("audit_path")
    return AuditTrail(path=Path(path)) if path else AuditTrail()


def _print_decision(result: DecisionResult) -> None:
    click.echo(f"{DECISION_ICONS[result.decision]} {result.summary}")
    click.echo(
        f"   Confidence: {result.confidence:.0%}   Risk: {result.risk_tier.value}   "
        f"Warnings: {result.warn_count}   Failures: {result.fail_count}"
    )
    for step in result.reasoning:
        click.echo(f"   {OUTCOME_ICONS[step.outcome]} [{step.check_name}] {step.detail}")
    for suggestion in result.suggestions:
        click.echo(f"   → {suggestion}")


def _print_response(response: OrderResponse) -> None:
    _print_decision(response.decision)
    run = response.pipeline_run
    if run is None:
        if response.error_message and response.decision.decision == Decision.CONFIRM:
            click.echo("   Re-run with --confirm to proceed.")
        return
    click.echo(f"   Order {run.order_id}: {run.status.value}")
    for role in StageRole:
        record = run.stages.get(role)
        if record is None:
            continue
        mark = "✅" if record.succeeded else "❌"
        click.echo(f"   {mark} {record.stage_name}: {record.outcome.value} ({record.message})")
    if response.settlement_ref:
        click.echo(f"   Settlement: {response.settlement_ref}")


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--audit-path", default=None, envvar="CASHIER_AUDIT_PATH",
              help="Audit log path (default: ~/.cashier/audit.jsonl)")
@click.option("--no-audit", is_flag=True, help="Do not write audit events")
@click.pass_context
def main(ctx: click.Context, verbose: bool, audit_path: Optional[str], no_audit: bool):
    """Cashier — Policy-gated micro-payments for unattended agents."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
    ctx.ensure_object(dict)
    ctx.obj["audit_path"] = audit_path
    ctx.obj["no_audit"] = no_audit


@main.command()
def policy():
    """Show the active policy (CASHIER_* environment overrides applied)."""
    engine = DecisionEngine(_load_config())
    click.echo("📋 Active policy")
    for key, value in engine.describe().items():
        click.echo(f"   {key:<24} {value}")


@main.command()
@click.option("--item", required=True, help="Item being purchased")
@click.option("--price", required=True, help="Price in USDT")
@click.option("--intent", type=click.Choice([i.value for i in Intent], case_sensitive=False),
              default=Intent.PURCHASE.value, help="Order intent")
@click.option("--quantity", type=int, default=1, help="Item quantity")
@click.option("--user", "user_identity", default="0x" + "0" * 40, help="Requesting identity")
@click.option("--window-spend", default="0", help="Spend already committed in the window")
@click.option("--recent-orders", type=int, default=0, help="Orders already placed in the rate window")
@click.option("--balance", default="10", help="Available settlement balance")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
def evaluate(
    item: str,
    price: str,
    intent: str,
    quantity: int,
    user_identity: str,
    window_spend: str,
    recent_orders: int,
    balance: str,
    as_json: bool,
):
    """Evaluate a hypothetical order without paying."""
    engine = DecisionEngine(_load_config())
    try:
        context = DecisionContext.create(
            intent=intent.upper(),
            item=item,
            price=price,
            user_identity=user_identity,
            quantity=quantity,
            recent_order_count=recent_orders,
            window_spend=window_spend,
            available_balance=balance,
        )
    except CashierError as e:
        click.echo(f"❌ Invalid order: {e}", err=True)
        sys.exit(1)

    result = engine.evaluate(context)
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _print_decision(result)
    if result.decision == Decision.REJECT:
        sys.exit(2)


@main.command()
@click.option("--item", required=True, help="Item being purchased")
@click.option("--price", required=True, help="Price in USDT")
@click.option("--merchant", default=None, envvar="CASHIER_DEFAULT_MERCHANT",
              help="Merchant address receiving the payment")
@click.option("--user", "user_identity", default=None,
              help="Requesting identity (default: the signer address)")
@click.option("--intent", type=click.Choice([i.value for i in Intent], case_sensitive=False),
              default=Intent.PURCHASE.value, help="Order intent")
@click.option("--quantity", type=int, default=1, help="Item quantity")
@click.option("--confirm", "user_confirmed", is_flag=True,
              help="Proceed even if the engine asks for confirmation")
@click.option("--settlement-url", default=None, envvar="CASHIER_SETTLEMENT_URL",
              help="Settlement service base URL (default: dry-run executor)")
@click.option("--balance", default="10", help="Dry-run executor balance")
@click.option("--signer-key", default=None, envvar="CASHIER_SIGNER_KEY",
              help="Stage attestation key (hex). Read from CASHIER_SIGNER_KEY; ephemeral if unset.")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --signer-key via argv (unsafe; can leak in shell/process history).",
)
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def order(
    ctx: click.Context,
    item: str,
    price: str,
    merchant: Optional[str],
    user_identity: Optional[str],
    intent: str,
    quantity: int,
    user_confirmed: bool,
    settlement_url: Optional[str],
    balance: str,
    signer_key: Optional[str],
    unsafe_allow_key_arg: bool,
    as_json: bool,
):
    """Evaluate an order and, if allowed, run it through the pipeline."""
    key_from_argv = ctx.get_parameter_source("signer_key") == ParameterSource.COMMANDLINE
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --signer-key from argv. Set CASHIER_SIGNER_KEY or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)

    config = _load_config()
    merchant = merchant or config.default_merchant
    if not merchant:
        click.echo("❌ --merchant is required (or set CASHIER_DEFAULT_MERCHANT).", err=True)
        sys.exit(1)

    try:
        signer = (
            EthAccountAttestationSigner.from_key(signer_key)
            if signer_key
            else EthAccountAttestationSigner.generate()
        )
    except Exception as e:
        click.echo(f"❌ Invalid signer key: {e}", err=True)
        sys.exit(1)

    executor = (
        HttpSettlementExecutor(settlement_url)
        if settlement_url
        else DryRunSettlementExecutor(balance=balance)
    )
    if not settlement_url:
        click.echo("🔍 DRY RUN — no funds will move")

    orchestrator = create_orchestrator(
        executor=executor,
        reception_signer=signer,
        approval_signer=signer,
        payment_signer=signer,
        config=config,
        audit=_audit_trail(ctx),
    )
    request = OrderRequest(
        intent=Intent(intent.upper()),
        item=item,
        price=price,
        quantity=quantity,
        user_identity=user_identity or signer.address,
        merchant_identity=merchant,
        user_confirmed=user_confirmed,
    )
    try:
        response = orchestrator.submit(request)
    except CashierError as e:
        click.echo(f"❌ Order failed: {e}", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(response.to_dict(), indent=2))
    else:
        _print_response(response)
    if not response.success:
        sys.exit(2)


@main.command()
@click.option("--order-id", default=None, help="Filter by order ID")
@click.option("--limit", type=int, default=20, help="Number of events")
@click.pass_context
def audit(ctx: click.Context, order_id: Optional[str], limit: int):
    """View the audit trail."""
    path = ctx.obj.get("audit_path")
    try:
        trail = AuditTrail(path=Path(path)) if path else AuditTrail()
        events = trail.order_trail(order_id)[-limit:] if order_id else trail.read_events(limit=limit)
    except AuditIntegrityError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {format_amount(event.amount)}" if event.amount is not None else ""
        stage = f" [{event.stage}]" if event.stage else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        order_tag = f" {event.order_id}" if event.order_id and not order_id else ""
        click.echo(f"  #{event.seq} {ts} {status} {event.event_type.value}{stage}{order_tag}{amount}{reason}")


@main.command()
@click.option("--balance", default="1.0", help="Dry-run settlement balance")
@click.pass_context
def demo(ctx: click.Context, balance: str):
    """Run a full demo of the order pipeline with dry-run settlement."""
    click.echo("🎬 Cashier Demo — Coffee Orders")
    click.echo("=" * 50)

    click.echo("\n1️⃣  Generating stage signers...")
    signers = {role: EthAccountAttestationSigner.generate() for role in StageRole}
    user = Account.create()
    merchant = Account.create()
    for role, signer in signers.items():
        click.echo(f"   {role.value:<10} {signer.address}")
    click.echo(f"   user       {user.address}")
    click.echo(f"   merchant   {merchant.address}")

    config = _load_config()
    executor = DryRunSettlementExecutor(balance=balance)
    orchestrator = create_orchestrator(
        executor=executor,
        reception_signer=signers[StageRole.RECEPTION],
        approval_signer=signers[StageRole.APPROVAL],
        payment_signer=signers[StageRole.PAYMENT],
        config=config,
        audit=_audit_trail(ctx),
    )
    click.echo(f"\n2️⃣  Policy: max {format_amount(config.max_single_payment)}/order, "
               f"{format_amount(config.max_window_spend)} per window, "
               f"{config.max_orders_per_window} orders per window")

    click.echo("\n3️⃣  Placing orders...")
    for item, price in DEMO_MENU:
        click.echo(f"\n☕ {item} ({price} USDT)")
        response = orchestrator.submit(
            OrderRequest(
                intent=Intent.PURCHASE,
                item=item,
                price=price,
                user_identity=user.address,
                merchant_identity=merchant.address,
            )
        )
        _print_response(response)

    click.echo("\n4️⃣  Window summary...")
    info = orchestrator.system_info(user.address)
    click.echo(f"   Committed: {info['window']['committed']} USDT")
    click.echo(f"   Pending:   {info['window']['reserved']} USDT")
    click.echo(f"   Orders:    {info['recent_orders']}")
    click.echo(f"   Balance:   {format_amount(executor.available_balance(config.asset_ref))}")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Decide → Receive → Approve → Pay → Commit")


if __name__ == "__main__":
    main()
