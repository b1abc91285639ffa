"""
Walkthrough: several agents ordering against one spending window.

1. Three stage signers are generated (one per pipeline stage)
2. Eight threads submit orders for the same identity at once
3. The approval stage reserves each amount under the ledger lock
4. The window total never exceeds the configured ceiling
"""

import logging
import sys
import tempfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from eth_account import Account

sys.path.insert(0, "../src")
from cashier.audit import AuditTrail
from cashier.config import PolicyConfig
from cashier.models import Intent, OrderRequest, OrderStatus
from cashier.orchestrator import create_orchestrator
from cashier.settlement import DryRunSettlementExecutor
from cashier.signing import EthAccountAttestationSigner


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    print("🤖 Cashier — Concurrent Orders")
    print("=" * 55)
    print()

    workdir = Path(tempfile.mkdtemp(prefix="cashier-"))
    trail = AuditTrail(path=workdir / "audit.jsonl", key_path=workdir / "secrets" / "audit_hmac.key")
    config = PolicyConfig(max_window_spend="1.0", max_orders_per_window=100)
    executor = DryRunSettlementExecutor(balance="5")
    orchestrator = create_orchestrator(
        executor=executor,
        reception_signer=EthAccountAttestationSigner.generate(),
        approval_signer=EthAccountAttestationSigner.generate(),
        payment_signer=EthAccountAttestationSigner.generate(),
        config=config,
        audit=trail,
    )

    user = Account.create().address
    merchant = Account.create().address
    print(f"1️⃣  User {user}")
    print(f"   Window ceiling: {config.max_window_spend} USDT")
    print()

    def place(i):
        request = OrderRequest(
            intent=Intent.PURCHASE,
            item=f"Espresso #{i}",
            price="0.3",
            user_identity=user,
            merchant_identity=merchant,
        )
        return orchestrator.submit(request)

    print("2️⃣  Submitting 8 orders of 0.3 USDT in parallel...")
    with ThreadPoolExecutor(max_workers=8) as pool:
        responses = list(pool.map(place, range(8)))

    for response in responses:
        run = response.pipeline_run
        status = run.status.value if run else response.decision.decision.value
        mark = "✅" if run and run.status == OrderStatus.COMPLETED else "❌"
        print(f"   {mark} {status:<10} {response.error_message or response.settlement_ref}")
    print()

    info = orchestrator.system_info(user)
    print("3️⃣  Window")
    print(f"   Committed: {info['window']['committed']} USDT")
    print(f"   Pending:   {info['window']['reserved']} USDT")
    print(f"   Audit:     {trail.summary()['total_events']} events in {trail.path}")


if __name__ == "__main__":
    main()
