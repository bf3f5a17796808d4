"""
One reconciliation pass over unfinished orders that carry a transaction hash.

Monitor registrations are not persisted, so orders that were pending when the
server stopped are left as they were. This applies one step of the monitor's
state machine to each of them.
"""

from __future__ import annotations

import argparse
import logging
from collections import Counter
from typing import Optional, Sequence

from marketplace.db import DbClient
from marketplace.dependencies import get_db_client, get_transaction_monitor
from marketplace.monitor import TickOutcome, TransactionMonitor

logger = logging.getLogger(__name__)


def reconcile_all(db: DbClient, monitor: TransactionMonitor, *, dry_run: bool = False) -> Counter:
    outcomes: Counter = Counter()
    for order in db.list_unfinished_orders_with_hash():
        if dry_run:
            outcome = monitor.evaluate(order.transaction_hash)
        else:
            outcome = monitor.reconcile(order)
        outcomes[outcome] += 1
        logger.info(
            "Order %s (%s): %s", order.order_number, order.transaction_hash, outcome.value
        )
    return outcomes


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile unfinished orders with the chain")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what each order would become without writing",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    outcomes = reconcile_all(get_db_client(), get_transaction_monitor(), dry_run=args.dry_run)
    logger.info(
        "Reconciled %d orders: %s",
        sum(outcomes.values()),
        ", ".join(f"{k.value}={v}" for k, v in sorted(outcomes.items())) or "none",
    )
    return 1 if outcomes.get(TickOutcome.ERROR) else 0
