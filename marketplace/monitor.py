"""
Transaction monitor that reconciles order status with on-chain receipts.

Each monitored order gets a repeating timer that polls the chain at a fixed
interval until the transaction reaches a terminal state, plus a one-shot
timeout timer. Registrations live only in this process: a restart drops them
and nothing re-registers unfinished orders automatically (see
``scripts/reconcile_orders.py`` for the manual pass).
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Dict, Optional

from marketplace.chain import ChainClient
from marketplace.db import DbClient, OrderRecord
from marketplace.types import OrderStatus, TransactionStatus

logger = logging.getLogger(__name__)

REVERTED_REASON = "Transaction reverted on-chain"
NOT_FOUND_REASON = "Transaction not found on blockchain"
TIMEOUT_REASON = "Transaction monitoring timeout"


class TickOutcome(str, Enum):
    WAITING = "waiting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REVERTED = "reverted"
    NOT_FOUND = "not_found"
    ERROR = "error"
    INACTIVE = "inactive"


OUTCOME_UPDATES: Dict[TickOutcome, dict] = {
    TickOutcome.PROCESSING: {
        "status": OrderStatus.PROCESSING,
        "transaction_status": TransactionStatus.PENDING,
    },
    TickOutcome.COMPLETED: {
        "status": OrderStatus.COMPLETED,
        "transaction_status": TransactionStatus.CONFIRMED,
    },
    TickOutcome.REVERTED: {
        "status": OrderStatus.FAILED,
        "transaction_status": TransactionStatus.FAILED,
        "failure_reason": REVERTED_REASON,
    },
    TickOutcome.NOT_FOUND: {
        "status": OrderStatus.FAILED,
        "transaction_status": TransactionStatus.FAILED,
        "failure_reason": NOT_FOUND_REASON,
    },
}

TERMINAL_OUTCOMES = frozenset(
    {TickOutcome.COMPLETED, TickOutcome.REVERTED, TickOutcome.NOT_FOUND}
)

TimerFactory = Callable[..., threading.Timer]


class MonitorHandle:
    """Cancellation handle for one order's poll and timeout timers."""

    def __init__(self, order_id: str, tx_hash: str):
        self.order_id = order_id
        self.tx_hash = tx_hash
        self.registered_at = time.time()
        self.poll_timer: Optional[threading.Timer] = None
        self.timeout_timer: Optional[threading.Timer] = None
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        for timer in (self.poll_timer, self.timeout_timer):
            if timer is not None:
                timer.cancel()


class TransactionMonitor:
    """Polls the chain for order transactions and updates the orders.

    At most one registration exists per order id; registering again cancels
    the previous one. The registry is guarded by a mutex because timers run
    on their own threads, and order writes happen under the same mutex so a
    cancelled or superseded registration can never write.
    """

    def __init__(
        self,
        db: DbClient,
        chain: ChainClient,
        *,
        required_confirmations: int = 3,
        poll_interval: float = 10.0,
        timeout: float = 30 * 60,
        timer_factory: TimerFactory = threading.Timer,
    ):
        self.db = db
        self.chain = chain
        self.required_confirmations = required_confirmations
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._timer_factory = timer_factory
        self._registry: Dict[str, MonitorHandle] = {}
        self._lock = threading.RLock()

    # ---- registry ----

    def start_monitoring(self, order_id: str, tx_hash: Optional[str]) -> Optional[MonitorHandle]:
        if not tx_hash:
            logger.error("No transaction hash provided for order %s", order_id)
            return None

        key = str(order_id)
        self.stop_monitoring(key)
        handle = MonitorHandle(key, tx_hash)
        with self._lock:
            self._registry[key] = handle
        logger.info("Starting transaction monitoring for order %s, tx: %s", key, tx_hash)

        handle.timeout_timer = self._start_timer(self.timeout, self._on_timeout, handle)
        # First check runs right away, then every poll_interval seconds.
        self._schedule_tick(handle, 0)
        return handle

    def stop_monitoring(self, order_id: str) -> bool:
        with self._lock:
            handle = self._registry.pop(str(order_id), None)
        if handle is None:
            return False
        handle.cancel()
        logger.info("Stopped monitoring order %s", order_id)
        return True

    def stop_all(self) -> None:
        with self._lock:
            handles = list(self._registry.values())
            self._registry.clear()
        for handle in handles:
            handle.cancel()
        if handles:
            logger.info("Stopped monitoring %d orders", len(handles))

    def is_monitoring(self, order_id: str) -> bool:
        with self._lock:
            return str(order_id) in self._registry

    def active_order_ids(self) -> list[str]:
        with self._lock:
            return list(self._registry)

    def is_active(self, handle: MonitorHandle) -> bool:
        with self._lock:
            return not handle.cancelled and self._registry.get(handle.order_id) is handle

    # ---- scheduling ----

    def _start_timer(self, delay: float, fn, handle: MonitorHandle) -> threading.Timer:
        timer = self._timer_factory(delay, fn, args=(handle,))
        timer.daemon = True
        timer.start()
        return timer

    def _schedule_tick(self, handle: MonitorHandle, delay: float) -> None:
        if handle.cancelled:
            return
        handle.poll_timer = self._start_timer(delay, self._run_tick, handle)

    def _run_tick(self, handle: MonitorHandle) -> None:
        try:
            self.tick(handle)
        except Exception:
            # Database hiccups are retried on the next tick like provider errors.
            logger.exception(
                "Unexpected error monitoring order %s (tx %s)",
                handle.order_id,
                handle.tx_hash,
            )
        if self.is_active(handle):
            self._schedule_tick(handle, self.poll_interval)

    # ---- state machine ----

    def evaluate(self, tx_hash: str) -> TickOutcome:
        """Classify the transaction's current on-chain state. Never writes."""
        try:
            receipt = self.chain.get_receipt(tx_hash)
        except Exception as exc:
            logger.warning("Error monitoring transaction %s: %s", tx_hash, exc)
            return self._check_exists(tx_hash)

        if receipt is None:
            return self._check_exists(tx_hash)

        if not receipt.succeeded:
            return TickOutcome.REVERTED

        logger.info(
            "Transaction %s confirmed %d times", tx_hash, receipt.confirmations
        )
        if receipt.confirmations >= self.required_confirmations:
            return TickOutcome.COMPLETED
        return TickOutcome.PROCESSING

    def _check_exists(self, tx_hash: str) -> TickOutcome:
        try:
            exists = self.chain.transaction_exists(tx_hash)
        except Exception as exc:
            logger.warning("Error checking transaction existence %s: %s", tx_hash, exc)
            return TickOutcome.ERROR
        if not exists:
            return TickOutcome.NOT_FOUND
        logger.info("Transaction %s not yet mined", tx_hash)
        return TickOutcome.WAITING

    def tick(self, handle: MonitorHandle) -> TickOutcome:
        """Run one poll for ``handle``; stale handles are a no-op."""
        if not self.is_active(handle):
            return TickOutcome.INACTIVE

        outcome = self.evaluate(handle.tx_hash)
        fields = OUTCOME_UPDATES.get(outcome)
        if fields is None:
            return outcome

        with self._lock:
            if not self.is_active(handle):
                return TickOutcome.INACTIVE
            self.db.update_order(handle.order_id, **fields)
            if outcome in TERMINAL_OUTCOMES:
                self._registry.pop(handle.order_id, None)
                handle.cancel()

        if outcome in TERMINAL_OUTCOMES:
            logger.info("Order %s marked as %s (%s)", handle.order_id, fields["status"].value, outcome.value)
            logger.info("Stopped monitoring order %s", handle.order_id)
        return outcome

    def _on_timeout(self, handle: MonitorHandle) -> None:
        with self._lock:
            if not self.is_active(handle):
                return
            self._registry.pop(handle.order_id, None)
            handle.cancel()
            order = self.db.get_order(handle.order_id)
            if order is None or order.status != OrderStatus.PENDING:
                logger.info("Monitoring for order %s timed out", handle.order_id)
                return
            self.db.update_order(
                handle.order_id,
                status=OrderStatus.FAILED,
                transaction_status=TransactionStatus.FAILED,
                failure_reason=TIMEOUT_REASON,
            )
        logger.warning(
            "Order %s marked as failed - transaction monitoring timeout", handle.order_id
        )

    # ---- manual reconciliation ----

    def reconcile(self, order: OrderRecord) -> TickOutcome:
        """Apply one state-machine step to ``order`` without registering it."""
        if not order.transaction_hash:
            return TickOutcome.INACTIVE
        outcome = self.evaluate(order.transaction_hash)
        fields = OUTCOME_UPDATES.get(outcome)
        if fields is not None:
            self.db.update_order(order.order_id, **fields)
        return outcome
