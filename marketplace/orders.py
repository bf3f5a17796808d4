"""
Order placement: turns a user's cart into an order and hands any
transaction hash to the transaction monitor.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from decimal import Decimal
from typing import Optional

from marketplace.db import (
    CartItemRecord,
    DbClient,
    DuplicateRecordError,
    NftRecord,
    OrderItemRecord,
    OrderRecord,
)
from marketplace.monitor import TransactionMonitor
from marketplace.types import OrderStatus, TransactionStatus

logger = logging.getLogger(__name__)

MAX_ORDER_NUMBER_ATTEMPTS = 10


class EmptyCartError(ValueError):
    pass


def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{random.randint(0, 9999)}"


def calculate_fee(subtotal: Decimal, rate: Decimal) -> Decimal:
    return subtotal * rate


def cart_lines(db: DbClient, user_id: str) -> list[tuple[CartItemRecord, NftRecord]]:
    lines = []
    for item in db.list_cart(user_id):
        nft = db.get_nft(item.nft_id)
        if nft is None:
            logger.warning(
                "Cart item %s references missing NFT %s; skipping", item.item_id, item.nft_id
            )
            continue
        lines.append((item, nft))
    return lines


def _unused_order_number(db: DbClient) -> str:
    number = generate_order_number()
    while db.order_number_exists(number):
        number = generate_order_number()
    return number


def place_order(
    db: DbClient,
    monitor: TransactionMonitor,
    user_id: str,
    *,
    transaction_hash: Optional[str] = None,
    fee_rate: Decimal = Decimal("0.025"),
) -> OrderRecord:
    """Create an order from the user's cart, clear the cart, start monitoring.

    Raises:
        EmptyCartError: If the cart holds nothing orderable.
    """
    lines = cart_lines(db, user_id)
    if not lines:
        raise EmptyCartError("Cart is empty")

    subtotal = sum((nft.price * item.quantity for item, nft in lines), Decimal("0"))
    fee = calculate_fee(subtotal, fee_rate)

    for attempt in range(MAX_ORDER_NUMBER_ATTEMPTS):
        order_id = uuid.uuid4().hex
        order = OrderRecord(
            order_id=order_id,
            user_id=user_id,
            order_number=_unused_order_number(db),
            subtotal=subtotal,
            fee=fee,
            total_amount=subtotal + fee,
            status=OrderStatus.PENDING,
            transaction_hash=transaction_hash or None,
            transaction_status=TransactionStatus.PENDING if transaction_hash else None,
        )
        items = [
            OrderItemRecord(
                item_id=uuid.uuid4().hex,
                order_id=order_id,
                nft_id=nft.nft_id,
                quantity=item.quantity,
                price=nft.price,
            )
            for item, nft in lines
        ]
        try:
            created = db.create_order_from_cart(order, items)
            break
        except DuplicateRecordError:
            # Another order grabbed the number between the check and the insert.
            logger.warning("Order number collision on attempt %d", attempt + 1)
    else:
        raise RuntimeError("Could not allocate a unique order number")

    logger.info(
        "Order %s (%s) created for user %s, total %s",
        created.order_number,
        created.order_id,
        user_id,
        created.total_amount,
    )
    if transaction_hash:
        monitor.start_monitoring(created.order_id, transaction_hash)
    return created


def order_items_payload(
    db: DbClient, order: OrderRecord, *, include_token: bool = False
) -> list[dict]:
    payload = []
    for item in db.list_order_items(order.order_id):
        nft = db.get_nft(item.nft_id)
        entry = {
            "id": item.item_id,
            "order_id": item.order_id,
            "nft_id": item.nft_id,
            "quantity": item.quantity,
            "price": str(item.price),
            "name": nft.name if nft else None,
            "description": nft.description if nft else None,
            "image_url": nft.image_url if nft else None,
        }
        if include_token:
            entry["token_id"] = nft.token_id if nft else None
            entry["contract_address"] = nft.contract_address if nft else None
        payload.append(entry)
    return payload
