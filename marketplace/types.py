"""
Shared enums for marketplace records.
"""

from __future__ import annotations

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class AuthMethod(str, Enum):
    PASSWORD = "password"
    PRIVY_EMAIL = "privy_email"
    PRIVY_GOOGLE = "privy_google"
    PRIVY_WALLET = "privy_wallet"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


# Orders in these states may still change as the chain progresses.
UNFINISHED_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.PROCESSING)
