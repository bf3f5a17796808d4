"""
Database abstraction for SQL databases and an in-memory test implementation.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional, Protocol

from sqlalchemy import (
    JSON,
    Column,
    Float,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    cast,
    create_engine,
    delete,
    func,
    or_,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace.types import (
    UNFINISHED_ORDER_STATUSES,
    AuthMethod,
    OrderStatus,
    Role,
    TransactionStatus,
)


class DuplicateRecordError(Exception):
    """Raised when a unique field (email, order number...) is already taken."""


NFT_SORT_FIELDS = ("price", "date", "name")
ORDER_SORT_FIELDS = ("createdAt", "total_amount", "status", "order_number")


def _new_id() -> str:
    return uuid.uuid4().hex


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


@dataclass
class UserRecord:
    user_id: str
    email: str
    password_hash: Optional[str] = None
    privy_user_id: Optional[str] = None
    auth_method: AuthMethod = AuthMethod.PASSWORD
    role: Role = Role.USER
    wallet_address: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        # password_hash is never serialized
        return {
            "id": self.user_id,
            "email": self.email,
            "role": self.role.value,
            "wallet_address": self.wallet_address,
            "auth_method": self.auth_method.value,
            "privy_user_id": self.privy_user_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class NftRecord:
    nft_id: str
    name: str
    price: Decimal
    description: str = ""
    image_url: str = ""
    token_id: Optional[str] = None
    contract_address: Optional[str] = None
    owner_address: Optional[str] = None
    verified_owners: list = field(default_factory=list)
    verification_timestamp: Optional[float] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.nft_id,
            "name": self.name,
            "description": self.description,
            "image_url": self.image_url,
            "price": str(self.price),
            "token_id": self.token_id,
            "contract_address": self.contract_address,
            "owner_address": self.owner_address,
            "verified_owners": [
                {"address": o["address"], "verified_at": _iso(o["verified_at"])}
                for o in self.verified_owners
            ],
            "verification_timestamp": _iso(self.verification_timestamp),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class CartItemRecord:
    item_id: str
    user_id: str
    nft_id: str
    quantity: int = 1
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())


@dataclass
class OrderRecord:
    order_id: str
    user_id: str
    order_number: str
    subtotal: Decimal
    fee: Decimal
    total_amount: Decimal
    status: OrderStatus = OrderStatus.PENDING
    transaction_hash: Optional[str] = None
    transaction_status: Optional[TransactionStatus] = None
    failure_reason: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.order_id,
            "user_id": self.user_id,
            "order_number": self.order_number,
            "subtotal": str(self.subtotal),
            "fee": str(self.fee),
            "total_amount": str(self.total_amount),
            "status": self.status.value,
            "transaction_hash": self.transaction_hash,
            "transaction_status": (
                self.transaction_status.value if self.transaction_status else None
            ),
            "failure_reason": self.failure_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class OrderItemRecord:
    item_id: str
    order_id: str
    nft_id: str
    quantity: int
    price: Decimal
    created_at: float = field(default_factory=lambda: time.time())


class DbClient(Protocol):
    """Interface for database access."""

    # Users
    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        wallet_address: Optional[str] = None,
        privy_user_id: Optional[str] = None,
        auth_method: AuthMethod = AuthMethod.PASSWORD,
        role: Role = Role.USER,
    ) -> UserRecord:
        ...

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        ...

    def get_user_by_privy_id(self, privy_user_id: str) -> Optional[UserRecord]:
        ...

    def update_user(self, user_id: str, **fields) -> Optional[UserRecord]:
        ...

    # NFTs
    def create_nft(self, nft: NftRecord) -> NftRecord:
        ...

    def get_nft(self, nft_id: str) -> Optional[NftRecord]:
        ...

    def list_nfts(
        self,
        *,
        offset: int = 0,
        limit: int = 20,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        sort_by: str = "date",
        descending: bool = True,
    ) -> tuple[list[NftRecord], int]:
        ...

    def search_nfts(
        self, query: str, *, offset: int = 0, limit: int = 20
    ) -> tuple[list[NftRecord], int]:
        ...

    def list_related_nfts(self, nft: NftRecord, limit: int = 4) -> list[NftRecord]:
        ...

    def add_verified_owner(self, nft_id: str, address: str) -> Optional[NftRecord]:
        ...

    def delete_all_nfts(self) -> int:
        ...

    # Cart
    def list_cart(self, user_id: str) -> list[CartItemRecord]:
        ...

    def add_to_cart(self, user_id: str, nft_id: str, quantity: int = 1) -> CartItemRecord:
        ...

    def remove_cart_item(self, user_id: str, item_id: str) -> bool:
        ...

    def clear_cart(self, user_id: str) -> int:
        ...

    # Orders
    def order_number_exists(self, order_number: str) -> bool:
        ...

    def create_order_from_cart(
        self, order: OrderRecord, items: list[OrderItemRecord]
    ) -> OrderRecord:
        ...

    def get_order(self, order_id: str, user_id: Optional[str] = None) -> Optional[OrderRecord]:
        ...

    def list_order_items(self, order_id: str) -> list[OrderItemRecord]:
        ...

    def list_orders(
        self,
        user_id: str,
        *,
        status: Optional[OrderStatus] = None,
        created_from: Optional[float] = None,
        created_to: Optional[float] = None,
        sort_by: str = "createdAt",
        descending: bool = True,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[OrderRecord], int]:
        ...

    def update_order(self, order_id: str, **fields) -> Optional[OrderRecord]:
        ...

    def list_unfinished_orders_with_hash(self) -> list[OrderRecord]:
        ...


def _nft_sort_key(sort_by: str):
    if sort_by == "price":
        return lambda n: n.price
    if sort_by == "name":
        return lambda n: n.name.lower()
    return lambda n: n.created_at


def _order_sort_key(sort_by: str):
    if sort_by == "total_amount":
        return lambda o: o.total_amount
    if sort_by == "status":
        return lambda o: o.status.value
    if sort_by == "order_number":
        return lambda o: o.order_number
    return lambda o: o.created_at


def _apply_fields(record, fields: dict):
    for key, value in fields.items():
        if not hasattr(record, key):
            raise AttributeError(f"Unknown field: {key}")
        setattr(record, key, value)
    record.updated_at = time.time()


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.users: Dict[str, UserRecord] = {}
        self.nfts: Dict[str, NftRecord] = {}
        self.cart_items: Dict[str, CartItemRecord] = {}
        self.orders: Dict[str, OrderRecord] = {}
        self.order_items: Dict[str, OrderItemRecord] = {}
        # Monitor timers write orders from their own threads.
        self._lock = threading.RLock()

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.users.clear()
            self.nfts.clear()
            self.cart_items.clear()
            self.orders.clear()
            self.order_items.clear()

    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        wallet_address: Optional[str] = None,
        privy_user_id: Optional[str] = None,
        auth_method: AuthMethod = AuthMethod.PASSWORD,
        role: Role = Role.USER,
    ) -> UserRecord:
        email = email.strip().lower()
        with self._lock:
            if self.get_user_by_email(email):
                raise DuplicateRecordError(f"User already exists: {email}")
            if privy_user_id and self.get_user_by_privy_id(privy_user_id):
                raise DuplicateRecordError(f"Privy user already linked: {privy_user_id}")
            record = UserRecord(
                user_id=_new_id(),
                email=email,
                password_hash=password_hash,
                privy_user_id=privy_user_id,
                auth_method=auth_method,
                role=role,
                wallet_address=wallet_address,
            )
            self.users[record.user_id] = record
            return replace(record)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        email = email.strip().lower()
        with self._lock:
            for user in self.users.values():
                if user.email == email:
                    return replace(user)
        return None

    def get_user_by_privy_id(self, privy_user_id: str) -> Optional[UserRecord]:
        with self._lock:
            for user in self.users.values():
                if user.privy_user_id == privy_user_id:
                    return replace(user)
        return None

    def update_user(self, user_id: str, **fields) -> Optional[UserRecord]:
        with self._lock:
            user = self.users.get(user_id)
            if not user:
                return None
            _apply_fields(user, fields)
            return replace(user)

    def create_nft(self, nft: NftRecord) -> NftRecord:
        with self._lock:
            self.nfts[nft.nft_id] = replace(nft, verified_owners=list(nft.verified_owners))
            return replace(nft)

    def get_nft(self, nft_id: str) -> Optional[NftRecord]:
        with self._lock:
            nft = self.nfts.get(nft_id)
            return replace(nft, verified_owners=list(nft.verified_owners)) if nft else None

    def list_nfts(
        self,
        *,
        offset: int = 0,
        limit: int = 20,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        sort_by: str = "date",
        descending: bool = True,
    ) -> tuple[list[NftRecord], int]:
        with self._lock:
            items = [
                n
                for n in self.nfts.values()
                if (min_price is None or n.price >= min_price)
                and (max_price is None or n.price <= max_price)
            ]
        items.sort(key=_nft_sort_key(sort_by), reverse=descending)
        return [replace(n) for n in items[offset : offset + limit]], len(items)

    def search_nfts(
        self, query: str, *, offset: int = 0, limit: int = 20
    ) -> tuple[list[NftRecord], int]:
        needle = query.lower()
        with self._lock:
            items = [
                n
                for n in self.nfts.values()
                if needle in n.name.lower() or needle in (n.description or "").lower()
            ]
        items.sort(key=lambda n: n.created_at, reverse=True)
        return [replace(n) for n in items[offset : offset + limit]], len(items)

    def list_related_nfts(self, nft: NftRecord, limit: int = 4) -> list[NftRecord]:
        with self._lock:
            others = [n for n in self.nfts.values() if n.nft_id != nft.nft_id]
        same_contract = []
        if nft.contract_address:
            same_contract = sorted(
                (n for n in others if n.contract_address == nft.contract_address),
                key=lambda n: n.created_at,
                reverse=True,
            )[:limit]
        picked = {n.nft_id for n in same_contract}
        by_price = sorted(
            (n for n in others if n.nft_id not in picked),
            key=lambda n: abs(n.price - nft.price),
        )
        related = same_contract + by_price[: limit - len(same_contract)]
        return [replace(n) for n in related]

    def add_verified_owner(self, nft_id: str, address: str) -> Optional[NftRecord]:
        with self._lock:
            nft = self.nfts.get(nft_id)
            if not nft:
                return None
            now = time.time()
            known = {o["address"].lower() for o in nft.verified_owners}
            if address.lower() not in known:
                nft.verified_owners.append({"address": address, "verified_at": now})
            nft.verification_timestamp = now
            nft.updated_at = now
            return self.get_nft(nft_id)

    def delete_all_nfts(self) -> int:
        with self._lock:
            count = len(self.nfts)
            self.nfts.clear()
            return count

    def list_cart(self, user_id: str) -> list[CartItemRecord]:
        with self._lock:
            items = [i for i in self.cart_items.values() if i.user_id == user_id]
        items.sort(key=lambda i: i.created_at, reverse=True)
        return [replace(i) for i in items]

    def add_to_cart(self, user_id: str, nft_id: str, quantity: int = 1) -> CartItemRecord:
        with self._lock:
            for item in self.cart_items.values():
                if item.user_id == user_id and item.nft_id == nft_id:
                    item.quantity += quantity
                    item.updated_at = time.time()
                    return replace(item)
            item = CartItemRecord(
                item_id=_new_id(), user_id=user_id, nft_id=nft_id, quantity=quantity
            )
            self.cart_items[item.item_id] = item
            return replace(item)

    def remove_cart_item(self, user_id: str, item_id: str) -> bool:
        with self._lock:
            item = self.cart_items.get(item_id)
            if not item or item.user_id != user_id:
                return False
            del self.cart_items[item_id]
            return True

    def clear_cart(self, user_id: str) -> int:
        with self._lock:
            doomed = [k for k, i in self.cart_items.items() if i.user_id == user_id]
            for key in doomed:
                del self.cart_items[key]
            return len(doomed)

    def order_number_exists(self, order_number: str) -> bool:
        with self._lock:
            return any(o.order_number == order_number for o in self.orders.values())

    def create_order_from_cart(
        self, order: OrderRecord, items: list[OrderItemRecord]
    ) -> OrderRecord:
        with self._lock:
            if self.order_number_exists(order.order_number):
                raise DuplicateRecordError(f"Order number taken: {order.order_number}")
            self.orders[order.order_id] = replace(order)
            for item in items:
                self.order_items[item.item_id] = replace(item)
            self.clear_cart(order.user_id)
            return replace(order)

    def get_order(self, order_id: str, user_id: Optional[str] = None) -> Optional[OrderRecord]:
        with self._lock:
            order = self.orders.get(order_id)
            if not order or (user_id is not None and order.user_id != user_id):
                return None
            return replace(order)

    def list_order_items(self, order_id: str) -> list[OrderItemRecord]:
        with self._lock:
            items = [i for i in self.order_items.values() if i.order_id == order_id]
        items.sort(key=lambda i: i.created_at)
        return [replace(i) for i in items]

    def list_orders(
        self,
        user_id: str,
        *,
        status: Optional[OrderStatus] = None,
        created_from: Optional[float] = None,
        created_to: Optional[float] = None,
        sort_by: str = "createdAt",
        descending: bool = True,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[OrderRecord], int]:
        with self._lock:
            items = [
                o
                for o in self.orders.values()
                if o.user_id == user_id
                and (status is None or o.status == status)
                and (created_from is None or o.created_at >= created_from)
                and (created_to is None or o.created_at <= created_to)
            ]
        items.sort(key=_order_sort_key(sort_by), reverse=descending)
        return [replace(o) for o in items[offset : offset + limit]], len(items)

    def update_order(self, order_id: str, **fields) -> Optional[OrderRecord]:
        with self._lock:
            order = self.orders.get(order_id)
            if not order:
                return None
            _apply_fields(order, fields)
            return replace(order)

    def list_unfinished_orders_with_hash(self) -> list[OrderRecord]:
        with self._lock:
            return [
                replace(o)
                for o in self.orders.values()
                if o.transaction_hash and o.status in UNFINISHED_ORDER_STATUSES
            ]


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDbClient")
        engine_kwargs: dict = {"future": True, "pool_pre_ping": True}
        if database_url.startswith("sqlite") and ":memory:" in database_url:
            # One shared connection so monitor threads see the same database.
            engine_kwargs.update(
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            engine_kwargs["pool_recycle"] = 1800
        self.engine = create_engine(database_url, **engine_kwargs)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    # ---- row mapping ----

    @staticmethod
    def _to_user(row: "UserRow") -> UserRecord:
        return UserRecord(
            user_id=row.id,
            email=row.email,
            password_hash=row.password_hash,
            privy_user_id=row.privy_user_id,
            auth_method=AuthMethod(row.auth_method),
            role=Role(row.role),
            wallet_address=row.wallet_address,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_nft(row: "NftRow") -> NftRecord:
        return NftRecord(
            nft_id=row.id,
            name=row.name,
            price=Decimal(row.price),
            description=row.description or "",
            image_url=row.image_url or "",
            token_id=row.token_id,
            contract_address=row.contract_address,
            owner_address=row.owner_address,
            verified_owners=list(row.verified_owners or []),
            verification_timestamp=row.verification_timestamp,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_cart_item(row: "CartItemRow") -> CartItemRecord:
        return CartItemRecord(
            item_id=row.id,
            user_id=row.user_id,
            nft_id=row.nft_id,
            quantity=row.quantity,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_order(row: "OrderRow") -> OrderRecord:
        return OrderRecord(
            order_id=row.id,
            user_id=row.user_id,
            order_number=row.order_number,
            subtotal=Decimal(row.subtotal),
            fee=Decimal(row.fee),
            total_amount=Decimal(row.total_amount),
            status=OrderStatus(row.status),
            transaction_hash=row.transaction_hash,
            transaction_status=(
                TransactionStatus(row.transaction_status)
                if row.transaction_status
                else None
            ),
            failure_reason=row.failure_reason,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_order_item(row: "OrderItemRow") -> OrderItemRecord:
        return OrderItemRecord(
            item_id=row.id,
            order_id=row.order_id,
            nft_id=row.nft_id,
            quantity=row.quantity,
            price=Decimal(row.price),
            created_at=row.created_at,
        )

    # ---- users ----

    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        wallet_address: Optional[str] = None,
        privy_user_id: Optional[str] = None,
        auth_method: AuthMethod = AuthMethod.PASSWORD,
        role: Role = Role.USER,
    ) -> UserRecord:
        now = time.time()
        with self.Session() as session:
            row = UserRow(
                id=_new_id(),
                email=email.strip().lower(),
                password_hash=password_hash,
                privy_user_id=privy_user_id,
                auth_method=auth_method.value,
                role=role.value,
                wallet_address=wallet_address,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateRecordError(f"User already exists: {email}") from exc
            return self._to_user(row)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            return self._to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self.Session() as session:
            stmt = select(UserRow).where(UserRow.email == email.strip().lower())
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_user(row) if row else None

    def get_user_by_privy_id(self, privy_user_id: str) -> Optional[UserRecord]:
        with self.Session() as session:
            stmt = select(UserRow).where(UserRow.privy_user_id == privy_user_id)
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_user(row) if row else None

    def update_user(self, user_id: str, **fields) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            if not row:
                return None
            for key, value in fields.items():
                setattr(row, key, _enum_value(value))
            row.updated_at = time.time()
            session.commit()
            return self._to_user(row)

    # ---- NFTs ----

    def create_nft(self, nft: NftRecord) -> NftRecord:
        with self.Session() as session:
            row = NftRow(
                id=nft.nft_id,
                name=nft.name,
                description=nft.description,
                image_url=nft.image_url,
                price=str(nft.price),
                token_id=nft.token_id,
                contract_address=nft.contract_address,
                owner_address=nft.owner_address,
                verified_owners=list(nft.verified_owners),
                verification_timestamp=nft.verification_timestamp,
                created_at=nft.created_at,
                updated_at=nft.updated_at,
            )
            session.add(row)
            session.commit()
            return self._to_nft(row)

    def get_nft(self, nft_id: str) -> Optional[NftRecord]:
        with self.Session() as session:
            row = session.get(NftRow, nft_id)
            return self._to_nft(row) if row else None

    def list_nfts(
        self,
        *,
        offset: int = 0,
        limit: int = 20,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        sort_by: str = "date",
        descending: bool = True,
    ) -> tuple[list[NftRecord], int]:
        price = cast(NftRow.price, Numeric)
        conditions = []
        if min_price is not None:
            conditions.append(price >= min_price)
        if max_price is not None:
            conditions.append(price <= max_price)
        column = {"price": price, "name": func.lower(NftRow.name)}.get(
            sort_by, NftRow.created_at
        )
        order = column.desc() if descending else column.asc()
        with self.Session() as session:
            total = session.execute(
                select(func.count()).select_from(NftRow).where(*conditions)
            ).scalar_one()
            rows = session.execute(
                select(NftRow).where(*conditions).order_by(order).offset(offset).limit(limit)
            ).scalars()
            return [self._to_nft(r) for r in rows], total

    def search_nfts(
        self, query: str, *, offset: int = 0, limit: int = 20
    ) -> tuple[list[NftRecord], int]:
        pattern = f"%{query.lower()}%"
        condition = or_(
            func.lower(NftRow.name).like(pattern),
            func.lower(NftRow.description).like(pattern),
        )
        with self.Session() as session:
            total = session.execute(
                select(func.count()).select_from(NftRow).where(condition)
            ).scalar_one()
            rows = session.execute(
                select(NftRow)
                .where(condition)
                .order_by(NftRow.created_at.desc())
                .offset(offset)
                .limit(limit)
            ).scalars()
            return [self._to_nft(r) for r in rows], total

    def list_related_nfts(self, nft: NftRecord, limit: int = 4) -> list[NftRecord]:
        with self.Session() as session:
            related: list[NftRecord] = []
            if nft.contract_address:
                rows = session.execute(
                    select(NftRow)
                    .where(
                        NftRow.id != nft.nft_id,
                        NftRow.contract_address == nft.contract_address,
                    )
                    .order_by(NftRow.created_at.desc())
                    .limit(limit)
                ).scalars()
                related = [self._to_nft(r) for r in rows]
            remaining = limit - len(related)
            if remaining > 0:
                exclude = [nft.nft_id] + [n.nft_id for n in related]
                distance = func.abs(cast(NftRow.price, Float) - float(nft.price))
                rows = session.execute(
                    select(NftRow)
                    .where(NftRow.id.not_in(exclude))
                    .order_by(distance.asc())
                    .limit(remaining)
                ).scalars()
                related.extend(self._to_nft(r) for r in rows)
            return related

    def add_verified_owner(self, nft_id: str, address: str) -> Optional[NftRecord]:
        with self.Session() as session:
            row = session.get(NftRow, nft_id)
            if not row:
                return None
            now = time.time()
            owners = list(row.verified_owners or [])
            if address.lower() not in {o["address"].lower() for o in owners}:
                owners.append({"address": address, "verified_at": now})
            # Reassign so the JSON column is flagged dirty.
            row.verified_owners = owners
            row.verification_timestamp = now
            row.updated_at = now
            session.commit()
            return self._to_nft(row)

    def delete_all_nfts(self) -> int:
        with self.Session() as session:
            result = session.execute(delete(NftRow))
            session.commit()
            return result.rowcount or 0

    # ---- cart ----

    def list_cart(self, user_id: str) -> list[CartItemRecord]:
        with self.Session() as session:
            rows = session.execute(
                select(CartItemRow)
                .where(CartItemRow.user_id == user_id)
                .order_by(CartItemRow.created_at.desc())
            ).scalars()
            return [self._to_cart_item(r) for r in rows]

    def add_to_cart(self, user_id: str, nft_id: str, quantity: int = 1) -> CartItemRecord:
        now = time.time()
        with self.Session() as session:
            row = session.execute(
                select(CartItemRow).where(
                    CartItemRow.user_id == user_id, CartItemRow.nft_id == nft_id
                )
            ).scalar_one_or_none()
            if row:
                row.quantity += quantity
                row.updated_at = now
            else:
                row = CartItemRow(
                    id=_new_id(),
                    user_id=user_id,
                    nft_id=nft_id,
                    quantity=quantity,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
            session.commit()
            return self._to_cart_item(row)

    def remove_cart_item(self, user_id: str, item_id: str) -> bool:
        with self.Session() as session:
            result = session.execute(
                delete(CartItemRow).where(
                    CartItemRow.id == item_id, CartItemRow.user_id == user_id
                )
            )
            session.commit()
            return bool(result.rowcount)

    def clear_cart(self, user_id: str) -> int:
        with self.Session() as session:
            result = session.execute(
                delete(CartItemRow).where(CartItemRow.user_id == user_id)
            )
            session.commit()
            return result.rowcount or 0

    # ---- orders ----

    def order_number_exists(self, order_number: str) -> bool:
        with self.Session() as session:
            stmt = select(OrderRow.id).where(OrderRow.order_number == order_number)
            return session.execute(stmt).first() is not None

    def create_order_from_cart(
        self, order: OrderRecord, items: list[OrderItemRecord]
    ) -> OrderRecord:
        with self.Session() as session:
            row = OrderRow(
                id=order.order_id,
                user_id=order.user_id,
                order_number=order.order_number,
                subtotal=str(order.subtotal),
                fee=str(order.fee),
                total_amount=str(order.total_amount),
                status=order.status.value,
                transaction_hash=order.transaction_hash,
                transaction_status=_enum_value(order.transaction_status),
                failure_reason=order.failure_reason,
                created_at=order.created_at,
                updated_at=order.updated_at,
            )
            session.add(row)
            for item in items:
                session.add(
                    OrderItemRow(
                        id=item.item_id,
                        order_id=item.order_id,
                        nft_id=item.nft_id,
                        quantity=item.quantity,
                        price=str(item.price),
                        created_at=item.created_at,
                    )
                )
            try:
                # The delete autoflushes the inserts, so a taken number fails here.
                session.execute(
                    delete(CartItemRow).where(CartItemRow.user_id == order.user_id)
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateRecordError(
                    f"Order number taken: {order.order_number}"
                ) from exc
            return self._to_order(row)

    def get_order(self, order_id: str, user_id: Optional[str] = None) -> Optional[OrderRecord]:
        with self.Session() as session:
            row = session.get(OrderRow, order_id)
            if not row or (user_id is not None and row.user_id != user_id):
                return None
            return self._to_order(row)

    def list_order_items(self, order_id: str) -> list[OrderItemRecord]:
        with self.Session() as session:
            rows = session.execute(
                select(OrderItemRow)
                .where(OrderItemRow.order_id == order_id)
                .order_by(OrderItemRow.created_at.asc())
            ).scalars()
            return [self._to_order_item(r) for r in rows]

    def list_orders(
        self,
        user_id: str,
        *,
        status: Optional[OrderStatus] = None,
        created_from: Optional[float] = None,
        created_to: Optional[float] = None,
        sort_by: str = "createdAt",
        descending: bool = True,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[OrderRecord], int]:
        conditions = [OrderRow.user_id == user_id]
        if status is not None:
            conditions.append(OrderRow.status == status.value)
        if created_from is not None:
            conditions.append(OrderRow.created_at >= created_from)
        if created_to is not None:
            conditions.append(OrderRow.created_at <= created_to)
        column = {
            "total_amount": cast(OrderRow.total_amount, Numeric),
            "status": OrderRow.status,
            "order_number": OrderRow.order_number,
        }.get(sort_by, OrderRow.created_at)
        order = column.desc() if descending else column.asc()
        with self.Session() as session:
            total = session.execute(
                select(func.count()).select_from(OrderRow).where(*conditions)
            ).scalar_one()
            rows = session.execute(
                select(OrderRow).where(*conditions).order_by(order).offset(offset).limit(limit)
            ).scalars()
            return [self._to_order(r) for r in rows], total

    def update_order(self, order_id: str, **fields) -> Optional[OrderRecord]:
        with self.Session() as session:
            row = session.get(OrderRow, order_id)
            if not row:
                return None
            for key, value in fields.items():
                setattr(row, key, _enum_value(value))
            row.updated_at = time.time()
            session.commit()
            return self._to_order(row)

    def list_unfinished_orders_with_hash(self) -> list[OrderRecord]:
        statuses = [s.value for s in UNFINISHED_ORDER_STATUSES]
        with self.Session() as session:
            rows = session.execute(
                select(OrderRow)
                .where(
                    OrderRow.transaction_hash.is_not(None),
                    OrderRow.status.in_(statuses),
                )
                .order_by(OrderRow.created_at.asc())
            ).scalars()
            return [self._to_order(r) for r in rows]


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True, index=True)
    password_hash = Column(String, nullable=True)
    privy_user_id = Column(String, nullable=True, unique=True)
    auth_method = Column(String, nullable=False, default=AuthMethod.PASSWORD.value)
    role = Column(String, nullable=False, default=Role.USER.value)
    wallet_address = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class NftRow(Base):
    __tablename__ = "nfts"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=False, default="")
    image_url = Column(String, nullable=False, default="")
    # Decimal amounts are stored as exact strings.
    price = Column(String, nullable=False)
    token_id = Column(String, nullable=True)
    contract_address = Column(String, nullable=True, index=True)
    owner_address = Column(String, nullable=True)
    verified_owners = Column(JSON, nullable=False, default=list)
    verification_timestamp = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False, index=True)
    updated_at = Column(Float, nullable=False)


class CartItemRow(Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("user_id", "nft_id"),)

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    nft_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class OrderRow(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    order_number = Column(String, nullable=False, unique=True)
    subtotal = Column(String, nullable=False)
    fee = Column(String, nullable=False, default="0")
    total_amount = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    transaction_hash = Column(String, nullable=True)
    transaction_status = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)
    created_at = Column(Float, nullable=False, index=True)
    updated_at = Column(Float, nullable=False)


class OrderItemRow(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True)
    order_id = Column(String, nullable=False, index=True)
    nft_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
