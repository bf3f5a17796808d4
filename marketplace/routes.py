"""
HTTP routes for the marketplace API.
"""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from marketplace.chain import ChainClient
from marketplace.config import get_settings
from marketplace.db import (
    NFT_SORT_FIELDS,
    ORDER_SORT_FIELDS,
    DbClient,
    DuplicateRecordError,
    NftRecord,
    UserRecord,
)
from marketplace.dependencies import (
    get_chain_client,
    get_db_client,
    get_privy_client,
    get_transaction_monitor,
)
from marketplace.monitor import TransactionMonitor
from marketplace.orders import EmptyCartError, cart_lines, order_items_payload, place_order
from marketplace.privy import PrivyClient, PrivyNotConfiguredError, PrivyTokenError
from marketplace.schemas import (
    AddToCartRequest,
    AuthResponse,
    CartResponse,
    CreateOrderRequest,
    HealthResponse,
    LoginRequest,
    MeResponse,
    MessageResponse,
    NftCreateRequest,
    NftListResponse,
    NftResponse,
    OrderListResponse,
    OrderResponse,
    PrivyVerifyRequest,
    RegisterRequest,
    RelatedNftsResponse,
    UpdateOrderStatusRequest,
    UserSummary,
    VerifyOwnershipRequest,
    VerifyOwnershipResponse,
)
from marketplace.security import (
    TokenUser,
    create_access_token,
    get_current_user,
    hash_password,
    require_admin,
    verify_password,
)
from marketplace.types import OrderStatus
from marketplace.wallet import InvalidSignatureError, recover_signer, same_address

logger = logging.getLogger(__name__)

router = APIRouter()


def _user_summary(user: UserRecord, include_auth_method: bool = False) -> UserSummary:
    return UserSummary(
        id=user.user_id,
        email=user.email,
        role=user.role.value,
        walletAddress=user.wallet_address,
        authMethod=user.auth_method.value if include_auth_method else None,
    )


def _auth_response(user: UserRecord, include_auth_method: bool = False) -> AuthResponse:
    return AuthResponse(
        token=create_access_token(user),
        user=_user_summary(user, include_auth_method),
    )


def _ownership_failure(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=VerifyOwnershipResponse(verified=False, error=error).model_dump(
            exclude_none=True
        ),
    )


def _parse_date(value: Optional[str], name: str) -> Optional[float]:
    if not value:
        return None
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok", message="Server is running")


# ---------------- auth ---------------- #


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(payload: RegisterRequest, db: DbClient = Depends(get_db_client)):
    if not payload.email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required")
    if db.get_user_by_email(payload.email):
        raise HTTPException(status_code=400, detail="User already exists")
    try:
        user = db.create_user(
            payload.email,
            password_hash=hash_password(payload.password),
            wallet_address=payload.walletAddress or None,
        )
    except DuplicateRecordError:
        raise HTTPException(status_code=400, detail="User already exists")
    logger.info("Registered user %s", user.user_id)
    return _auth_response(user)


@router.post("/auth/login", response_model=AuthResponse)
def login(payload: LoginRequest, db: DbClient = Depends(get_db_client)):
    if not payload.email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required")
    user = db.get_user_by_email(payload.email)
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _auth_response(user)


@router.get("/auth/me", response_model=MeResponse)
def me(
    current: TokenUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    user = db.get_user(current.id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return MeResponse(user=user.as_dict())


@router.post("/auth/privy/verify", response_model=AuthResponse)
def verify_privy(
    payload: PrivyVerifyRequest,
    db: DbClient = Depends(get_db_client),
    privy: PrivyClient = Depends(get_privy_client),
):
    """
    Verify a Privy access token, then find, link or create the matching user.
    """
    if not privy.configured:
        raise HTTPException(
            status_code=500,
            detail=(
                "Privy is not configured. Please set PRIVY_APP_ID, "
                "PRIVY_APP_SECRET and PRIVY_VERIFICATION_KEY"
            ),
        )
    if not payload.accessToken:
        raise HTTPException(status_code=400, detail="Access token required")

    try:
        privy_user = privy.verify(payload.accessToken)
    except (PrivyTokenError, PrivyNotConfiguredError) as exc:
        logger.warning("Privy verification error: %s", exc)
        raise HTTPException(status_code=401, detail="Invalid or expired access token")
    except httpx.HTTPError as exc:
        logger.error("Failed to load Privy user: %s", exc)
        raise HTTPException(status_code=502, detail="Failed to load Privy user")

    email = privy_user.email
    if not email:
        logger.error("No email found in Privy user %s", privy_user.id)
        raise HTTPException(status_code=400, detail="Email is required for authentication")

    auth_method = privy_user.auth_method
    user = db.get_user_by_privy_id(privy_user.id)
    if user is None:
        existing = db.get_user_by_email(email)
        if existing:
            user = db.update_user(
                existing.user_id, privy_user_id=privy_user.id, auth_method=auth_method
            )
        else:
            user = db.create_user(
                email, privy_user_id=privy_user.id, auth_method=auth_method
            )
    elif user.auth_method != auth_method:
        user = db.update_user(user.user_id, auth_method=auth_method)

    return _auth_response(user, include_auth_method=True)


# ---------------- NFTs ---------------- #


@router.get("/nfts", response_model=NftListResponse)
def list_nfts(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    minPrice: Optional[Decimal] = Query(None, ge=0),
    maxPrice: Optional[Decimal] = Query(None, ge=0),
    sortBy: Optional[str] = Query(None, pattern=f"^({'|'.join(NFT_SORT_FIELDS)})$"),
    sortOrder: str = Query("desc", pattern="^(asc|desc)$"),
    db: DbClient = Depends(get_db_client),
):
    nfts, total = db.list_nfts(
        offset=(page - 1) * limit,
        limit=limit,
        min_price=minPrice,
        max_price=maxPrice,
        sort_by=sortBy or "date",
        descending=sortOrder == "desc",
    )
    return NftListResponse(
        nfts=[n.as_dict() for n in nfts],
        pagination={
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": _pages(total, limit),
        },
    )


@router.get("/nfts/search", response_model=NftListResponse)
def search_nfts(
    q: str = Query(""),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: DbClient = Depends(get_db_client),
):
    if not q.strip():
        pagination = {"page": page, "limit": limit, "total": 0, "totalPages": 0}
        return NftListResponse(nfts=[], pagination=pagination)
    nfts, total = db.search_nfts(q.strip(), offset=(page - 1) * limit, limit=limit)
    return NftListResponse(
        nfts=[n.as_dict() for n in nfts],
        pagination={
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": _pages(total, limit),
        },
    )


@router.get("/nfts/{nft_id}", response_model=NftResponse)
def get_nft(nft_id: str, db: DbClient = Depends(get_db_client)):
    nft = db.get_nft(nft_id)
    if not nft:
        raise HTTPException(status_code=404, detail="NFT not found")
    return NftResponse(nft=nft.as_dict())


@router.get("/nfts/{nft_id}/related", response_model=RelatedNftsResponse)
def related_nfts(
    nft_id: str,
    limit: int = Query(4, ge=1, le=20),
    db: DbClient = Depends(get_db_client),
):
    nft = db.get_nft(nft_id)
    if not nft:
        raise HTTPException(status_code=404, detail="NFT not found")
    return RelatedNftsResponse(
        nfts=[n.as_dict() for n in db.list_related_nfts(nft, limit=limit)]
    )


@router.post("/nfts/{nft_id}/verify-ownership")
def verify_nft_ownership(
    nft_id: str,
    payload: VerifyOwnershipRequest,
    current: TokenUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    chain: ChainClient = Depends(get_chain_client),
):
    """
    Prove that the caller's wallet owns the NFT and record it as a verified owner.

    The on-chain ``ownerOf`` wins when the NFT has a contract and token id;
    otherwise the stored owner address is used.
    """
    if not payload.walletAddress or not payload.signature or not payload.message:
        raise HTTPException(
            status_code=400, detail="Wallet address, signature, and message required"
        )
    nft = db.get_nft(nft_id)
    if not nft:
        raise HTTPException(status_code=404, detail="NFT not found")

    try:
        signer = recover_signer(payload.message, payload.signature)
    except InvalidSignatureError:
        return _ownership_failure(400, "Invalid signature")
    if not same_address(signer, payload.walletAddress):
        return _ownership_failure(400, "Signature verification failed")

    expected_owner = nft.owner_address
    if nft.contract_address and nft.token_id:
        try:
            expected_owner = chain.owner_of(nft.contract_address, nft.token_id) or expected_owner
        except Exception as exc:
            logger.error("ownerOf lookup failed for NFT %s: %s", nft_id, exc)
            raise HTTPException(status_code=502, detail="Could not read on-chain owner")

    if not same_address(expected_owner, payload.walletAddress):
        return _ownership_failure(403, "Wallet does not own this NFT")

    updated = db.add_verified_owner(nft_id, payload.walletAddress)
    logger.info(
        "User %s verified ownership of NFT %s with %s", current.id, nft_id, payload.walletAddress
    )
    return {"verified": True, "walletAddress": payload.walletAddress, "nft": updated.as_dict()}


@router.post("/nfts", response_model=NftResponse, status_code=201)
def create_nft(
    payload: NftCreateRequest,
    admin: TokenUser = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
):
    if not payload.name or payload.price is None:
        raise HTTPException(status_code=400, detail="Name and price are required")
    nft = db.create_nft(
        NftRecord(
            nft_id=uuid.uuid4().hex,
            name=payload.name.strip(),
            price=payload.price,
            description=payload.description or "",
            image_url=payload.image_url or "",
            token_id=payload.token_id or None,
            contract_address=payload.contract_address or None,
            owner_address=payload.owner_address or None,
        )
    )
    logger.info("Admin %s listed NFT %s", admin.id, nft.nft_id)
    return NftResponse(nft=nft.as_dict())


# ---------------- cart ---------------- #


@router.get("/cart", response_model=CartResponse)
def get_cart(
    current: TokenUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    items = []
    for item, nft in cart_lines(db, current.id):
        items.append(
            {
                "id": item.item_id,
                "user_id": item.user_id,
                "nft_id": item.nft_id,
                "quantity": item.quantity,
                "name": nft.name,
                "description": nft.description,
                "image_url": nft.image_url,
                "price": str(nft.price),
                "token_id": nft.token_id,
                "contract_address": nft.contract_address,
                "created_at": datetime.fromtimestamp(item.created_at, tz=timezone.utc).isoformat(),
            }
        )
    return CartResponse(items=items)


@router.post("/cart/add", response_model=MessageResponse)
def add_to_cart(
    payload: AddToCartRequest,
    current: TokenUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    if not payload.nft_id:
        raise HTTPException(status_code=400, detail="NFT ID required")
    if not db.get_nft(payload.nft_id):
        raise HTTPException(status_code=404, detail="NFT not found")
    db.add_to_cart(current.id, payload.nft_id, payload.quantity)
    return MessageResponse(message="Item added to cart")


@router.delete("/cart/{item_id}", response_model=MessageResponse)
def remove_from_cart(
    item_id: str,
    current: TokenUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    if not db.remove_cart_item(current.id, item_id):
        raise HTTPException(status_code=404, detail="Cart item not found")
    return MessageResponse(message="Item removed from cart")


@router.post("/cart/clear", response_model=MessageResponse)
def clear_cart(
    current: TokenUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    db.clear_cart(current.id)
    return MessageResponse(message="Cart cleared")


# ---------------- orders ---------------- #


@router.post("/orders", response_model=OrderResponse, status_code=201)
def create_order(
    payload: Optional[CreateOrderRequest] = None,
    current: TokenUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    monitor: TransactionMonitor = Depends(get_transaction_monitor),
):
    """
    Create an order from the cart. When a transaction hash is supplied the
    order is handed to the transaction monitor.
    """
    tx_hash = payload.transaction_hash if payload else None
    try:
        order = place_order(
            db,
            monitor,
            current.id,
            transaction_hash=tx_hash,
            fee_rate=get_settings().platform_fee_rate,
        )
    except EmptyCartError:
        raise HTTPException(status_code=400, detail="Cart is empty")
    return OrderResponse(
        order={**order.as_dict(), "items": order_items_payload(db, order)}
    )


@router.get("/orders", response_model=OrderListResponse)
def list_orders(
    status: Optional[OrderStatus] = Query(None),
    startDate: Optional[str] = Query(None),
    endDate: Optional[str] = Query(None),
    sortBy: str = Query("createdAt"),
    sortOrder: str = Query("desc"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current: TokenUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    orders, total = db.list_orders(
        current.id,
        status=status,
        created_from=_parse_date(startDate, "startDate"),
        created_to=_parse_date(endDate, "endDate"),
        sort_by=sortBy if sortBy in ORDER_SORT_FIELDS else "createdAt",
        descending=sortOrder != "asc",
        offset=(page - 1) * limit,
        limit=limit,
    )
    return OrderListResponse(
        orders=[o.as_dict() for o in orders],
        pagination={
            "page": page,
            "limit": limit,
            "total": total,
            "pages": _pages(total, limit),
        },
    )


@router.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(
    order_id: str,
    current: TokenUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    order = db.get_order(order_id, user_id=current.id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return OrderResponse(
        order={
            **order.as_dict(),
            "items": order_items_payload(db, order, include_token=True),
        }
    )


@router.patch("/orders/{order_id}/status", response_model=OrderResponse)
def update_order_status(
    order_id: str,
    payload: UpdateOrderStatusRequest,
    current: TokenUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    order = db.get_order(order_id, user_id=current.id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")

    fields: dict = {}
    if payload.status:
        try:
            fields["status"] = OrderStatus(payload.status)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid status")
    if "transaction_hash" in payload.model_fields_set:
        fields["transaction_hash"] = payload.transaction_hash
    if payload.transaction_status:
        fields["transaction_status"] = payload.transaction_status
    if "failure_reason" in payload.model_fields_set:
        fields["failure_reason"] = payload.failure_reason

    updated = db.update_order(order_id, **fields) if fields else order
    return OrderResponse(order=updated.as_dict())


# ---------------- web3 ---------------- #


@router.post("/web3/verify-ownership", response_model=VerifyOwnershipResponse)
def verify_wallet_ownership(
    payload: VerifyOwnershipRequest,
    current: TokenUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    if not payload.walletAddress or not payload.signature or not payload.message:
        raise HTTPException(
            status_code=400, detail="Wallet address, signature, and message required"
        )
    try:
        signer = recover_signer(payload.message, payload.signature)
    except InvalidSignatureError:
        return _ownership_failure(400, "Invalid signature")
    if not same_address(signer, payload.walletAddress):
        return _ownership_failure(400, "Signature verification failed")

    db.update_user(current.id, wallet_address=payload.walletAddress)
    logger.info("User %s verified wallet %s", current.id, payload.walletAddress)
    return VerifyOwnershipResponse(verified=True, walletAddress=payload.walletAddress)
