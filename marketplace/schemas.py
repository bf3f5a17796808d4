"""
Pydantic schemas for the marketplace API.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field

from marketplace.types import TransactionStatus

TX_HASH_PATTERN = r"^0x[0-9a-fA-F]{64}$"


class HealthResponse(BaseModel):
    status: Literal["ok"]
    message: str


class MessageResponse(BaseModel):
    message: str


# ---- auth ----


class RegisterRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=1024)
    walletAddress: Optional[str] = None


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class PrivyVerifyRequest(BaseModel):
    accessToken: Optional[str] = None


class UserSummary(BaseModel):
    id: str
    email: str
    role: str
    walletAddress: Optional[str] = None
    authMethod: Optional[str] = None


class AuthResponse(BaseModel):
    token: str
    user: UserSummary


class MeResponse(BaseModel):
    user: dict


# ---- NFTs ----


class NftCreateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=256)
    price: Optional[Decimal] = Field(default=None, ge=0)
    description: Optional[str] = None
    image_url: Optional[str] = None
    token_id: Optional[str] = None
    contract_address: Optional[str] = None
    owner_address: Optional[str] = None


class NftResponse(BaseModel):
    nft: dict


class NftPagination(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int


class NftListResponse(BaseModel):
    nfts: list[dict]
    pagination: NftPagination


class RelatedNftsResponse(BaseModel):
    nfts: list[dict]


# ---- wallet ----


class VerifyOwnershipRequest(BaseModel):
    walletAddress: Optional[str] = None
    signature: Optional[str] = None
    message: Optional[str] = None


class VerifyOwnershipResponse(BaseModel):
    verified: bool
    walletAddress: Optional[str] = None
    error: Optional[str] = None


# ---- cart ----


class AddToCartRequest(BaseModel):
    nft_id: Optional[str] = None
    quantity: int = Field(default=1, ge=1, le=1000)


class CartResponse(BaseModel):
    items: list[dict]


# ---- orders ----


class CreateOrderRequest(BaseModel):
    transaction_hash: Optional[str] = Field(default=None, pattern=TX_HASH_PATTERN)


class UpdateOrderStatusRequest(BaseModel):
    status: Optional[str] = None
    transaction_hash: Optional[str] = Field(default=None, pattern=TX_HASH_PATTERN)
    transaction_status: Optional[TransactionStatus] = None
    failure_reason: Optional[str] = Field(default=None, max_length=1024)


class OrderResponse(BaseModel):
    order: dict


class OrderPagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class OrderListResponse(BaseModel):
    orders: list[dict]
    pagination: OrderPagination
