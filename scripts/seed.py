"""
Seed the marketplace database with demo users and a sample NFT catalogue.
"""

from __future__ import annotations

import argparse
import logging
import sys
import uuid
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from marketplace.db import DbClient, NftRecord
from marketplace.dependencies import get_db_client
from marketplace.security import hash_password
from marketplace.types import Role

logger = logging.getLogger(__name__)

SAMPLE_CONTRACT = "0x1234567890123456789012345678901234567890"
ADMIN_WALLET = "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb"
USER_WALLET = "0x8ba1f109551bD432803012645Hac136c22C177E9"

SAMPLE_NFTS = [
    ("Digital Art #1", "A beautiful piece of digital art showcasing modern aesthetics", "/images/icon1.png", "0.5", "1", ADMIN_WALLET),
    ("Crypto Collectible #2", "Rare collectible NFT with unique properties", "/images/icon2.png", "1.2", "2", USER_WALLET),
    ("Abstract Creation #3", "An abstract digital creation representing the future of art", "/images/icon3.png", "0.8", "3", ADMIN_WALLET),
    ("NFT Masterpiece #4", "A masterpiece in the NFT collection", "/images/icon4.png", "2.5", "4", USER_WALLET),
    ("Digital Wonder #5", "A wonder of digital creation and innovation", "/images/splash.png", "0.3", "5", ADMIN_WALLET),
    ("Rare Gem #6", "An extremely rare NFT gem in the collection", "/images/icon1.png", "5.0", "6", USER_WALLET),
]


def ensure_user(db: DbClient, email: str, password: str, role: Role, wallet: str) -> None:
    if db.get_user_by_email(email):
        logger.info("User %s already exists; leaving it alone", email)
        return
    db.create_user(
        email,
        password_hash=hash_password(password),
        wallet_address=wallet,
        role=role,
    )
    logger.info("Created %s user %s", role.value, email)


def seed_nfts(db: DbClient) -> int:
    for name, description, image_url, price, token_id, owner in SAMPLE_NFTS:
        db.create_nft(
            NftRecord(
                nft_id=uuid.uuid4().hex,
                name=name,
                price=Decimal(price),
                description=description,
                image_url=image_url,
                token_id=token_id,
                contract_address=SAMPLE_CONTRACT,
                owner_address=owner,
            )
        )
    return len(SAMPLE_NFTS)


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed the marketplace database")
    parser.add_argument(
        "--clear",
        action="store_true",
        help="Delete all NFTs before inserting the sample catalogue",
    )
    parser.add_argument("--admin-email", default="admin@dcuk.com")
    parser.add_argument("--admin-password", default="admin123")
    parser.add_argument("--user-email", default="user@dcuk.com")
    parser.add_argument("--user-password", default="user123")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    db = get_db_client()
    if args.clear:
        removed = db.delete_all_nfts()
        logger.info("Removed %d existing NFTs", removed)

    ensure_user(db, args.admin_email, args.admin_password, Role.ADMIN, ADMIN_WALLET)
    ensure_user(db, args.user_email, args.user_password, Role.USER, USER_WALLET)
    created = seed_nfts(db)
    logger.info("Created %d sample NFTs", created)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
