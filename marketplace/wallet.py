"""
Wallet ownership checks via EIP-191 ``personal_sign`` signatures.

Flow:
  1. Frontend: the wallet signs a human-readable message.
  2. Backend: recover the signer address from (message, signature).
  3. Backend: compare the signer with the claimed wallet address.
"""

from __future__ import annotations

import logging

from eth_account import Account
from eth_account.messages import encode_defunct

logger = logging.getLogger(__name__)


class InvalidSignatureError(ValueError):
    """The signature could not be decoded or recovered."""


def recover_signer(message: str, signature: str) -> str:
    """
    Recover the signer address from an EIP-191 personal_sign signature.

    Args:
        message: The original message that was signed
        signature: The hex-encoded signature (0x-prefixed)

    Returns:
        The checksummed address of the signer.

    Raises:
        InvalidSignatureError: If the signature is malformed.
    """
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as exc:
        logger.warning("Signature recovery failed: %s", exc)
        raise InvalidSignatureError(str(exc)) from exc


def same_address(a: str | None, b: str | None) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def verify_wallet_signature(wallet_address: str, message: str, signature: str) -> bool:
    """True when ``signature`` over ``message`` was produced by ``wallet_address``."""
    return same_address(recover_signer(message, signature), wallet_address)
