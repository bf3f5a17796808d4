"""
Privy SSO client.

Privy access tokens are ES256 JWTs signed for the app; they are verified
locally with the app's verification key. The user's linked accounts (email,
Google, wallet) are then fetched from the Privy REST API.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx
import jwt

from marketplace.types import AuthMethod

logger = logging.getLogger(__name__)

PRIVY_ISSUER = "privy.io"


class PrivyError(Exception):
    """Base error for Privy interactions."""


class PrivyNotConfiguredError(PrivyError):
    pass


class PrivyTokenError(PrivyError):
    pass


@dataclass
class PrivyUser:
    id: str
    linked_accounts: list[dict] = field(default_factory=list)
    primary_email: Optional[str] = None

    def _first(self, account_type: str) -> Optional[dict]:
        for account in self.linked_accounts:
            if account.get("type") == account_type:
                return account
        return None

    @property
    def email(self) -> Optional[str]:
        """Primary email, then an email account, then a Google account."""
        if self.primary_email:
            return self.primary_email
        account = self._first("email")
        if account:
            email = account.get("address") or account.get("email")
            if email:
                return email
        google = self._first("google_oauth")
        if google:
            return google.get("email") or google.get("address")
        return None

    @property
    def auth_method(self) -> AuthMethod:
        if self._first("google_oauth"):
            return AuthMethod.PRIVY_GOOGLE
        if self._first("wallet"):
            return AuthMethod.PRIVY_WALLET
        return AuthMethod.PRIVY_EMAIL


class PrivyClient:
    """Verifies Privy access tokens and loads the matching Privy user."""

    def __init__(
        self,
        app_id: Optional[str],
        app_secret: Optional[str],
        verification_key: Optional[str],
        api_base: str = "https://auth.privy.io/api/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.app_id = app_id
        self.app_secret = app_secret
        self.verification_key = verification_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.app_secret and self.verification_key)

    def verify_auth_token(self, access_token: str) -> str:
        """Return the Privy user id (``sub`` claim) of a valid access token."""
        if not self.configured:
            raise PrivyNotConfiguredError(
                "Privy is not configured. Please set PRIVY_APP_ID, "
                "PRIVY_APP_SECRET and PRIVY_VERIFICATION_KEY"
            )
        try:
            claims = jwt.decode(
                access_token,
                self.verification_key,
                algorithms=["ES256"],
                audience=self.app_id,
                issuer=PRIVY_ISSUER,
            )
        except jwt.InvalidTokenError as exc:
            raise PrivyTokenError(str(exc)) from exc
        subject = claims.get("sub")
        if not subject:
            raise PrivyTokenError("Token has no subject")
        return subject

    def get_user(self, privy_user_id: str) -> PrivyUser:
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            resp = client.get(
                f"{self.api_base}/users/{privy_user_id}",
                auth=(self.app_id or "", self.app_secret or ""),
                headers={"privy-app-id": self.app_id or ""},
            )
            resp.raise_for_status()
            data = resp.json()
        return PrivyUser(
            id=data.get("id", privy_user_id),
            primary_email=(data.get("email") or {}).get("address"),
            linked_accounts=list(data.get("linked_accounts") or []),
        )

    def verify(self, access_token: str) -> PrivyUser:
        privy_user_id = self.verify_auth_token(access_token)
        user = self.get_user(privy_user_id)
        logger.info(
            "Privy user verified: %s (%s)",
            user.id,
            ", ".join(a.get("type", "?") for a in user.linked_accounts) or "no linked accounts",
        )
        return user
