import unittest

import jwt
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from marketplace.config import Settings
from marketplace.db import UserRecord
from marketplace.security import (
    TokenUser,
    create_access_token,
    decode_access_token,
    get_current_user,
    hash_password,
    require_admin,
    verify_password,
)
from marketplace.types import Role


class PasswordTests(unittest.TestCase):
    def test_hash_and_verify(self):
        hashed = hash_password("s3cret")
        self.assertNotEqual(hashed, "s3cret")
        self.assertTrue(verify_password("s3cret", hashed))
        self.assertFalse(verify_password("wrong", hashed))

    def test_missing_hash_never_verifies(self):
        self.assertFalse(verify_password("anything", None))


class TokenTests(unittest.TestCase):
    def setUp(self):
        self.settings = Settings(jwt_secret="test-secret")
        self.user = UserRecord(user_id="u1", email="a@example.com", role=Role.ADMIN)

    def test_roundtrip(self):
        token = create_access_token(self.user, self.settings)
        decoded = decode_access_token(token, self.settings)
        self.assertEqual(decoded, TokenUser(id="u1", email="a@example.com", role=Role.ADMIN))
        self.assertTrue(decoded.is_admin)

    def test_wrong_secret_rejected(self):
        token = create_access_token(self.user, self.settings)
        with self.assertRaises(jwt.InvalidTokenError):
            decode_access_token(token, Settings(jwt_secret="other-secret"))

    def test_expired_token_rejected(self):
        expired = Settings(jwt_secret="test-secret", jwt_expires_minutes=-5)
        token = create_access_token(self.user, expired)
        with self.assertRaises(jwt.ExpiredSignatureError):
            decode_access_token(token, self.settings)

    def test_token_without_identity_rejected(self):
        token = jwt.encode({"sub": "x"}, "test-secret", algorithm="HS256")
        with self.assertRaises(jwt.InvalidTokenError):
            decode_access_token(token, self.settings)


class DependencyTests(unittest.TestCase):
    def test_missing_credentials_is_401(self):
        with self.assertRaises(HTTPException) as ctx:
            get_current_user(None)
        self.assertEqual(ctx.exception.status_code, 401)

    def test_garbage_token_is_403(self):
        creds = HTTPAuthorizationCredentials(scheme="Bearer", credentials="not-a-jwt")
        with self.assertRaises(HTTPException) as ctx:
            get_current_user(creds)
        self.assertEqual(ctx.exception.status_code, 403)

    def test_require_admin(self):
        user = TokenUser(id="u1", email="a@example.com", role=Role.USER)
        with self.assertRaises(HTTPException) as ctx:
            require_admin(user)
        self.assertEqual(ctx.exception.detail, "Admin access required")


if __name__ == "__main__":
    unittest.main()
