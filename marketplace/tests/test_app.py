import unittest
from decimal import Decimal
from unittest.mock import MagicMock

from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi.testclient import TestClient

from marketplace.app import create_app
from marketplace.chain import InMemoryChainClient
from marketplace.db import InMemoryDbClient, NftRecord
from marketplace.dependencies import (
    get_chain_client,
    get_db_client,
    get_privy_client,
    get_transaction_monitor,
)
from marketplace.privy import PrivyTokenError, PrivyUser
from marketplace.security import hash_password
from marketplace.types import AuthMethod, OrderStatus, Role

TX = "0x" + "ab" * 32


def sign(account, message):
    signed = Account.sign_message(encode_defunct(text=message), private_key=account.key)
    return "0x" + bytes(signed.signature).hex()


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.app = create_app()
        self.db = get_db_client()
        if isinstance(self.db, InMemoryDbClient):
            self.db.reset()
        self.chain = InMemoryChainClient()
        self.monitor = MagicMock()
        self.privy = MagicMock()
        self.privy.configured = True
        self.app.dependency_overrides[get_chain_client] = lambda: self.chain
        self.app.dependency_overrides[get_transaction_monitor] = lambda: self.monitor
        self.app.dependency_overrides[get_privy_client] = lambda: self.privy
        self.client = TestClient(self.app)

    def register(self, email="buyer@example.com", password="pw123456"):
        resp = self.client.post("/api/auth/register", json={"email": email, "password": password})
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()

    def auth(self, token):
        return {"Authorization": f"Bearer {token}"}

    def user_headers(self, email="buyer@example.com"):
        return self.auth(self.register(email)["token"])

    def admin_headers(self):
        self.db.create_user(
            "admin@example.com", password_hash=hash_password("admin123"), role=Role.ADMIN
        )
        resp = self.client.post(
            "/api/auth/login", json={"email": "admin@example.com", "password": "admin123"}
        )
        return self.auth(resp.json()["token"])

    def add_nft(self, nft_id, price, **kwargs):
        return self.db.create_nft(
            NftRecord(nft_id=nft_id, name=kwargs.pop("name", nft_id), price=Decimal(price), **kwargs)
        )


class HealthAndAuthTests(ApiTestCase):
    def test_health(self):
        resp = self.client.get("/api/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok", "message": "Server is running"})
        self.assertIn("x-request-id", resp.headers)

    def test_request_id_is_echoed(self):
        resp = self.client.get("/api/nfts", headers={"X-Request-ID": "abc-123"})
        self.assertEqual(resp.headers["x-request-id"], "abc-123")

    def test_register_and_login(self):
        payload = self.register()
        self.assertEqual(payload["user"]["email"], "buyer@example.com")
        self.assertEqual(payload["user"]["role"], "user")

        resp = self.client.post(
            "/api/auth/login", json={"email": "BUYER@example.com", "password": "pw123456"}
        )
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["token"])

    def test_register_validation(self):
        resp = self.client.post("/api/auth/register", json={"email": "a@example.com"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"], "Email and password required")

        self.register()
        resp = self.client.post(
            "/api/auth/register", json={"email": "buyer@example.com", "password": "x"}
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"], "User already exists")

    def test_login_rejects_bad_password(self):
        self.register()
        resp = self.client.post(
            "/api/auth/login", json={"email": "buyer@example.com", "password": "nope"}
        )
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["detail"], "Invalid credentials")

    def test_me(self):
        self.assertEqual(self.client.get("/api/auth/me").status_code, 401)
        self.assertEqual(
            self.client.get("/api/auth/me", headers=self.auth("garbage")).status_code, 403
        )
        resp = self.client.get("/api/auth/me", headers=self.user_headers())
        self.assertEqual(resp.status_code, 200)
        user = resp.json()["user"]
        self.assertEqual(user["email"], "buyer@example.com")
        self.assertNotIn("password_hash", user)


class PrivyAuthTests(ApiTestCase):
    def test_not_configured(self):
        self.privy.configured = False
        resp = self.client.post("/api/auth/privy/verify", json={"accessToken": "t"})
        self.assertEqual(resp.status_code, 500)

    def test_creates_user(self):
        self.privy.verify.return_value = PrivyUser(
            id="did:privy:1",
            linked_accounts=[{"type": "google_oauth", "email": "g@example.com"}],
        )
        resp = self.client.post("/api/auth/privy/verify", json={"accessToken": "t"})
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["user"]["authMethod"], "privy_google")
        user = self.db.get_user_by_privy_id("did:privy:1")
        self.assertEqual(user.email, "g@example.com")

    def test_links_existing_email(self):
        existing = self.register("linked@example.com")["user"]
        self.privy.verify.return_value = PrivyUser(
            id="did:privy:2",
            linked_accounts=[{"type": "email", "address": "linked@example.com"}],
        )
        resp = self.client.post("/api/auth/privy/verify", json={"accessToken": "t"})
        self.assertEqual(resp.json()["user"]["id"], existing["id"])
        user = self.db.get_user(existing["id"])
        self.assertEqual(user.privy_user_id, "did:privy:2")
        self.assertEqual(user.auth_method, AuthMethod.PRIVY_EMAIL)

    def test_requires_email(self):
        self.privy.verify.return_value = PrivyUser(
            id="did:privy:3", linked_accounts=[{"type": "wallet", "address": "0xabc"}]
        )
        resp = self.client.post("/api/auth/privy/verify", json={"accessToken": "t"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"], "Email is required for authentication")

    def test_invalid_token(self):
        self.privy.verify.side_effect = PrivyTokenError("bad")
        resp = self.client.post("/api/auth/privy/verify", json={"accessToken": "t"})
        self.assertEqual(resp.status_code, 401)

    def test_missing_token(self):
        resp = self.client.post("/api/auth/privy/verify", json={})
        self.assertEqual(resp.status_code, 400)


class NftTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.add_nft("cheap", "0.3", name="Digital Wonder", contract_address="0xc1")
        self.add_nft("mid", "1.2", name="Crypto Collectible", contract_address="0xc1")
        self.add_nft("pricey", "5.0", name="Rare Gem", contract_address="0xc2")

    def test_list_with_pagination(self):
        resp = self.client.get("/api/nfts", params={"limit": 2})
        body = resp.json()
        self.assertEqual(len(body["nfts"]), 2)
        self.assertEqual(body["pagination"], {"page": 1, "limit": 2, "total": 3, "totalPages": 2})

    def test_price_filter_and_sort(self):
        resp = self.client.get(
            "/api/nfts", params={"minPrice": "1", "sortBy": "price", "sortOrder": "asc"}
        )
        self.assertEqual([n["id"] for n in resp.json()["nfts"]], ["mid", "pricey"])

    def test_invalid_query_is_rejected(self):
        self.assertEqual(self.client.get("/api/nfts", params={"sortBy": "rarity"}).status_code, 422)
        self.assertEqual(self.client.get("/api/nfts", params={"page": 0}).status_code, 422)

    def test_search(self):
        resp = self.client.get("/api/nfts/search", params={"q": "gem"})
        self.assertEqual([n["id"] for n in resp.json()["nfts"]], ["pricey"])
        empty = self.client.get("/api/nfts/search").json()
        self.assertEqual(empty["nfts"], [])

    def test_get_and_related(self):
        resp = self.client.get("/api/nfts/cheap")
        self.assertEqual(resp.json()["nft"]["price"], "0.3")
        self.assertEqual(self.client.get("/api/nfts/missing").status_code, 404)

        related = self.client.get("/api/nfts/cheap/related").json()["nfts"]
        self.assertEqual(related[0]["id"], "mid")
        self.assertNotIn("cheap", [n["id"] for n in related])

    def test_admin_create(self):
        body = {"name": "New", "price": "2.5", "token_id": "9"}
        self.assertEqual(self.client.post("/api/nfts", json=body).status_code, 401)
        self.assertEqual(
            self.client.post("/api/nfts", json=body, headers=self.user_headers()).status_code, 403
        )
        admin = self.admin_headers()
        resp = self.client.post("/api/nfts", json=body, headers=admin)
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["nft"]["price"], "2.5")

        resp = self.client.post("/api/nfts", json={"name": "No price"}, headers=admin)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"], "Name and price are required")


class NftOwnershipTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.account = Account.create()
        self.headers = self.user_headers()
        self.message = "I own this NFT"

    def verify(self, nft_id, signature=None, wallet=None):
        return self.client.post(
            f"/api/nfts/{nft_id}/verify-ownership",
            json={
                "walletAddress": wallet or self.account.address,
                "signature": signature or sign(self.account, self.message),
                "message": self.message,
            },
            headers=self.headers,
        )

    def test_stored_owner_verifies(self):
        self.add_nft("n1", "1", owner_address=self.account.address.lower())
        resp = self.verify("n1")
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertTrue(resp.json()["verified"])
        self.assertEqual(len(self.db.get_nft("n1").verified_owners), 1)

    def test_chain_owner_takes_precedence(self):
        self.add_nft(
            "n2", "1", owner_address=self.account.address, contract_address="0xc", token_id="7"
        )
        self.chain.set_owner("0xc", "7", Account.create().address)
        resp = self.verify("n2")
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json(), {"verified": False, "error": "Wallet does not own this NFT"})

    def test_bad_signature(self):
        self.add_nft("n3", "1", owner_address=self.account.address)
        resp = self.verify("n3", signature="0xdead")
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["verified"])

    def test_signature_from_other_wallet(self):
        self.add_nft("n4", "1", owner_address=self.account.address)
        resp = self.verify("n4", signature=sign(Account.create(), self.message))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Signature verification failed")

    def test_missing_fields_and_unknown_nft(self):
        resp = self.client.post(
            "/api/nfts/n1/verify-ownership", json={"walletAddress": "0x1"}, headers=self.headers
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.verify("missing").status_code, 404)


class CartTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.add_nft("n1", "0.5")
        self.headers = self.user_headers()

    def test_add_list_remove_clear(self):
        resp = self.client.post("/api/cart/add", json={"nft_id": "n1"}, headers=self.headers)
        self.assertEqual(resp.json(), {"message": "Item added to cart"})
        self.client.post("/api/cart/add", json={"nft_id": "n1", "quantity": 2}, headers=self.headers)

        items = self.client.get("/api/cart", headers=self.headers).json()["items"]
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["quantity"], 3)
        self.assertEqual(items[0]["price"], "0.5")

        other = self.user_headers("other@example.com")
        resp = self.client.delete(f"/api/cart/{items[0]['id']}", headers=other)
        self.assertEqual(resp.status_code, 404)
        resp = self.client.delete(f"/api/cart/{items[0]['id']}", headers=self.headers)
        self.assertEqual(resp.status_code, 200)

        self.client.post("/api/cart/add", json={"nft_id": "n1"}, headers=self.headers)
        self.client.post("/api/cart/clear", headers=self.headers)
        self.assertEqual(self.client.get("/api/cart", headers=self.headers).json()["items"], [])

    def test_add_validation(self):
        resp = self.client.post("/api/cart/add", json={}, headers=self.headers)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"], "NFT ID required")
        resp = self.client.post("/api/cart/add", json={"nft_id": "nope"}, headers=self.headers)
        self.assertEqual(resp.status_code, 404)
        resp = self.client.post("/api/cart/add", json={"nft_id": "n1", "quantity": 0}, headers=self.headers)
        self.assertEqual(resp.status_code, 422)

    def test_cart_requires_auth(self):
        self.assertEqual(self.client.get("/api/cart").status_code, 401)


class OrderTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.add_nft("n1", "2", token_id="1", contract_address="0xc")
        self.headers = self.user_headers()

    def place(self, body=None):
        self.client.post("/api/cart/add", json={"nft_id": "n1"}, headers=self.headers)
        return self.client.post("/api/orders", json=body or {}, headers=self.headers)

    def test_empty_cart(self):
        resp = self.client.post("/api/orders", json={}, headers=self.headers)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"], "Cart is empty")

    def test_create_without_hash(self):
        resp = self.place()
        self.assertEqual(resp.status_code, 201)
        order = resp.json()["order"]
        self.assertEqual(order["subtotal"], "2")
        self.assertEqual(Decimal(order["fee"]), Decimal("0.05"))
        self.assertEqual(Decimal(order["total_amount"]), Decimal("2.05"))
        self.assertEqual(order["status"], "pending")
        self.assertIsNone(order["transaction_status"])
        self.assertEqual(len(order["items"]), 1)
        self.monitor.start_monitoring.assert_not_called()
        self.assertEqual(self.client.get("/api/cart", headers=self.headers).json()["items"], [])

    def test_create_with_hash_starts_monitoring(self):
        resp = self.place({"transaction_hash": TX})
        order = resp.json()["order"]
        self.assertEqual(order["transaction_status"], "pending")
        self.monitor.start_monitoring.assert_called_once_with(order["id"], TX)

    def test_malformed_hash_rejected(self):
        resp = self.place({"transaction_hash": "0x1234"})
        self.assertEqual(resp.status_code, 422)

    def test_list_and_filters(self):
        first = self.place().json()["order"]
        self.place()
        self.db.update_order(first["id"], status=OrderStatus.COMPLETED)

        body = self.client.get("/api/orders", headers=self.headers).json()
        self.assertEqual(body["pagination"]["total"], 2)
        self.assertEqual(body["pagination"]["pages"], 1)

        body = self.client.get(
            "/api/orders", params={"status": "completed"}, headers=self.headers
        ).json()
        self.assertEqual([o["id"] for o in body["orders"]], [first["id"]])

        body = self.client.get(
            "/api/orders", params={"startDate": "2999-01-01"}, headers=self.headers
        ).json()
        self.assertEqual(body["orders"], [])

        resp = self.client.get("/api/orders", params={"status": "bogus"}, headers=self.headers)
        self.assertEqual(resp.status_code, 422)
        resp = self.client.get("/api/orders", params={"endDate": "yesterday"}, headers=self.headers)
        self.assertEqual(resp.status_code, 400)

    def test_date_filters_accept_utc_suffix(self):
        self.place()
        resp = self.client.get(
            "/api/orders",
            params={"startDate": "2000-01-01T00:00:00Z", "endDate": "2999-01-01T00:00:00.000Z"},
            headers=self.headers,
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["pagination"]["total"], 1)

        resp = self.client.get(
            "/api/orders", params={"startDate": "2999-01-01T00:00:00Z"}, headers=self.headers
        )
        self.assertEqual(resp.json()["orders"], [])

        other = self.user_headers("other@example.com")
        self.assertEqual(self.client.get("/api/orders", headers=other).json()["orders"], [])

    def test_get_order_is_scoped_to_owner(self):
        order = self.place().json()["order"]
        resp = self.client.get(f"/api/orders/{order['id']}", headers=self.headers)
        self.assertEqual(resp.json()["order"]["items"][0]["token_id"], "1")

        other = self.user_headers("other@example.com")
        resp = self.client.get(f"/api/orders/{order['id']}", headers=other)
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["detail"], "Order not found")

    def test_update_status(self):
        order = self.place({"transaction_hash": TX}).json()["order"]
        url = f"/api/orders/{order['id']}/status"

        resp = self.client.patch(url, json={"status": "shipped"}, headers=self.headers)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"], "Invalid status")

        resp = self.client.patch(
            url,
            json={"status": "cancelled", "failure_reason": "changed my mind"},
            headers=self.headers,
        )
        updated = resp.json()["order"]
        self.assertEqual(updated["status"], "cancelled")
        self.assertEqual(updated["failure_reason"], "changed my mind")
        self.assertEqual(updated["transaction_hash"], TX)

        resp = self.client.patch(
            url, json={"transaction_hash": None, "failure_reason": None}, headers=self.headers
        )
        updated = resp.json()["order"]
        self.assertIsNone(updated["transaction_hash"])
        self.assertIsNone(updated["failure_reason"])
        self.assertEqual(updated["status"], "cancelled")


class WalletVerificationTests(ApiTestCase):
    def test_links_wallet_to_user(self):
        account = Account.create()
        registered = self.register()
        message = "Link my wallet"
        resp = self.client.post(
            "/api/web3/verify-ownership",
            json={
                "walletAddress": account.address,
                "signature": sign(account, message),
                "message": message,
            },
            headers=self.auth(registered["token"]),
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["walletAddress"], account.address)
        user = self.db.get_user(registered["user"]["id"])
        self.assertEqual(user.wallet_address, account.address)

    def test_mismatch(self):
        account = Account.create()
        resp = self.client.post(
            "/api/web3/verify-ownership",
            json={
                "walletAddress": Account.create().address,
                "signature": sign(account, "hello"),
                "message": "hello",
            },
            headers=self.user_headers(),
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"verified": False, "error": "Signature verification failed"})

    def test_missing_fields(self):
        resp = self.client.post(
            "/api/web3/verify-ownership", json={"message": "x"}, headers=self.user_headers()
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(
            resp.json()["detail"], "Wallet address, signature, and message required"
        )


class ErrorHandlingTests(ApiTestCase):
    def test_unexpected_errors_return_500(self):
        broken = MagicMock()
        broken.list_nfts.side_effect = RuntimeError("db exploded")
        self.app.dependency_overrides[get_db_client] = lambda: broken
        client = TestClient(self.app, raise_server_exceptions=False)
        with self.assertLogs("marketplace.app", level="ERROR"):
            resp = client.get("/api/nfts")
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json(), {"detail": "Internal server error"})


if __name__ == "__main__":
    unittest.main()
