import threading
import unittest
from decimal import Decimal

from marketplace.db import InMemoryDbClient, NftRecord, OrderRecord


def order(i):
    return OrderRecord(
        order_id=f"o{i}",
        user_id="u1",
        order_number=f"ORD-{i}",
        subtotal=Decimal("1"),
        fee=Decimal("0.025"),
        total_amount=Decimal("1.025"),
        transaction_hash=f"0x{i:064x}",
    )


class InMemoryDbClientTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()

    def test_reads_during_concurrent_writes(self):
        errors = []
        stop = threading.Event()

        def writer():
            try:
                for i in range(400):
                    if stop.is_set():
                        return
                    self.db.create_order_from_cart(order(i), [])
                    self.db.add_to_cart("u1", f"n{i}", 1)
                    self.db.create_user(f"user{i}@example.com")
                    self.db.create_nft(NftRecord(nft_id=f"n{i}", name=f"n{i}", price=Decimal(i)))
            except Exception as exc:
                errors.append(exc)

        thread = threading.Thread(target=writer, daemon=True)
        thread.start()
        try:
            while thread.is_alive():
                self.db.list_unfinished_orders_with_hash()
                self.db.order_number_exists("ORD-missing")
                self.db.list_orders("u1")
                self.db.get_user_by_email("missing@example.com")
                self.db.get_user_by_privy_id("did:privy:missing")
                self.db.list_nfts()
                self.db.search_nfts("n1")
                self.db.list_cart("u1")
        except Exception as exc:
            errors.append(exc)
        finally:
            stop.set()
            thread.join(timeout=10)

        self.assertEqual(errors, [])
        self.assertEqual(len(self.db.list_unfinished_orders_with_hash()), 400)

    def test_reset(self):
        self.db.create_user("a@example.com")
        self.db.create_order_from_cart(order(1), [])
        self.db.reset()
        self.assertIsNone(self.db.get_user_by_email("a@example.com"))
        self.assertFalse(self.db.order_number_exists("ORD-1"))

    def test_update_rejects_unknown_fields(self):
        self.db.create_order_from_cart(order(1), [])
        with self.assertRaises(AttributeError):
            self.db.update_order("o1", colour="blue")


if __name__ == "__main__":
    unittest.main()
