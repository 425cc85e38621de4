# Overview: Threaded concurrency tests for checkout, cart and token safeguards.

"""
Scripted concurrency tests for the marketplace back end.

Each test runs against a temporary SQLite file so that worker threads get
their own connections and really contend for the write lock.

Run with:
    python -m pytest tests/test_concurrency.py
or:
    python tests/test_concurrency.py
"""
import os
import sys
import tempfile
import threading
import unittest
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from marketplace import create_app
from marketplace.errors import ConcurrencyConflict, InsufficientStock, TokenReused
from marketplace.extensions import db
from marketplace.models import Order, Product
from marketplace.models.identity import ROLE_SELLER
from marketplace.services import auth_service, cart_service, checkout_service, token_service

PASSWORD = "Password123!"
ADDRESS = "1 Concurrent Lane"


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "BCRYPT_ROUNDS": 4,
            "TAX_RATE_BPS": 0,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            seller = auth_service.create_user("seller@example.com", PASSWORD, role=ROLE_SELLER)
            self.seller_id = seller.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _product(self, stock):
        with self.app.app_context():
            product = Product(
                seller_id=self.seller_id,
                name="Contended Product",
                price=Decimal("10.00"),
                base_currency="THB",
                stock=stock,
                is_active=True,
            )
            db.session.add(product)
            db.session.commit()
            return product.id

    def _buyers_with_cart(self, count, product_id, quantity=1):
        buyer_ids = []
        with self.app.app_context():
            for i in range(count):
                buyer = auth_service.create_user(f"buyer{i}@example.com", PASSWORD)
                cart_service.add_or_update(buyer.id, product_id, quantity)
                buyer_ids.append(buyer.id)
        return buyer_ids

    def _run_checkouts(self, buyer_ids):
        results = []
        lock = threading.Lock()

        def worker(buyer_id):
            with self.app.app_context():
                try:
                    order = checkout_service.create_order_from_cart(buyer_id, ADDRESS)
                    with lock:
                        results.append(order.order_number)
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker, args=(buyer_id,)) for buyer_id in buyer_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def test_last_unit_goes_to_exactly_one_buyer(self):
        product_id = self._product(stock=1)
        buyer_ids = self._buyers_with_cart(2, product_id)

        results = self._run_checkouts(buyer_ids)

        placed = [r for r in results if isinstance(r, str)]
        failed = [r for r in results if not isinstance(r, str)]
        self.assertEqual(len(placed), 1)
        self.assertEqual(len(failed), 1)
        self.assertIsInstance(failed[0], InsufficientStock)

        with self.app.app_context():
            self.assertEqual(db.session.get(Product, product_id).stock, 0)
            self.assertEqual(db.session.query(Order).count(), 1)

    def test_concurrent_checkouts_never_oversell(self):
        product_id = self._product(stock=5)
        buyer_ids = self._buyers_with_cart(8, product_id)

        results = self._run_checkouts(buyer_ids)

        placed = [r for r in results if isinstance(r, str)]
        unexpected = [r for r in results if not isinstance(r, (str, InsufficientStock))]
        self.assertFalse(unexpected)
        self.assertEqual(len(placed), 5)

        with self.app.app_context():
            product = db.session.get(Product, product_id)
            self.assertEqual(product.stock, 0)
            self.assertEqual(product.sales_count, 5)

    def test_order_numbers_are_unique(self):
        product_id = self._product(stock=100)
        buyer_ids = self._buyers_with_cart(10, product_id)

        results = self._run_checkouts(buyer_ids)

        self.assertTrue(all(isinstance(r, str) for r in results), results)
        self.assertEqual(len(results), len(set(results)))

    def test_cart_version_admits_one_writer(self):
        product_id = self._product(stock=50)
        (buyer_id,) = self._buyers_with_cart(1, product_id)
        with self.app.app_context():
            item = cart_service.get_cart_items(buyer_id)[0]
            item_id, version = item.id, item.version

        results = []
        lock = threading.Lock()

        def worker(quantity):
            with self.app.app_context():
                try:
                    cart_service.set_quantity(buyer_id, item_id, quantity, version)
                    with lock:
                        results.append("updated")
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker, args=(q,)) for q in (2, 3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(results.count("updated"), 1)
        self.assertTrue(any(isinstance(r, ConcurrencyConflict) for r in results), results)

    def test_refresh_token_rotates_once(self):
        with self.app.app_context():
            buyer = auth_service.create_user("rotating@example.com", PASSWORD)
            raw = token_service.issue_tokens(buyer).refresh_token

        results = []
        lock = threading.Lock()

        def worker():
            with self.app.app_context():
                try:
                    token_service.rotate_refresh_token(raw)
                    with lock:
                        results.append("rotated")
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(results.count("rotated"), 1)
        self.assertTrue(any(isinstance(r, TokenReused) for r in results), results)


if __name__ == "__main__":
    unittest.main(verbosity=2)
