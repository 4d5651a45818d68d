import io
import threading
import concurrent.futures
from decimal import Decimal
from unittest import mock

from django.core.management import CommandError, call_command
from django.db import DatabaseError, connection, transaction
from django.test import TestCase, TransactionTestCase, override_settings

from apps.catalog.models import Product
from apps.orders.exceptions import OutOfStockError, StoreFailureError
from apps.orders.models import Order, OrderLineItem
from apps.orders.services import OrderItemRequest, OrderService, StockUpdate
from apps.orders.tasks import place_order_task
from apps.orders.transactions import OrderTransaction, TransactionState


class ConcurrencyTests(TransactionTestCase):
    # Real transactions: each worker thread commits on its own connection

    def setUp(self):
        # Only 1 item in stock
        self.product = Product.objects.create(name="Last One", price=Decimal("9.99"), stock=1)

    def test_concurrent_ordering_of_last_unit(self):
        """Two buyers cannot both buy the last item"""
        barrier = threading.Barrier(2)

        def place_order(buyer_id):
            try:
                barrier.wait(timeout=10)
                OrderService.place_order(
                    [OrderItemRequest(product_id=self.product.pk, quantity=1)], buyer_id
                )
                return "SUCCESS"
            except (OutOfStockError, StoreFailureError):
                return "FAILED"
            finally:
                connection.close()

        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as executor:
            results = list(executor.map(place_order, ["buyer-1", "buyer-2"]))

        # One must succeed, one must fail
        self.assertEqual(results.count("SUCCESS"), 1)
        self.assertEqual(results.count("FAILED"), 1)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 0)
        self.assertEqual(Order.objects.count(), 1)
        self.assertEqual(OrderLineItem.objects.count(), 1)

    def test_sequential_orders_drain_stock_exactly(self):
        self.product.stock = 3
        self.product.save(update_fields=["stock"])
        request = [OrderItemRequest(product_id=self.product.pk, quantity=2)]

        OrderService.place_order(request, "buyer-1")
        with self.assertRaises(OutOfStockError) as ctx:
            OrderService.place_order(request, "buyer-2")

        self.assertEqual((ctx.exception.requested, ctx.exception.available), (2, 1))
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 1)


class DurabilityTests(TransactionTestCase):
    def setUp(self):
        self.product = Product.objects.create(name="Tea", price=Decimal("3.00"), stock=4)

    def test_cancelled_call_leaves_no_partial_state(self):
        # Interrupt after the order header and stock writes, before commit
        with mock.patch(
            "django.db.models.query.QuerySet.bulk_create", side_effect=KeyboardInterrupt
        ):
            with self.assertRaises(KeyboardInterrupt):
                OrderService.place_order(
                    [OrderItemRequest(product_id=self.product.pk, quantity=2)], "buyer-1"
                )

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 4)
        self.assertEqual(Order.objects.count(), 0)
        self.assertFalse(connection.in_atomic_block)

    def test_committed_order_is_visible_after_return(self):
        order = OrderService.place_order(
            [OrderItemRequest(product_id=self.product.pk, quantity=1)], "buyer-1"
        )
        self.assertFalse(connection.in_atomic_block)
        self.assertTrue(Order.objects.filter(pk=order.pk, total_amount=Decimal("3.00")).exists())

    def test_refuses_to_run_inside_caller_transaction(self):
        with self.assertRaises(RuntimeError):
            with transaction.atomic():
                OrderService.place_order(
                    [OrderItemRequest(product_id=self.product.pk, quantity=1)], "buyer-1"
                )

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 4)

    def test_commit_failure_rolls_back_and_is_wrapped(self):
        conflict = DatabaseError("conflict")
        with mock.patch(
            "django.db.backends.base.base.BaseDatabaseWrapper.commit", side_effect=conflict
        ):
            with self.assertRaises(StoreFailureError) as ctx:
                OrderService.place_order(
                    [OrderItemRequest(product_id=self.product.pk, quantity=1)], "buyer-1"
                )

        self.assertIs(ctx.exception.__cause__, conflict)
        self.assertIn("commit failed: conflict", str(ctx.exception))
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 4)
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(OrderLineItem.objects.count(), 0)

    def test_commit_failure_leaves_handle_rolled_back(self):
        txn = OrderTransaction()
        with mock.patch(
            "django.db.backends.base.base.BaseDatabaseWrapper.commit",
            side_effect=DatabaseError("conflict"),
        ):
            with self.assertRaises(StoreFailureError):
                with txn:
                    txn.update_products(
                        [StockUpdate(product_id=self.product.pk, before=4, after=1)]
                    )

        self.assertIs(txn.state, TransactionState.ROLLED_BACK)
        self.assertFalse(connection.in_atomic_block)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 4)


class PlaceOrderTaskTests(TestCase):
    def setUp(self):
        self.product = Product.objects.create(name="Butter", price=Decimal("5.50"), stock=3)

    def test_returns_order_summary(self):
        result = place_order_task.apply(
            args=["buyer-1", [{"product_id": str(self.product.pk), "quantity": 2}]]
        ).get()

        self.assertTrue(result["ok"])
        self.assertEqual(result["total_amount"], "11.00")
        self.assertEqual(result["buyer_id"], "buyer-1")
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 1)

    def test_business_failure_is_returned_not_raised(self):
        result = place_order_task.apply(
            args=["buyer-1", [{"product_id": str(self.product.pk), "quantity": 9}]]
        ).get()

        self.assertEqual(result, {
            "ok": False,
            "error": f"Insufficient stock for {self.product.pk}. Required: 9, Available: 3",
            "code": "out_of_stock",
            "product_id": str(self.product.pk),
            "requested": 9,
            "available": 3,
        })
        self.assertEqual(Order.objects.count(), 0)

    @override_settings(ORDER_MAX_LINE_ITEMS=1)
    def test_oversized_request_is_returned_as_failure(self):
        items = [{"product_id": str(self.product.pk), "quantity": 1}] * 2
        result = place_order_task.apply(args=["buyer-1", items]).get()

        self.assertEqual(result["code"], "too_many_items")
        self.assertEqual((result["count"], result["limit"]), (2, 1))
        self.assertEqual(Order.objects.count(), 0)

    def test_absent_items_are_an_empty_order(self):
        for items in (None, []):
            with self.subTest(items=items):
                result = place_order_task.apply(args=["buyer-1", items]).get()
                self.assertEqual(result["ok"], False)
                self.assertEqual(result["code"], "empty_order")

    def test_item_missing_keys_are_structured_failures(self):
        no_quantity = place_order_task.apply(
            args=["buyer-1", [{"product_id": str(self.product.pk)}]]
        ).get()
        self.assertEqual(no_quantity["code"], "invalid_quantity")
        self.assertIsNone(no_quantity["quantity"])

        no_product = place_order_task.apply(args=["buyer-1", [{"quantity": 1}]]).get()
        self.assertEqual(no_product["code"], "product_not_found")

        self.assertEqual(Order.objects.count(), 0)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 3)


class PlaceOrderCommandTests(TestCase):
    def setUp(self):
        self.product = Product.objects.create(name="Jam", price=Decimal("4.00"), stock=2)

    def test_places_order(self):
        out = io.StringIO()
        call_command("place_order", "buyer-7", f"{self.product.pk}:2", stdout=out)

        self.assertIn("placed for buyer-7: total 8.00", out.getvalue())
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 0)

    def test_order_errors_become_command_errors(self):
        with self.assertRaisesMessage(CommandError, "[out_of_stock]"):
            call_command("place_order", "buyer-7", f"{self.product.pk}:3", stdout=io.StringIO())
        self.assertEqual(Order.objects.count(), 0)

    def test_malformed_items(self):
        for token in ("no-quantity", f"{self.product.pk}:two", ":1"):
            with self.subTest(token=token):
                with self.assertRaises(CommandError):
                    call_command("place_order", "buyer-7", token, stdout=io.StringIO())

    @override_settings(ORDER_MAX_LINE_ITEMS=1)
    def test_too_many_items(self):
        token = f"{self.product.pk}:1"
        with self.assertRaisesMessage(CommandError, "[too_many_items]"):
            call_command("place_order", "buyer-7", token, token, stdout=io.StringIO())
