# apps/orders/tests.py
import uuid
from decimal import Decimal
from unittest import mock

from django.db import DatabaseError, connection
from django.test import TestCase, override_settings
from django.test.utils import CaptureQueriesContext

from apps.catalog.models import Product
from apps.orders.exceptions import (
    EmptyOrderError,
    InternalConsistencyError,
    InvalidQuantityError,
    ProductNotFoundError,
    OutOfStockError,
    StoreFailureError,
    TooManyItemsError,
)
from apps.orders.models import Order, OrderLineItem
from apps.orders.services import (
    OrderItemRequest,
    OrderMutator,
    OrderService,
    OrderValidator,
    StockUpdate,
    order_summary,
)
from apps.orders.signals import order_placed
from apps.orders.transactions import OrderTransaction, TransactionState


def item(product, quantity):
    product_id = product.pk if isinstance(product, Product) else product
    return OrderItemRequest(product_id=product_id, quantity=quantity)


class OrderFixtureMixin:
    def setUp(self):
        self.p1 = Product.objects.create(name="Milk 1L", price=Decimal("10.00"), stock=5)
        self.p2 = Product.objects.create(name="Bread", price=Decimal("2.50"), stock=1)
        self.p3 = Product.objects.create(name="Eggs x12", price=Decimal("4.25"), stock=20)

    def assertNothingPersisted(self):
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(OrderLineItem.objects.count(), 0)
        stocks = dict(Product.objects.values_list("pk", "stock"))
        self.assertEqual(stocks, {self.p1.pk: 5, self.p2.pk: 1, self.p3.pk: 20})


class PlaceOrderScenarioTests(OrderFixtureMixin, TestCase):
    def test_single_item_order(self):
        order = OrderService.place_order([item(self.p1, 2)], buyer_id="buyer-1")

        order.refresh_from_db()
        self.p1.refresh_from_db()
        self.assertEqual(order.total_amount, Decimal("20.00"))
        self.assertEqual(order.buyer_id, "buyer-1")
        self.assertIsNotNone(order.created_at)
        self.assertEqual(self.p1.stock, 3)

        line = order.items.get()
        self.assertEqual(line.product_id, self.p1.pk)
        self.assertEqual(line.quantity, 2)
        self.assertEqual(line.unit_price, Decimal("10.00"))

    def test_unknown_product(self):
        missing = uuid.uuid4()
        with self.assertRaises(ProductNotFoundError) as ctx:
            OrderService.place_order([item(missing, 1)], buyer_id="buyer-1")

        self.assertEqual(ctx.exception.product_id, missing)
        self.assertEqual(ctx.exception.code, "product_not_found")
        self.assertNothingPersisted()

    def test_insufficient_stock(self):
        with self.assertRaises(OutOfStockError) as ctx:
            OrderService.place_order([item(self.p1, 10)], buyer_id="buyer-1")

        err = ctx.exception
        self.assertEqual((err.product_id, err.requested, err.available), (self.p1.pk, 10, 5))
        self.assertNothingPersisted()

    def test_empty_order(self):
        with self.assertRaises(EmptyOrderError):
            OrderService.place_order([], buyer_id="buyer-1")
        with self.assertRaises(EmptyOrderError):
            OrderService.place_order(None, buyer_id="buyer-1")

    def test_later_item_failure_leaves_earlier_items_untouched(self):
        with self.assertRaises(OutOfStockError) as ctx:
            OrderService.place_order([item(self.p1, 1), item(self.p2, 3)], buyer_id="buyer-1")

        err = ctx.exception
        self.assertEqual((err.product_id, err.requested, err.available), (self.p2.pk, 3, 1))
        self.assertNothingPersisted()


class PlaceOrderTests(OrderFixtureMixin, TestCase):
    def test_total_is_sum_of_line_subtotals(self):
        order = OrderService.place_order(
            [item(self.p1, 2), item(self.p2, 1), item(self.p3, 3)], buyer_id="buyer-1"
        )

        lines = list(order.items.all())
        self.assertEqual(len(lines), 3)
        self.assertEqual(order.total_amount, sum(line.subtotal for line in lines))
        self.assertEqual(order.total_amount, Decimal("35.25"))

    def test_stock_is_conserved(self):
        OrderService.place_order([item(self.p1, 5), item(self.p3, 7)], buyer_id="buyer-1")

        stocks = dict(Product.objects.values_list("pk", "stock"))
        self.assertEqual(stocks, {self.p1.pk: 0, self.p2.pk: 1, self.p3.pk: 13})

    def test_duplicate_products_are_summed_against_one_stock_check(self):
        with self.assertRaises(OutOfStockError) as ctx:
            OrderService.place_order([item(self.p1, 3), item(self.p1, 3)], buyer_id="buyer-1")
        self.assertEqual((ctx.exception.requested, ctx.exception.available), (6, 5))
        self.assertNothingPersisted()

    def test_duplicate_products_keep_one_line_item_per_request(self):
        order = OrderService.place_order([item(self.p1, 2), item(self.p1, 3)], buyer_id="buyer-1")

        self.p1.refresh_from_db()
        self.assertEqual(self.p1.stock, 0)
        self.assertEqual(sorted(order.items.values_list("quantity", flat=True)), [2, 3])
        self.assertEqual(order.total_amount, Decimal("50.00"))

    def test_string_product_ids_are_accepted(self):
        order = OrderService.place_order([item(str(self.p1.pk), 1)], buyer_id="buyer-1")
        self.assertEqual(order.items.get().product_id, self.p1.pk)

    def test_malformed_product_id_is_not_found(self):
        with self.assertRaises(ProductNotFoundError) as ctx:
            OrderService.place_order([item("not-a-uuid", 1)], buyer_id="buyer-1")
        self.assertEqual(ctx.exception.product_id, "not-a-uuid")
        self.assertNothingPersisted()

    def test_invalid_quantities(self):
        for qty in (0, -1, "2", 1.5, True, None):
            with self.subTest(qty=qty):
                with self.assertRaises(InvalidQuantityError) as ctx:
                    OrderService.place_order([item(self.p1, 1), item(self.p2, qty)], buyer_id="buyer-1")
                self.assertEqual(ctx.exception.product_id, self.p2.pk)
                self.assertEqual(ctx.exception.quantity, qty)
        self.assertNothingPersisted()

    def test_line_items_keep_purchase_price(self):
        order = OrderService.place_order([item(self.p1, 2)], buyer_id="buyer-1")
        Product.objects.filter(pk=self.p1.pk).update(price=Decimal("99.00"))

        line = OrderLineItem.objects.get(order=order)
        self.assertEqual(line.unit_price, Decimal("10.00"))
        self.assertEqual(Order.objects.get(pk=order.pk).total_amount, line.subtotal)

    def test_structural_errors_never_touch_the_database(self):
        with self.assertNumQueries(0):
            with self.assertRaises(EmptyOrderError):
                OrderService.place_order([], buyer_id="buyer-1")
            with self.assertRaises(InvalidQuantityError):
                OrderService.place_order([item(self.p1, 0)], buyer_id="buyer-1")

    @override_settings(ORDER_MAX_LINE_ITEMS=3)
    def test_oversized_request_is_refused_before_the_store(self):
        items = [item(self.p3, 1)] * 4
        with self.assertNumQueries(0):
            with self.assertRaises(TooManyItemsError) as ctx:
                OrderService.place_order(items, buyer_id="buyer-1")

        self.assertEqual((ctx.exception.count, ctx.exception.limit), (4, 3))
        self.assertNothingPersisted()

    @override_settings(ORDER_MAX_LINE_ITEMS=3)
    def test_request_at_the_limit_is_placed(self):
        order = OrderService.place_order([item(self.p3, 1)] * 3, buyer_id="buyer-1")
        self.assertEqual(order.items.count(), 3)

    def test_request_is_parsed_once(self):
        with mock.patch.object(OrderValidator, "demand", wraps=OrderValidator.demand) as demand:
            OrderService.place_order([item(self.p1, 1), item(self.p3, 2)], buyer_id="buyer-1")
        demand.assert_called_once()

    def test_rejections_are_logged(self):
        with self.assertLogs("apps.orders.services", level="WARNING") as logs:
            with self.assertRaises(OutOfStockError):
                OrderService.place_order([item(self.p2, 2)], buyer_id="buyer-9")
        self.assertIn("buyer-9", logs.output[0])
        self.assertEqual(logs.records[0].error_code, "out_of_stock")


class StoreRoundTripTests(OrderFixtureMixin, TestCase):
    @staticmethod
    def _matching(queries, verb, table):
        return [
            q["sql"] for q in queries
            if q["sql"].lstrip().upper().startswith(verb) and f'"{table}"' in q["sql"]
        ]

    def test_one_bulk_read_and_one_batch_write_each(self):
        items = [item(self.p1, 1), item(self.p2, 1), item(self.p3, 2), item(self.p1, 1)]

        with CaptureQueriesContext(connection) as ctx:
            OrderService.place_order(items, buyer_id="buyer-1")

        queries = ctx.captured_queries
        self.assertEqual(len(self._matching(queries, "SELECT", "catalog_product")), 1)
        self.assertEqual(len(self._matching(queries, "UPDATE", "catalog_product")), 1)
        self.assertEqual(len(self._matching(queries, "INSERT", "orders_orderlineitem")), 1)
        self.assertEqual(len(self._matching(queries, "INSERT", "orders_order")), 1)
        self.assertEqual(len(self._matching(queries, "UPDATE", "orders_order")), 0)

    def test_failed_validation_reads_once_and_writes_nothing(self):
        with CaptureQueriesContext(connection) as ctx:
            with self.assertRaises(OutOfStockError):
                OrderService.place_order([item(self.p1, 1), item(self.p2, 5)], buyer_id="buyer-1")

        queries = ctx.captured_queries
        self.assertEqual(len(self._matching(queries, "SELECT", "catalog_product")), 1)
        self.assertEqual(self._matching(queries, "UPDATE", "catalog_product"), [])
        self.assertEqual(self._matching(queries, "INSERT", "orders_order"), [])


class StoreFailureTests(OrderFixtureMixin, TestCase):
    def test_database_error_rolls_back_and_is_wrapped(self):
        boom = DatabaseError("disk full")
        with mock.patch("django.db.models.query.QuerySet.bulk_create", side_effect=boom):
            with self.assertRaises(StoreFailureError) as ctx:
                OrderService.place_order([item(self.p1, 2)], buyer_id="buyer-1")

        self.assertIs(ctx.exception.__cause__, boom)
        self.assertEqual(ctx.exception.code, "store_failure")
        self.assertNothingPersisted()

    def test_store_failures_are_logged_as_errors(self):
        with mock.patch(
            "django.db.models.query.QuerySet.bulk_update",
            side_effect=DatabaseError("connection lost"),
        ):
            with self.assertLogs("apps.orders.services", level="ERROR") as logs:
                with self.assertRaises(StoreFailureError):
                    OrderService.place_order([item(self.p1, 1)], buyer_id="buyer-1")

        self.assertIn("connection lost", logs.output[0])
        self.assertNothingPersisted()


class OrderPlacedSignalTests(OrderFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.received = []

        def handler(sender, order, buyer_id, items, **kwargs):
            self.received.append((order.pk, buyer_id, items))

        order_placed.connect(handler, weak=False, dispatch_uid="orders-test-handler")
        self.addCleanup(order_placed.disconnect, dispatch_uid="orders-test-handler")

    def test_sent_once_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            order = OrderService.place_order([item(self.p1, 1), item(self.p1, 2)], buyer_id="buyer-1")

        self.assertEqual(len(callbacks), 1)
        self.assertEqual(
            self.received,
            [(order.pk, "buyer-1", [{"product_id": str(self.p1.pk), "quantity": 3}])],
        )

    def test_not_sent_for_rolled_back_order(self):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(OutOfStockError):
                OrderService.place_order([item(self.p2, 2)], buyer_id="buyer-1")

        self.assertEqual(callbacks, [])
        self.assertEqual(self.received, [])


class OrderValidatorTests(OrderFixtureMixin, TestCase):
    def products(self):
        return {p.pk: p for p in (self.p1, self.p2, self.p3)}

    def test_returns_summed_demand_in_request_order(self):
        demand = OrderValidator.validate(
            [item(self.p3, 1), item(self.p1, 2), item(self.p3, 4)], self.products()
        )
        self.assertEqual(list(demand.items()), [(self.p3.pk, 5), (self.p1.pk, 2)])

    def test_first_failing_product_wins(self):
        missing = uuid.uuid4()
        with self.assertRaises(ProductNotFoundError) as ctx:
            OrderValidator.validate([item(missing, 1), item(self.p2, 9)], self.products())
        self.assertEqual(ctx.exception.product_id, missing)

    def test_does_not_modify_products(self):
        products = self.products()
        OrderValidator.validate([item(self.p1, 5)], products)
        self.assertEqual(products[self.p1.pk].stock, 5)

    def test_check_stock_uses_precomputed_demand(self):
        with self.assertRaises(OutOfStockError) as ctx:
            OrderValidator.check_stock({self.p1.pk: 2, self.p2.pk: 3}, self.products())
        self.assertEqual((ctx.exception.requested, ctx.exception.available), (3, 1))
        OrderValidator.check_stock({self.p1.pk: 5}, self.products())


class OrderMutatorTests(OrderFixtureMixin, TestCase):
    def test_stage_is_pure(self):
        products = {self.p1.pk: self.p1, self.p2.pk: self.p2}
        staged = OrderMutator.stage([item(self.p1, 2), item(self.p2, 1)], products, "buyer-1")

        self.assertEqual(staged.total_amount, Decimal("22.50"))
        self.assertEqual(
            staged.stock_updates,
            (StockUpdate(self.p1.pk, 5, 3), StockUpdate(self.p2.pk, 1, 0)),
        )
        self.assertEqual([line.subtotal for line in staged.lines], [Decimal("20.00"), Decimal("2.50")])
        # fetched records are left untouched
        self.assertEqual((self.p1.stock, self.p2.stock), (5, 1))
        self.assertEqual(Order.objects.count(), 0)

    def test_unvalidated_item_is_an_internal_error(self):
        with self.assertRaises(InternalConsistencyError):
            OrderMutator.stage([item(self.p1, 1), item(uuid.uuid4(), 1)], {self.p1.pk: self.p1}, "buyer-1")

    def test_overdraw_is_an_internal_error(self):
        with self.assertRaises(InternalConsistencyError) as ctx:
            OrderMutator.stage([item(self.p2, 2)], {self.p2.pk: self.p2}, "buyer-1")
        self.assertIn(str(self.p2.pk), ctx.exception.detail)


class OrderTransactionTests(OrderFixtureMixin, TestCase):
    def test_commit_lifecycle(self):
        txn = OrderTransaction()
        self.assertIs(txn.state, TransactionState.IDLE)

        with txn:
            self.assertIs(txn.state, TransactionState.OPEN)
            products = txn.fetch_products([self.p1.pk, self.p2.pk])
            txn.update_products([StockUpdate(self.p1.pk, 5, 4)])

        self.assertIs(txn.state, TransactionState.COMMITTED)
        self.assertEqual(set(products), {self.p1.pk, self.p2.pk})
        self.p1.refresh_from_db()
        self.assertEqual(self.p1.stock, 4)

    def test_exception_rolls_back(self):
        txn = OrderTransaction()
        with self.assertRaises(RuntimeError):
            with txn:
                txn.update_products([StockUpdate(self.p1.pk, 5, 0)])
                raise RuntimeError("caller bailed out")

        self.assertIs(txn.state, TransactionState.ROLLED_BACK)
        self.p1.refresh_from_db()
        self.assertEqual(self.p1.stock, 5)

    def test_interrupt_rolls_back(self):
        txn = OrderTransaction()
        with self.assertRaises(KeyboardInterrupt):
            with txn:
                txn.update_products([StockUpdate(self.p1.pk, 5, 0)])
                raise KeyboardInterrupt

        self.assertIs(txn.state, TransactionState.ROLLED_BACK)
        self.p1.refresh_from_db()
        self.assertEqual(self.p1.stock, 5)

    def test_closed_handle_refuses_writes(self):
        txn = OrderTransaction()
        with txn:
            pass

        with self.assertRaises(InternalConsistencyError):
            txn.fetch_products([self.p1.pk])
        with self.assertRaises(InternalConsistencyError):
            txn.update_products([StockUpdate(self.p1.pk, 5, 0)])
        with self.assertRaises(InternalConsistencyError):
            with txn:
                pass
        self.p1.refresh_from_db()
        self.assertEqual(self.p1.stock, 5)


class OrderErrorTests(TestCase):
    def test_structured_payloads(self):
        pid = uuid.uuid4()
        self.assertEqual(EmptyOrderError().as_dict()["code"], "empty_order")
        self.assertEqual(
            OutOfStockError(pid, 10, 5).as_dict(),
            {
                "error": f"Insufficient stock for {pid}. Required: 10, Available: 5",
                "code": "out_of_stock",
                "product_id": str(pid),
                "requested": 10,
                "available": 5,
            },
        )
        self.assertEqual(
            InvalidQuantityError(pid, 0).as_dict()["quantity"], 0
        )
        self.assertEqual(ProductNotFoundError(pid).as_dict()["product_id"], str(pid))
        self.assertEqual(
            TooManyItemsError(101, 100).as_dict(),
            {
                "error": "Order has 101 items; at most 100 are allowed.",
                "code": "too_many_items",
                "count": 101,
                "limit": 100,
            },
        )


class OrderSummaryTests(OrderFixtureMixin, TestCase):
    def test_summary_is_json_safe(self):
        order = OrderService.place_order([item(self.p1, 2), item(self.p2, 1)], buyer_id="buyer-1")
        summary = order_summary(order)

        self.assertTrue(summary["ok"])
        self.assertEqual(summary["order_id"], str(order.pk))
        self.assertEqual(summary["total_amount"], "22.50")
        self.assertEqual(
            [(i["product_id"], i["quantity"], i["unit_price"], i["subtotal"]) for i in summary["items"]],
            [(str(self.p1.pk), 2, "10.00", "20.00"), (str(self.p2.pk), 1, "2.50", "2.50")],
        )
