import uuid
import logging
from dataclasses import dataclass
from decimal import Decimal

from django.conf import settings

from .exceptions import (
    EmptyOrderError,
    InternalConsistencyError,
    InvalidQuantityError,
    OrderError,
    OutOfStockError,
    ProductNotFoundError,
    StoreFailureError,
    TooManyItemsError,
)
from .models import Order, OrderLineItem
from .signals import order_placed
from .transactions import OrderTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderItemRequest:
    """One requested (product, quantity) pair. Never persisted as-is."""
    product_id: object
    quantity: int

    @classmethod
    def from_dict(cls, data: dict) -> "OrderItemRequest":
        # Missing keys are left to validation: no id is not found, no quantity is invalid
        return cls(product_id=data.get("product_id"), quantity=data.get("quantity"))


@dataclass(frozen=True)
class StockUpdate:
    product_id: uuid.UUID
    before: int
    after: int


@dataclass(frozen=True)
class StagedLine:
    product_id: uuid.UUID
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class StagedOrder:
    """Every write of one order, computed before anything is written."""
    buyer_id: str
    lines: tuple
    stock_updates: tuple
    total_amount: Decimal


def parse_product_id(value):
    """Product ids are UUIDs; anything else cannot name a product."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ProductNotFoundError(value) from None


def sum_quantities(pairs) -> dict:
    """(product_id, quantity) pairs -> {product_id: total}, in first-seen order."""
    totals = {}
    for product_id, quantity in pairs:
        totals[product_id] = totals.get(product_id, 0) + quantity
    return totals


class OrderValidator:
    """
    Read-only checks of an order request against one bulk product lookup.
    Duplicate product ids are summed against a single stock check.
    """

    @staticmethod
    def check_structure(items):
        if not items:
            raise EmptyOrderError()

        max_items = settings.ORDER_MAX_LINE_ITEMS
        if len(items) > max_items:
            raise TooManyItemsError(len(items), max_items)

        for item in items:
            qty = item.quantity
            if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
                raise InvalidQuantityError(item.product_id, qty)

    @staticmethod
    def demand(items) -> dict:
        return sum_quantities(
            (parse_product_id(item.product_id), item.quantity) for item in items
        )

    @staticmethod
    def check_stock(demand: dict, products: dict):
        for product_id, requested in demand.items():
            product = products.get(product_id)
            if product is None:
                raise ProductNotFoundError(product_id)
            if requested > product.stock:
                raise OutOfStockError(product_id, requested, product.stock)

    @classmethod
    def validate(cls, items, products: dict) -> dict:
        """
        Raises the first failing check; returns {product_id: requested}.
        """
        cls.check_structure(items)
        demand = cls.demand(items)
        cls.check_stock(demand, products)
        return demand


class OrderMutator:
    """
    Turns a validated request into the order header, line items and stock
    decrements, then writes them as one insert plus two batch writes.
    """

    @staticmethod
    def _stage_line(item, products: dict) -> StagedLine:
        try:
            product = products[parse_product_id(item.product_id)]
        except (KeyError, OrderError) as exc:
            raise InternalConsistencyError(f"unvalidated item reached staging: {item.product_id}") from exc
        return StagedLine(product_id=product.pk, quantity=item.quantity, unit_price=product.price)

    @classmethod
    def stage(cls, items, products: dict, buyer_id) -> StagedOrder:
        lines = tuple(cls._stage_line(item, products) for item in items)

        ordered = sum_quantities((line.product_id, line.quantity) for line in lines)
        stock_updates = tuple(
            StockUpdate(
                product_id=product_id,
                before=products[product_id].stock,
                after=products[product_id].stock - quantity,
            )
            for product_id, quantity in ordered.items()
        )

        negative = [u.product_id for u in stock_updates if u.after < 0]
        if negative:
            raise InternalConsistencyError(f"stock would go negative for {negative}")

        total = sum((line.subtotal for line in lines), Decimal("0.00"))

        return StagedOrder(
            buyer_id=str(buyer_id),
            lines=lines,
            stock_updates=stock_updates,
            total_amount=total,
        )

    @classmethod
    def apply(cls, txn: OrderTransaction, items, products: dict, buyer_id) -> Order:
        staged = cls.stage(items, products, buyer_id)

        order = txn.insert_order(
            Order(buyer_id=staged.buyer_id, total_amount=staged.total_amount)
        )
        txn.update_products(staged.stock_updates)
        txn.insert_line_items([
            OrderLineItem(
                order=order,
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
            ) for line in staged.lines
        ])

        return order


class OrderService:

    @staticmethod
    def place_order(items, buyer_id) -> Order:
        """
        Atomic order placement:
        1. Structural checks (no store access)
        2. One locked bulk read of all referenced products
        3. Stock validation, then staging of every write
        4. Order insert + one stock batch update + one line item batch insert
        5. Commit, or roll back everything and re-raise
        """
        items = list(items or ())
        txn = OrderTransaction()
        try:
            OrderValidator.check_structure(items)
            demand = OrderValidator.demand(items)

            with txn:
                products = txn.fetch_products(demand.keys())
                OrderValidator.check_stock(demand, products)
                order = OrderMutator.apply(txn, items, products, buyer_id)

                # Aggregated demand: one entry per distinct product
                items_payload = [
                    {"product_id": str(pid), "quantity": qty} for pid, qty in demand.items()
                ]
                txn.on_commit(lambda: order_placed.send(
                    sender=Order,
                    order=order,
                    buyer_id=order.buyer_id,
                    items=items_payload,
                ))
        except (InternalConsistencyError, StoreFailureError) as exc:
            logger.error(
                f"Order rolled back for buyer {buyer_id}: {exc}",
                exc_info=True,
                extra={"buyer_id": buyer_id, "error_code": exc.code},
            )
            raise
        except OrderError as exc:
            logger.warning(
                f"Order rejected for buyer {buyer_id}: {exc}",
                extra={"buyer_id": buyer_id, "error_code": exc.code},
            )
            raise

        logger.info(
            f"Order {order.id} placed: {len(items)} items, total {order.total_amount}",
            extra={"order_id": order.id, "buyer_id": order.buyer_id},
        )
        return order


def order_summary(order: Order) -> dict:
    """JSON-safe view of a placed order."""
    items = [
        {
            "product_id": str(item.product_id),
            "quantity": item.quantity,
            "unit_price": str(item.unit_price),
            "subtotal": str(item.subtotal),
        }
        for item in order.items.order_by("id")
    ]
    return {
        "ok": True,
        "order_id": str(order.id),
        "buyer_id": order.buyer_id,
        "created_at": order.created_at.isoformat(),
        "total_amount": str(order.total_amount),
        "items": items,
    }
