import enum
import logging
from django.db import DEFAULT_DB_ALIAS, DatabaseError, transaction
from django.utils import timezone

from apps.catalog.models import Product
from .exceptions import InternalConsistencyError, StoreFailureError
from .models import Order, OrderLineItem

logger = logging.getLogger(__name__)


class TransactionState(enum.Enum):
    IDLE = "idle"
    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class OrderTransaction:
    """
    Explicit handle over the single database transaction of one order.

        with OrderTransaction() as txn:
            products = txn.fetch_products(ids)
            ...

    Leaving the block normally commits. Any exception, including
    KeyboardInterrupt or a worker time limit, rolls back and propagates.
    Database errors surface as StoreFailureError. Once the handle is
    COMMITTED or ROLLED_BACK it refuses further reads and writes.
    """

    def __init__(self, using=DEFAULT_DB_ALIAS):
        self.using = using
        self.state = TransactionState.IDLE
        self._atomic = None

    def __enter__(self):
        if self.state is not TransactionState.IDLE:
            raise InternalConsistencyError(f"transaction handle reused after {self.state.value}")
        # durable: leaving the block is a real commit, never a savepoint
        self._atomic = transaction.atomic(using=self.using, durable=True)
        try:
            self._atomic.__enter__()
        except DatabaseError as exc:
            self._atomic = None
            self.state = TransactionState.ROLLED_BACK
            raise StoreFailureError(f"could not open transaction: {exc}") from exc
        self.state = TransactionState.OPEN
        return self

    def __exit__(self, exc_type, exc, tb):
        atomic, self._atomic = self._atomic, None
        try:
            atomic.__exit__(exc_type, exc, tb)
        except DatabaseError as db_exc:
            # Commit failed; Django has already rolled back
            self.state = TransactionState.ROLLED_BACK
            logger.error(f"Commit failed: {db_exc}")
            raise StoreFailureError(f"commit failed: {db_exc}") from db_exc

        self.state = TransactionState.COMMITTED if exc_type is None else TransactionState.ROLLED_BACK
        return False

    def _ensure_open(self, operation):
        if self.state is not TransactionState.OPEN:
            raise InternalConsistencyError(f"{operation} on a {self.state.value} transaction")

    def fetch_products(self, product_ids):
        """
        One bulk read of every referenced product, row-locked until commit.
        Locks are taken in primary key order so concurrent orders cannot deadlock.
        """
        self._ensure_open("fetch_products")
        try:
            return (
                Product.objects.using(self.using)
                .select_for_update()
                .order_by("pk")
                .in_bulk(list(product_ids))
            )
        except DatabaseError as exc:
            raise StoreFailureError(f"product fetch failed: {exc}") from exc

    def insert_order(self, order: Order) -> Order:
        self._ensure_open("insert_order")
        try:
            order.save(using=self.using, force_insert=True)
        except DatabaseError as exc:
            raise StoreFailureError(f"order insert failed: {exc}") from exc
        return order

    def update_products(self, stock_updates) -> int:
        """Batch write of staged stock levels; one UPDATE for all products."""
        self._ensure_open("update_products")
        now = timezone.now()
        rows = [
            Product(pk=update.product_id, stock=update.after, updated_at=now)
            for update in stock_updates
        ]
        try:
            return Product.objects.using(self.using).bulk_update(rows, ["stock", "updated_at"])
        except DatabaseError as exc:
            raise StoreFailureError(f"stock update failed: {exc}") from exc

    def insert_line_items(self, line_items):
        """Batch insert of every line item of the order."""
        self._ensure_open("insert_line_items")
        try:
            return OrderLineItem.objects.using(self.using).bulk_create(line_items)
        except DatabaseError as exc:
            raise StoreFailureError(f"line item insert failed: {exc}") from exc

    def on_commit(self, func):
        """Run func only if this transaction commits."""
        self._ensure_open("on_commit")
        transaction.on_commit(func, using=self.using)
