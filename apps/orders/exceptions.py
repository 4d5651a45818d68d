from apps.utils.exceptions import BusinessLogicException


class OrderError(BusinessLogicException):
    """
    Base for every failure of order placement.

    Subclasses carry structured fields so callers can build precise
    messages without parsing strings.
    """
    code = "order_error"

    def __init__(self, message):
        super().__init__(message, code=self.code)

    @property
    def fields(self):
        return {}

    def as_dict(self):
        return {**super().as_dict(), **self.fields}


class EmptyOrderError(OrderError):
    code = "empty_order"

    def __init__(self):
        super().__init__("Order must contain at least one item.")


class TooManyItemsError(OrderError):
    code = "too_many_items"

    def __init__(self, count, limit):
        self.count = count
        self.limit = limit
        super().__init__(f"Order has {count} items; at most {limit} are allowed.")

    @property
    def fields(self):
        return {"count": self.count, "limit": self.limit}


class InvalidQuantityError(OrderError):
    code = "invalid_quantity"

    def __init__(self, product_id, quantity):
        self.product_id = product_id
        self.quantity = quantity
        super().__init__(f"Invalid quantity {quantity!r} for product {product_id}.")

    @property
    def fields(self):
        return {"product_id": str(self.product_id), "quantity": self.quantity}


class ProductNotFoundError(OrderError):
    code = "product_not_found"

    def __init__(self, product_id):
        self.product_id = product_id
        super().__init__(f"Product {product_id} does not exist.")

    @property
    def fields(self):
        return {"product_id": str(self.product_id)}


class OutOfStockError(OrderError):
    code = "out_of_stock"

    def __init__(self, product_id, requested, available):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_id}. "
            f"Required: {requested}, Available: {available}"
        )

    @property
    def fields(self):
        return {
            "product_id": str(self.product_id),
            "requested": self.requested,
            "available": self.available,
        }


class InternalConsistencyError(OrderError):
    """An invariant was broken by this code, not by the request."""
    code = "internal_consistency"

    def __init__(self, detail):
        self.detail = detail
        super().__init__(f"Internal consistency failure: {detail}")

    @property
    def fields(self):
        return {"detail": self.detail}


class StoreFailureError(OrderError):
    """The database refused or lost the transaction; the order was rolled back."""
    code = "store_failure"

    def __init__(self, detail):
        self.detail = detail
        super().__init__(f"Order could not be stored: {detail}")

    @property
    def fields(self):
        return {"detail": self.detail}
