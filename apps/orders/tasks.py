from celery import shared_task
import logging

from .exceptions import OrderError
from .services import OrderItemRequest, OrderService, order_summary

logger = logging.getLogger(__name__)


@shared_task(time_limit=60)
def place_order_task(buyer_id, items):
    """
    Asynchronous entry point for order placement.

    `items` is JSON: [{"product_id": "<uuid>", "quantity": 2}, ...].
    Business failures, including an absent or oversized item list, are
    terminal and returned as structured dicts, never retried. A worker time
    limit interrupts the open transaction, which then rolls back.
    """
    requests = [OrderItemRequest.from_dict(item) for item in items or ()]
    try:
        order = OrderService.place_order(requests, buyer_id)
    except OrderError as exc:
        return {"ok": False, **exc.as_dict()}

    return order_summary(order)
