from django.core.management.base import BaseCommand, CommandError

from apps.orders.exceptions import OrderError
from apps.orders.services import OrderItemRequest, OrderService, order_summary


def parse_item(token):
    """'<product_id>:<quantity>' -> OrderItemRequest"""
    product_id, sep, quantity = token.rpartition(':')
    if not sep or not product_id:
        raise CommandError(f"Item must look like <product_id>:<quantity>, got {token!r}")
    try:
        return OrderItemRequest(product_id=product_id, quantity=int(quantity))
    except ValueError:
        raise CommandError(f"Quantity must be an integer, got {quantity!r}") from None


class Command(BaseCommand):
    help = 'Place an order atomically: validate stock, decrement it and record line items'

    def add_arguments(self, parser):
        parser.add_argument('buyer_id', type=str, help='Buyer identifier')
        parser.add_argument('items', nargs='+', help='Items as <product_id>:<quantity>')

    def handle(self, *args, **options):
        requests = [parse_item(token) for token in options['items']]

        try:
            order = OrderService.place_order(requests, options['buyer_id'])
        except OrderError as exc:
            raise CommandError(f"[{exc.code}] {exc.message}") from exc

        summary = order_summary(order)
        self.stdout.write(self.style.SUCCESS(
            f"Order {summary['order_id']} placed for {summary['buyer_id']}: total {summary['total_amount']}"
        ))
        for item in summary['items']:
            self.stdout.write(
                f"  {item['product_id']} x{item['quantity']} @ {item['unit_price']} = {item['subtotal']}"
            )
