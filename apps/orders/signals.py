# apps/orders/signals.py
from django.dispatch import Signal

# Sent after an order transaction has committed; never for rolled-back orders
# args: order, buyer_id, items ([{"product_id": str, "quantity": int}])
# items is the aggregated demand: duplicate products are summed into one entry
order_placed = Signal()
