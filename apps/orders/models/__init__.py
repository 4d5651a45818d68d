"""
Top-level models import shim for the Orders app.

Lets `from apps.orders.models import Order` work while the models live in
separate modules.
"""

from .order import *          # Order
from .item import *           # OrderLineItem
