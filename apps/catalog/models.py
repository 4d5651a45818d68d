# apps/catalog/models.py
from django.db import models
from apps.utils.models import TimestampedModel


class Product(TimestampedModel):
    """
    Sellable product with its on-hand stock.

    NOTE:
    - Catalog records are owned elsewhere; order placement only reads price
      and decrements stock inside an order transaction.
    """
    name = models.CharField(max_length=255)
    price = models.DecimalField(max_digits=10, decimal_places=2)
    stock = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["name"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(price__gte=0),
                name="catalog_product_price_non_negative",
            ),
            models.CheckConstraint(
                condition=models.Q(stock__gte=0),
                name="catalog_product_stock_non_negative",
            ),
        ]

    def __str__(self):
        return f"{self.name} ({self.stock} in stock)"
