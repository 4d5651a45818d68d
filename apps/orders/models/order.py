from decimal import Decimal
from django.db import models
from apps.utils.models import TimestampedModel


class Order(TimestampedModel):
    # Buyers are managed outside this service; only the identifier is kept
    buyer_id = models.CharField(max_length=64, db_index=True)

    # Finalized once every line item has been priced
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(total_amount__gte=0),
                name="orders_order_total_non_negative",
            ),
        ]

    def __str__(self):
        return f"{self.id} [{self.buyer_id}] {self.total_amount}"
