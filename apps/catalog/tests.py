from decimal import Decimal

from django.db import IntegrityError, transaction
from django.test import TestCase

from .models import Product


class ProductModelTests(TestCase):
    def test_defaults_and_str(self):
        product = Product.objects.create(name="Toned Milk 500ml", price=Decimal("27.00"))
        self.assertEqual(product.stock, 0)
        self.assertIsNotNone(product.pk)
        self.assertEqual(str(product), "Toned Milk 500ml (0 in stock)")

    def test_stock_can_never_be_negative(self):
        product = Product.objects.create(name="Curd", price=Decimal("40.00"), stock=1)
        with self.assertRaises(IntegrityError), transaction.atomic():
            Product.objects.filter(pk=product.pk).update(stock=-1)

        product.refresh_from_db()
        self.assertEqual(product.stock, 1)

    def test_price_can_never_be_negative(self):
        with self.assertRaises(IntegrityError), transaction.atomic():
            Product.objects.create(name="Broken", price=Decimal("-1.00"), stock=1)
