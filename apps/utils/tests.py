# apps/utils/tests.py
import json
import logging

from django.test import SimpleTestCase

from .exceptions import BusinessLogicException
from .logging import JSONFormatter


class BusinessLogicExceptionTests(SimpleTestCase):
    def test_default_code(self):
        exc = BusinessLogicException("Stock not available")
        self.assertEqual(exc.code, "business_error")
        self.assertEqual(str(exc), "Stock not available")
        self.assertEqual(exc.as_dict(), {"error": "Stock not available", "code": "business_error"})


class JSONFormatterTests(SimpleTestCase):
    def _record(self, msg, args=None, **extra):
        record = logging.LogRecord(
            name="apps.orders.services", level=logging.INFO, pathname=__file__,
            lineno=10, msg=msg, args=args, exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_includes_order_context(self):
        record = self._record("Order placed", order_id="abc", buyer_id="buyer-1")
        payload = json.loads(JSONFormatter().format(record))

        self.assertEqual(payload["msg"], "Order placed")
        self.assertEqual(payload["lvl"], "INFO")
        self.assertEqual(payload["order_id"], "abc")
        self.assertEqual(payload["buyer_id"], "buyer-1")
        self.assertNotIn("error_code", payload)

    def test_scrubs_sensitive_keys(self):
        record = self._record({"buyer": "b1", "token": "xyz", "nested": [{"password": "p"}]})
        payload = json.loads(JSONFormatter().format(record))

        self.assertIn("***REDACTED***", payload["msg"])
        self.assertNotIn("xyz", payload["msg"])
        self.assertNotIn("'p'", payload["msg"])
