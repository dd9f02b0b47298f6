# apps/utils/tests.py
import json
import logging

from django.test import SimpleTestCase
from rest_framework import status
from rest_framework.exceptions import NotFound

from .exceptions import (
    BusinessLogicException,
    ConflictException,
    ErrorCode,
    InternalException,
    StateException,
    ValidationException,
    custom_exception_handler,
)
from .logging import JSONFormatter
from .utils import UNAMBIGUOUS_ALPHABET, generate_code


class ExceptionTests(SimpleTestCase):
    def test_default_codes(self):
        self.assertEqual(ValidationException("x").code, ErrorCode.BAD_REQUEST)
        self.assertEqual(ConflictException("x").code, ErrorCode.CONFLICT)
        self.assertEqual(StateException("x").code, ErrorCode.ORDER_STATUS_ERROR)

    def test_code_accepts_plain_string(self):
        exc = BusinessLogicException("Cart is empty.", code="CART_EMPTY")
        self.assertEqual(exc.code, ErrorCode.CART_EMPTY)
        self.assertEqual(exc.http_status, status.HTTP_400_BAD_REQUEST)

    def test_http_status_mapping(self):
        self.assertEqual(ConflictException("x").http_status, status.HTTP_409_CONFLICT)
        self.assertEqual(
            ConflictException("x", code=ErrorCode.INSUFFICIENT_STOCK).http_status,
            status.HTTP_400_BAD_REQUEST,
        )
        self.assertEqual(
            StateException("x", code=ErrorCode.ORDER_NOT_FOUND).http_status,
            status.HTTP_404_NOT_FOUND,
        )


class ExceptionHandlerTests(SimpleTestCase):
    def test_business_error_payload(self):
        exc = ConflictException("Only 2 left.", code=ErrorCode.INSUFFICIENT_STOCK)
        with self.assertLogs("apps.utils.exceptions", level="WARNING"):
            response = custom_exception_handler(exc, {})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data, {"error": "Only 2 left.", "code": "INSUFFICIENT_STOCK"})

    def test_internal_error_hides_message(self):
        exc = InternalException("order number space exhausted")
        with self.assertLogs("apps.utils.exceptions", level="ERROR"):
            response = custom_exception_handler(exc, {})

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data["error"], "Internal Server Error")

    def test_unhandled_exception_is_500(self):
        with self.assertLogs("apps.utils.exceptions", level="ERROR"):
            response = custom_exception_handler(RuntimeError("boom"), {})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data["code"], "INTERNAL_SERVER_ERROR")

    def test_drf_exceptions_pass_through(self):
        response = custom_exception_handler(NotFound(), {})
        self.assertEqual(response.status_code, 404)


class JSONFormatterTests(SimpleTestCase):
    def _record(self, msg, args=None, **extra):
        record = logging.LogRecord("apps.orders", logging.INFO, __file__, 1, msg, args, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_scrubs_sensitive_keys(self):
        payload = {"member": 7, "idempotency_key": "abc", "nested": [{"Password": "p"}]}
        output = json.loads(JSONFormatter().format(self._record(payload)))

        self.assertIn("***REDACTED***", output["msg"])
        self.assertNotIn("abc", output["msg"])
        self.assertNotIn("'p'", output["msg"])

    def test_promotes_context_fields(self):
        record = self._record("Order created", order_id="42", member_id=7)
        output = json.loads(JSONFormatter().format(record))

        self.assertEqual(output["order_id"], "42")
        self.assertEqual(output["member_id"], "7")
        self.assertEqual(output["lvl"], "INFO")
        self.assertNotIn("product_id", output)


class GenerateCodeTests(SimpleTestCase):
    def test_prefix_and_alphabet(self):
        code = generate_code(prefix="ORD", length=12)
        self.assertTrue(code.startswith("ORD"))
        self.assertEqual(len(code), 15)
        self.assertTrue(all(c in UNAMBIGUOUS_ALPHABET for c in code[3:]))
