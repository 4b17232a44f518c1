"""
Unit tests for the Cashfree service.

WHAT: Tests for order ids, signature helpers, webhook authentication and
the Cashfree HTTP client.

WHY: A Cashfree webhook can grant paid access, so the signature checks
must accept exactly what Cashfree signs and nothing else:
1. Both signing schemes (raw body and payment tuple) verify
2. Tampered bodies and wrong secrets are rejected
3. Unparsable bodies are only reported as malformed once authenticated
4. API failures surface as CashfreeError

HOW: Signature tests are pure. Client tests mock httpx.AsyncClient.
"""

import base64
import json
import re

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from scribe.core.config import settings
from scribe.core.exceptions import (
    CashfreeError,
    MalformedPayloadError,
    WebhookSignatureError,
)
from scribe.models.subscription import SubscriptionPlan
from scribe.services.cashfree_service import (
    CashfreeClient,
    PaymentSignatureFields,
    authenticate_webhook,
    compute_payment_signature,
    compute_webhook_signature,
    generate_customer_id,
    generate_free_order_id,
    generate_order_id,
    verify_payment_signature,
    verify_webhook_signature,
)
from tests.factories import (
    TEST_USER_ID,
    cashfree_tuple_signature,
    cashfree_webhook_body,
)


class TestIdentifiers:
    """Tests for order and customer id generation."""

    def test_generate_order_id_format(self):
        """Test order ids embed the user prefix and plan."""
        order_id = generate_order_id(TEST_USER_ID, SubscriptionPlan.PRO)

        assert re.fullmatch(r"sub_3f2a9c1e_PRO_[0-9a-f]{8}", order_id)
        assert len(order_id) <= 50

    def test_generate_order_id_unique(self):
        """Test two orders for the same user and plan never collide."""
        first = generate_order_id(TEST_USER_ID, SubscriptionPlan.ENTERPRISE)
        second = generate_order_id(TEST_USER_ID, SubscriptionPlan.ENTERPRISE)
        assert first != second

    def test_generate_free_order_id(self):
        """Test free-plan order ids are prefixed and carry the user."""
        order_id = generate_free_order_id(TEST_USER_ID)
        assert order_id.startswith(f"free_{TEST_USER_ID}_")

    def test_generate_customer_id(self):
        """Test customer ids replace non-alphanumerics."""
        assert generate_customer_id("a.b+c@example.com") == "customer_a_b_c_example_com"


class TestPaymentSignature:
    """Tests for the payment-tuple signature."""

    def _fields(self, **overrides) -> PaymentSignatureFields:
        values = {
            "order_id": "sub_3f2a9c1e_PRO_1a2b3c4d",
            "order_amount": "29.00",
            "reference_id": "5114910431",
            "tx_status": "SUCCESS",
            "payment_mode": "upi",
            "tx_time": "2026-10-18T10:15:25+05:30",
        }
        values.update(overrides)
        return PaymentSignatureFields(**values)

    def test_message_concatenates_in_order(self):
        """Test the signed message is the plain concatenation of the tuple."""
        fields = self._fields()
        assert fields.message() == (
            b"sub_3f2a9c1e_PRO_1a2b3c4d29.005114910431SUCCESSupi2026-10-18T10:15:25+05:30"
        )

    def test_verify_roundtrip(self):
        """Test a signature computed with the secret verifies."""
        fields = self._fields()
        signature = compute_payment_signature(fields, "secret")
        assert verify_payment_signature(fields, signature, "secret") is True

    def test_verify_rejects_changed_field(self):
        """Test changing any tuple field invalidates the signature."""
        signature = compute_payment_signature(self._fields(), "secret")
        assert verify_payment_signature(self._fields(tx_status="FAILED"), signature, "secret") is False

    @pytest.mark.parametrize("position", [0, -1])
    @pytest.mark.parametrize(
        "field_name",
        ["order_id", "order_amount", "reference_id", "tx_status", "payment_mode", "tx_time"],
    )
    def test_verify_rejects_single_byte_change_in_field(self, field_name, position):
        """Test flipping one byte at either end of any tuple field invalidates the signature."""
        fields = self._fields()
        signature = compute_payment_signature(fields, "secret")
        value = getattr(fields, field_name)
        index = position % len(value)
        flipped = value[:index] + chr(ord(value[index]) ^ 0x01) + value[index + 1:]

        tampered = self._fields(**{field_name: flipped})

        assert verify_payment_signature(tampered, signature, "secret") is False

    @pytest.mark.parametrize("index", [0, 15, 31])
    def test_verify_rejects_single_byte_change_in_signature(self, index):
        """Test flipping one byte of the decoded digest invalidates the signature."""
        fields = self._fields()
        digest = bytearray(base64.b64decode(compute_payment_signature(fields, "secret")))
        digest[index] ^= 0x01

        tampered = base64.b64encode(bytes(digest)).decode("ascii")

        assert verify_payment_signature(fields, tampered, "secret") is False

    def test_verify_rejects_wrong_secret(self):
        """Test a signature made with another secret is rejected."""
        fields = self._fields()
        signature = compute_payment_signature(fields, "other-secret")
        assert verify_payment_signature(fields, signature, "secret") is False

    def test_verify_rejects_empty_signature(self):
        """Test an empty signature never verifies."""
        assert verify_payment_signature(self._fields(), "", "secret") is False

    def test_verify_handles_non_ascii_signature(self):
        """Test garbage signatures are rejected without raising."""
        assert verify_payment_signature(self._fields(), "sïgnåture", "secret") is False

    def test_from_webhook_payload_formats_numeric_amount(self):
        """
        Test JSON numbers are rendered with two decimals.

        WHY: json.loads turns "29.00" into 29.0; Cashfree signed "29.00".
        """
        payload = cashfree_webhook_body("PAYMENT_SUCCESS_WEBHOOK", "order_1", order_amount=29)
        fields = PaymentSignatureFields.from_webhook_payload(payload)

        assert fields.order_amount == "29.00"
        assert fields.order_id == "order_1"
        assert fields.reference_id == "5114910431"
        assert fields.tx_status == "SUCCESS"
        assert fields.payment_mode == "upi"

    def test_from_webhook_payload_missing_fields(self):
        """Test an empty payload yields empty fields instead of raising."""
        fields = PaymentSignatureFields.from_webhook_payload({})
        assert fields.message() == b""


class TestWebhookSignature:
    """Tests for the raw-body signature."""

    def test_verify_roundtrip(self):
        """Test timestamp + body signature verifies."""
        body = b'{"type":"PAYMENT_SUCCESS_WEBHOOK"}'
        signature = compute_webhook_signature(body, "1760760930")
        assert verify_webhook_signature(body, signature, "1760760930") is True

    def test_verify_without_timestamp(self):
        """Test deliveries without a timestamp header sign the body alone."""
        body = b'{"type":"PAYMENT_SUCCESS_WEBHOOK"}'
        signature = compute_webhook_signature(body)
        assert verify_webhook_signature(body, signature) is True

    def test_verify_rejects_tampered_body(self):
        """Test a single changed byte invalidates the signature."""
        body = b'{"amount":29}'
        signature = compute_webhook_signature(body, "1")
        assert verify_webhook_signature(b'{"amount":99}', signature, "1") is False

    def test_uses_configured_secret(self):
        """Test the default secret is CASHFREE_WEBHOOK_SECRET."""
        body = b"{}"
        assert compute_webhook_signature(body) == compute_webhook_signature(
            body, secret=settings.CASHFREE_WEBHOOK_SECRET
        )


class TestAuthenticateWebhook:
    """Tests for authenticate_webhook."""

    def test_accepts_raw_body_signature(self):
        """Test a raw-body signed delivery is parsed and returned."""
        payload = cashfree_webhook_body("PAYMENT_SUCCESS_WEBHOOK", "order_1")
        raw = json.dumps(payload).encode("utf-8")
        signature = compute_webhook_signature(raw, "1760760930")

        result = authenticate_webhook(raw, signature, "1760760930")

        assert result == payload

    def test_accepts_payment_tuple_signature(self):
        """Test a delivery signed over the payment tuple is accepted."""
        payload = cashfree_webhook_body("PAYMENT_SUCCESS_WEBHOOK", "order_1")
        raw = json.dumps(payload).encode("utf-8")

        result = authenticate_webhook(raw, cashfree_tuple_signature(payload))

        assert result["data"]["order"]["order_id"] == "order_1"

    def test_rejects_bad_signature(self):
        """Test an unsigned delivery is rejected as unauthenticated."""
        payload = cashfree_webhook_body("PAYMENT_SUCCESS_WEBHOOK", "order_1")
        raw = json.dumps(payload).encode("utf-8")

        with pytest.raises(WebhookSignatureError) as exc_info:
            authenticate_webhook(raw, "bm90LWEtc2lnbmF0dXJl", "1760760930")

        assert exc_info.value.status_code == 401

    def test_rejects_unsigned_invalid_json_as_unauthenticated(self):
        """
        Test garbage without a valid signature is a 401, not a 400.

        WHY: An attacker must not learn anything about our parser.
        """
        with pytest.raises(WebhookSignatureError):
            authenticate_webhook(b"not json", "bad")

    def test_signed_invalid_json_is_malformed(self):
        """Test a correctly signed body that is not JSON is a 400."""
        raw = b"not json"
        signature = compute_webhook_signature(raw, "1")

        with pytest.raises(MalformedPayloadError) as exc_info:
            authenticate_webhook(raw, signature, "1")

        assert exc_info.value.status_code == 400

    def test_signed_non_object_is_malformed(self):
        """Test a signed JSON array is rejected as malformed."""
        raw = b"[1, 2, 3]"
        signature = compute_webhook_signature(raw, "1")

        with pytest.raises(MalformedPayloadError):
            authenticate_webhook(raw, signature, "1")

    def test_non_utf8_body_is_malformed(self):
        """Test bodies that are not UTF-8 are rejected before verification."""
        with pytest.raises(MalformedPayloadError):
            authenticate_webhook(b"\xff\xfe\x00", "anything")


class TestCashfreeClient:
    """Tests for CashfreeClient with mocked httpx."""

    def _mock_http(self, response: MagicMock):
        """Patch httpx.AsyncClient so requests return `response`."""
        http_client = AsyncMock()
        http_client.request = AsyncMock(return_value=response)
        http_client.__aenter__.return_value = http_client
        http_client.__aexit__.return_value = False
        return patch("scribe.services.cashfree_service.httpx.AsyncClient", return_value=http_client), http_client

    def _response(self, status_code: int, body) -> MagicMock:
        response = MagicMock()
        response.status_code = status_code
        response.json.return_value = body
        response.text = json.dumps(body)
        return response

    @pytest.mark.asyncio
    async def test_create_order(self):
        """Test order creation sends the documented body and headers."""
        response = self._response(
            200,
            {
                "order_id": "sub_3f2a9c1e_PRO_1a2b3c4d",
                "payment_session_id": "session_abc",
                "order_status": "ACTIVE",
            },
        )
        patcher, http_client = self._mock_http(response)

        client = CashfreeClient(app_id="app", secret_key="key", base_url="https://cf.test/pg/")
        with patcher:
            order = await client.create_order(
                order_id="sub_3f2a9c1e_PRO_1a2b3c4d",
                amount=29,
                currency="USD",
                user_id=TEST_USER_ID,
                plan=SubscriptionPlan.PRO,
                customer_email="jane.doe@example.com",
            )

        assert order.payment_session_id == "session_abc"
        assert order.order_status == "ACTIVE"

        kwargs = http_client.request.call_args.kwargs
        assert kwargs["method"] == "POST"
        assert kwargs["url"] == "https://cf.test/pg/orders"
        assert kwargs["headers"]["x-client-id"] == "app"
        assert kwargs["headers"]["x-client-secret"] == "key"
        assert kwargs["headers"]["x-api-version"] == "2023-08-01"

        body = kwargs["json"]
        assert body["order_amount"] == 29
        assert body["order_currency"] == "USD"
        assert body["customer_details"]["customer_id"] == "customer_jane_doe_example_com"
        assert body["customer_details"]["customer_name"] == "jane.doe"
        assert body["order_meta"]["notify_url"].endswith("/api/cashfree/webhook")
        assert "order_id=sub_3f2a9c1e_PRO_1a2b3c4d" in body["order_meta"]["return_url"]
        assert body["order_tags"] == {"user_id": TEST_USER_ID, "plan": "PRO"}

    @pytest.mark.asyncio
    async def test_create_order_api_error(self):
        """Test a 4xx from Cashfree becomes CashfreeError with its message."""
        response = self._response(400, {"message": "order_amount is invalid"})
        patcher, _ = self._mock_http(response)

        client = CashfreeClient(app_id="app", secret_key="key", base_url="https://cf.test/pg")
        with patcher, pytest.raises(CashfreeError) as exc_info:
            await client.create_order(
                order_id="o1",
                amount=29,
                currency="USD",
                user_id=TEST_USER_ID,
                plan=SubscriptionPlan.PRO,
                customer_email="jane@example.com",
            )

        assert "order_amount is invalid" in exc_info.value.message
        assert exc_info.value.context["upstream_status"] == 400
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_timeout_becomes_cashfree_error(self):
        """Test timeouts are wrapped in CashfreeError."""
        http_client = AsyncMock()
        http_client.request = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))
        http_client.__aenter__.return_value = http_client
        http_client.__aexit__.return_value = False

        client = CashfreeClient(app_id="app", secret_key="key", base_url="https://cf.test/pg")
        with patch("scribe.services.cashfree_service.httpx.AsyncClient", return_value=http_client):
            with pytest.raises(CashfreeError) as exc_info:
                await client.get_order("o1")

        assert "timed out" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_get_order(self):
        """Test fetching an order returns Cashfree's JSON."""
        response = self._response(200, {"order_id": "o1", "order_status": "PAID"})
        patcher, http_client = self._mock_http(response)

        client = CashfreeClient(app_id="app", secret_key="key", base_url="https://cf.test/pg")
        with patcher:
            data = await client.get_order("o1")

        assert data["order_status"] == "PAID"
        assert http_client.request.call_args.kwargs["url"] == "https://cf.test/pg/orders/o1"
