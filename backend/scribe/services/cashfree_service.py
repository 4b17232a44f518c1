"""
Cashfree payment gateway service.

WHAT: Order creation against the Cashfree PG REST API and the signature
helpers used to authenticate Cashfree webhooks and return-URL callbacks.

WHY: Cashfree is the payment provider for users paying in INR. Every
Cashfree delivery can change who has access to paid features, so nothing
coming from Cashfree is trusted until its HMAC has been checked (OWASP A08).

HOW: Uses httpx for async HTTP with proper timeout handling. All API
errors are wrapped in CashfreeError for consistent handling. Signatures are
base64-encoded HMAC-SHA256 digests compared in constant time.
"""

import base64
import hashlib
import hmac
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from scribe.core.config import settings
from scribe.core.exceptions import (
    CashfreeError,
    MalformedPayloadError,
    WebhookSignatureError,
)
from scribe.models.subscription import SubscriptionPlan

logger = logging.getLogger(__name__)


# Default timeout for Cashfree API calls (seconds)
DEFAULT_TIMEOUT = 30.0


# ============================================================================
# Identifiers
# ============================================================================


def generate_order_id(user_id: str, plan: SubscriptionPlan) -> str:
    """
    Build a Cashfree order id for a subscription purchase.

    WHY: Cashfree limits order ids to 50 characters of [A-Za-z0-9_-]; the
    prefix keeps orders greppable in the Cashfree dashboard.

    Example:
        >>> generate_order_id("3f2a9c1e-...", SubscriptionPlan.PRO)
        'sub_3f2a9c1e_PRO_1a2b3c4d'
    """
    return f"sub_{user_id[:8]}_{SubscriptionPlan(plan).value}_{uuid.uuid4().hex[:8]}"


def generate_free_order_id(user_id: str) -> str:
    """Synthetic order id for a free-plan activation (no provider order exists)."""
    return f"free_{user_id}_{int(time.time() * 1000)}"


def generate_customer_id(email: str) -> str:
    """Derive a stable Cashfree customer id from an email address."""
    return "customer_" + re.sub(r"[^a-zA-Z0-9]", "_", email)


# ============================================================================
# Signatures
# ============================================================================


def _hmac_base64(secret: str, message: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _signatures_match(expected: str, supplied: str) -> bool:
    # compare_digest on bytes also accepts non-ASCII input without raising
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


def _format_amount(value: Any) -> str:
    """
    Render an order amount the way Cashfree signs it.

    WHY: The tuple is signed over the amount as text. JSON numbers lose
    their trailing zeros when parsed, so they are rendered with two
    decimals; strings are used verbatim.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return f"{value:.2f}"
    return str(value)


@dataclass(frozen=True)
class PaymentSignatureFields:
    """
    The payment tuple Cashfree signs.

    WHAT: Order id, amount, reference id, status, mode and time of one
    payment attempt.
    """

    order_id: str
    order_amount: str
    reference_id: str
    tx_status: str
    payment_mode: str
    tx_time: str

    def message(self) -> bytes:
        """Concatenate the tuple in signing order."""
        return "".join(
            [
                self.order_id,
                self.order_amount,
                self.reference_id,
                self.tx_status,
                self.payment_mode,
                self.tx_time,
            ]
        ).encode("utf-8")

    @classmethod
    def from_webhook_payload(cls, payload: Dict[str, Any]) -> "PaymentSignatureFields":
        """
        Extract the tuple from a parsed Cashfree webhook body.

        Missing fields become empty strings so an incomplete payload simply
        fails verification instead of raising.
        """
        data = payload.get("data") if isinstance(payload, dict) else None
        data = data if isinstance(data, dict) else {}
        order = data.get("order") if isinstance(data.get("order"), dict) else {}
        payment = data.get("payment") if isinstance(data.get("payment"), dict) else {}

        def text(value: Any) -> str:
            return "" if value is None else str(value)

        return cls(
            order_id=text(order.get("order_id")),
            order_amount=_format_amount(order.get("order_amount")),
            reference_id=text(payment.get("cf_payment_id")),
            tx_status=text(payment.get("payment_status")),
            payment_mode=text(payment.get("payment_group")),
            tx_time=text(payment.get("payment_time")),
        )


def compute_payment_signature(fields: PaymentSignatureFields, secret: str) -> str:
    """
    Compute the base64 HMAC-SHA256 of a payment tuple.

    Args:
        fields: Payment tuple
        secret: Shared secret (webhook secret or API secret key)

    Returns:
        Base64-encoded signature
    """
    return _hmac_base64(secret, fields.message())


def verify_payment_signature(
    fields: PaymentSignatureFields,
    signature: str,
    secret: str,
) -> bool:
    """
    Verify a payment-tuple signature in constant time.

    Returns:
        True only if signature is the exact digest of the tuple
    """
    if not signature:
        return False
    return _signatures_match(compute_payment_signature(fields, secret), signature)


def compute_webhook_signature(
    raw_body: bytes,
    timestamp: Optional[str] = None,
    secret: Optional[str] = None,
) -> str:
    """
    Compute the raw-body webhook signature.

    Args:
        raw_body: Exact request body bytes
        timestamp: x-webhook-timestamp header value (may be absent)
        secret: Webhook secret (defaults to settings)

    Returns:
        Base64-encoded signature
    """
    message = (timestamp or "").encode("utf-8") + raw_body
    return _hmac_base64(secret or settings.CASHFREE_WEBHOOK_SECRET, message)


def verify_webhook_signature(
    raw_body: bytes,
    signature: str,
    timestamp: Optional[str] = None,
    secret: Optional[str] = None,
) -> bool:
    """
    Verify the raw-body webhook signature in constant time.

    WHY: Works on bytes only, so it can run before any parsing.
    """
    if not signature:
        return False
    return _signatures_match(compute_webhook_signature(raw_body, timestamp, secret), signature)


def authenticate_webhook(
    raw_body: bytes,
    signature: str,
    timestamp: Optional[str] = None,
    secret: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Authenticate a Cashfree webhook delivery and return its parsed body.

    WHAT: Accepts a signature made with either Cashfree scheme: over the
    raw body (timestamp + body), or over the payment tuple inside it.

    HOW:
    1. Body must be UTF-8
    2. Raw-body scheme is checked on bytes, before parsing
    3. Otherwise the body is parsed and the payment tuple checked; a body
       that cannot be parsed cannot be authenticated this way and is
       rejected as unauthenticated
    4. An authenticated body that is not a JSON object is malformed

    Raises:
        WebhookSignatureError: If neither scheme matches (401)
        MalformedPayloadError: If body is not UTF-8, or authentic but not JSON (400)
    """
    secret = secret or settings.CASHFREE_WEBHOOK_SECRET

    try:
        text = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        raise MalformedPayloadError(message="Webhook body must be UTF-8")

    raw_verified = verify_webhook_signature(raw_body, signature, timestamp, secret)

    try:
        payload = json.loads(text)
    except ValueError:
        if raw_verified:
            logger.warning("Signed Cashfree webhook body is not valid JSON")
            raise MalformedPayloadError(message="Invalid JSON payload")
        logger.warning("Cashfree webhook signature verification failed")
        raise WebhookSignatureError(message="Invalid webhook signature")

    if not raw_verified:
        fields = PaymentSignatureFields.from_webhook_payload(payload)
        if not verify_payment_signature(fields, signature, secret):
            logger.warning(
                "Cashfree webhook signature verification failed",
                extra={"order_id": fields.order_id or None},
            )
            raise WebhookSignatureError(message="Invalid webhook signature")

    if not isinstance(payload, dict):
        raise MalformedPayloadError(message="Invalid JSON payload: expected an object")

    return payload


# ============================================================================
# Cashfree API Client
# ============================================================================


@dataclass
class CashfreeOrder:
    """
    A created Cashfree order.

    WHAT: The parts of the order response the frontend needs to open the
    Cashfree checkout.
    """

    order_id: str
    payment_session_id: Optional[str]
    order_status: Optional[str] = None
    payment_link: Optional[str] = None


class CashfreeClient:
    """
    Async HTTP client for the Cashfree PG API.

    WHAT: Creates and fetches orders.

    HOW: Uses httpx async client with:
    - x-client-id / x-client-secret authentication
    - Pinned x-api-version
    - Error wrapping in CashfreeError
    """

    def __init__(
        self,
        app_id: Optional[str] = None,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """
        Initialize Cashfree client.

        Args:
            app_id: Cashfree app id (defaults to settings)
            secret_key: Cashfree secret key (defaults to settings)
            base_url: API base URL (defaults to the configured environment)
            timeout: Request timeout in seconds
        """
        self._app_id = app_id or settings.CASHFREE_APP_ID
        self._secret_key = secret_key or settings.CASHFREE_SECRET_KEY
        self._base_url = (base_url or settings.cashfree_base_url).rstrip("/")
        self._timeout = timeout

    def _get_headers(self) -> Dict[str, str]:
        return {
            "x-client-id": self._app_id,
            "x-client-secret": self._secret_key,
            "x-api-version": settings.CASHFREE_API_VERSION,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make authenticated request to the Cashfree API.

        Raises:
            CashfreeError: If request fails or returns error status
        """
        url = f"{self._base_url}/{endpoint.lstrip('/')}"

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(),
                    json=data,
                )
        except httpx.TimeoutException:
            raise CashfreeError(
                message="Cashfree API request timed out",
                endpoint=endpoint,
                timeout=self._timeout,
            )
        except httpx.RequestError as e:
            raise CashfreeError(
                message=f"Cashfree API connection error: {str(e)}",
                endpoint=endpoint,
            )

        if response.status_code >= 400:
            error_detail = self._parse_error_response(response)
            logger.error(
                f"Cashfree API error on {method} {endpoint}: {error_detail}",
                extra={"endpoint": endpoint, "status_code": response.status_code},
            )
            raise CashfreeError(
                message=f"Cashfree API error: {error_detail}",
                endpoint=endpoint,
                upstream_status=response.status_code,
            )

        return response.json()

    def _parse_error_response(self, response: httpx.Response) -> str:
        """Extract error message from a Cashfree error response."""
        try:
            data = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return str(data)

    async def create_order(
        self,
        order_id: str,
        amount: float,
        currency: str,
        user_id: str,
        plan: SubscriptionPlan,
        customer_email: str,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
    ) -> CashfreeOrder:
        """
        Create a Cashfree order for a plan purchase.

        WHY: The order id we choose here is what the payment webhook later
        carries, so it is also stored on the pending subscription row.

        Args:
            order_id: Our order id (see generate_order_id)
            amount: Order amount in major units
            currency: ISO currency code
            user_id: Purchasing user (stored in order tags)
            plan: Plan being purchased
            customer_email: Customer email (also used for the customer id)
            customer_name: Display name, defaults to the email local part
            customer_phone: Phone number, Cashfree requires one

        Returns:
            CashfreeOrder with the payment session id

        Raises:
            CashfreeError: If the API call fails
        """
        plan = SubscriptionPlan(plan)
        body = {
            "order_id": order_id,
            "order_amount": amount,
            "order_currency": currency,
            "customer_details": {
                "customer_id": generate_customer_id(customer_email),
                "customer_name": customer_name or customer_email.split("@")[0],
                "customer_email": customer_email,
                "customer_phone": customer_phone or "9999999999",
            },
            "order_meta": {
                "return_url": f"{settings.APP_URL}/dashboard?payment=success&order_id={order_id}",
                "notify_url": f"{settings.APP_URL}{settings.API_PREFIX}/cashfree/webhook",
            },
            "order_note": f"Slack Summary Scribe {plan.value} subscription",
            "order_tags": {
                "user_id": user_id,
                "plan": plan.value,
            },
        }

        data = await self._request("POST", "/orders", data=body)

        logger.info(
            f"Created Cashfree order {order_id} for plan {plan.value}",
            extra={"order_id": order_id, "user_id": user_id, "plan": plan.value},
        )

        return CashfreeOrder(
            order_id=data.get("order_id", order_id),
            payment_session_id=data.get("payment_session_id"),
            order_status=data.get("order_status"),
            payment_link=data.get("payment_link"),
        )

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        """
        Fetch an order's current state from Cashfree.

        Raises:
            CashfreeError: If the API call fails
        """
        return await self._request("GET", f"/orders/{order_id}")


# ============================================================================
# Module-level convenience functions
# ============================================================================


_cashfree_client: Optional[CashfreeClient] = None


def get_cashfree_client() -> CashfreeClient:
    """
    Get or create the global Cashfree client instance.

    Returns:
        CashfreeClient instance
    """
    global _cashfree_client

    if _cashfree_client is None:
        _cashfree_client = CashfreeClient()

    return _cashfree_client
