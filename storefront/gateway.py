"""
Stripe client.

Only the three calls the storefront needs: create a hosted checkout session,
retrieve one, and verify a webhook payload. Requests go through the official
SDK; its async methods run on the httpx transport and retry network failures
with the idempotency key of the original call.
"""
import json
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

import stripe

from .config import settings
from .errors import UpstreamFailure, ValidationFailed
from .logger import log

SIGNATURE_TOLERANCE = 300  # seconds


class GatewayError(UpstreamFailure):
    pass


class SignatureError(ValidationFailed):
    pass


def to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal(1)))


def _session_dict(obj) -> dict:
    """The fields of a Checkout Session the storefront reads, as a plain dict."""
    intent = getattr(obj, "payment_intent", None)
    if intent is not None and not isinstance(intent, str):
        intent = intent.id
    metadata = getattr(obj, "metadata", None)
    return {
        "id": obj.id,
        "url": getattr(obj, "url", None),
        "status": getattr(obj, "status", None),
        "payment_status": getattr(obj, "payment_status", None),
        "payment_intent": intent,
        "metadata": dict(metadata) if metadata else {},
    }


class PaymentGateway:
    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None,
                 max_retries: Optional[int] = None, client: Optional[stripe.StripeClient] = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.max_retries = max_retries if max_retries is not None else settings.STRIPE_MAX_NETWORK_RETRIES
        self._client = client

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            if not self.api_key:
                raise GatewayError("Payment gateway is not configured")
            self._client = stripe.StripeClient(
                self.api_key,
                base_addresses={"api": settings.STRIPE_API_BASE},
                max_network_retries=self.max_retries,
                http_client=stripe.HTTPXClient(),
            )
        return self._client

    async def create_checkout_session(
        self,
        line_items: List[dict],
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, Any],
        customer_email: Optional[str] = None,
        expires_in_minutes: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """
        line_items: [{"name", "description"?, "image"?, "amount" (major units), "quantity"}]
        Returns the session as a dict; ``id`` and ``url`` are what checkout needs.

        One ``idempotency_key`` covers the call and every retry of it, so a
        request that timed out after Stripe created the session gets that
        same session back instead of a second one.
        """
        ttl = expires_in_minutes or settings.CHECKOUT_SESSION_TTL_MINUTES
        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            # payment_intent.* webhooks only see the intent's own metadata
            "payment_intent_data": {"metadata": metadata},
            "expires_at": int(time.time()) + ttl * 60,
            "line_items": [],
        }
        if customer_email:
            params["customer_email"] = customer_email
        for item in line_items:
            product = {"name": item["name"]}
            if item.get("description"):
                product["description"] = item["description"]
            if item.get("image"):
                product["images"] = [item["image"]]
            params["line_items"].append({
                "quantity": item["quantity"],
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": to_minor_units(item["amount"]),
                    "product_data": product,
                },
            })

        key = idempotency_key or f"checkout-{uuid.uuid4().hex}"
        try:
            created = await self.client.checkout.sessions.create_async(
                params=params, options={"idempotency_key": key},
            )
        except stripe.APIConnectionError as e:
            log.error(f"gateway: checkout session create failed after {self.max_retries} retries: {e}")
            raise GatewayError("Payment gateway unavailable")
        except stripe.StripeError as e:
            raise GatewayError(f"Payment gateway error: {e.user_message or e}")
        return _session_dict(created)

    async def retrieve_session(self, session_id: str) -> dict:
        try:
            found = await self.client.checkout.sessions.retrieve_async(session_id)
        except stripe.APIConnectionError as e:
            log.error(f"gateway: retrieve {session_id} failed after {self.max_retries} retries: {e}")
            raise GatewayError("Payment gateway unavailable")
        except stripe.StripeError as e:
            raise GatewayError(f"Payment gateway error: {e.user_message or e}")
        return _session_dict(found)

    def construct_event(self, payload: bytes, signature_header: Optional[str]) -> dict:
        """Verify a ``Stripe-Signature`` header and return the decoded event."""
        if not self.webhook_secret:
            raise SignatureError("Webhook secret is not configured")
        if not signature_header:
            raise SignatureError("Missing signature")

        try:
            stripe.Webhook.construct_event(
                payload, signature_header, self.webhook_secret, tolerance=SIGNATURE_TOLERANCE,
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureError(f"Invalid signature: {e.user_message or e}")
        except ValueError:
            raise SignatureError("Invalid payload")
        # handlers work on plain dicts
        return json.loads(payload)


_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = PaymentGateway()
    return _gateway
