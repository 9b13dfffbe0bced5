"""Payment gateway backed by the Stripe SDK.

The gateway is constructed once at startup and injected into the services
that need it. When no secret key is configured the application gets an
``UnconfiguredPaymentGateway`` instead of a half-initialised SDK.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import stripe

from marketplace.core.config import Settings, get_settings
from marketplace.core.errors import ExternalServiceError, WebhookSignatureError

logger = logging.getLogger(__name__)


class PaymentGateway(ABC):
    """Outbound calls the fulfillment pipeline makes to the payment processor."""

    @abstractmethod
    def create_customer(self, email: str | None, metadata: dict[str, str]) -> str:
        """Create a processor customer and return its id."""

    @abstractmethod
    def create_checkout_session(self, params: dict[str, Any]) -> dict[str, Any]:
        """Create a hosted checkout session. Returns at least ``id`` and ``url``."""

    @abstractmethod
    def create_refund(self, payment_intent_id: str, metadata: dict[str, str] | None = None) -> dict[str, Any]:
        """Refund a payment intent in full."""

    @abstractmethod
    def construct_event(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify a webhook signature and return the parsed event."""


class StripeGateway(PaymentGateway):
    """Stripe implementation.

    Calls go through a ``StripeClient`` owned by the gateway, so the key,
    timeout and retry policy never touch the SDK's module-level settings.
    """

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str = "",
        timeout_seconds: int = 10,
        max_network_retries: int = 2,
        client: stripe.StripeClient | None = None,
    ) -> None:
        self.webhook_secret = webhook_secret
        self.client = client or stripe.StripeClient(
            secret_key,
            http_client=stripe.RequestsClient(timeout=timeout_seconds),
            max_network_retries=max_network_retries,
        )

    def create_customer(self, email: str | None, metadata: dict[str, str]) -> str:
        try:
            customer = self.client.customers.create(params={"email": email, "metadata": metadata})
        except stripe.StripeError as e:
            logger.error("Stripe error creating customer: %s", str(e))
            raise ExternalServiceError("Payment processor unavailable", service="stripe") from e
        return customer.id

    def create_checkout_session(self, params: dict[str, Any]) -> dict[str, Any]:
        try:
            session = self.client.checkout.sessions.create(params=params)
        except stripe.StripeError as e:
            logger.error("Stripe error creating checkout session: %s", str(e))
            raise ExternalServiceError("Payment processor unavailable", service="stripe") from e
        return {"id": session.id, "url": session.url}

    def create_refund(self, payment_intent_id: str, metadata: dict[str, str] | None = None) -> dict[str, Any]:
        try:
            refund = self.client.refunds.create(
                params={"payment_intent": payment_intent_id, "metadata": metadata or {}}
            )
        except stripe.StripeError as e:
            logger.error("Stripe error refunding %s: %s", payment_intent_id, str(e))
            raise ExternalServiceError("Payment processor unavailable", service="stripe") from e
        return {"id": refund.id, "status": refund.status}

    def construct_event(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        if not self.webhook_secret:
            raise ExternalServiceError("Stripe webhook secret is not configured", service="stripe")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                sig_header,
                self.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
            return json.loads(payload)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError("Invalid signature") from e
        except ValueError as e:
            # Body is not UTF-8 JSON
            raise WebhookSignatureError("Invalid payload") from e


class UnconfiguredPaymentGateway(PaymentGateway):
    """Stand-in used when STRIPE_SECRET_KEY is empty. Every call is a retryable 503."""

    def _unavailable(self) -> ExternalServiceError:
        return ExternalServiceError(
            "Stripe is not configured. Please set STRIPE_SECRET_KEY environment variable.",
            service="stripe",
        )

    def create_customer(self, email: str | None, metadata: dict[str, str]) -> str:
        raise self._unavailable()

    def create_checkout_session(self, params: dict[str, Any]) -> dict[str, Any]:
        raise self._unavailable()

    def create_refund(self, payment_intent_id: str, metadata: dict[str, str] | None = None) -> dict[str, Any]:
        raise self._unavailable()

    def construct_event(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        raise self._unavailable()


def build_payment_gateway(settings: Settings | None = None) -> PaymentGateway:
    """Build the payment gateway for the given settings.

    This should be called once at application startup.
    """
    settings = settings or get_settings()
    if not settings.is_stripe_configured:
        logger.warning("Stripe secret key not configured. Checkout and refunds will return 503.")
        return UnconfiguredPaymentGateway()
    logger.info("Stripe gateway configured (test_mode=%s)", settings.is_stripe_test_mode)
    return StripeGateway(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout_seconds=settings.stripe_timeout_seconds,
        max_network_retries=settings.stripe_max_network_retries,
    )
