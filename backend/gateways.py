"""
Payment provider adapters.

Both providers sit behind the same contract:
    initiate(order, phone=..., email=...) -> PaymentInitiation
    verify(reference) -> ProviderStatus
Provider failures are logged and re-raised as ProviderError.
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional

import requests
import stripe

import config
from errors import ProviderError, ValidationFailed

logger = logging.getLogger(__name__)

# Stripe takes these in whole units; every other currency in hundredths
ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})


def stripe_amount(total: float, currency: str) -> int:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(round(total))
    return int(round(total * 100))


@dataclass
class PaymentInitiation:
    transaction_reference: str
    provider_state: str
    client_secret: Optional[str] = None


@dataclass
class ProviderStatus:
    paid: bool
    status: str
    raw: dict = field(default_factory=dict)


class MoMoGateway:
    """MTN MoMo collection API (request-to-pay)."""

    method = "momo"
    reference_field = "momo_transaction_id"

    def __init__(self, base_url: str, subscription_key: Optional[str], api_user: Optional[str],
                 api_key: Optional[str], target_environment: str = "sandbox", currency: str = "EUR",
                 timeout: float = 30, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.subscription_key = subscription_key
        self.api_user = api_user
        self.api_key = api_key
        self.target_environment = target_environment
        self.currency = currency
        self.timeout = timeout
        self.session = session or requests.Session()

    def _require_config(self):
        if not (self.subscription_key and self.api_user and self.api_key):
            raise ProviderError("MoMo payments are not configured")

    def _access_token(self) -> str:
        try:
            response = self.session.post(
                f"{self.base_url}/collection/token/",
                auth=(self.api_user, self.api_key),
                headers={"Ocp-Apim-Subscription-Key": self.subscription_key},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()["access_token"]
        except (requests.RequestException, KeyError, ValueError) as exc:
            logger.error("MoMo token error: %s", exc)
            raise ProviderError("Failed to get MoMo access token")

    def initiate(self, order: dict, phone: Optional[str] = None, email: Optional[str] = None) -> PaymentInitiation:
        self._require_config()
        if not phone:
            raise ValidationFailed("Phone number is required for MoMo payments")
        token = self._access_token()
        reference_id = str(uuid.uuid4())
        order_id = str(order["_id"])
        try:
            response = self.session.post(
                f"{self.base_url}/collection/v1_0/requesttopay",
                json={
                    "amount": str(order["grand_total"]),
                    "currency": self.currency,
                    "externalId": order_id,
                    "payer": {"partyIdType": "MSISDN", "partyId": phone},
                    "payerMessage": f"Payment for order {order_id}",
                    "payeeNote": "Ku-isoko Order Payment",
                },
                headers={
                    "X-Reference-Id": reference_id,
                    "X-Target-Environment": self.target_environment,
                    "Ocp-Apim-Subscription-Key": self.subscription_key,
                    "Authorization": f"Bearer {token}",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("MoMo payment error for order %s: %s", order_id, exc)
            raise ProviderError("Failed to initiate MoMo payment")
        logger.info("MoMo request-to-pay %s sent for order %s", reference_id, order_id)
        return PaymentInitiation(transaction_reference=reference_id, provider_state="pending")

    def verify(self, reference: str) -> ProviderStatus:
        self._require_config()
        token = self._access_token()
        try:
            response = self.session.get(
                f"{self.base_url}/collection/v1_0/requesttopay/{reference}",
                headers={
                    "X-Target-Environment": self.target_environment,
                    "Ocp-Apim-Subscription-Key": self.subscription_key,
                    "Authorization": f"Bearer {token}",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("MoMo verify error for %s: %s", reference, exc)
            raise ProviderError("Failed to verify MoMo payment")
        status = str(data.get("status", "unknown"))
        return ProviderStatus(paid=status.upper() == "SUCCESSFUL", status=status.lower(), raw=data)


class StripeGateway:
    """Stripe PaymentIntents plus webhook signature checking."""

    method = "stripe"
    reference_field = "stripe_payment_id"

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str] = None,
                 currency: str = "rwf"):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    def _require_config(self):
        if not self.secret_key:
            raise ProviderError("Stripe payments are not configured")

    def initiate(self, order: dict, phone: Optional[str] = None, email: Optional[str] = None) -> PaymentInitiation:
        self._require_config()
        order_id = str(order["_id"])
        try:
            intent = stripe.PaymentIntent.create(
                amount=stripe_amount(order["grand_total"], self.currency),
                currency=self.currency,
                metadata={"order_id": order_id},
                receipt_email=email,
                description=f"Order #{order_id} - Ku-isoko",
                api_key=self.secret_key,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe payment error for order %s: %s", order_id, exc)
            raise ProviderError("Failed to initiate Stripe payment")
        return PaymentInitiation(transaction_reference=intent["id"], provider_state=intent["status"],
                                 client_secret=intent["client_secret"])

    def verify(self, reference: str) -> ProviderStatus:
        self._require_config()
        try:
            intent = stripe.PaymentIntent.retrieve(reference, api_key=self.secret_key)
        except stripe.StripeError as exc:
            logger.error("Stripe verify error for %s: %s", reference, exc)
            raise ProviderError("Failed to verify Stripe payment")
        return ProviderStatus(paid=intent["status"] == "succeeded", status=intent["status"])

    def parse_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """Verify the Stripe-Signature header and return the event as a plain dict.
        Raises ValidationFailed when the signature or body is bad."""
        if not self.webhook_secret:
            raise ProviderError("Stripe webhook secret is not configured")
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(payload, signature or "", self.webhook_secret,
                                                  tolerance=stripe.Webhook.DEFAULT_TOLERANCE)
            return json.loads(payload)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("Rejected Stripe webhook: %s", exc)
            raise ValidationFailed(f"Webhook Error: {exc}")


def build_gateways() -> Dict[str, object]:
    return {
        "momo": MoMoGateway(
            base_url=config.MOMO_BASE_URL,
            subscription_key=config.MOMO_SUBSCRIPTION_KEY,
            api_user=config.MOMO_API_USER,
            api_key=config.MOMO_API_KEY,
            target_environment=config.MOMO_TARGET_ENVIRONMENT,
            currency=config.MOMO_CURRENCY,
            timeout=config.PROVIDER_TIMEOUT_SECONDS,
        ),
        "stripe": StripeGateway(
            secret_key=config.STRIPE_SECRET_KEY,
            webhook_secret=config.STRIPE_WEBHOOK_SECRET,
            currency=config.STRIPE_CURRENCY,
        ),
    }


@lru_cache(maxsize=1)
def get_gateways() -> Dict[str, object]:
    return build_gateways()
