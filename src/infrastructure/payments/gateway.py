# src/infrastructure/payments/gateway.py

"""Payment gateway port and its Razorpay adapter.

The booking core only ever sees the ``PaymentGateway`` interface; the
signature algorithms and the HTTP calls belong to the Razorpay SDK.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import razorpay
import requests

from src.domain.exceptions import UpstreamPaymentError
from src.infrastructure.config import Settings, get_settings

logger = logging.getLogger(__name__)

_RAZORPAY_ERRORS = (
    razorpay.errors.BadRequestError,
    razorpay.errors.GatewayError,
    razorpay.errors.ServerError,
    requests.RequestException,
)


@dataclass(frozen=True)
class RemoteOrder:
    remote_order_id: str
    amount: int
    currency: str
    status: str | None = None


class PaymentGateway(ABC):
    """Interface for the external payment provider."""

    provider: str = "UNKNOWN"

    @abstractmethod
    def create_remote_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict,
    ) -> RemoteOrder:
        """Create an order for ``amount`` in the smallest currency unit."""
        ...

    @abstractmethod
    def verify_signature(
        self,
        order_ref: str,
        payment_ref: str,
        signature: str,
    ) -> bool:
        """Return True if the checkout signature is authentic."""
        ...

    @abstractmethod
    def verify_webhook_signature(self, body: str, signature: str) -> bool:
        """Return True if the webhook body was signed by the provider."""
        ...

    @abstractmethod
    def refund(
        self,
        payment_id: str,
        amount: int | None = None,
        notes: dict | None = None,
    ) -> str:
        """Refund a captured payment and return the refund id."""
        ...

    @property
    def public_key(self) -> str | None:
        return None


class RazorpayGateway(PaymentGateway):

    provider = "RAZORPAY"

    def __init__(self, settings: Settings):
        self.settings = settings
        self._client: razorpay.Client | None = None

    @property
    def public_key(self) -> str | None:
        return self.settings.razorpay_key_id

    def _razorpay_client(self) -> razorpay.Client:
        if self._client is not None:
            return self._client

        key_id = self.settings.razorpay_key_id
        key_secret = self.settings.razorpay_key_secret
        if not key_id or not key_secret:
            raise UpstreamPaymentError(
                "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
            )
        self._client = razorpay.Client(auth=(key_id, key_secret))
        return self._client

    def create_remote_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict,
    ) -> RemoteOrder:
        client = self._razorpay_client()
        try:
            order = client.order.create(
                {
                    "amount": amount,
                    "currency": currency,
                    # Razorpay caps receipts at 40 characters.
                    "receipt": receipt[:40],
                    "notes": notes,
                }
            )
        except _RAZORPAY_ERRORS as exc:
            logger.exception("Razorpay order creation failed. receipt=%s", receipt)
            raise UpstreamPaymentError(
                f"Razorpay order creation failed: {exc}"
            ) from exc

        remote_order_id = order.get("id")
        if not remote_order_id:
            raise UpstreamPaymentError(
                "Invalid response from Razorpay - no order id received"
            )

        logger.info("Razorpay order created. remote_order_id=%s", remote_order_id)
        return RemoteOrder(
            remote_order_id=remote_order_id,
            amount=order.get("amount", amount),
            currency=order.get("currency", currency),
            status=order.get("status"),
        )

    def verify_signature(
        self,
        order_ref: str,
        payment_ref: str,
        signature: str,
    ) -> bool:
        client = self._razorpay_client()
        try:
            client.utility.verify_payment_signature(
                {
                    "razorpay_order_id": order_ref,
                    "razorpay_payment_id": payment_ref,
                    "razorpay_signature": signature,
                }
            )
        except razorpay.errors.SignatureVerificationError:
            logger.warning(
                "Payment signature verification failed. order=%s payment=%s",
                order_ref,
                payment_ref,
            )
            return False
        return True

    def verify_webhook_signature(self, body: str, signature: str) -> bool:
        secret = self.settings.razorpay_webhook_secret
        if not secret:
            raise UpstreamPaymentError("Razorpay webhook secret not configured.")

        client = self._razorpay_client()
        try:
            client.utility.verify_webhook_signature(body, signature, secret)
        except razorpay.errors.SignatureVerificationError:
            logger.warning("Webhook signature verification failed.")
            return False
        return True

    def refund(
        self,
        payment_id: str,
        amount: int | None = None,
        notes: dict | None = None,
    ) -> str:
        client = self._razorpay_client()
        data: dict = {"notes": notes or {}}
        if amount is not None:
            data["amount"] = amount
        try:
            refund = client.payment.refund(payment_id, data)
        except _RAZORPAY_ERRORS as exc:
            logger.exception("Razorpay refund failed. payment_id=%s", payment_id)
            raise UpstreamPaymentError(f"Razorpay refund failed: {exc}") from exc

        return refund.get("id", "")


def get_payment_gateway() -> PaymentGateway:
    return RazorpayGateway(get_settings())
