from itertools import count

from src.domain.exceptions import UpstreamPaymentError
from src.infrastructure.payments.gateway import PaymentGateway, RemoteOrder

WEBHOOK_SIGNATURE = "valid-webhook-signature"


def sign(remote_order_id: str, payment_id: str) -> str:
    return f"sig:{remote_order_id}:{payment_id}"


class FakeGateway(PaymentGateway):
    """In-memory stand-in for Razorpay. Signatures are predictable strings."""

    provider = "RAZORPAY"

    def __init__(self):
        self._ids = count(1)
        self.orders: dict[str, dict] = {}
        self.refunds: list[dict] = []
        self.fail_create = False
        self.fail_refund = False

    @property
    def public_key(self) -> str | None:
        return "rzp_test_key"

    def create_remote_order(self, amount, currency, receipt, notes) -> RemoteOrder:
        if self.fail_create:
            raise UpstreamPaymentError("Razorpay order creation failed: timeout")
        remote_order_id = f"order_{next(self._ids)}"
        self.orders[remote_order_id] = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes,
        }
        return RemoteOrder(remote_order_id=remote_order_id, amount=amount, currency=currency)

    def verify_signature(self, order_ref, payment_ref, signature) -> bool:
        return signature == sign(order_ref, payment_ref)

    def verify_webhook_signature(self, body, signature) -> bool:
        return signature == WEBHOOK_SIGNATURE

    def refund(self, payment_id, amount=None, notes=None) -> str:
        if self.fail_refund:
            raise UpstreamPaymentError("Razorpay refund failed: timeout")
        refund_id = f"rfnd_{next(self._ids)}"
        self.refunds.append(
            {"id": refund_id, "payment_id": payment_id, "amount": amount, "notes": notes}
        )
        return refund_id
