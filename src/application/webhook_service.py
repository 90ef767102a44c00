import hashlib
import json
import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.application.payment_coordinator import PaymentOrderCoordinator
from src.domain.exceptions import (
    BookingValidationError,
    ConcurrencyConflictError,
    SeatLedgerError,
    UpstreamPaymentError,
)
from src.domain.state_machine import PaymentOutcome
from src.infrastructure.payments.gateway import PaymentGateway
from src.infrastructure.repositories.payment_repository import PaymentOrderRepository

logger = logging.getLogger(__name__)

WEBHOOK_OUTCOMES = {
    "payment.captured": PaymentOutcome.CAPTURED,
    "order.paid": PaymentOutcome.CAPTURED,
    "payment.failed": PaymentOutcome.FAILED,
}


@dataclass(frozen=True)
class WebhookResult:
    status: str
    event: str | None = None
    order_id: str | None = None
    detail: str | None = None


def _hash_webhook_payload(body: str) -> str:
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


class PaymentWebhookHandler:
    """
    Turns signed gateway deliveries into ``reconcile`` calls.

    Every delivery is acknowledged unless the database could not take the
    write; redeliveries of the same (provider, payment, event) are no-ops.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        coordinator: PaymentOrderCoordinator | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.coordinator = coordinator or PaymentOrderCoordinator(db, gateway)
        self.payment_repository = PaymentOrderRepository(db)

    def handle(self, body: str, signature: str | None) -> WebhookResult:
        if not signature or not self.gateway.verify_webhook_signature(body, signature):
            raise BookingValidationError("Invalid webhook signature")

        try:
            envelope = json.loads(body)
        except ValueError as exc:
            raise BookingValidationError("Webhook body is not valid JSON") from exc

        event = envelope.get("event")
        outcome = WEBHOOK_OUTCOMES.get(event)
        if outcome is None:
            logger.info("Ignoring webhook event %s", event)
            return WebhookResult(status="ignored", event=event)

        entity = (
            envelope.get("payload", {}).get("payment", {}).get("entity", {})
        )
        payment_id = entity.get("id")
        remote_order_id = entity.get("order_id")
        if not payment_id or not remote_order_id:
            logger.warning("Webhook %s missing payment or order id; ignoring.", event)
            return WebhookResult(status="ignored", event=event)

        provider = self.gateway.provider
        if self.payment_repository.get_webhook_event(provider, payment_id, event):
            logger.info(
                "Duplicate webhook delivery. event=%s payment_id=%s",
                event,
                payment_id,
            )
            return WebhookResult(status="duplicate", event=event)

        order = self.payment_repository.get_by_remote_order_id(remote_order_id)
        if not order:
            logger.warning(
                "Webhook for unknown order. event=%s remote_order_id=%s",
                event,
                remote_order_id,
            )
            return WebhookResult(status="ignored", event=event)

        result_status = "processed"
        detail = None
        try:
            self.coordinator.reconcile(
                order.id,
                outcome,
                payment_id=payment_id,
                remote_order_id=remote_order_id,
                authenticated=True,
                reason=entity.get("error_code") or "GATEWAY_FAILED",
            )
        except (ConcurrencyConflictError, UpstreamPaymentError):
            # Left unrecorded so the gateway's redelivery retries it.
            raise
        except SeatLedgerError as exc:
            logger.warning(
                "Webhook reconciliation failed. event=%s order_id=%s error=%s",
                event,
                order.id,
                exc,
            )
            result_status = "error"
            detail = str(exc)

        self._record(provider, payment_id, event, order.id, body, result_status)
        return WebhookResult(
            status=result_status,
            event=event,
            order_id=order.id,
            detail=detail,
        )

    def _record(
        self,
        provider: str,
        payment_id: str,
        event: str,
        order_id: str,
        body: str,
        status: str,
    ) -> None:
        try:
            self.payment_repository.record_webhook_event(
                provider=provider,
                payment_id=payment_id,
                event=event,
                payment_order_id=order_id,
                payload_hash=_hash_webhook_payload(body),
                status=status.upper(),
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(
                "Webhook %s for payment %s recorded concurrently.",
                event,
                payment_id,
            )
