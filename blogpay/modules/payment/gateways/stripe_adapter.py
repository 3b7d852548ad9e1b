import json
import logging
from decimal import Decimal
from typing import Dict, Optional

import stripe

from blogpay.core.exceptions import GatewayRejected
from blogpay.models.subscription_order_model import Gateway, SubscriptionOrder
from blogpay.modules.payment.gateways.base import ChargeResult, GatewayAdapter
from blogpay.modules.payment.normalizer import NormalizedNotification, SettlementOutcome, to_decimal

logger = logging.getLogger(__name__)

SUCCEEDED_EVENT = "payment_intent.succeeded"


def from_minor_units(value) -> Optional[Decimal]:
    amount = to_decimal(value)
    if amount is None:
        return None
    return (amount / 100).quantize(Decimal("0.01"))


class StripeAdapter(GatewayAdapter):
    """
    Stripe payment intents. The intent id is the gateway transaction id and the
    client secret is handed back as the redirect target for client-side confirmation.
    """

    name = Gateway.STRIPE.value

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.credentials.secret_key or ''}"}

    async def create_charge(self, order: SubscriptionOrder) -> ChargeResult:
        form = {
            "amount": str(int(order.amount * 100)),
            "currency": order.currency.lower(),
            "automatic_payment_methods[enabled]": "true",
            "description": f"{order.plan_id} subscription - {order.billing_cycle}",
            "metadata[order_id]": order.order_id,
            "metadata[user_id]": order.user_id,
            "metadata[plan_id]": order.plan_id,
            "metadata[billing_cycle]": order.billing_cycle,
        }
        if order.customer_email:
            form["receipt_email"] = order.customer_email
        data = await self._request_with_retry(
            "POST",
            "/payment_intents",
            data=form,
            headers={"Idempotency-Key": order.order_id},
        )

        intent_id = data.get("id")
        if not intent_id:
            raise GatewayRejected("stripe response did not include a payment intent id")
        return ChargeResult(
            gateway_transaction_id=str(intent_id),
            redirect_target=data.get("client_secret"),
            raw=data,
        )

    async def poll_status(self, order: SubscriptionOrder) -> Optional[NormalizedNotification]:
        if not order.gateway_transaction_id:
            logger.info(f"stripe order {order.order_id} has no payment intent to poll")
            return None
        try:
            intent = await self._request_with_retry("GET", f"/payment_intents/{order.gateway_transaction_id}")
        except GatewayRejected as e:
            if e.http_status == 404:
                logger.info(f"stripe has no payment intent {order.gateway_transaction_id}")
                return None
            raise
        return self._normalize_intent(intent, order.order_id)

    def _normalize_intent(self, intent: dict, fallback_order_id: Optional[str] = None) -> NormalizedNotification:
        status = str(intent.get("status") or "")
        metadata = intent.get("metadata") or {}
        amount = from_minor_units(intent.get("amount_received") or intent.get("amount"))

        cancelled = False
        if status == "succeeded":
            outcome = SettlementOutcome.PAID
        elif status == "canceled":
            outcome = SettlementOutcome.FAILED
            cancelled = True
        else:
            outcome = SettlementOutcome.PENDING
        return NormalizedNotification(
            outcome=outcome,
            order_id=metadata.get("order_id") or fallback_order_id,
            gateway_transaction_id=intent.get("id"),
            amount=amount,
            raw_status=status,
            cancelled=cancelled,
        )

    def verify_signature(self, raw_body: bytes, headers: Dict[str, str]) -> bool:
        if self.credentials.webhook_secret:
            try:
                stripe.Webhook.construct_event(
                    raw_body, headers.get("stripe-signature", ""), self.credentials.webhook_secret
                )
            except stripe.SignatureVerificationError as e:
                logger.warning(f"stripe signature verification failed: {e}")
                return False
            except ValueError:
                return False
            return True

        # Without an endpoint secret only the event structure can be checked
        try:
            event = json.loads(raw_body)
        except ValueError:
            return False
        return (
            isinstance(event, dict)
            and isinstance(event.get("type"), str)
            and isinstance((event.get("data") or {}).get("object"), dict)
        )

    def normalize_status(self, payload: dict) -> Optional[NormalizedNotification]:
        event_type = payload.get("type")
        if event_type != SUCCEEDED_EVENT:
            logger.info(f"Ignoring stripe event {event_type}")
            return None
        intent = (payload.get("data") or {}).get("object") or {}
        notification = self._normalize_intent(intent)
        return NormalizedNotification(
            outcome=SettlementOutcome.PAID,
            order_id=notification.order_id,
            gateway_transaction_id=notification.gateway_transaction_id,
            amount=notification.amount,
            raw_status=event_type,
        )
