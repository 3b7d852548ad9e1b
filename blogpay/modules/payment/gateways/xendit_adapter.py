import logging
from typing import Dict, Optional

from blogpay.core.exceptions import GatewayRejected
from blogpay.models.subscription_order_model import Gateway, SubscriptionOrder
from blogpay.modules.payment.gateways.base import ChargeResult, GatewayAdapter, basic_auth
from blogpay.modules.payment.normalizer import (
    NormalizedNotification,
    SettlementOutcome,
    to_decimal,
    unrecognized,
)
from blogpay.modules.payment.signature import constant_time_equals

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "PAID": SettlementOutcome.PAID,
    "PENDING": SettlementOutcome.PENDING,
    "EXPIRED": SettlementOutcome.FAILED,
    "FAILED": SettlementOutcome.FAILED,
}

INVOICE_DURATION_SECONDS = 3600


class XenditAdapter(GatewayAdapter):
    """
    Xendit invoices. The order id travels as `external_id`; the invoice id is the
    gateway transaction id.

    Invoice callbacks carry no body signature. Xendit sends the account's
    callback verification token in `x-callback-token` instead.
    """

    name = Gateway.XENDIT.value

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": basic_auth(self.credentials.secret_key or "")}

    async def create_charge(self, order: SubscriptionOrder) -> ChargeResult:
        amount = int(order.amount)
        description = f"{order.plan_id} subscription - {order.billing_cycle}"
        payload = {
            "external_id": order.order_id,
            "payer_email": order.customer_email,
            "description": description,
            "amount": amount,
            "currency": order.currency,
            "invoice_duration": INVOICE_DURATION_SECONDS,
            "success_redirect_url": self._callback_url("/payment/success"),
            "failure_redirect_url": self._callback_url("/payment/failed"),
            "customer": {
                "given_names": order.customer_name or order.user_id,
                "email": order.customer_email,
            },
            "items": [{
                "name": description,
                "quantity": 1,
                "price": amount,
                "category": "Subscription",
            }],
        }
        data = await self._request_with_retry(
            "POST", "/v2/invoices", json=payload, headers={"Content-Type": "application/json"}
        )

        invoice_id = data.get("id")
        if not invoice_id:
            raise GatewayRejected("xendit response did not include an invoice id")
        return ChargeResult(
            gateway_transaction_id=str(invoice_id),
            redirect_target=data.get("invoice_url"),
            raw=data,
        )

    async def poll_status(self, order: SubscriptionOrder) -> Optional[NormalizedNotification]:
        try:
            if order.gateway_transaction_id:
                data = await self._request_with_retry("GET", f"/v2/invoices/{order.gateway_transaction_id}")
            else:
                invoices = await self._request_with_retry(
                    "GET", "/v2/invoices", params={"external_id": order.order_id}
                )
                if not invoices:
                    logger.info(f"xendit has no invoice for order {order.order_id} yet")
                    return None
                data = invoices[0]
        except GatewayRejected as e:
            if e.http_status == 404:
                logger.info(f"xendit has no invoice for order {order.order_id} yet")
                return None
            raise
        return self.normalize_status(data)

    def verify_signature(self, raw_body: bytes, headers: Dict[str, str]) -> bool:
        # Fails closed when no callback token is configured
        return constant_time_equals(self.credentials.webhook_secret, headers.get("x-callback-token"))

    def normalize_status(self, payload: dict) -> Optional[NormalizedNotification]:
        status = str(payload.get("status") or "").upper()
        order_id = payload.get("external_id")
        invoice_id = payload.get("id")
        amount = to_decimal(payload.get("paid_amount") or payload.get("amount"))

        outcome = STATUS_MAP.get(status)
        if outcome is None:
            return unrecognized(status, order_id, invoice_id, amount)
        return NormalizedNotification(
            outcome=outcome,
            order_id=order_id,
            gateway_transaction_id=invoice_id,
            amount=amount,
            raw_status=status,
        )
