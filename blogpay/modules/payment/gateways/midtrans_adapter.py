import hashlib
import json
import logging
from datetime import datetime
from typing import Dict, Optional

from blogpay.core.exceptions import GatewayRejected, GatewayUnavailable
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

SETTLED_STATUSES = {"capture", "settlement"}
FAILED_STATUSES = {"deny", "cancel", "expire", "failure"}
FRAUD_ACCEPTED = {"accept"}
FRAUD_REJECTED = {"challenge", "deny"}


class MidtransAdapter(GatewayAdapter):
    name = Gateway.MIDTRANS.value

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": basic_auth(self.credentials.secret_key or "")}

    def signature_for(self, order_id: str, status: str, gross_amount: str) -> str:
        """SHA512(order_id + transaction_status + gross_amount + server_key), hex encoded."""
        raw = f"{order_id}{status}{gross_amount}{self.credentials.secret_key}"
        return hashlib.sha512(raw.encode()).hexdigest()

    async def create_charge(self, order: SubscriptionOrder) -> ChargeResult:
        gross_amount = int(order.amount)
        payload = {
            "transaction_details": {
                "order_id": order.order_id,
                "gross_amount": gross_amount,
            },
            "credit_card": {"secure": True},
            "customer_details": {
                "first_name": order.customer_name or order.user_id,
                "email": order.customer_email or "",
            },
            "item_details": [{
                "id": order.plan_id,
                "price": gross_amount,
                "quantity": 1,
                "name": f"{order.plan_id} - {order.billing_cycle}",
                "category": "subscription",
            }],
            "callbacks": {
                "finish": self._callback_url("/payment/finish"),
                "error": self._callback_url("/payment/error"),
                "pending": self._callback_url("/payment/pending"),
            },
            "expiry": {
                "start_time": datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S +0000"),
                "unit": "minutes",
                "duration": 60,
            },
            "custom_field1": order.user_id,
            "custom_field2": "subscription",
            "custom_field3": order.billing_cycle,
        }
        data = await self._request_with_retry(
            "POST",
            "/charge",
            validate=self._check_body_status,
            json=payload,
            headers={"Content-Type": "application/json"},
        )

        transaction_id = data.get("transaction_id")
        if not transaction_id:
            raise GatewayRejected("midtrans response did not include a transaction_id")
        return ChargeResult(
            gateway_transaction_id=str(transaction_id),
            redirect_target=data.get("redirect_url"),
            raw=data,
        )

    @staticmethod
    def _check_body_status(data: dict) -> None:
        # Midtrans reports API errors inside a 2xx body
        status_code = str(data.get("status_code", "201"))
        if status_code.startswith("5"):
            raise GatewayUnavailable(f"midtrans charge failed: {data.get('status_message')}")
        if status_code.startswith("4"):
            raise GatewayRejected(
                f"midtrans rejected the charge: {data.get('status_message')}",
                http_status=int(status_code) if status_code.isdigit() else None,
            )

    async def poll_status(self, order: SubscriptionOrder) -> Optional[NormalizedNotification]:
        try:
            data = await self._request_with_retry("GET", f"/{order.order_id}/status")
        except GatewayRejected as e:
            if e.http_status == 404:
                logger.info(f"midtrans has no transaction for order {order.order_id} yet")
                return None
            raise
        if str(data.get("status_code", "200")) == "404":
            logger.info(f"midtrans has no transaction for order {order.order_id} yet")
            return None
        return self.normalize_status(data)

    def verify_signature(self, raw_body: bytes, headers: Dict[str, str]) -> bool:
        try:
            payload = json.loads(raw_body)
        except ValueError:
            return False
        if not isinstance(payload, dict) or not self.credentials.secret_key:
            return False

        supplied = payload.get("signature_key") or headers.get("x-signature")
        expected = self.signature_for(
            str(payload.get("order_id", "")),
            str(payload.get("transaction_status", "")),
            str(payload.get("gross_amount", "")),
        )
        return constant_time_equals(expected, supplied)

    def normalize_status(self, payload: dict) -> Optional[NormalizedNotification]:
        status = str(payload.get("transaction_status") or "").lower()
        fraud = payload.get("fraud_status")
        fraud = str(fraud).lower() if fraud else None
        order_id = payload.get("order_id")
        transaction_id = payload.get("transaction_id")
        amount = to_decimal(payload.get("gross_amount"))

        def result(outcome: SettlementOutcome, cancelled: bool = False) -> NormalizedNotification:
            return NormalizedNotification(
                outcome=outcome,
                order_id=order_id,
                gateway_transaction_id=transaction_id,
                amount=amount,
                raw_status=status,
                cancelled=cancelled,
            )

        if status in SETTLED_STATUSES:
            if fraud is None or fraud in FRAUD_ACCEPTED:
                return result(SettlementOutcome.PAID)
            if fraud in FRAUD_REJECTED:
                return result(SettlementOutcome.FAILED)
            return unrecognized(f"{status}/{fraud}", order_id, transaction_id, amount)
        if status == "pending":
            return result(SettlementOutcome.PENDING)
        if status in FAILED_STATUSES:
            return result(SettlementOutcome.FAILED, cancelled=status == "cancel")
        return unrecognized(status, order_id, transaction_id, amount)
