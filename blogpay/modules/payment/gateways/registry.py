import logging
from typing import Dict, Optional

import httpx

from blogpay.core.config import PaymentConfig
from blogpay.models.subscription_order_model import Gateway
from blogpay.modules.payment.gateways.base import GatewayAdapter
from blogpay.modules.payment.gateways.midtrans_adapter import MidtransAdapter
from blogpay.modules.payment.gateways.stripe_adapter import StripeAdapter
from blogpay.modules.payment.gateways.xendit_adapter import XenditAdapter

logger = logging.getLogger(__name__)


def build_adapters(
    config: PaymentConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, GatewayAdapter]:
    """One adapter per gateway that has key material configured."""
    candidates = (
        (Gateway.MIDTRANS, MidtransAdapter, config.midtrans),
        (Gateway.XENDIT, XenditAdapter, config.xendit),
        (Gateway.STRIPE, StripeAdapter, config.stripe),
    )
    adapters: Dict[str, GatewayAdapter] = {}
    for gateway, adapter_cls, credentials in candidates:
        if not credentials.configured:
            logger.info(f"{gateway.value} is not configured; its endpoints will answer 404")
            continue
        adapters[gateway.value] = adapter_cls(credentials, config, transport=transport)
    return adapters
