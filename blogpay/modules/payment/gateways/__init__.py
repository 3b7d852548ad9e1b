from blogpay.modules.payment.gateways.base import ChargeResult, GatewayAdapter
from blogpay.modules.payment.gateways.registry import build_adapters

__all__ = ["ChargeResult", "GatewayAdapter", "build_adapters"]
