import hmac
import logging
from typing import Any, Mapping, Optional, Union

from blogpay.core.exceptions import InvalidSignature, UnsupportedGateway

logger = logging.getLogger(__name__)


def constant_time_equals(expected: Optional[Union[str, bytes]], supplied: Optional[Union[str, bytes]]) -> bool:
    """Compare secrets without leaking where the first difference is."""
    if not expected or not supplied:
        return False
    if isinstance(expected, str):
        expected = expected.encode()
    if isinstance(supplied, str):
        supplied = supplied.encode()
    return hmac.compare_digest(expected, supplied)


def lower_headers(headers: Mapping[str, str]) -> dict:
    return {str(k).lower(): v for k, v in headers.items()}


class SignatureVerifier:
    def __init__(self, adapters: Mapping[str, Any]):
        self._adapters = adapters

    def verify(self, gateway: str, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        adapter = self._adapters.get(gateway)
        if adapter is None:
            raise UnsupportedGateway(f"Gateway '{gateway}' is not configured")
        return adapter.verify_signature(raw_body, lower_headers(headers))

    def ensure_verified(self, gateway: str, raw_body: bytes, headers: Mapping[str, str]) -> None:
        if not self.verify(gateway, raw_body, headers):
            logger.warning(f"Rejected {gateway} webhook with invalid signature")
            raise InvalidSignature(f"Invalid {gateway} webhook signature")
