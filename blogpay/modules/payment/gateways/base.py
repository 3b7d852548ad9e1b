"""
Gateway adapter interface.

One adapter per payment provider. Each adapter owns the provider's wire format
in both directions: building the charge request, reading the synchronous
response, verifying inbound webhooks and translating the provider's status
words into a `NormalizedNotification`.
"""

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from blogpay.core.config import GatewayCredentials, PaymentConfig
from blogpay.core.exceptions import GatewayRejected, GatewayUnavailable
from blogpay.models.subscription_order_model import SubscriptionOrder
from blogpay.modules.payment.normalizer import NormalizedNotification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    gateway_transaction_id: str
    # Hosted checkout URL, or the client secret for gateways that confirm client-side
    redirect_target: Optional[str]
    raw: Dict[str, Any]


def basic_auth(secret: str) -> str:
    token = base64.b64encode(f"{secret}:".encode()).decode()
    return f"Basic {token}"


class GatewayAdapter(ABC):
    name: str = ""

    def __init__(
        self,
        credentials: GatewayCredentials,
        config: PaymentConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.config = config
        self._transport = transport

    # --- outbound ---

    @abstractmethod
    async def create_charge(self, order: SubscriptionOrder) -> ChargeResult:
        ...

    @abstractmethod
    async def poll_status(self, order: SubscriptionOrder) -> Optional[NormalizedNotification]:
        ...

    # --- inbound ---

    @abstractmethod
    def verify_signature(self, raw_body: bytes, headers: Dict[str, str]) -> bool:
        """`headers` arrive with lower-cased names."""

    @abstractmethod
    def normalize_status(self, payload: dict) -> Optional[NormalizedNotification]:
        ...

    # --- helpers ---

    def _auth_headers(self) -> Dict[str, str]:
        return {}

    def _callback_url(self, path: str) -> str:
        return f"{self.config.app_base_url}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        """Single bounded-timeout call. Transport errors and 5xx become GatewayUnavailable."""
        headers = {"Accept": "application/json", **self._auth_headers(), **kwargs.pop("headers", {})}
        url = f"{self.credentials.base_url.rstrip('/')}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds, transport=self._transport) as client:
                response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"{self.name} request failed: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise GatewayUnavailable(f"{self.name} returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            raise GatewayUnavailable(f"{self.name} returned a non-JSON body (HTTP {response.status_code})")
        if response.status_code >= 400:
            message = response.text
            if isinstance(data, dict):
                message = data.get("message") or data.get("error_message") or data.get("error") or message
            raise GatewayRejected(f"{self.name} rejected the request: {message}", http_status=response.status_code)
        return data

    async def _request_with_retry(self, method: str, path: str, *, validate=None, **kwargs) -> dict:
        """
        Retries only GatewayUnavailable, a bounded number of times with exponential backoff.
        `validate` runs inside each attempt so errors reported in a 2xx body can be retried too.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(multiplier=self.config.retry_wait_seconds, max=10 * max(self.config.retry_wait_seconds, 0.1)),
            retry=retry_if_exception_type(GatewayUnavailable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(f"Retrying {self.name} {method} {path} (attempt {attempt.retry_state.attempt_number})")
                data = await self._request(method, path, **kwargs)
                if validate is not None:
                    validate(data)
                return data
