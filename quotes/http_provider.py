"""
HTTP quote provider with retry, backoff and a circuit breaker.

Posts each shipment to the configured rate-quote endpoint and maps transport
failures onto the quote error hierarchy:
- 401/403 -> QuoteAuthenticationError (never retried)
- 429 -> retried, honouring Retry-After, then QuoteRateLimitError
- 5xx, timeouts, connection errors -> retried, then QuoteNetworkError
"""

import httpx
from typing import List, Dict, Any, Optional
from datetime import datetime, timedelta, timezone

from analysis.retry import RetryPolicy
from core.config import settings
from core.exceptions import (
    QuoteAuthenticationError,
    QuoteNetworkError,
    QuoteProviderError,
    QuoteRateLimitError,
    RetryableError,
)
from ingestion.transformers.service_mapping import classify_service, service_codes_to_request
from quotes.base import QuoteProvider
from schemas.shipment import QuoteResponse, Shipment
import logging

logger = logging.getLogger(__name__)


class HttpQuoteProvider(QuoteProvider):
    """
    Quote shipments through a remote rate-quote service.

    Attributes:
        api_url: Endpoint receiving POSTed quote requests
        retry_policy: Applied to retryable transport failures
        circuit_breaker_threshold: Consecutive failures before the circuit opens
        circuit_breaker_timeout: Seconds the circuit stays open
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_timeout: int = 60,
    ):
        self.api_url = api_url or settings.QUOTE_API_URL
        if not self.api_url:
            raise ValueError("QUOTE_API_URL is not configured")
        self.api_key = api_key or settings.QUOTE_API_KEY
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.QUOTE_MAX_RETRIES,
            backoff_base=0.5,
            retry_on=(RetryableError,),
        )
        self._client = client
        self._owns_client = client is None

        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = circuit_breaker_threshold
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = circuit_breaker_timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _is_circuit_open(self) -> bool:
        if self._circuit_breaker_open_until is None:
            return False

        if datetime.now(timezone.utc) >= self._circuit_breaker_open_until:
            logger.info("Quote provider circuit breaker reset")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False

        return True

    def _record_failure(self):
        self._circuit_breaker_failures += 1

        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = datetime.now(timezone.utc) + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Quote provider circuit breaker opened. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )

    def _record_success(self):
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None

    def build_payload(self, shipment: Shipment, carrier_account_ids: List[str]) -> Dict[str, Any]:
        service = shipment.intended_service or shipment.original_service
        match = classify_service(service)
        return {
            "shipment": {
                "shipFrom": {"zipCode": shipment.origin_zip},
                "shipTo": {"zipCode": shipment.destination_zip},
                "package": {
                    "weight": shipment.weight,
                    "weightUnit": "LBS",
                    "length": shipment.length,
                    "width": shipment.width,
                    "height": shipment.height,
                    "dimensionUnit": "IN",
                },
                "serviceTypes": service_codes_to_request(service),
                "equivalentServiceCode": match.code if match else None,
                "isResidential": shipment.is_residential,
            },
            "carrierConfigIds": list(carrier_account_ids),
        }

    async def _post_once(self, payload: Dict[str, Any], shipment: Shipment) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        context = {"api_url": self.api_url, "shipment_id": shipment.id}

        try:
            response = await self._get_client().post(
                self.api_url, json=payload, headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise QuoteNetworkError("Quote request timed out", context=context, original_exception=e)
        except httpx.TransportError as e:
            raise QuoteNetworkError("Quote request failed", context=context, original_exception=e)

        if response.status_code in (401, 403):
            raise QuoteAuthenticationError(
                "Quote provider rejected credentials",
                context={**context, "status_code": response.status_code}
            )

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise QuoteRateLimitError(
                "Quote provider rate limit exceeded",
                context={**context, "status_code": 429},
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None
            )

        if response.status_code >= 500:
            raise QuoteNetworkError(
                f"Quote provider server error {response.status_code}",
                context={**context, "status_code": response.status_code, "response_body": response.text[:500]}
            )

        if response.status_code >= 400:
            raise QuoteProviderError(
                f"Quote request rejected with {response.status_code}",
                context={**context, "status_code": response.status_code, "response_body": response.text[:500]}
            )

        return response

    async def quote(self, shipment: Shipment, carrier_account_ids: List[str]) -> QuoteResponse:
        if self._is_circuit_open():
            raise QuoteProviderError(
                "Circuit breaker is open for the quote provider",
                context={
                    "api_url": self.api_url,
                    "open_until": self._circuit_breaker_open_until.isoformat()
                }
            )

        payload = self.build_payload(shipment, carrier_account_ids)

        try:
            response = await self.retry_policy.run(
                lambda: self._post_once(payload, shipment),
                description=f"Quote for shipment {shipment.id}",
            )
        except QuoteProviderError:
            self._record_failure()
            raise

        try:
            data = response.json()
        except ValueError as e:
            self._record_failure()
            raise QuoteProviderError(
                "Failed to parse quote response",
                context={"api_url": self.api_url, "response_body": response.text[:500]},
                original_exception=e
            )

        self._record_success()

        if not isinstance(data, dict):
            return QuoteResponse(success=None, error="Unexpected quote response shape")

        # Some deployments wrap the payload in {"data": {...}}
        if "rates" not in data and isinstance(data.get("data"), dict):
            data = data["data"]

        try:
            return QuoteResponse.model_validate(data)
        except ValueError as e:
            raise QuoteProviderError(
                "Quote response failed validation",
                context={"api_url": self.api_url, "shipment_id": shipment.id},
                original_exception=e
            )

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
