"""
Unit tests for the HTTP quote provider
"""

import json
import httpx
import pytest
from analysis.retry import RetryPolicy
from core.exceptions import (
    QuoteAuthenticationError,
    QuoteNetworkError,
    QuoteProviderError,
    QuoteRateLimitError,
    RetryableError,
)
from quotes.http_provider import HttpQuoteProvider
from conftest import make_shipment


async def no_sleep(_delay):
    return None


def build_provider(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    policy = RetryPolicy(max_attempts=3, backoff_base=0, retry_on=(RetryableError,), sleep=no_sleep)
    return HttpQuoteProvider(
        api_url="https://quotes.example.com/rates",
        api_key="test-key",
        retry_policy=policy,
        client=client,
        **kwargs,
    )


RATES_BODY = {
    "success": True,
    "rates": [
        {"carrierId": "acct-1", "carrierName": "Main", "serviceCode": "03",
         "serviceName": "UPS Ground", "totalCharges": 14.25},
        {"carrierId": "acct-2", "carrierName": "Backup", "serviceCode": "03",
         "serviceName": "UPS Ground", "totalCharges": "12.10"},
    ],
}


class TestHttpQuoteProvider:
    """Test request building and status mapping"""

    @pytest.mark.asyncio
    async def test_successful_quote(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            captured["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=RATES_BODY)

        provider = build_provider(handler)
        response = await provider.quote(make_shipment(1), ["acct-1", "acct-2"])

        assert response.success is True
        assert [r.total_charges for r in response.rates] == [14.25, 12.10]
        assert captured["auth"] == "Bearer test-key"
        assert captured["body"]["carrierConfigIds"] == ["acct-1", "acct-2"]
        assert captured["body"]["shipment"]["shipFrom"]["zipCode"] == "10001"
        assert captured["body"]["shipment"]["serviceTypes"][0] == "03"

    @pytest.mark.asyncio
    async def test_wrapped_payload_unwrapped(self):
        provider = build_provider(lambda request: httpx.Response(200, json={"data": RATES_BODY}))

        response = await provider.quote(make_shipment(1), ["acct-1"])

        assert len(response.rates) == 2

    @pytest.mark.asyncio
    async def test_server_errors_retried_then_raised(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="unavailable")

        provider = build_provider(handler)
        with pytest.raises(QuoteNetworkError):
            await provider.quote(make_shipment(1), ["acct-1"])

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("refused")
            return httpx.Response(200, json=RATES_BODY)

        provider = build_provider(handler)
        response = await provider.quote(make_shipment(1), ["acct-1"])

        assert response.success is True
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_auth_failure_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401)

        provider = build_provider(handler)
        with pytest.raises(QuoteAuthenticationError):
            await provider.quote(make_shipment(1), ["acct-1"])

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self):
        provider = build_provider(lambda request: httpx.Response(429, headers={"Retry-After": "7"}))

        with pytest.raises(QuoteRateLimitError) as exc_info:
            await provider.quote(make_shipment(1), ["acct-1"])

        assert exc_info.value.retry_after == 7

    @pytest.mark.asyncio
    async def test_circuit_breaker_opens_after_threshold(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, text="bad request")

        provider = build_provider(handler, circuit_breaker_threshold=2)
        for _ in range(2):
            with pytest.raises(QuoteProviderError):
                await provider.quote(make_shipment(1), ["acct-1"])

        with pytest.raises(QuoteProviderError, match="Circuit breaker"):
            await provider.quote(make_shipment(1), ["acct-1"])

        assert len(calls) == 2

    def test_requires_api_url(self, monkeypatch):
        monkeypatch.setattr("quotes.http_provider.settings.QUOTE_API_URL", None)

        with pytest.raises(ValueError):
            HttpQuoteProvider()
