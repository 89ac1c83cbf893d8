"""
Quote provider adapters.

Modules:
    base: QuoteProvider contract
    http_provider: httpx implementation with retry and circuit breaker
"""

from quotes.base import QuoteProvider
from quotes.http_provider import HttpQuoteProvider

__all__ = ["QuoteProvider", "HttpQuoteProvider"]
