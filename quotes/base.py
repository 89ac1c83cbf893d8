"""
Quote provider adapter contract
"""

from abc import ABC, abstractmethod
from typing import List

from schemas.shipment import QuoteResponse, Shipment


class QuoteProvider(ABC):
    """
    Abstract capability: price one shipment against a set of carrier accounts.

    Implementations either return a QuoteResponse (possibly unsuccessful or
    with no rates) or raise a QuoteProviderError subclass. They must never
    mutate the shipment they are given.
    """

    @abstractmethod
    async def quote(self, shipment: Shipment, carrier_account_ids: List[str]) -> QuoteResponse:
        """
        Request candidate rates for a shipment.

        Args:
            shipment: Complete, normalized shipment
            carrier_account_ids: Carrier accounts to quote against

        Returns:
            QuoteResponse with zero or more rates
        """
        pass

    async def close(self):
        """Release any transport resources"""
        pass
