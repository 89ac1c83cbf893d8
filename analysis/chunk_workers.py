"""
Chunk workers for the streaming processor.

A worker receives one ChunkPayload and either succeeds or raises. The
in-process worker prices pre-quoted recommendations itself and merges the
results into the job; the HTTP worker hands the chunk to a remote endpoint.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from analysis.rating import compute_savings, select_best_rate
from core.config import settings
from core.exceptions import ChunkProcessingError
from ingestion.transformers.normalizer import ShipmentNormalizer
from models.base import ErrorType, OrphanStage
from persistence.base import AnalysisStore
from schemas.analysis import OrphanedShipment, ProcessedShipment
from schemas.shipment import Rate
import logging

logger = logging.getLogger(__name__)


@dataclass
class ChunkPayload:
    chunk_index: int
    total_chunks: int
    analysis_id: str
    data: List[Dict[str, Any]] = field(default_factory=list)
    chunk_size: int = 0

    @property
    def start_index(self) -> int:
        return self.chunk_index * (self.chunk_size or len(self.data))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunkIndex": self.chunk_index,
            "totalChunks": self.total_chunks,
            "analysisId": self.analysis_id,
            "chunkSize": self.chunk_size,
            "data": self.data,
        }


class ChunkWorker(ABC):
    @abstractmethod
    async def process(self, chunk: ChunkPayload) -> None:
        """Process one chunk; raise on failure"""
        pass

    async def close(self):
        pass


def parse_rate(raw: Dict[str, Any]) -> Optional[Rate]:
    """Accept the rate shapes stored by older quote integrations"""
    charges = raw.get("totalCharges", raw.get("total_charges"))
    if charges in (None, ""):
        charges = raw.get("negotiatedRate", raw.get("rate_amount"))
    if charges in (None, ""):
        return None
    try:
        return Rate.model_validate({
            "carrierId": raw.get("carrierId") or raw.get("carrier_id") or "",
            "carrierName": raw.get("carrierName") or raw.get("accountName") or raw.get("carrier_name") or "",
            "serviceCode": raw.get("serviceCode") or raw.get("service_code") or "",
            "serviceName": raw.get("serviceName") or raw.get("description") or raw.get("service_name") or "",
            "totalCharges": charges,
            "currency": raw.get("currency") or "USD",
            "transitTime": raw.get("transitTime"),
        })
    except ValueError:
        return None


def price_recommendation(
    rec: Dict[str, Any],
    shipment_id: int,
    normalizer: Optional[ShipmentNormalizer] = None,
):
    """
    Turn one pre-quoted recommendation into a processed or orphaned shipment.

    Returns:
        (ProcessedShipment, None) or (None, OrphanedShipment)
    """
    normalizer = normalizer or ShipmentNormalizer()
    source = rec.get("shipment") or rec.get("shipment_data") or rec
    row = dict(source) if isinstance(source, dict) else {}
    for key in ("currentCost", "current_rate", "published_rate"):
        if rec.get(key) not in (None, "") and key not in row:
            row[key] = rec[key]
    if rec.get("customer_service") and not row.get("service"):
        row["service"] = rec["customer_service"]

    shipment = normalizer.normalize(row, shipment_id)

    rates = [r for r in (parse_rate(raw) for raw in rec.get("allRates") or [] if isinstance(raw, dict)) if r]
    best = select_best_rate(rates)
    if best is None:
        return None, OrphanedShipment.from_shipment(
            shipment,
            error_type=ErrorType.NO_RATES,
            error="No rates available for shipment",
            stage=OrphanStage.ANALYSIS,
        )

    savings, savings_percent = compute_savings(shipment.current_rate, best.total_charges)
    processed = ProcessedShipment(
        id=shipment.id,
        tracking_id=shipment.tracking_id,
        origin_zip=shipment.origin_zip or "",
        destination_zip=shipment.destination_zip or "",
        weight=shipment.weight or 0.0,
        length=shipment.length,
        width=shipment.width,
        height=shipment.height,
        is_residential=shipment.is_residential,
        carrier=shipment.carrier or rec.get("carrier"),
        original_service=shipment.original_service,
        intended_service=shipment.intended_service,
        new_service=best.service_name or best.service_code or "Ground",
        current_rate=shipment.current_rate,
        new_rate=best.total_charges,
        savings=savings,
        savings_percent=savings_percent,
        account_id=best.carrier_id or None,
        account_name=best.carrier_name or None,
        rates=rates,
        raw_data=shipment.raw_data,
    )
    return processed, None


def merge_by_id(existing: List, incoming: List) -> List:
    """Replace entries with matching ids, append new ones, keep id order"""
    merged = {item.id: item for item in existing}
    for item in incoming:
        merged[item.id] = item
    return sorted(merged.values(), key=lambda item: item.id)


class InProcessChunkWorker(ChunkWorker):
    """
    Price a chunk locally and merge it into the job in a single write.

    Merging by id makes a retried chunk overwrite its own earlier entries
    instead of duplicating them.
    """

    def __init__(self, store: AnalysisStore, normalizer: Optional[ShipmentNormalizer] = None):
        self.store = store
        self.normalizer = normalizer or ShipmentNormalizer()
        self._lock = asyncio.Lock()

    async def process(self, chunk: ChunkPayload) -> None:
        processed: List[ProcessedShipment] = []
        orphaned: List[OrphanedShipment] = []

        for offset, rec in enumerate(chunk.data):
            shipment_id = chunk.start_index + offset + 1
            ok, orphan = price_recommendation(rec, shipment_id, self.normalizer)
            if ok is not None:
                processed.append(ok)
            else:
                orphaned.append(orphan)

        async with self._lock:
            job = await self.store.read(chunk.analysis_id)
            await self.store.update(chunk.analysis_id, {
                "processed_shipments": merge_by_id(job.processed_shipments or [], processed),
                "orphaned_shipments": merge_by_id(job.orphaned_shipments or [], orphaned),
            })

        logger.debug(
            f"Chunk {chunk.chunk_index + 1}/{chunk.total_chunks} of job {chunk.analysis_id}: "
            f"{len(processed)} processed, {len(orphaned)} orphaned"
        )


class HttpChunkWorker(ChunkWorker):
    """POST each chunk to a remote worker that persists its own results"""

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url or settings.CHUNK_WORKER_URL
        if not self.url:
            raise ValueError("CHUNK_WORKER_URL is not configured")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def process(self, chunk: ChunkPayload) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        context = {"analysis_id": chunk.analysis_id, "chunk_index": chunk.chunk_index, "url": self.url}
        try:
            response = await self._client.post(self.url, json=chunk.to_dict(), headers=headers)
        except httpx.HTTPError as e:
            raise ChunkProcessingError("Chunk request failed", context=context, original_exception=e)

        if response.status_code >= 400:
            raise ChunkProcessingError(
                f"Chunk worker returned {response.status_code}",
                context={**context, "status_code": response.status_code, "response_body": response.text[:500]}
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict) and (body.get("error") or body.get("success") is False):
            raise ChunkProcessingError(
                f"Chunk worker reported failure: {body.get('error') or 'unknown error'}",
                context=context
            )

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
