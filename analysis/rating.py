"""
Best-rate selection, savings arithmetic and orphan classification
"""

import asyncio
from typing import Iterable, List, Optional, Tuple

import httpx

from core.exceptions import AnalysisException
from models.base import ErrorType
from schemas.analysis import AnalysisSummary, ProcessedShipment
from schemas.shipment import Rate


def select_best_rate(rates: Iterable[Rate]) -> Optional[Rate]:
    """Lowest total charge; ties go to the first rate seen"""
    best = None
    for rate in rates:
        if best is None or rate.total_charges < best.total_charges:
            best = rate
    return best


def compute_savings(current_rate: float, best_cost: float) -> Tuple[float, float]:
    """
    Returns (savings, savings_percent). Savings may be negative; the percent
    is 0 when the current rate is unknown.
    """
    savings = current_rate - best_cost
    percent = (savings / current_rate * 100) if current_rate > 0 else 0.0
    return savings, percent


def summarize(
    processed: List[ProcessedShipment],
    orphaned_count: int,
    total_shipments: Optional[int] = None,
) -> AnalysisSummary:
    total_current_cost = sum(p.current_rate for p in processed)
    total_savings = sum(p.savings for p in processed)
    percentages = [p.savings_percent for p in processed]

    return AnalysisSummary(
        total_shipments=total_shipments if total_shipments is not None else len(processed) + orphaned_count,
        completed_shipments=len(processed),
        error_shipments=orphaned_count,
        total_current_cost=total_current_cost,
        total_savings=total_savings,
        savings_percentage=(total_savings / total_current_cost * 100) if total_current_cost > 0 else 0.0,
        potential_savings=max(0.0, total_savings),
        average_savings_percent=(sum(percentages) / len(percentages)) if percentages else 0.0,
    )


def classify_exception(exc: BaseException) -> ErrorType:
    """Map any per-shipment failure onto the orphan taxonomy"""
    if isinstance(exc, AnalysisException):
        try:
            return ErrorType(exc.error_type)
        except ValueError:
            return ErrorType.PROCESSING_ERROR
    if isinstance(exc, (asyncio.TimeoutError, httpx.HTTPError)):
        return ErrorType.API_ERROR
    return ErrorType.PROCESSING_ERROR
