"""
Resolve free-text carrier service names into standardized services
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple
import logging

from core.exceptions import ServiceMappingError

logger = logging.getLogger(__name__)


UPS_SERVICE_CODES = {
    "01": "UPS Next Day Air",
    "02": "UPS 2nd Day Air",
    "03": "UPS Ground",
    "12": "UPS 3 Day Select",
    "13": "UPS Next Day Air Saver",
    "14": "UPS Next Day Air Early",
    "54": "UPS Worldwide Express Plus",
    "07": "UPS Worldwide Express",
    "08": "UPS Worldwide Expedited",
    "11": "UPS Standard",
    "65": "UPS Saver",
}

DEFAULT_SERVICE_CODES = ["01", "02", "03", "12", "13"]


@dataclass(frozen=True)
class ServiceMatch:
    """Standardized service resolved from a source label"""

    service: str
    code: str
    confidence: float

    @property
    def carrier_service_name(self) -> str:
        return UPS_SERVICE_CODES[self.code]


# (required keywords, refinements, result) checked in order; the first hit wins.
# Refinements are (keywords, service, code, confidence) tried before the result.
_RULES: List[Tuple[Tuple[str, ...], Tuple[Tuple[Tuple[str, ...], str, str, float], ...], Tuple[str, str, float]]] = [
    (
        ("next day", "overnight", "1 day"),
        (
            (("saver", "save"), "Next Day Air Saver", "13", 0.95),
            (("early", " am"), "Next Day Air Early", "14", 0.95),
        ),
        ("Next Day Air", "01", 0.9),
    ),
    (("2nd day", "2 day", "second day", "2day"), (), ("2nd Day Air", "02", 0.9)),
    (("3 day", "3-day", "select"), (), ("3 Day Select", "12", 0.9)),
    (("ground", "standard", "regular"), (), ("Ground", "03", 0.9)),
    (
        ("express",),
        ((("plus", "+"), "Worldwide Express Plus", "54", 0.8),),
        ("Worldwide Express", "07", 0.8),
    ),
    (("expedited",), (), ("Worldwide Expedited", "08", 0.8)),
    (("priority",), (), ("Next Day Air", "01", 0.7)),
]


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def classify_service(service_name: Optional[str]) -> Optional[ServiceMatch]:
    """
    Map a carrier service label onto a standardized service.

    An empty label defaults to Ground with confidence 0.5. A non-empty label
    that matches no rule returns None; callers decide whether that orphans
    the shipment.
    """
    if service_name is None or not str(service_name).strip():
        return ServiceMatch(service="Ground", code="03", confidence=0.5)

    text = f" {str(service_name).lower().strip()} "

    for keywords, refinements, result in _RULES:
        if not _contains_any(text, keywords):
            continue
        for refine_keywords, service, code, confidence in refinements:
            if _contains_any(text, refine_keywords):
                return ServiceMatch(service=service, code=code, confidence=confidence)
        service, code, confidence = result
        return ServiceMatch(service=service, code=code, confidence=confidence)

    return None


def service_codes_to_request(service_name: Optional[str]) -> List[str]:
    """Mapped code first, then the default set without duplicates"""
    match = classify_service(service_name)
    codes = [match.code] if match else []
    codes.extend(code for code in DEFAULT_SERVICE_CODES if code not in codes)
    return codes


def apply_corrections(service_name: Optional[str], corrections) -> Optional[str]:
    """
    Return the corrected label for ``service_name``, or None when no
    correction applies. Matching is case-insensitive on the trimmed label.
    """
    if not service_name:
        return None
    key = service_name.strip().lower()
    for correction in corrections or []:
        if correction.from_service.strip().lower() == key:
            return correction.to_service
    return None


def resolve_intended_service(shipment, corrections=None) -> str:
    """
    Decide which service a shipment is quoted against.

    Priority: an explicit intended service already on the shipment, then a
    user correction for its original service, then the classifier.

    Raises:
        ServiceMappingError: The original service is unrecognized and no
            correction was supplied for it
    """
    if shipment.intended_service:
        return shipment.intended_service

    corrected = apply_corrections(shipment.original_service, corrections)
    if corrected:
        return corrected

    match = classify_service(shipment.original_service)
    if match is None:
        raise ServiceMappingError(
            f"No service mapping for '{shipment.original_service}'",
            context={
                "shipment_id": shipment.id,
                "original_service": shipment.original_service,
            },
        )

    logger.debug(
        f"Shipment {shipment.id}: '{shipment.original_service}' -> "
        f"{match.service} (confidence {match.confidence})"
    )
    return match.service
