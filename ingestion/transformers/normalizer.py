"""
Normalize heterogeneous shipment rows into the canonical Shipment schema
"""

import re
from typing import Dict, Any, Optional, List, Iterable
from core.exceptions import MissingDataError
from schemas.shipment import Shipment
import logging

logger = logging.getLogger(__name__)


# Candidate source keys per canonical field, highest priority first. Keys are
# compared after lower-casing and dropping everything but letters and digits,
# so "Dest ZIP", "dest_zip" and "destZip" are the same column.
FIELD_ALIASES: Dict[str, List[str]] = {
    "tracking_id": ["trackingid", "trackingnumber", "trackingno", "tracking"],
    "origin_zip": ["originzip", "originpostalcode", "fromzip", "shipfromzip", "shipperzip", "senderzip", "originzipcode"],
    "destination_zip": ["destinationzip", "destzip", "destinationpostalcode", "tozip", "shiptozip", "recipientzip", "deliveryzip", "destinationzipcode"],
    "weight": ["weight", "weightlbs", "billedweight", "wt", "lbs", "pounds"],
    "length": ["length", "len"],
    "width": ["width", "wid"],
    "height": ["height", "hgt"],
    "dimensions": ["dimensions", "dims", "dimension"],
    "carrier": ["carrier", "carriername"],
    "original_service": ["originalservice", "service", "servicetype", "servicename", "servicelevel", "shipservice"],
    "intended_service": ["intendedservice", "correctedservice"],
    "current_rate": ["currentrate", "currentcost", "publishedrate", "cost", "rate", "totalcharges", "netcharge", "shippingcost", "amount", "charge", "price"],
    "is_residential": ["isresidential", "residential", "residentialflag", "resi", "addresstype"],
}

RESIDENTIAL_VALUES = {"true", "yes", "y", "1", "residential", "home", "resi"}

_DIMENSION_SPLIT = re.compile(r"\s*[x×*]\s*", re.IGNORECASE)


def _key(name: Any) -> str:
    return re.sub(r"[^a-z0-9]", "", str(name).lower())


class ShipmentNormalizer:
    """
    Convert raw rows (CSV columns, legacy stored records) into Shipments.

    Handles:
    - Column name resolution with an explicit priority order
    - Caller-supplied column mappings, which win over built-in aliases
    - Currency, number and boolean coercion
    - Combined dimension strings such as "12x10x8"

    The normalizer never rejects a row: incomplete shipments come out with
    missing fields left empty and are orphaned downstream.
    """

    def __init__(self, column_mapping: Optional[Dict[str, str]] = None):
        self.column_mapping = {k: v for k, v in (column_mapping or {}).items() if v}

    def normalize(self, row: Dict[str, Any], shipment_id: int) -> Shipment:
        """
        Normalize a raw row into a Shipment.

        Args:
            row: Raw record keyed by source column name
            shipment_id: Stable 1-based id within the job

        Returns:
            Validated Shipment, possibly incomplete
        """
        index = {_key(k): v for k, v in row.items()}

        length = self._parse_number(self._lookup(row, index, "length"))
        width = self._parse_number(self._lookup(row, index, "width"))
        height = self._parse_number(self._lookup(row, index, "height"))
        if length is None and width is None and height is None:
            length, width, height = self.parse_dimensions(self._lookup(row, index, "dimensions"))

        original_service = self._parse_text(self._lookup(row, index, "original_service"))

        residential = self._lookup(row, index, "is_residential")
        if self._is_blank(residential):
            is_residential = self._residential_from_service(original_service)
        else:
            is_residential = self.parse_residential(residential)

        current_rate = self.parse_currency(self._lookup(row, index, "current_rate"))
        if current_rate is None or current_rate < 0:
            if current_rate is not None:
                logger.warning(f"Shipment {shipment_id}: negative current rate {current_rate} treated as unknown")
            current_rate = 0.0

        return Shipment(
            id=shipment_id,
            tracking_id=self._parse_text(self._lookup(row, index, "tracking_id")) or "",
            origin_zip=self.parse_zip(self._lookup(row, index, "origin_zip")),
            destination_zip=self.parse_zip(self._lookup(row, index, "destination_zip")),
            weight=self._parse_number(self._lookup(row, index, "weight")),
            length=length,
            width=width,
            height=height,
            carrier=self._parse_text(self._lookup(row, index, "carrier")),
            original_service=original_service,
            intended_service=self._parse_text(self._lookup(row, index, "intended_service")),
            is_residential=is_residential,
            current_rate=current_rate,
            raw_data={str(k): self._json_safe(v) for k, v in row.items()},
        )

    def normalize_all(self, rows: Iterable[Dict[str, Any]]) -> List[Shipment]:
        """Normalize rows in order, assigning ids 1..N"""
        shipments = [self.normalize(row, i) for i, row in enumerate(rows, start=1)]
        incomplete = sum(1 for s in shipments if not s.is_complete)
        logger.info(f"Normalized {len(shipments)} shipments ({incomplete} incomplete)")
        return shipments

    def _lookup(self, row: Dict[str, Any], index: Dict[str, Any], field: str) -> Any:
        mapped = self.column_mapping.get(field)
        if mapped is not None:
            if mapped in row:
                return row[mapped]
            if _key(mapped) in index:
                return index[_key(mapped)]

        for alias in FIELD_ALIASES.get(field, []):
            value = index.get(alias)
            if not self._is_blank(value):
                return value
        return None

    @staticmethod
    def _is_blank(value: Any) -> bool:
        if value is None:
            return True
        if isinstance(value, float) and value != value:  # NaN
            return True
        return isinstance(value, str) and not value.strip()

    @classmethod
    def _parse_text(cls, value: Any) -> Optional[str]:
        if cls._is_blank(value):
            return None
        return str(value).strip()

    @classmethod
    def _parse_number(cls, value: Any) -> Optional[float]:
        """Safely parse a plain number"""
        if cls._is_blank(value) or isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return float(value)
        text = str(value).strip().lower()
        text = re.sub(r"(lbs?|pounds?|in|inches)$", "", text).strip()
        try:
            return float(text.replace(",", ""))
        except ValueError:
            return None

    @classmethod
    def parse_currency(cls, value: Any) -> Optional[float]:
        """Parse "$1,234.50", "(12.00)" or "12" into a float"""
        if cls._is_blank(value) or isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return float(value)
        text = str(value).strip()
        negative = text.startswith("(") and text.endswith(")")
        text = re.sub(r"[^0-9.\-]", "", text)
        if not text or text in ("-", "."):
            return None
        try:
            amount = float(text)
        except ValueError:
            return None
        return -abs(amount) if negative else amount

    @classmethod
    def parse_zip(cls, value: Any) -> Optional[str]:
        if cls._is_blank(value):
            return None
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        text = str(value).strip()
        # Spreadsheets drop the leading zero of north-eastern ZIPs
        if text.isdigit() and len(text) == 4:
            text = text.zfill(5)
        return text or None

    @classmethod
    def parse_residential(cls, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if cls._is_blank(value):
            return False
        return str(value).strip().lower() in RESIDENTIAL_VALUES

    @staticmethod
    def _residential_from_service(service: Optional[str]) -> bool:
        if not service:
            return False
        lowered = service.lower()
        return "residential" in lowered or "home" in lowered

    @classmethod
    def parse_dimensions(cls, value: Any):
        """Split "12x10x8" into (length, width, height); anything else yields Nones"""
        if cls._is_blank(value):
            return None, None, None
        parts = _DIMENSION_SPLIT.split(str(value).strip())
        if len(parts) != 3:
            return None, None, None
        parsed = [cls._parse_number(p) for p in parts]
        if any(p is None for p in parsed):
            return None, None, None
        return tuple(parsed)

    @staticmethod
    def _json_safe(value: Any) -> Any:
        if isinstance(value, float) and value != value:
            return None
        if value is None or isinstance(value, (str, int, float, bool, list, dict)):
            return value
        return str(value)


def ensure_complete(shipment: Shipment) -> Shipment:
    """
    Raise MissingDataError unless the shipment can be quoted.

    Raises:
        MissingDataError: origin ZIP, destination ZIP or positive weight is absent
    """
    missing = shipment.missing_fields()
    if missing:
        raise MissingDataError(
            f"Missing required fields: {', '.join(missing)}",
            missing_fields=missing,
            context={"shipment_id": shipment.id, "tracking_id": shipment.tracking_id},
        )
    return shipment
