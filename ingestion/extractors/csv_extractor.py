"""
CSV shipment file extractor
"""

import io
import pandas as pd
from typing import List, Dict, Any, Optional
from pathlib import Path
from core.exceptions import ValidationError
import logging

logger = logging.getLogger(__name__)


class CSVExtractor:
    """
    Read shipment rows from a CSV file or uploaded CSV text.

    Every cell is read as a string so ZIP codes keep their leading zeros and
    currency columns survive untouched until the normalizer coerces them.
    Column headers are only stripped; name resolution belongs to the
    normalizer.
    """

    def __init__(self, file_path: Optional[str] = None, encoding: str = "utf-8"):
        self.file_path = Path(file_path) if file_path else None
        self.encoding = encoding

    def fetch_rows(self) -> List[Dict[str, Any]]:
        """Read the configured file"""
        if self.file_path is None or not self.file_path.exists():
            raise ValidationError(
                f"CSV file not found: {self.file_path}",
                context={"file_path": str(self.file_path)}
            )

        logger.info(f"Reading CSV from {self.file_path}")
        return self._read(self.file_path)

    def parse_text(self, content: str) -> List[Dict[str, Any]]:
        """Read CSV content already held in memory"""
        if not content or not content.strip():
            raise ValidationError("CSV content is empty")
        return self._read(io.StringIO(content))

    def _read(self, source) -> List[Dict[str, Any]]:
        try:
            df = pd.read_csv(
                source,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                encoding=self.encoding if not isinstance(source, io.StringIO) else None,
            )
        except pd.errors.EmptyDataError as e:
            raise ValidationError("CSV file has no header row", original_exception=e)
        except pd.errors.ParserError as e:
            raise ValidationError("CSV file could not be parsed", original_exception=e)

        df.columns = df.columns.str.strip()

        # Rows where every cell is blank carry no shipment
        df = df[~(df.apply(lambda col: col.str.strip()) == "").all(axis=1)]

        records = df.to_dict(orient="records")
        logger.info(f"Read {len(records)} rows with {len(df.columns)} columns from CSV")
        return records
