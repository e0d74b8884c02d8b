"""
Transform raw sheet rows into typed MasterRow / SummaryRow records.

Every parse helper is total: an unparseable cell becomes None, never an
exception. Rows without a usable identity cell are skipped and counted.
"""

import re
from typing import Any, List, Optional, Tuple
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from schemas.rows import MasterRow, SummaryRow, RawRow
import logging

logger = logging.getLogger(__name__)

NO_VALUE = "-"

# Detail sheet (A:U), zero-based column positions
DETAIL_COLUMNS = {
    "age_days": 1,
    "month_label": 2,
    "input_date": 3,
    "case_id": 4,
    "order_type": 5,
    "service_area": 6,
    "exchange_code": 7,
    "customer_name": 8,
    "latitude": 9,
    "longitude": 10,
    "constraint_category": 11,
    "thematic_plan": 12,
    "budget_amount": 13,
    "design_value": 14,
    "proposal_status": 15,
    "design_status": 16,
    "proposal_ref": 17,
    "installation_status": 18,
    "remark_category": 19,
    "alternate_service_code": 20,
}

# Summary sheet (A:W), zero-based column positions
SUMMARY_COLUMNS = {
    "sequence_no": 0,
    "job_status": 1,
    "cost_ratio": 2,
    "raw_identity": 3,
    "service_area": 4,
    "exchange_code": 5,
    "customer_name": 6,
    "latitude": 7,
    "longitude": 8,
    "installation_address": 9,
    "service_type": 10,
    "contract_value": 11,
    "design_ref": 12,
    "thematic_plan": 13,
    "budget_amount": 14,
    "survey_budget": 15,
    "memo_number": 16,
    "proposal_status": 17,
    "installation_status": 18,
    "installation_progress": 19,
    "odp_name": 20,
    "distance_to_odp": 21,
    "remark": 22,
}

DETAIL_WIDTH = 21
SUMMARY_WIDTH = 23

# Source labels for installation status drift between sheet revisions
INSTALLATION_STATUS_SYNONYMS = {
    "REVIEW": "REVIEW",
    "SURVEY": "SURVEY",
    "INSTALASI": "INSTALASI",
    "DONE INSTALASI": "DONE_INSTALASI",
    "GOLIVE": "GO_LIVE",
    "GO LIVE": "GO_LIVE",
    "GO-LIVE": "GO_LIVE",
    "CANCEL": "CANCEL",
    "PENDING": "PENDING",
    "KENDALA": "KENDALA",
    "WAITING BUDGET": "WAITING_BUDGET",
    "DROP": "DROP",
    "WAITING PROJECT JPP": "WAITING_PROJECT_JPP",
    "WAITING CB": "WAITING_CB",
}

DETAIL_HEADER_LABELS = (
    ("ID KENDALA", "KENDALA"),
    ("DATEL",),
    ("STO",),
    ("NAMA PELANGGAN",),
    ("NEW SC",),
)

_LEADING_ORDINAL = re.compile(r"^\d+\s*")
_NON_ALNUM = re.compile(r"[^A-Z0-9]+")
_FLOAT_INTEGER = re.compile(r"^(\d+)\.0+$")
_DIGITS_ONLY = re.compile(r"^\d+$")


# ============================================================================
# Header detection
# ============================================================================

def _cell_text(row: RawRow, index: int) -> str:
    if index >= len(row) or row[index] is None:
        return ""
    return str(row[index]).strip()


def find_summary_header(rows: List[RawRow]) -> int:
    """Index of the summary header row (A = NO, D names the contract number), or -1"""
    for i, row in enumerate(rows):
        a = _cell_text(row, 0).upper()
        d = _cell_text(row, 3).upper()
        if a == "NO" and ("NCX" in d or "STARCLICK" in d):
            return i
    return -1


def find_detail_header(rows: List[RawRow]) -> int:
    """Index of the first row scoring at least 3 known detail labels, or -1"""
    for i, row in enumerate(rows):
        joined = " | ".join(str(c if c is not None else "").strip().upper() for c in row)
        score = sum(
            1 for labels in DETAIL_HEADER_LABELS
            if any(label in joined for label in labels)
        )
        if score >= 3:
            return i
    return -1


def strip_header(rows: List[RawRow], header_index: int) -> Tuple[List[RawRow], int]:
    """
    Drop header rows.

    Returns the data rows and the 1-based sheet row number of the first
    data row. Without a detected header the first two rows are dropped.
    """
    if header_index >= 0:
        return rows[header_index + 1:], header_index + 2
    return rows[2:], 3


# ============================================================================
# Normalizer
# ============================================================================

class RowNormalizer:
    """
    Normalize raw sheet rows into typed records.

    Handles:
    - Column layout per sheet role
    - Numeric, money, percent and date parsing
    - Identity cleanup (apostrophes, float-rendered integers)
    - Enum token canonicalization with installation-status synonyms
    """

    def normalize_master(self, row: RawRow, row_number: int) -> Optional[MasterRow]:
        """Normalize one detail row; None when the case id is blank or '-'"""
        cells = self._pad(row, DETAIL_WIDTH)
        col = DETAIL_COLUMNS

        case_id = self.clean_identity(cells[col["case_id"]])
        if not case_id:
            return None

        alternate = self.clean_identity(cells[col["alternate_service_code"]])

        return MasterRow(
            row_number=row_number,
            case_id=case_id,
            alternate_service_code=alternate or None,
            age_days=self.parse_int(cells[col["age_days"]]),
            month_label=self.parse_text(cells[col["month_label"]]),
            input_date=self.parse_date(cells[col["input_date"]]),
            order_type=self.parse_text(cells[col["order_type"]]),
            service_area=self.parse_text(cells[col["service_area"]]),
            exchange_code=self.parse_text(cells[col["exchange_code"]]),
            customer_name=self.parse_text(cells[col["customer_name"]]),
            latitude=self.parse_text(cells[col["latitude"]]),
            longitude=self.parse_text(cells[col["longitude"]]),
            budget_amount=self.parse_decimal(cells[col["budget_amount"]]),
            design_value=self.parse_decimal(cells[col["design_value"]]),
            design_status=self.parse_text(cells[col["design_status"]]),
            proposal_ref=self.parse_text(cells[col["proposal_ref"]]),
            constraint_category=self.normalize_enum(cells[col["constraint_category"]]),
            thematic_plan=self.normalize_enum(cells[col["thematic_plan"]]),
            proposal_status=self.normalize_enum(cells[col["proposal_status"]]),
            installation_status=self.normalize_installation_status(cells[col["installation_status"]]),
            remark_category=self.normalize_enum(cells[col["remark_category"]]),
        )

    def normalize_summary(self, row: RawRow, row_number: int) -> Optional[SummaryRow]:
        """Normalize one summary row; None when the contract number cell is blank or '-'"""
        cells = self._pad(row, SUMMARY_WIDTH)
        col = SUMMARY_COLUMNS

        raw_identity = self.clean_identity(cells[col["raw_identity"]])
        if not raw_identity:
            return None

        return SummaryRow(
            row_number=row_number,
            sequence_no=self.normalize_sequence_no(cells[col["sequence_no"]], row_number),
            raw_identity=raw_identity,
            job_status=self.normalize_enum(cells[col["job_status"]]),
            installation_status=self.normalize_installation_status(cells[col["installation_status"]]),
            thematic_plan=self.normalize_enum(cells[col["thematic_plan"]]),
            proposal_status=self.normalize_enum(cells[col["proposal_status"]]),
            cost_ratio=self.parse_percent(cells[col["cost_ratio"]]),
            service_area=self.parse_text(cells[col["service_area"]]),
            exchange_code=self.parse_text(cells[col["exchange_code"]]),
            customer_name=self.parse_text(cells[col["customer_name"]]),
            latitude=self.parse_text(cells[col["latitude"]]),
            longitude=self.parse_text(cells[col["longitude"]]),
            installation_address=self.parse_text(cells[col["installation_address"]]),
            service_type=self.parse_text(cells[col["service_type"]]),
            contract_value=self.parse_decimal(cells[col["contract_value"]]),
            design_ref=self.parse_int(cells[col["design_ref"]]),
            budget_amount=self.parse_decimal(cells[col["budget_amount"]]),
            survey_budget=self.parse_decimal(cells[col["survey_budget"]]),
            memo_number=self.parse_text(cells[col["memo_number"]]),
            installation_progress=self.parse_text(cells[col["installation_progress"]]),
            odp_name=self.parse_text(cells[col["odp_name"]]),
            distance_to_odp=self.parse_decimal(cells[col["distance_to_odp"]]),
            remark=self.parse_text(cells[col["remark"]]),
            thematic_plan_label=self.parse_text(cells[col["thematic_plan"]]),
            proposal_status_label=self.parse_text(cells[col["proposal_status"]]),
        )

    def normalize_master_rows(
        self,
        rows: List[RawRow],
        first_row_number: int = 2
    ) -> Tuple[List[MasterRow], int]:
        """Normalize a detail row set; returns (rows, skipped count)"""
        results = []
        skipped = 0
        for index, row in enumerate(rows):
            normalized = self.normalize_master(row or [], first_row_number + index)
            if normalized is None:
                skipped += 1
                continue
            results.append(normalized)

        logger.info(f"Normalized {len(results)} detail rows ({skipped} skipped)")
        return results, skipped

    def normalize_summary_rows(
        self,
        rows: List[RawRow],
        first_row_number: int = 2
    ) -> Tuple[List[SummaryRow], int]:
        """Normalize a summary row set; returns (rows, skipped count)"""
        results = []
        skipped = 0
        for index, row in enumerate(rows):
            normalized = self.normalize_summary(row or [], first_row_number + index)
            if normalized is None:
                skipped += 1
                continue
            results.append(normalized)

        logger.info(f"Normalized {len(results)} summary rows ({skipped} skipped)")
        return results, skipped

    # ------------------------------------------------------------------
    # Cell parsers
    # ------------------------------------------------------------------

    @staticmethod
    def _pad(row: RawRow, width: int) -> RawRow:
        if len(row) >= width:
            return row
        return list(row) + [None] * (width - len(row))

    @staticmethod
    def parse_text(value: Any) -> Optional[str]:
        """Trimmed text, or None for blank cells and the '-' sentinel"""
        if value is None:
            return None
        text = str(value).strip()
        if not text or text == NO_VALUE:
            return None
        return text

    @staticmethod
    def _numeric_text(value: Any) -> Optional[str]:
        if value is None or isinstance(value, bool):
            return None
        text = str(value).strip().replace(",", "").replace("%", "").strip()
        if not text or text == NO_VALUE:
            return None
        return text

    @classmethod
    def parse_decimal(cls, value: Any) -> Optional[Decimal]:
        """Safely parse a money/decimal cell"""
        if isinstance(value, float) and value != value:  # NaN from pandas
            return None
        text = cls._numeric_text(value)
        if text is None:
            return None
        try:
            parsed = Decimal(text)
        except InvalidOperation:
            return None
        if not parsed.is_finite():
            return None
        return parsed

    @classmethod
    def parse_int(cls, value: Any) -> Optional[int]:
        """Safely parse int value (handles "10.0" strings)"""
        parsed = cls.parse_decimal(value)
        if parsed is None:
            return None
        return int(parsed)

    @classmethod
    def parse_percent(cls, value: Any) -> Optional[Decimal]:
        """
        Parse a cost ratio into a fraction of 1.

        "85%" and "85" both give Decimal("0.85"); "0.85" is kept as is.
        """
        parsed = cls.parse_decimal(value)
        if parsed is None:
            return None
        if "%" in str(value) or abs(parsed) > 1:
            parsed = parsed / Decimal(100)
        return parsed

    @staticmethod
    def parse_date(value: Any) -> Optional[date]:
        """
        Parse M/D/YYYY (two-digit years pivot at 50) or ISO dates.

        Dates outside 2000-2100 are rejected.
        """
        if value is None:
            return None
        if isinstance(value, datetime):
            parsed = value.date()
        elif isinstance(value, date):
            parsed = value
        else:
            text = str(value).strip()
            if not text or text == NO_VALUE:
                return None
            try:
                if "/" in text:
                    parts = text.split("/")
                    if len(parts) != 3:
                        return None
                    month, day, year = (int(p) for p in parts)
                    if year < 100:
                        year += 2000 if year < 50 else 1900
                    parsed = date(year, month, day)
                else:
                    parsed = datetime.fromisoformat(text.replace("Z", "+00:00")).date()
            except ValueError:
                return None

        if parsed.year < 2000 or parsed.year > 2100:
            return None
        return parsed

    @staticmethod
    def clean_identity(value: Any) -> str:
        """
        Clean an identity cell.

        Leading apostrophes (forced-text cells) are removed and float-rendered
        integers ("1002237835.0") are reduced to their integer text. Blank and
        '-' give an empty string.
        """
        if value is None:
            return ""
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        text = str(value).strip().lstrip("'").strip()
        if text == NO_VALUE:
            return ""
        match = _FLOAT_INTEGER.match(text)
        if match:
            return match.group(1)
        return text

    @staticmethod
    def normalize_sequence_no(value: Any, fallback_row_number: int) -> str:
        """Digits of the NO cell padded to 4; falls back to the sheet row number"""
        raw = "" if value is None else str(value).strip()
        if isinstance(value, float) and value.is_integer():
            raw = str(int(value))
        digits = re.sub(r"[^0-9]", "", raw)
        if not digits:
            return str(fallback_row_number).zfill(4)
        return digits.zfill(4)

    @staticmethod
    def normalize_enum(value: Any) -> Optional[str]:
        """
        Canonical enum token.

        "2. Go Live!" -> "GO_LIVE"; blank and '-' -> None.
        """
        if value is None:
            return None
        raw = str(value).strip().upper()
        if not raw or raw == NO_VALUE:
            return None
        raw = _LEADING_ORDINAL.sub("", raw)
        token = _NON_ALNUM.sub("_", raw).strip("_")
        return token or None

    @classmethod
    def normalize_installation_status(cls, value: Any) -> Optional[str]:
        """Installation status with the synonym table applied first"""
        if value is None:
            return None
        raw = str(value).strip().upper()
        if not raw or raw == NO_VALUE:
            return None
        cleaned = _LEADING_ORDINAL.sub("", raw)
        cleaned = re.sub(r"\s+", " ", cleaned).strip()
        if cleaned in INSTALLATION_STATUS_SYNONYMS:
            return INSTALLATION_STATUS_SYNONYMS[cleaned]
        return cls.normalize_enum(cleaned)

    @staticmethod
    def is_numeric_identity(value: str) -> bool:
        return bool(_DIGITS_ONLY.match(value or ""))


def display_label(token: str) -> str:
    """Auto-generated display label: GO_LIVE -> "Go Live" """
    return " ".join(word.capitalize() for word in token.split("_") if word)
