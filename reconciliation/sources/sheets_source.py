"""
Google Sheets row source and row sink over the Sheets REST API (v4).

This module provides:
- Exponential backoff retry logic for transient failures
- Circuit breaker pattern to stop hammering a failing API
- Rate limiting protection (HTTP 429 + Retry-After)
- Single-row append / update / delete for direct record edits
"""

import httpx
import asyncio
import re
from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta
from urllib.parse import quote
from reconciliation.base import MatchKey, RowSink, RowSource, SheetRole
from reconciliation.normalizer import RowNormalizer, DETAIL_WIDTH, SUMMARY_WIDTH
from schemas.rows import RawRow
from core.config import settings
from core.exceptions import (
    SheetReadError,
    NetworkError,
    RateLimitError,
    AuthenticationError,
    ResourceNotFoundError,
)
import logging

logger = logging.getLogger(__name__)

SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"

SUMMARY_LAST_COLUMN = "W"
DETAIL_LAST_COLUMN = "U"

# Columns scanned to locate a row, by role
SUMMARY_SEQUENCE_COLUMN = "A"
SUMMARY_CASE_ID_COLUMN = "D"
SUMMARY_CUSTOMER_COLUMN = "G"
DETAIL_CASE_ID_COLUMN = "E"


def column_letter(index: int) -> str:
    """Zero-based column index to A1 letters: 0 -> A, 26 -> AA"""
    letters = ""
    index += 1
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        letters = chr(65 + remainder) + letters
    return letters


def _sequence_key(value: Any) -> str:
    """NO cells compare on their digits without leading zeros"""
    digits = re.sub(r"[^0-9]", "", RowNormalizer.clean_identity(value))
    return digits.lstrip("0") or ("0" if digits else "")


def _name_key(value: Any) -> str:
    return "" if value is None else str(value).strip().lower()


class GoogleSheetsSource(RowSource, RowSink):
    """
    Read and write the summary and detail sheets.

    Authentication is either an API key (read-only, for link-shared sheets)
    or an OAuth bearer token (required for writes).

    Attributes:
        max_retries: Maximum number of attempts per request (default: 3)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Request timeout in seconds (default: 30.0)
        circuit_breaker_threshold: Failures before circuit opens (default: 5)
        circuit_breaker_timeout: Seconds before circuit reset (default: 60)
    """

    source_label = "google_sheets"

    def __init__(
        self,
        spreadsheet_id: Optional[str] = None,
        summary_sheet: Optional[str] = None,
        detail_sheet: Optional[str] = None,
        api_key: Optional[str] = None,
        access_token: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: float = 1.0,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__()
        self.spreadsheet_id = spreadsheet_id or settings.GOOGLE_SPREADSHEET_ID
        if not self.spreadsheet_id:
            raise ValueError("GOOGLE_SPREADSHEET_ID is not configured")

        self.sheet_names = {
            SheetRole.SUMMARY: summary_sheet or settings.GOOGLE_SUMMARY_SHEET_NAME,
            SheetRole.MASTER: detail_sheet or settings.GOOGLE_DETAIL_SHEET_NAME,
        }
        self.api_key = api_key or settings.GOOGLE_API_KEY
        self.access_token = access_token or settings.GOOGLE_ACCESS_TOKEN
        self.max_retries = max_retries or settings.MAX_RETRIES
        self.retry_delay = retry_delay
        self.timeout = timeout or settings.SHEETS_TIMEOUT_SECONDS
        self.transport = transport

        self._sheet_ids: Dict[str, int] = {}

        # Circuit breaker state
        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = 5
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = 60  # seconds

    # ========================================================================
    # Circuit breaker
    # ========================================================================

    def _is_circuit_open(self) -> bool:
        """Check if circuit breaker is open."""
        if self._circuit_breaker_open_until is None:
            return False

        if datetime.utcnow() >= self._circuit_breaker_open_until:
            logger.info(f"Circuit breaker reset for spreadsheet {self.spreadsheet_id}")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False

        return True

    def _record_failure(self):
        """Record a failure and potentially open circuit breaker."""
        self._circuit_breaker_failures += 1

        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = datetime.utcnow() + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Circuit breaker opened for spreadsheet {self.spreadsheet_id}. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )

    def _record_success(self):
        """Record a successful request."""
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None

    # ========================================================================
    # HTTP
    # ========================================================================

    def _client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return httpx.AsyncClient(
            headers=headers,
            timeout=self.timeout,
            transport=self.transport
        )

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Make an API request with retry logic and exponential backoff.

        Returns:
            Decoded JSON body

        Raises:
            AuthenticationError: HTTP 401/403, not retried
            ResourceNotFoundError: HTTP 404, not retried
            RateLimitError: HTTP 429 on the last attempt
            NetworkError: 5xx, timeouts and transport errors after max retries
        """
        if self._is_circuit_open():
            raise SheetReadError(
                f"Circuit breaker is open for spreadsheet {self.spreadsheet_id}",
                context={
                    "spreadsheet_id": self.spreadsheet_id,
                    "path": path,
                    "open_until": self._circuit_breaker_open_until.isoformat()
                }
            )

        params = dict(params or {})
        if self.api_key and not self.access_token:
            params["key"] = self.api_key

        context = {"spreadsheet_id": self.spreadsheet_id, "path": path, "method": method}

        async with self._client() as client:
            for attempt in range(self.max_retries):
                try:
                    logger.debug(f"Request attempt {attempt + 1}/{self.max_retries}: {method} {path}")

                    response = await client.request(
                        method,
                        f"{SHEETS_API_BASE}/{self.spreadsheet_id}{path}",
                        params=params,
                        json=json
                    )

                    if response.status_code in (401, 403):
                        self._record_failure()
                        raise AuthenticationError(
                            f"Sheets API authentication failed ({response.status_code})",
                            context={**context, "status_code": response.status_code}
                        )

                    if response.status_code == 404:
                        self._record_failure()
                        raise ResourceNotFoundError(
                            f"Spreadsheet or range not found: {path}",
                            context={**context, "status_code": 404}
                        )

                    if response.status_code == 429:
                        retry_after = int(response.headers.get(
                            "Retry-After", self.retry_delay * (2 ** attempt)
                        ))
                        logger.warning(f"Rate limited. Retrying after {retry_after} seconds")

                        if attempt < self.max_retries - 1:
                            await asyncio.sleep(retry_after)
                            continue
                        self._record_failure()
                        raise RateLimitError(
                            "Sheets API rate limit exceeded",
                            context={**context, "status_code": 429, "retry_count": attempt + 1},
                            retry_after=retry_after
                        )

                    if response.status_code >= 500:
                        if attempt < self.max_retries - 1:
                            delay = self.retry_delay * (2 ** attempt)
                            logger.warning(
                                f"Server error {response.status_code}. "
                                f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                            )
                            await asyncio.sleep(delay)
                            continue
                        self._record_failure()
                        raise NetworkError(
                            f"Sheets API server error after {self.max_retries} attempts",
                            context={
                                **context,
                                "status_code": response.status_code,
                                "retry_count": attempt + 1,
                                "response_body": response.text[:500]
                            }
                        )

                    if response.status_code >= 400:
                        self._record_failure()
                        raise SheetReadError(
                            f"Sheets API rejected the request ({response.status_code})",
                            context={
                                **context,
                                "status_code": response.status_code,
                                "response_body": response.text[:500]
                            }
                        )

                    self._record_success()
                    return response.json() if response.content else {}

                except (httpx.TimeoutException, httpx.NetworkError) as e:
                    if attempt < self.max_retries - 1:
                        delay = self.retry_delay * (2 ** attempt)
                        logger.warning(f"{type(e).__name__}. Retrying in {delay} seconds")
                        await asyncio.sleep(delay)
                        continue
                    self._record_failure()
                    raise NetworkError(
                        f"Sheets API unreachable after {self.max_retries} attempts",
                        context={**context, "timeout": self.timeout, "retry_count": attempt + 1},
                        original_exception=e
                    )

        raise NetworkError("Max retries exceeded", context=context)

    # ========================================================================
    # Reads
    # ========================================================================

    def _range(self, role: SheetRole, a1: str) -> str:
        return f"'{self.sheet_names[role]}'!{a1}"

    async def _get_values(self, rng: str) -> List[RawRow]:
        data = await self._request(
            "GET",
            f"/values/{quote(rng, safe='')}",
            params={"valueRenderOption": "FORMATTED_VALUE"}
        )
        return data.get("values", [])

    async def fetch_master_values(self) -> List[RawRow]:
        return await self._get_values(self._range(SheetRole.MASTER, f"A:{DETAIL_LAST_COLUMN}"))

    async def fetch_summary_values(self) -> List[RawRow]:
        return await self._get_values(self._range(SheetRole.SUMMARY, f"A:{SUMMARY_LAST_COLUMN}"))

    async def _scan_column(self, role: SheetRole, column: str, wanted: str, key) -> Optional[int]:
        """1-based row number of the first cell in `column` whose key equals `wanted`"""
        if not wanted:
            return None
        values = await self._get_values(self._range(role, f"{column}:{column}"))
        for index, row in enumerate(values):
            if row and key(row[0]) == wanted:
                return index + 1
        return None

    async def find_row(self, role: SheetRole, match_key: MatchKey) -> Optional[int]:
        """
        Locate a row.

        Summary rows: NO column, then contract number, then customer name.
        Detail rows: case id column only.
        """
        clean = RowNormalizer.clean_identity
        if role == SheetRole.MASTER:
            return await self._scan_column(
                role, DETAIL_CASE_ID_COLUMN, clean(match_key.primary or match_key.case_id), clean
            )

        row_number = await self._scan_column(
            role, SUMMARY_SEQUENCE_COLUMN, _sequence_key(match_key.primary), _sequence_key
        )
        if row_number is None:
            row_number = await self._scan_column(
                role, SUMMARY_CASE_ID_COLUMN, clean(match_key.case_id), clean
            )
        if row_number is None:
            row_number = await self._scan_column(
                role, SUMMARY_CUSTOMER_COLUMN, _name_key(match_key.customer_name), _name_key
            )
        return row_number

    async def _sheet_id(self, role: SheetRole) -> int:
        title = self.sheet_names[role]
        if title not in self._sheet_ids:
            data = await self._request("GET", "", params={"fields": "sheets.properties(sheetId,title)"})
            for sheet in data.get("sheets", []):
                props = sheet.get("properties", {})
                self._sheet_ids[props.get("title")] = props.get("sheetId")
        if title not in self._sheet_ids:
            raise ResourceNotFoundError(
                f"Sheet tab not found: {title}",
                context={"spreadsheet_id": self.spreadsheet_id, "sheet": title}
            )
        return self._sheet_ids[title]

    # ========================================================================
    # Writes
    # ========================================================================

    @staticmethod
    def _width(role: SheetRole) -> int:
        return SUMMARY_WIDTH if role == SheetRole.SUMMARY else DETAIL_WIDTH

    async def append_row(self, role: SheetRole, row: RawRow) -> bool:
        last = SUMMARY_LAST_COLUMN if role == SheetRole.SUMMARY else DETAIL_LAST_COLUMN
        cells = ["" if cell is None else cell for cell in row[:self._width(role)]]
        await self._request(
            "POST",
            f"/values/{quote(self._range(role, f'A:{last}'), safe='')}:append",
            params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
            json={"values": [cells]}
        )
        logger.info(f"Appended row to {self.sheet_names[role]}")
        return True

    async def update_row(self, role: SheetRole, match_key: MatchKey, row: RawRow) -> bool:
        """Write the non-None cells of `row` into the matched sheet row"""
        row_number = await self.find_row(role, match_key)
        if row_number is None:
            logger.warning(f"No {self.sheet_names[role]} row matches {match_key.model_dump()}")
            return False

        data = [
            {
                "range": self._range(role, f"{column_letter(index)}{row_number}"),
                "values": [[cell]]
            }
            for index, cell in enumerate(row[:self._width(role)])
            if cell is not None
        ]
        if not data:
            return True

        await self._request(
            "POST",
            "/values:batchUpdate",
            json={"valueInputOption": "USER_ENTERED", "data": data}
        )
        logger.info(f"Updated {len(data)} cells in {self.sheet_names[role]} row {row_number}")
        return True

    async def delete_row(self, role: SheetRole, match_key: MatchKey) -> bool:
        row_number = await self.find_row(role, match_key)
        if row_number is None:
            logger.warning(f"No {self.sheet_names[role]} row matches {match_key.model_dump()}")
            return False

        sheet_id = await self._sheet_id(role)
        await self._request(
            "POST",
            ":batchUpdate",
            json={"requests": [{
                "deleteDimension": {
                    "range": {
                        "sheetId": sheet_id,
                        "dimension": "ROWS",
                        "startIndex": row_number - 1,
                        "endIndex": row_number
                    }
                }
            }]}
        )
        logger.info(f"Deleted {self.sheet_names[role]} row {row_number}")
        return True
