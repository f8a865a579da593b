"""
Google Sheets v4 client over a service account.

Transient failures (429, 5xx, dropped connections) are retried with
exponential backoff; 403 and 404 are translated into permanent errors.
"""

import socket
import time
from typing import Callable, List, Optional

from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import API_INITIAL_RETRY_DELAY, API_MAX_RETRIES, Settings
from .error_handling import (
    ConfigurationError,
    PlaylogError,
    RetryableError,
    SheetsNotFoundError,
    SheetsPermissionError,
    SheetsWriteError,
    get_logger,
)

logger = get_logger()

SHEETS_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]
TOKEN_URI = "https://oauth2.googleapis.com/token"


def a1_range(sheet_name: str, cells: str = "A:ZZ") -> str:
    # Tab names contain spaces, so always quote them
    escaped = sheet_name.replace("'", "''")
    return f"'{escaped}'!{cells}"


def build_sheets_service(settings: Settings):
    settings.require_sheets()
    try:
        credentials = service_account.Credentials.from_service_account_info(
            {
                "type": "service_account",
                "client_email": settings.service_account_email,
                "private_key": settings.private_key,
                "token_uri": TOKEN_URI,
            },
            scopes=SHEETS_SCOPES,
        )
    except (ValueError, GoogleAuthError) as e:
        raise ConfigurationError(f"Invalid Google service account credentials: {e}") from e
    return build("sheets", "v4", credentials=credentials, cache_discovery=False)


def _http_reason(e: HttpError) -> str:
    reason = getattr(e, "reason", None)
    if reason:
        return str(reason)
    return str(e)


class SheetsClient:
    """Append, read, update and tab management against one spreadsheet."""

    def __init__(self, service, spreadsheet_id: str, sleep: Callable[[float], None] = time.sleep):
        self.service = service
        self.spreadsheet_id = spreadsheet_id
        self.sleep = sleep
        self.call_count = 0
        self.error_count = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SheetsClient":
        return cls(build_sheets_service(settings), settings.sheets_id)

    def _values(self):
        return self.service.spreadsheets().values()

    def _execute(self, request_factory: Callable, description: str):
        """
        Run request_factory().execute() with retries.

        A fresh request is built per attempt since googleapiclient requests
        are not safe to re-execute after a transport failure.
        """
        self.call_count += 1
        delay = API_INITIAL_RETRY_DELAY
        for attempt in range(API_MAX_RETRIES + 1):
            try:
                return request_factory().execute()
            except HttpError as e:
                status = e.resp.status
                if status == 403:
                    self.error_count += 1
                    raise SheetsPermissionError(
                        f"Permission denied for {description}. Share the spreadsheet with the service account."
                    ) from e
                if status == 404:
                    self.error_count += 1
                    raise SheetsNotFoundError(f"Spreadsheet or tab not found during {description}") from e
                if status != 429 and not 500 <= status < 600:
                    self.error_count += 1
                    raise PlaylogError(f"Sheets {description} failed ({status}): {_http_reason(e)}") from e
                error = e
            except (socket.timeout, ConnectionError) as e:
                error = e

            if attempt >= API_MAX_RETRIES:
                break
            logger.warning(
                f"[Sheets API] {description} failed: {error}. Retrying in {delay:.0f}s "
                f"(attempt {attempt + 1}/{API_MAX_RETRIES})"
            )
            self.sleep(delay)
            delay *= 2

        self.error_count += 1
        raise RetryableError(f"Sheets {description} failed after {API_MAX_RETRIES} retries: {error}")

    def append_rows(self, sheet_name: str, rows: List[list]) -> dict:
        """
        Append rows in one request.

        Raises:
            SheetsWriteError: wrapping any failure, so callers can treat the
                write as fatal
        """
        if not rows:
            return {}
        logger.info(f"[Sheets API] Appending {len(rows)} row(s) to {sheet_name}")
        try:
            return self._execute(
                lambda: self._values().append(
                    spreadsheetId=self.spreadsheet_id,
                    range=a1_range(sheet_name),
                    valueInputOption="USER_ENTERED",
                    insertDataOption="INSERT_ROWS",
                    body={"values": rows},
                ),
                f"append to {sheet_name}",
            )
        except PlaylogError as e:
            raise SheetsWriteError(f"Failed to append rows to {sheet_name}: {e}") from e

    def get_all_rows(self, sheet_name: str) -> List[list]:
        """Every row of the tab including the header; [] for an empty tab."""
        response = self._execute(
            lambda: self._values().get(spreadsheetId=self.spreadsheet_id, range=a1_range(sheet_name)),
            f"read of {sheet_name}",
        )
        return response.get("values", []) if response else []

    def update_row(self, sheet_name: str, row_number: int, row: list) -> dict:
        """Overwrite one row in place. row_number is 1-indexed and includes the header."""
        cells = f"A{row_number}:ZZ{row_number}"
        try:
            return self._execute(
                lambda: self._values().update(
                    spreadsheetId=self.spreadsheet_id,
                    range=a1_range(sheet_name, cells),
                    valueInputOption="USER_ENTERED",
                    body={"values": [row]},
                ),
                f"update of {sheet_name} row {row_number}",
            )
        except PlaylogError as e:
            raise SheetsWriteError(f"Failed to update {sheet_name} row {row_number}: {e}") from e

    def get_sheet_titles(self) -> List[str]:
        response = self._execute(
            lambda: self.service.spreadsheets().get(
                spreadsheetId=self.spreadsheet_id, fields="sheets.properties.title"
            ),
            "metadata read",
        )
        return [s["properties"]["title"] for s in response.get("sheets", [])]

    def create_sheet_if_not_exists(self, sheet_name: str, headers: Optional[list] = None) -> bool:
        """Add the tab with a header row if it is missing. Returns True if created."""
        if sheet_name in self.get_sheet_titles():
            logger.debug(f"[Sheets API] Tab already exists: {sheet_name}")
            return False

        logger.info(f"[Sheets API] Creating tab: {sheet_name}")
        self._execute(
            lambda: self.service.spreadsheets().batchUpdate(
                spreadsheetId=self.spreadsheet_id,
                body={"requests": [{"addSheet": {"properties": {"title": sheet_name}}}]},
            ),
            f"creation of {sheet_name}",
        )
        if headers:
            self._execute(
                lambda: self._values().update(
                    spreadsheetId=self.spreadsheet_id,
                    range=a1_range(sheet_name, "A1"),
                    valueInputOption="RAW",
                    body={"values": [headers]},
                ),
                f"header write for {sheet_name}",
            )
        return True
