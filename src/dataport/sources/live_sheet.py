"""Live sheet adapter: re-fetchable external spreadsheet documents.

Fetches the current cell values of an external sheet through the Google
Sheets v4 ``values`` endpoint using a delegated access token.  The token is
obtained elsewhere (an OAuth handshake the engine never sees) and handed in
through a :class:`~dataport.sources.base.CredentialProvider`.
"""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import quote

import requests

from dataport.errors import AuthExpiredError, SourceFormatError, SourceUnavailableError
from dataport.sources.base import CredentialProvider, FetchResult

DEFAULT_API_BASE = "https://sheets.googleapis.com"

# Whole first sheet when no sheet or range is named
DEFAULT_RANGE = "A:ZZ"

_SHEET_URL_RE = re.compile(r"/spreadsheets/d/([a-zA-Z0-9_-]+)")
_DOCUMENT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{10,}$")


def parse_sheet_url(url: str) -> str:
    """Extract the document id from a spreadsheet URL or bare id.

    Args:
        url: ``https://docs.google.com/spreadsheets/d/<id>/edit...`` or the
            id itself.

    Returns:
        The document id.

    Raises:
        SourceFormatError: If no document id can be found.
    """
    text = url.strip()
    match = _SHEET_URL_RE.search(text)
    if match:
        return match.group(1)
    if _DOCUMENT_ID_RE.match(text):
        return text
    raise SourceFormatError(f"Invalid spreadsheet URL: {url!r}")


def build_range(sheet: str | None, cell_range: str | None) -> str:
    """Combine an optional sheet title and A1 range into an API range."""
    if sheet and cell_range:
        return f"'{sheet}'!{cell_range}"
    if sheet:
        return f"'{sheet}'"
    return cell_range or DEFAULT_RANGE


class LiveSheetAdapter:
    """Fetches an external sheet's current content on every call."""

    def __init__(
        self,
        document_id: str,
        org_id: str,
        credentials: CredentialProvider,
        *,
        sheet: str | None = None,
        cell_range: str | None = None,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 30.0,
        max_rows: int = 100_000,
        max_cols: int = 200,
        session: Any = None,
    ) -> None:
        self.document_id = document_id
        self.org_id = org_id
        self.credentials = credentials
        self.sheet = sheet
        self.cell_range = cell_range
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.max_rows = max_rows
        self.max_cols = max_cols
        self.session = session or requests.Session()

    @property
    def url(self) -> str:
        rng = quote(build_range(self.sheet, self.cell_range), safe="!:'")
        return f"{self.api_base}/v4/spreadsheets/{self.document_id}/values/{rng}"

    def fetch_rows(self) -> FetchResult:
        """Exchange the stored credential for the sheet's current values.

        Returns:
            Headers (first row) and the remaining rows.

        Raises:
            AuthExpiredError: No credential, or the API rejected it.
            SourceUnavailableError: Timeout, connection failure, missing
                document or any other non-success response.
            SourceFormatError: The response body is not a values payload.
        """
        token = self.credentials.get_credential(self.org_id, self.document_id)
        if not token:
            raise AuthExpiredError(
                f"No credential for document {self.document_id!r}; re-authorization required"
            )

        try:
            resp = self.session.get(
                self.url,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                params={
                    "valueRenderOption": "UNFORMATTED_VALUE",
                    "dateTimeRenderOption": "FORMATTED_STRING",
                    "majorDimension": "ROWS",
                },
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise SourceUnavailableError(
                f"Timed out after {self.timeout}s fetching document {self.document_id!r}"
            ) from exc
        except requests.RequestException as exc:
            raise SourceUnavailableError(
                f"Could not reach sheet source for {self.document_id!r}: {exc}"
            ) from exc

        if resp.status_code in (401, 403):
            raise AuthExpiredError(
                f"Credential rejected for document {self.document_id!r} "
                f"(HTTP {resp.status_code}); re-authorization required"
            )
        if resp.status_code == 404:
            raise SourceUnavailableError(f"Document {self.document_id!r} not found")
        if resp.status_code >= 400:
            raise SourceUnavailableError(
                f"Sheet source returned HTTP {resp.status_code} for {self.document_id!r}"
            )

        try:
            payload = resp.json()
        except ValueError as exc:
            raise SourceFormatError("Sheet source returned a non-JSON response") from exc
        return self._parse_payload(payload)

    def _parse_payload(self, payload: Any) -> FetchResult:
        if not isinstance(payload, dict):
            raise SourceFormatError("Sheet payload is not an object")
        values = payload.get("values", [])
        if not isinstance(values, list) or not all(isinstance(r, list) for r in values):
            raise SourceFormatError("Sheet payload 'values' is not a list of rows")
        if not values:
            return FetchResult(headers=[], rows=[])

        warnings: list[str] = []
        headers = list(values[0])
        rows = [list(r) for r in values[1:]]
        if len(headers) > self.max_cols:
            warnings.append(
                f"Document {self.document_id!r}: truncated from {len(headers)} to {self.max_cols} columns"
            )
            headers = headers[: self.max_cols]
            rows = [r[: self.max_cols] for r in rows]
        if len(rows) > self.max_rows:
            warnings.append(
                f"Document {self.document_id!r}: truncated from {len(rows)} to {self.max_rows} rows"
            )
            rows = rows[: self.max_rows]
        return FetchResult(headers=headers, rows=rows, warnings=warnings)
