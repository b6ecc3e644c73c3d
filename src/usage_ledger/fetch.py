"""Export fetchers: HTTP download and local file."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Literal, Optional, Protocol

import requests

from .errors import ErrorKind, IngestError
from .models.payload import ExportPayload, FetchResult, StructuredExport, TabularExport

logger = logging.getLogger(__name__)

ExportKind = Literal["tabular", "structured"]


class Fetcher(Protocol):
    def fetch(self) -> FetchResult: ...


def _wrap_payload(kind: ExportKind, content: bytes, origin: str) -> ExportPayload:
    if kind == "tabular":
        return TabularExport(content=content)
    try:
        return StructuredExport(value=json.loads(content.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise IngestError(ErrorKind.FETCH_ERROR, f"structured export from {origin} is not valid JSON: {e}") from e


class HttpExportFetcher:
    """Downloads the usage export over HTTP.

    Authentication is the caller's concern; pass whatever header the export
    endpoint expects via `headers`.
    """

    def __init__(
        self,
        url: str,
        *,
        kind: ExportKind = "tabular",
        timeout: float = 60,
        headers: Optional[dict[str, str]] = None,
    ):
        self.url = url
        self.kind = kind
        self.timeout = timeout
        self.headers = headers or {}

    def fetch(self) -> FetchResult:
        """Fetch the export.

        Raises:
            IngestError: FETCH_ERROR on network failure, timeout or non-200 status
        """
        logger.info(f"Fetching export from {self.url}")
        try:
            response = requests.get(self.url, headers=self.headers, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            raise IngestError(ErrorKind.FETCH_ERROR, f"failed fetching export: {e}") from e

        if response.status_code != 200:
            raise IngestError(
                ErrorKind.FETCH_ERROR,
                f"export endpoint returned status {response.status_code}",
                details={"status": response.status_code},
            )

        content = response.content
        headers: dict[str, Any] = {k.lower(): v for k, v in response.headers.items()}
        logger.debug(f"Fetched {len(content)} bytes (content-type={headers.get('content-type')})")
        return FetchResult(
            payload=_wrap_payload(self.kind, content, self.url),
            headers=headers,
            source_url=self.url,
        )


class FileExportFetcher:
    """Reads an export saved on disk (manual imports, fixtures)."""

    def __init__(self, path: Path, *, kind: ExportKind = "tabular"):
        self.path = path
        self.kind = kind

    def fetch(self) -> FetchResult:
        try:
            content = self.path.read_bytes()
        except OSError as e:
            raise IngestError(ErrorKind.FETCH_ERROR, f"cannot read export file {self.path}: {e}") from e
        return FetchResult(
            payload=_wrap_payload(self.kind, content, str(self.path)),
            headers={},
            source_url=self.path.resolve().as_uri(),
        )
