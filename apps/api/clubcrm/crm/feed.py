from __future__ import annotations

import io
import logging
from pathlib import PurePath
from typing import Protocol

import pandas as pd
import requests
from opentelemetry import trace

from clubcrm.context import get_correlation_id


logger = logging.getLogger("clubcrm.crm.feed")
tracer = trace.get_tracer("clubcrm.crm.feed")

SPREADSHEET_SUFFIXES = {".xlsx", ".xls"}
TEXT_SUFFIXES = {".csv", ".txt", ""}


class FeedError(Exception):
    """The feed cannot be imported at all; nothing is written."""


class FeedUnavailableError(FeedError):
    """The source could not be fetched."""


class FeedFormatError(FeedError):
    """The source answered with something that is not a table."""


class LeadFeedClient(Protocol):
    def fetch_text(self) -> str: ...


class HttpLeadFeedClient:
    """Fetches the published CSV export of the external lead sheet."""

    def __init__(self, url: str, *, timeout: float = 20.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self.http = session or requests.Session()

    def fetch_text(self) -> str:
        if not self.url:
            raise FeedUnavailableError("lead feed url is not configured")
        with tracer.start_as_current_span("lead_feed.fetch") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                response = self.http.get(self.url, timeout=self.timeout)
                response.raise_for_status()
            except requests.RequestException as exc:
                logger.error("lead_feed.fetch_failed", extra={"error": str(exc)})
                raise FeedUnavailableError(f"lead feed unreachable: {exc}") from exc
            response.encoding = response.encoding or "utf-8"
            span.set_attribute("content_length", len(response.content))
            return response.text


class StaticLeadFeedClient:
    """Serves a fixed payload; for local runs and tests."""

    def __init__(self, text: str) -> None:
        self.text = text

    def fetch_text(self) -> str:
        return self.text


def decode_upload_text(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        # spreadsheet tools on Windows still export Latin-1 CSV
        return content.decode("latin-1")


def read_spreadsheet(content: bytes) -> list[list[str]]:
    """Read the first sheet of an Excel workbook into header + data rows of strings."""
    try:
        frame = pd.read_excel(io.BytesIO(content), sheet_name=0, header=None, dtype=str)
    except (ValueError, OSError, KeyError) as exc:
        raise FeedFormatError(f"unreadable spreadsheet: {exc}") from exc
    frame = frame.fillna("")
    return [[str(cell).strip() for cell in row] for row in frame.itertuples(index=False, name=None)]


def upload_kind(filename: str | None) -> str:
    suffix = PurePath(filename or "").suffix.lower()
    if suffix in SPREADSHEET_SUFFIXES:
        return "spreadsheet"
    if suffix in TEXT_SUFFIXES:
        return "text"
    raise FeedFormatError(f"unsupported upload type '{suffix}'")
