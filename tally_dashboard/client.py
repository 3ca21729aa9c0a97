"""
Tally HTTP transport.

Every request goes through one lane: a single-worker executor, so requests
reach Tally in submission order and at most one is in flight at a time. Tally
serves one export at a time and queues the rest anyway; doing it here keeps
timeouts honest, since a queued request's clock only starts when it is sent.

Retries are not done here. A failed request is classified into one of the
transport errors and handed back; the services decide whether to try again.
"""
from __future__ import annotations
import html
import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional
import requests
from loguru import logger

from .config import ConfigResolver
from .errors import (
    NetworkUnreachable,
    RequestTimeout,
    TransportError,
    UpstreamApplicationError,
    UpstreamHttpError,
)
from .requests import build_collection_query

DEFAULT_HEADERS = {
    "Content-Type": "text/xml; charset=utf-8",
    "Accept": "text/xml",
    "User-Agent": "tally-dashboard/1.0",
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
}

_COMPANY_NOT_SET = re.compile(r"Could not set\s+'SVCurrentCompany'\s+to\s+'([^']*)'", re.IGNORECASE)
_ERROR_PATTERNS = (
    re.compile(r"<LINEERROR>(.*?)</LINEERROR>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<ERRORMSG>(.*?)</ERRORMSG>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<ERROR>(.*?)</ERROR>", re.IGNORECASE | re.DOTALL),
)
# Elements that only appear when Tally exported data
_PAYLOAD = re.compile(r"<(COLLECTION|DATA|TALLYMESSAGE)\b", re.IGNORECASE)


def _is_error_body(text: str) -> bool:
    if "<STATUS>0</STATUS>" in text:
        return True
    if "<LINEERROR>" in text or "<ERRORMSG>" in text:
        return True
    # Free-text markers count only in a bare error envelope, never inside exported records
    if _PAYLOAD.search(text):
        return False
    if "Could not find" in text and "Report" in text:
        return True
    return bool(_COMPANY_NOT_SET.search(html.unescape(text)))


def extract_error(text: str) -> Optional[str]:
    """Extract the error message from a Tally response body, if any."""
    for pattern in _ERROR_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return html.unescape(match.group(1).strip())

    unescaped = html.unescape(text)
    match = _COMPANY_NOT_SET.search(unescaped)
    if match:
        return match.group(0)
    match = re.search(r"(Could not find[^<]+)", unescaped)
    if match:
        return match.group(1).strip()
    return None


def check_application_error(text: str) -> None:
    """
    Raise UpstreamApplicationError if a 200 body carries a Tally failure.

    Tally reports a wrong company name as "Could not set 'SVCurrentCompany'
    to '<name>'"; the name is extracted as the error's identifier.
    """
    if not _is_error_body(text):
        return

    message = extract_error(text) or "Tally reported an error"
    match = _COMPANY_NOT_SET.search(html.unescape(text))
    if match:
        company = match.group(1)
        raise UpstreamApplicationError(
            f"Tally could not load company '{company}': {message}",
            identifier=company,
        )
    raise UpstreamApplicationError(
        f"Tally error: {message}",
        causes=["The request references a report or object this Tally instance does not have",
                "The company data is locked or being modified"],
        remedies=["Check the request against the Tally release in use",
                  "Retry once the company is idle"],
    )


class TallyTransport:
    """
    Posts XML to Tally through a single FIFO lane.

    submit() enqueues and returns a Future; send() is submit().result().
    The base URL is resolved when a request leaves the queue, so a server
    change made while requests are waiting applies to them.
    """

    def __init__(
        self,
        resolver: ConfigResolver,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.resolver = resolver
        self.timeout = timeout or resolver.settings.request_timeout
        self.session = session or requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        self._lane = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tally-transport")
        self._seq = 0
        self._seq_lock = threading.Lock()
        self._closed = False

    def submit(self, xml: str, timeout: Optional[float] = None) -> "Future[str]":
        """Queue a request; the Future resolves to the body or raises a TransportError."""
        if self._closed:
            raise TransportError("Transport is closed")
        with self._seq_lock:
            self._seq += 1
            seq = self._seq
        logger.debug(f"Queued Tally request #{seq} ({len(xml)} bytes)")
        return self._lane.submit(self._post, xml, timeout or self.timeout, seq)

    def send(self, xml: str, timeout: Optional[float] = None) -> str:
        """Post XML to Tally and wait for the response body."""
        return self.submit(xml, timeout).result()

    def _post(self, xml: str, timeout: float, seq: int = 0) -> str:
        url = self.resolver.resolve_base_url()
        started = time.monotonic()
        try:
            r = self.session.post(url, data=xml.encode("utf-8"), timeout=timeout)
        except requests.Timeout as e:
            logger.error(f"Tally request #{seq} timed out after {timeout}s")
            raise RequestTimeout(f"Tally did not answer within {timeout:g}s") from e
        except requests.ConnectionError as e:
            logger.error(f"Failed to connect to Tally at {url}: {e}")
            raise NetworkUnreachable(f"Cannot connect to Tally at {url}") from e
        except requests.RequestException as e:
            logger.error(f"Tally request #{seq} failed: {e}")
            raise NetworkUnreachable(f"Request to {url} failed: {e}") from e

        elapsed = time.monotonic() - started
        if not 200 <= r.status_code < 300:
            logger.error(f"Tally request #{seq} returned HTTP {r.status_code}")
            raise UpstreamHttpError(
                f"Tally returned HTTP {r.status_code} {r.reason or ''}".strip(),
                status_code=r.status_code,
            )

        text = r.text
        check_application_error(text)
        logger.debug(f"Tally request #{seq} completed in {elapsed:.2f}s ({len(text)} bytes)")
        return text

    def test_connection(self, company: Optional[str] = None) -> dict:
        """
        Probe Tally with a small company-list export.

        Never raises; the outcome is reported in the returned dict.
        """
        try:
            url = self.resolver.resolve_base_url()
        except Exception as e:
            return {"status": "failed", "url": None, "error": str(e)}

        xml = build_collection_query(
            "Company", ["NAME"], company=company, collection_name="List of Companies"
        )
        try:
            response = self.send(xml, timeout=min(self.timeout, 30))
        except Exception as e:
            return {"status": "failed", "url": url, "error": str(e)}

        if "<ENVELOPE" in response:
            return {
                "status": "connected",
                "url": url,
                "company": company,
                "response_length": len(response),
            }
        return {
            "status": "connected_unknown",
            "url": url,
            "message": "Connected but unexpected response format",
        }

    def close(self):
        """Drain the lane and close the session."""
        if self._closed:
            return
        self._closed = True
        self._lane.shutdown(wait=True)
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
