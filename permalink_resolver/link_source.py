"""
Link Source — fetch the permalink list and extract candidate URLs.

Fetch flow:
  1. Google Drive "view" links are rewritten to direct downloads.
  2. GET with the bearer token as header AND ``token`` query param.
  3. Markup / 401 / literal "unauthorized" → one retry with the query param only.
  4. Normalize (BOM, literal ``\\n`` escapes) and reject anything that still looks like HTML.

Extraction: one URL per line when lines match the link pattern; otherwise a
whole-text pattern scan.
"""

import logging
import re
import time

import requests

from permalink_resolver.errors import SourceError
from permalink_resolver.utils import LOGGER_NAME, DEFAULT_LINK_PATTERN, with_token_param

logger = logging.getLogger(LOGGER_NAME)

SAMPLE_CHARS = 2000
_MARKUP_RE = re.compile(r"<!doctype html|<html|<head|<body", re.IGNORECASE)
_DRIVE_FILE_RE = re.compile(r"/file/d/([a-zA-Z0-9_-]+)")
_DRIVE_ID_RE = re.compile(r"[?&]id=([a-zA-Z0-9_-]+)")
_DRIVE_DIRECT_RE = re.compile(r"drive\.google\.com/uc\?export=download", re.IGNORECASE)


def looks_like_markup(text: str) -> bool:
    """Return True if the first part of ``text`` looks like an HTML page."""
    return bool(_MARKUP_RE.search((text or "")[:SAMPLE_CHARS]))


def transform_drive_view_url(url: str) -> str:
    """Rewrite a Google Drive share/view link into a direct-download link."""
    if not url:
        return url
    if _DRIVE_DIRECT_RE.search(url):
        return url
    m = _DRIVE_FILE_RE.search(url)
    if m:
        return f"https://drive.google.com/uc?export=download&id={m.group(1)}"
    if "drive.google.com" in url:
        m = _DRIVE_ID_RE.search(url)
        if m:
            return f"https://drive.google.com/uc?export=download&id={m.group(1)}"
    return url


def normalize_text(text: str) -> str:
    """Strip a leading BOM and expand literal ``\\n`` escapes when the text has no real newlines."""
    if not text:
        return ""
    if "\\n" in text and "\n" not in text:
        text = re.sub(r"(?:\\r)?\\n", "\n", text)
    if text.startswith("\ufeff"):
        text = text[1:]
    return text


def extract_links(text: str, pattern: str = DEFAULT_LINK_PATTERN) -> list[str]:
    """
    Extract candidate URLs from ``text`` in source order.

    Lines that match the pattern are kept whole (trimmed).  If no line
    matches, fall back to collecting every pattern match in the full text.
    """
    regex = re.compile(pattern, re.IGNORECASE)
    lines = [ln.strip() for ln in re.split(r"\r?\n", text or "")]
    found = [ln for ln in lines if ln and regex.search(ln)]
    if not found:
        found = [m.group(0) for m in regex.finditer(text or "")]
    return found


class LinkSource:
    """
    Fetches the link file over HTTP and turns it into an ordered URL list.

    Retry policy: 1 automatic retry on ConnectionError/Timeout with 2s backoff.
    """

    _RETRY_BACKOFF = 2  # seconds to wait before retry

    def __init__(self, fetch_url: str, *, token: str = "", pattern: str = DEFAULT_LINK_PATTERN,
                 timeout: float = 30, session: requests.Session | None = None):
        self._fetch_url = transform_drive_view_url(fetch_url)
        self._token = token
        self._pattern = pattern
        self._timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "LinkSource":
        return cls(
            config.file_fetch_url,
            token=config.auth_token,
            pattern=config.link_pattern,
            timeout=config.request_timeout,
        )

    # ── Internal helpers ──────────────────────────────────────────────────

    def _get(self, url: str, headers: dict) -> requests.Response:
        """GET with one retry on transport errors; raises SourceError when both fail."""
        for attempt in range(2):
            try:
                return self._session.get(url, headers=headers, timeout=self._timeout)
            except (requests.ConnectionError, requests.Timeout) as exc:
                if attempt == 0:
                    logger.warning(f"  [source] GET failed ({exc}), retrying in {self._RETRY_BACKOFF}s…")
                    time.sleep(self._RETRY_BACKOFF)
                else:
                    raise SourceError(f"Fetch error: {exc}") from exc
            except requests.RequestException as exc:
                raise SourceError(f"Fetch error: {exc}") from exc

    def _token_only_retry(self) -> str:
        """Second attempt for endpoints that reject the header: token in the query string only."""
        resp = self._get(with_token_param(self._fetch_url, self._token), headers={})
        text = resp.text or ""
        if not resp.ok:
            logger.error(f"  [source] Fallback fetch not ok: {resp.status_code} {resp.reason}")
            raise SourceError(f"Fetch failed (fallback): {resp.status_code} {resp.reason}", text[:SAMPLE_CHARS])
        return text

    # ── Public API ────────────────────────────────────────────────────────

    def fetch_text(self) -> str:
        """Fetch the raw link file. Raises SourceError on any unusable response."""
        headers = {"Cache-Control": "no-store"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        logger.debug(f"  [source] Fetch URL used: {self._fetch_url}")
        resp = self._get(with_token_param(self._fetch_url, self._token), headers=headers)
        text = resp.text or ""

        if looks_like_markup(text):
            if not self._token:
                raise SourceError("Fetched HTML (login) and no token available", text[:SAMPLE_CHARS])
            logger.warning("  [source] Initial fetch returned HTML — retrying with token query-param only")
            text = self._token_only_retry()
            if looks_like_markup(text):
                raise SourceError(
                    "Fetched content appears to be HTML (login/page). Use a public endpoint.",
                    text[:SAMPLE_CHARS],
                )
        elif resp.status_code == 401 or text.strip().lower() == "unauthorized":
            if not self._token:
                raise SourceError("Unauthorized (no token configured)", text[:SAMPLE_CHARS])
            logger.warning("  [source] Primary fetch unauthorized — retrying with token query-param only")
            text = self._token_only_retry()
        elif not resp.ok:
            raise SourceError(f"Fetch failed: {resp.status_code} {resp.reason}", text[:SAMPLE_CHARS])

        return text

    def fetch_links(self) -> list[str]:
        """Fetch, normalize and extract. Raises SourceError if nothing matches."""
        text = normalize_text(self.fetch_text())
        sample = text[:SAMPLE_CHARS]
        if looks_like_markup(sample):
            raise SourceError("Fetched content appears to be HTML (login page). Use a public endpoint.", sample)

        links = extract_links(text, self._pattern)
        if not links:
            logger.warning(f"  [source] No matches; file sample: {sample[:800]!r}")
            raise SourceError("No SV/SB/QQ links found in file", sample or "<empty response>")

        logger.info(f"  [source] Extracted {len(links)} link(s)")
        return links
