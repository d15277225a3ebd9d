"""
Result Reporter — submit the resolved set to the collector endpoint.

Also hosts RemoteScriptClient, which triggers the remote extractor ("run")
and drive cleanup ("clear") scripts.  Both share one defensive POST helper:

  text/html response  → ReportError(kind="markup") with an 800-char preview
                        (symptom of a login page instead of the receiver)
  HTTP 429            → ReportError(kind="rate_limited")
  any other non-2xx   → ReportError(kind="http") with status + body
  transport failure   → ReportError(kind="transport")

The bearer token goes out both as an Authorization header and as a
``token`` query parameter for endpoints that cannot read headers.
"""

import logging
from dataclasses import dataclass

import requests

from permalink_resolver.errors import ReportError
from permalink_resolver.utils import LOGGER_NAME, collapse_preview, with_token_param

logger = logging.getLogger(LOGGER_NAME)


@dataclass(frozen=True)
class ReportOutcome:
    posted: bool
    count: int
    status_code: int | None = None
    body: str = ""


def post_json_checked(session: requests.Session, url: str, body: dict, *,
                      token: str = "", timeout: float = 30, label: str = "POST") -> requests.Response:
    """POST ``body`` as JSON and validate the response. Raises ReportError on any failure."""
    headers = {"Content-Type": "application/json"}
    payload = dict(body)
    if token:
        headers["Authorization"] = f"Bearer {token}"
        payload["token"] = token

    try:
        resp = session.post(with_token_param(url, token), json=payload, headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        raise ReportError(f"{label} error: {exc}", kind=ReportError.TRANSPORT) from exc

    text = resp.text or ""
    ctype = (resp.headers.get("content-type") or "").lower()

    if "text/html" in ctype:
        preview = collapse_preview(text)
        raise ReportError(
            f"{label} returned HTML (likely wrong URL or login). Preview: {preview}",
            kind=ReportError.MARKUP, status_code=resp.status_code, preview=preview,
        )

    if resp.status_code == 429:
        raise ReportError(
            f"{label} failed: 429 Too Many Requests — try later",
            kind=ReportError.RATE_LIMITED, status_code=429, preview=collapse_preview(text),
        )

    if not resp.ok:
        raise ReportError(
            f"{label} failed: {resp.status_code} {resp.reason} {text}".rstrip(),
            kind=ReportError.HTTP, status_code=resp.status_code, preview=collapse_preview(text),
        )

    return resp


class ResultReporter:
    """
    Submits one report per run.

    When no endpoint is configured ``submit`` is a no-op that still reports
    success, so the run completes normally.
    """

    def __init__(self, endpoint: str = "", *, token: str = "", timeout: float = 30,
                 session: requests.Session | None = None):
        self._endpoint = (endpoint or "").strip()
        self._token = token
        self._timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "ResultReporter":
        return cls(config.post_back_url, token=config.auth_token, timeout=config.request_timeout)

    @property
    def configured(self) -> bool:
        return bool(self._endpoint)

    def submit(self, resolved: list[str]) -> ReportOutcome:
        """POST ``{"resolved": [...]}``. Raises ReportError on failure."""
        resolved = list(resolved)
        if not self._endpoint:
            logger.info(f"  [report] No report endpoint configured — collected {len(resolved)} url(s)")
            return ReportOutcome(posted=False, count=len(resolved))

        logger.info(f"  [report] Posting {len(resolved)} resolved url(s)...")
        resp = post_json_checked(
            self._session, self._endpoint, {"resolved": resolved},
            token=self._token, timeout=self._timeout, label="POST",
        )
        logger.info(f"  [report] Posted {len(resolved)} — server: {collapse_preview(resp.text, 200)}")
        return ReportOutcome(posted=True, count=len(resolved), status_code=resp.status_code, body=resp.text or "")


class RemoteScriptClient:
    """Triggers the remote automation scripts (extractor run / drive clear)."""

    ACTION_RUN = "run"
    ACTION_CLEAR = "clear"

    def __init__(self, run_script_url: str = "", clear_drive_url: str = "", *, token: str = "",
                 timeout: float = 30, session: requests.Session | None = None):
        self._urls = {
            self.ACTION_RUN: (run_script_url or "").strip(),
            self.ACTION_CLEAR: (clear_drive_url or "").strip(),
        }
        self._token = token
        self._timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "RemoteScriptClient":
        return cls(
            config.run_script_url, config.clear_drive_url,
            token=config.auth_token, timeout=config.request_timeout,
        )

    def trigger(self, action: str) -> str:
        """POST ``{"action": action}`` to the configured script. Returns the response body."""
        if action not in self._urls:
            raise ValueError(f"Unknown script action '{action}'. Must be 'run' or 'clear'.")
        url = self._urls[action]
        if not url:
            key = "run_script_url" if action == self.ACTION_RUN else "clear_drive_url"
            raise ReportError(f"{key} not configured", kind=ReportError.HTTP)

        logger.info(f"  [script] Triggering '{action}' script...")
        resp = post_json_checked(
            self._session, url, {"action": action},
            token=self._token, timeout=self._timeout, label="Script call",
        )
        return resp.text or ""
