"""
Utility functions: config loading, logging setup, and helpers.

  - setup_logging()      : console + per-run file handler on the project logger
  - load_config()        : config.yaml → validated, frozen ResolverConfig
  - capture_diagnostics(): screenshot / HTML dump of a misbehaving tab
"""

import os
import re
import logging
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import quote

import yaml


ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
LOG_DIR = os.path.join(ROOT_DIR, "logs")
SCREENSHOT_DIR = os.path.join(LOG_DIR, "screenshots")
HTMLDUMP_DIR   = os.path.join(LOG_DIR, "htmldumps")

LOGGER_NAME = "permalink_resolver"

# Forum post permalinks (SufficientVelocity, SpaceBattles, QuestionableQuesting).
DEFAULT_LINK_PATTERN = (
    r"https?://(?:www\.)?"
    r"(?:forums?\.(?:sufficientvelocity|spacebattles)\.com|forum\.questionablequesting\.com)"
    r"/posts/(\d{5,12})(?:/\S*)?"
)

DEFAULT_CHECK_INTERVAL_MS = 8000
MIN_CHECK_INTERVAL_MS = 100
WINDOW_MODES = ("normal", "popup")


def setup_logging(debug: bool = False) -> logging.Logger:
    """Configure and return the project logger."""
    os.makedirs(LOG_DIR, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(LOG_DIR, f"run_{timestamp}.log")

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Prevent duplicate handlers on repeated calls
    if logger.handlers:
        return logger

    # Console handler
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if debug else logging.INFO)
    ch_fmt = logging.Formatter("[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%H:%M:%S")
    ch.setFormatter(ch_fmt)

    # File handler
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh_fmt = logging.Formatter("[%(asctime)s] %(levelname)-8s %(name)s — %(message)s")
    fh.setFormatter(fh_fmt)

    logger.addHandler(ch)
    logger.addHandler(fh)

    logger.info(f"Log file: {log_file}")
    return logger


# ── Typed configuration ──────────────────────────────────────────────────

@dataclass(frozen=True)
class ResolverConfig:
    """Run configuration. Read once at run start; never mutated mid-run."""

    file_fetch_url: str
    post_back_url: str = ""
    auth_token: str = ""
    max_concurrent: int = 3
    check_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS
    initial_delay_s: float = 0.0
    max_wait_minutes: float = 30.0
    window_mode: str = "normal"
    headless: bool = False
    link_pattern: str = DEFAULT_LINK_PATTERN
    run_script_url: str = ""
    clear_drive_url: str = ""
    status_file: str = "status.json"
    monitor_enabled: bool = False
    monitor_host: str = "127.0.0.1"
    monitor_port: int = 8099
    open_monitor_window: bool = False
    request_timeout: float = 30.0
    reset_delay_s: float = 2.0
    debug: bool = False

    @property
    def poll_interval_s(self) -> float:
        return self.check_interval_ms / 1000.0

    @property
    def max_wait_s(self) -> float:
        return self.max_wait_minutes * 60.0

    @property
    def monitor_url(self) -> str:
        return f"http://{self.monitor_host}:{self.monitor_port}/dashboard"


def build_config(raw: dict) -> ResolverConfig:
    """Apply safe defaults to a raw config mapping, validate, and freeze it."""
    config = dict(raw or {})

    url = config.get("file_fetch_url")
    if not url or not str(url).strip():
        raise ValueError("Missing required config key: 'file_fetch_url'")
    config["file_fetch_url"] = str(url).strip()

    for key in ("post_back_url", "auth_token", "run_script_url", "clear_drive_url"):
        config[key] = str(config.get(key) or "").strip()

    conc = config.setdefault("max_concurrent", 3)
    if not isinstance(conc, int) or isinstance(conc, bool) or conc < 1:
        raise ValueError(f"max_concurrent must be int >= 1, got: {conc!r}")

    # Anything at or below the floor is treated as unset.
    interval = config.setdefault("check_interval_ms", DEFAULT_CHECK_INTERVAL_MS)
    if not isinstance(interval, (int, float)) or isinstance(interval, bool):
        raise ValueError(f"check_interval_ms must be a number, got: {interval!r}")
    if interval <= MIN_CHECK_INTERVAL_MS:
        config["check_interval_ms"] = DEFAULT_CHECK_INTERVAL_MS
    else:
        config["check_interval_ms"] = int(interval)

    delay = config.setdefault("initial_delay_s", 0)
    if not isinstance(delay, (int, float)) or delay < 0:
        raise ValueError(f"initial_delay_s must be a number >= 0, got: {delay!r}")

    max_wait = config.setdefault("max_wait_minutes", 30)
    if not isinstance(max_wait, (int, float)) or max_wait <= 0:
        raise ValueError(f"max_wait_minutes must be a number > 0, got: {max_wait!r}")

    mode = config.setdefault("window_mode", "normal")
    if mode not in WINDOW_MODES:
        raise ValueError(f"Invalid window_mode '{mode}'. Must be 'normal' or 'popup'.")

    pattern = config.setdefault("link_pattern", DEFAULT_LINK_PATTERN)
    try:
        re.compile(pattern)
    except (re.error, TypeError) as e:
        raise ValueError(f"link_pattern does not compile: {e}") from e

    port = config.setdefault("monitor_port", 8099)
    if not isinstance(port, int) or not (0 < port < 65536):
        raise ValueError(f"monitor_port must be a valid TCP port, got: {port!r}")

    timeout = config.setdefault("request_timeout", 30)
    if not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValueError(f"request_timeout must be a number > 0, got: {timeout!r}")

    reset_delay = config.setdefault("reset_delay_s", 2)
    if not isinstance(reset_delay, (int, float)) or reset_delay < 0:
        raise ValueError(f"reset_delay_s must be a number >= 0, got: {reset_delay!r}")

    known = ResolverConfig.__dataclass_fields__
    unknown = sorted(k for k in config if k not in known)
    if unknown:
        logging.getLogger(LOGGER_NAME).warning(f"Ignoring unknown config keys: {unknown}")

    return ResolverConfig(**{k: v for k, v in config.items() if k in known})


def load_config(config_path: str = None) -> ResolverConfig:
    """Load and validate config.yaml, applying safe defaults for all optional keys."""
    if config_path is None:
        config_path = os.path.join(ROOT_DIR, "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Config file must contain a mapping, got {type(raw).__name__}")

    return build_config(raw)


def with_token_param(url: str, token: str) -> str:
    """Append ``token=<token>`` as a query parameter (for endpoints that can't read headers)."""
    if not token:
        return url
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}token={quote(token, safe='')}"


def collapse_preview(text: str, limit: int = 800) -> str:
    """First ``limit`` chars of a response body with whitespace runs collapsed."""
    return re.sub(r"\s+", " ", (text or "")[:limit])


# ── Diagnostics ──────────────────────────────────────────────────────────

def capture_diagnostics(page, label: str = "error") -> str | None:
    """
    Capture diagnostic data for a tab even when the page is broken.

    Chain:
      1. Always log page.url
      2. page.screenshot() with a hard 5s timeout
      3. On failure → page.content() → save as .html dump

    Returns the file path of the saved screenshot or HTML dump, or None.
    """
    logger = logging.getLogger(LOGGER_NAME)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    safe_label = re.sub(r"[^\w\-]", "_", label)[:80]

    try:
        current_url = page.url
    except Exception:
        current_url = "<unavailable>"
    logger.debug(f"[diag] url={current_url}")

    try:
        os.makedirs(SCREENSHOT_DIR, exist_ok=True)
        filepath = os.path.join(SCREENSHOT_DIR, f"{timestamp}_{safe_label}.png")
        page.screenshot(path=filepath, full_page=False, timeout=5_000)
        logger.info(f"Screenshot saved: {filepath}")
        return filepath
    except Exception as ss_err:
        logger.debug(f"Screenshot failed ({ss_err}) — falling back to HTML dump")

    try:
        os.makedirs(HTMLDUMP_DIR, exist_ok=True)
        html_filepath = os.path.join(HTMLDUMP_DIR, f"{timestamp}_{safe_label}.html")
        html_content = page.content()
        with open(html_filepath, "w", encoding="utf-8") as f:
            f.write(html_content)
        logger.info(f"HTML dump saved: {html_filepath}")
        return html_filepath
    except Exception as html_err:
        logger.warning(f"HTML dump also failed: {html_err}")
        return None
