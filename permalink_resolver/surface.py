"""
Render Surface Binding — the browser windows/tabs the scheduler loads URLs in.

Contract (RenderSurface):
    create_surface(first_url, mode) -> surface_id
    create_tab(surface_id, url)     -> tab_id
    update_tab(tab_id, url)         -> TabInfo            (raises on failure)
    remove_tab(tab_id)                                    (may raise; callers swallow)
    query_tabs(surface_id)          -> [TabInfo, ...]     (creation order; raises PollError)
    get_surface(surface_id)                               (raises SurfaceLostError)
    close_surface(surface_id)
    sweep_strays(surface_id, urls)  -> closed count

PlaywrightSurface maps a window to a BrowserContext and a tab to a Page.
Navigation uses wait_until="commit" so every call returns within a couple of
seconds; load completion is observed by polling document.readyState.
"""

import itertools
import logging
from dataclasses import dataclass

from playwright.sync_api import Browser, BrowserContext, Page, Error as PlaywrightError

from permalink_resolver.errors import PollError, SurfaceAllocationError, SurfaceLostError
from permalink_resolver.utils import LOGGER_NAME, capture_diagnostics

logger = logging.getLogger(LOGGER_NAME)

# ── Load states ───────────────────────────────────────────────────────────
LOAD_COMPLETE = "complete"
LOAD_LOADING  = "loading"

NAV_TIMEOUT = 60_000

_VIEWPORTS = {
    "normal": {"width": 1920, "height": 1080},
    "popup":  {"width": 480, "height": 720},
}
_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class TabInfo:
    tab_id: int
    surface_id: int
    url: str
    load_state: str

    @property
    def loaded(self) -> bool:
        return self.load_state == LOAD_COMPLETE


def strip_fragment(url: str) -> str:
    return (url or "").split("#", 1)[0]


class RenderSurface:
    """Interface every render surface binding implements."""

    def create_surface(self, first_url: str, mode: str = "normal") -> int:
        raise NotImplementedError

    def create_tab(self, surface_id: int, url: str) -> int:
        raise NotImplementedError

    def update_tab(self, tab_id: int, url: str) -> TabInfo:
        raise NotImplementedError

    def remove_tab(self, tab_id: int) -> None:
        raise NotImplementedError

    def query_tabs(self, surface_id: int) -> list[TabInfo]:
        raise NotImplementedError

    def get_surface(self, surface_id: int) -> None:
        raise NotImplementedError

    def close_surface(self, surface_id: int) -> None:
        raise NotImplementedError

    def sweep_strays(self, surface_id: int, urls: list[str]) -> int:
        return 0


class PlaywrightSurface(RenderSurface):
    """
    Sync-API Playwright binding.

    Every call must come from the thread that owns the Playwright instance;
    the scheduler's single-threaded run loop guarantees that.
    """

    def __init__(self, browser: Browser):
        self._browser = browser
        self._ids = itertools.count(1)
        self._contexts: dict[int, BrowserContext] = {}
        self._closed_contexts: set[int] = set()
        self._pages: dict[int, Page] = {}
        self._page_owner: dict[int, int] = {}  # tab_id → surface_id

    # ── Internal helpers ──────────────────────────────────────────────────

    def _register_page(self, surface_id: int, page: Page) -> int:
        for tab_id, known in self._pages.items():
            if known is page:
                return tab_id
        tab_id = next(self._ids)
        self._pages[tab_id] = page
        self._page_owner[tab_id] = surface_id
        page.on("close", lambda *_: self._forget_page(tab_id))
        return tab_id

    def _forget_page(self, tab_id: int) -> None:
        self._pages.pop(tab_id, None)
        self._page_owner.pop(tab_id, None)

    def _context(self, surface_id: int) -> BrowserContext:
        ctx = self._contexts.get(surface_id)
        if ctx is None or surface_id in self._closed_contexts or not self._browser.is_connected():
            raise SurfaceLostError(f"surface {surface_id} no longer exists")
        return ctx

    def _page(self, tab_id: int) -> Page:
        page = self._pages.get(tab_id)
        if page is None or page.is_closed():
            raise SurfaceAllocationError(f"tab {tab_id} no longer exists")
        return page

    @staticmethod
    def _ready_state(page: Page) -> str:
        """document.readyState; a page mid-navigation has no context yet and counts as loading."""
        try:
            state = page.evaluate("document.readyState")
        except PlaywrightError:
            return LOAD_LOADING
        return LOAD_COMPLETE if state == LOAD_COMPLETE else LOAD_LOADING

    def _tab_info(self, tab_id: int, page: Page) -> TabInfo:
        return TabInfo(
            tab_id=tab_id,
            surface_id=self._page_owner.get(tab_id, -1),
            url=page.url or "",
            load_state=self._ready_state(page),
        )

    # ── Contract ──────────────────────────────────────────────────────────

    def create_surface(self, first_url: str, mode: str = "normal") -> int:
        surface_id = next(self._ids)
        try:
            ctx = self._browser.new_context(
                viewport=_VIEWPORTS.get(mode, _VIEWPORTS["normal"]),
                user_agent=_USER_AGENT,
            )
        except PlaywrightError as e:
            raise SurfaceAllocationError(f"could not open window: {e}") from e

        self._contexts[surface_id] = ctx
        ctx.on("close", lambda *_: self._closed_contexts.add(surface_id))
        ctx.on("page", lambda page: self._register_page(surface_id, page))
        logger.debug(f"  [surface] Window {surface_id} opened (mode={mode})")

        try:
            self.create_tab(surface_id, first_url)
        except (SurfaceAllocationError, SurfaceLostError):
            # The caller never sees this id, so nobody else can close it.
            self._contexts.pop(surface_id, None)
            try:
                ctx.close()
            except PlaywrightError as close_err:
                logger.debug(f"  [surface] Closing half-open window {surface_id} failed: {close_err}")
            self._closed_contexts.discard(surface_id)
            raise
        return surface_id

    def create_tab(self, surface_id: int, url: str) -> int:
        ctx = self._context(surface_id)
        try:
            page = ctx.new_page()
        except PlaywrightError as e:
            raise SurfaceAllocationError(f"could not open tab: {e}") from e
        tab_id = self._register_page(surface_id, page)
        try:
            page.goto(url, wait_until="commit", timeout=NAV_TIMEOUT)
        except PlaywrightError as e:
            # The tab exists; a failed navigation shows up as a non-settling tab.
            logger.warning(f"  [surface] Navigation to {url} failed in tab {tab_id}: {e}")
        return tab_id

    def update_tab(self, tab_id: int, url: str) -> TabInfo:
        page = self._page(tab_id)
        try:
            page.goto(url, wait_until="commit", timeout=NAV_TIMEOUT)
        except PlaywrightError as e:
            capture_diagnostics(page, f"tab_update_failed_{tab_id}")
            raise SurfaceAllocationError(f"could not repoint tab {tab_id}: {e}") from e
        return self._tab_info(tab_id, page)

    def remove_tab(self, tab_id: int) -> None:
        page = self._pages.get(tab_id)
        if page is not None and not page.is_closed():
            page.close()
        self._forget_page(tab_id)

    def query_tabs(self, surface_id: int) -> list[TabInfo]:
        ctx = self._context(surface_id)
        tabs = []
        try:
            for page in ctx.pages:
                if page.is_closed():
                    continue
                tab_id = self._register_page(surface_id, page)
                tabs.append(self._tab_info(tab_id, page))
        except PlaywrightError as e:
            raise PollError(f"could not query tabs of window {surface_id}: {e}") from e
        return tabs

    def get_surface(self, surface_id: int) -> None:
        self._context(surface_id)

    def close_surface(self, surface_id: int) -> None:
        ctx = self._contexts.pop(surface_id, None)
        self._closed_contexts.discard(surface_id)
        for tab_id in [t for t, owner in self._page_owner.items() if owner == surface_id]:
            self._forget_page(tab_id)
        if ctx is not None:
            ctx.close()

    def sweep_strays(self, surface_id: int, urls: list[str]) -> int:
        """Close pages outside ``surface_id`` that show one of ``urls`` (fragment ignored)."""
        wanted = {strip_fragment(u) for u in urls if u}
        if not wanted:
            return 0
        own = self._contexts.get(surface_id)
        closed = 0
        for ctx in self._browser.contexts:
            if ctx is own:
                continue
            for page in list(ctx.pages):
                try:
                    if strip_fragment(page.url) in wanted:
                        page.close()
                        closed += 1
                        logger.warning(f"  [surface] Removed stray tab: {page.url}")
                except PlaywrightError as e:
                    logger.debug(f"  [surface] Failed to remove stray tab: {e}")
        return closed
