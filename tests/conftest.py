import itertools

import pytest

from permalink_resolver.errors import SourceError, SurfaceAllocationError, SurfaceLostError
from permalink_resolver.reporter import ReportOutcome
from permalink_resolver.scheduler import ResolutionScheduler
from permalink_resolver.status import StatusPublisher
from permalink_resolver.surface import LOAD_COMPLETE, LOAD_LOADING, RenderSurface, TabInfo
from permalink_resolver.utils import build_config


def sv_link(n: int) -> str:
    return f"https://forums.sufficientvelocity.com/posts/{10000000 + n}/"


def final_url(url: str) -> str:
    """Where a permalink lands once the forum has redirected it."""
    post_id = url.rstrip("/").rsplit("/", 1)[-1]
    return f"https://forums.sufficientvelocity.com/threads/quest.1/page-3#post-{post_id}"


class ManualClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += max(0.0, seconds)

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSurface(RenderSurface):
    """
    In-memory render surface.

    Every navigation lands on ``redirects.get(url, final_url(url))`` and is
    complete immediately, unless the URL is in ``stuck`` (stays loading).
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.windows: dict[int, list[int]] = {}
        self.lost: set[int] = set()
        self.tabs: dict[int, dict] = {}
        self.redirects: dict[str, str] = {}
        self.stuck: set[str] = set()
        self.fail_create_surface = False
        self.fail_update: set[str] = set()
        self.skip_tabs: set[str] = set()       # create_tab raises for these
        self.fail_query = False
        self.foreign_updates: set[str] = set()  # update_tab reports another window for these
        self.created_surfaces = 0
        self.closed_surfaces: list[int] = []
        self.removed_tabs: list[int] = []

    # helpers for tests

    def _navigate(self, tab_id: int, url: str) -> None:
        tab = self.tabs[tab_id]
        tab["url"] = self.redirects.get(url, final_url(url))
        tab["state"] = LOAD_LOADING if url in self.stuck else LOAD_COMPLETE

    def set_tab(self, tab_id: int, *, url: str | None = None, state: str | None = None) -> None:
        if url is not None:
            self.tabs[tab_id]["url"] = url
        if state is not None:
            self.tabs[tab_id]["state"] = state

    def lose(self, surface_id: int) -> None:
        self.lost.add(surface_id)

    def close_tab_externally(self, tab_id: int) -> None:
        sid = self.tabs.pop(tab_id)["surface"]
        self.windows[sid].remove(tab_id)

    def live_windows(self) -> list[int]:
        return [sid for sid in self.windows if sid not in self.lost]

    # contract

    def create_surface(self, first_url: str, mode: str = "normal") -> int:
        if self.fail_create_surface:
            raise SurfaceAllocationError("window creation refused")
        sid = next(self._ids)
        self.windows[sid] = []
        self.created_surfaces += 1
        self.create_tab(sid, first_url)
        return sid

    def create_tab(self, surface_id: int, url: str) -> int:
        self.get_surface(surface_id)
        if url in self.skip_tabs:
            raise SurfaceAllocationError(f"tab refused for {url}")
        tab_id = next(self._ids)
        self.tabs[tab_id] = {"surface": surface_id}
        self.windows[surface_id].append(tab_id)
        self._navigate(tab_id, url)
        return tab_id

    def update_tab(self, tab_id: int, url: str) -> TabInfo:
        if url in self.fail_update or tab_id not in self.tabs:
            raise SurfaceAllocationError(f"cannot repoint tab {tab_id}")
        self._navigate(tab_id, url)
        info = self._info(tab_id)
        if url in self.foreign_updates:
            return TabInfo(tab_id, -1, info.url, info.load_state)
        return info

    def remove_tab(self, tab_id: int) -> None:
        self.removed_tabs.append(tab_id)
        if tab_id in self.tabs:
            self.close_tab_externally(tab_id)

    def query_tabs(self, surface_id: int) -> list[TabInfo]:
        self.get_surface(surface_id)
        if self.fail_query:
            raise RuntimeError("tab query exploded")
        return [self._info(t) for t in self.windows[surface_id]]

    def get_surface(self, surface_id: int) -> None:
        if surface_id not in self.windows or surface_id in self.lost:
            raise SurfaceLostError(f"surface {surface_id} no longer exists")

    def close_surface(self, surface_id: int) -> None:
        self.closed_surfaces.append(surface_id)
        for tab_id in self.windows.pop(surface_id, []):
            self.tabs.pop(tab_id, None)

    def _info(self, tab_id: int) -> TabInfo:
        tab = self.tabs[tab_id]
        return TabInfo(tab_id, tab["surface"], tab["url"], tab["state"])


class StubLinkSource:
    def __init__(self, links=None, error: SourceError | None = None):
        self.links = list(links or [])
        self.error = error
        self.calls = 0

    def fetch_links(self) -> list[str]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.links)


class StubReporter:
    def __init__(self, error=None):
        self.error = error
        self.submissions: list[list[str]] = []

    def submit(self, resolved) -> ReportOutcome:
        self.submissions.append(list(resolved))
        if self.error is not None:
            raise self.error
        return ReportOutcome(posted=True, count=len(resolved), status_code=200, body="ok")


def make_config(**overrides):
    raw = {
        "file_fetch_url": "https://example.test/links.txt",
        "max_concurrent": 3,
        "check_interval_ms": 1000,
        "max_wait_minutes": 30,
        "reset_delay_s": 0,
    }
    raw.update(overrides)
    return build_config(raw)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def surface():
    return FakeSurface()


@pytest.fixture
def publisher():
    return StatusPublisher()


@pytest.fixture
def make_scheduler(surface, clock, publisher):
    """Factory: make_scheduler(links, reporter=None, **config_overrides)."""

    def _make(links=None, *, link_source=None, reporter=None, **overrides):
        return ResolutionScheduler(
            surface,
            make_config(**overrides),
            publisher=publisher,
            link_source=link_source or StubLinkSource(links),
            reporter=reporter or StubReporter(),
            clock=clock,
        )

    return _make
