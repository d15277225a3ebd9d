"""
Resolution Scheduler — drives permalink tabs until each URL stops changing.

Architecture: single-threaded actor with an explicit run loop.
  - Control commands (start) arrive on a queue from any thread; abort is a
    monotonic Event checked at the start of every cycle and between tabs.
  - step() drains commands, then runs tick() when the poll timer is due.
  - One tick = one poll cycle; it finishes (every blocking surface call
    included) before the next one can be dispatched.

Run phases:
    idle → fetching → opened → waiting → polling → completing → done
    terminal branches: aborted, error; timeout goes warning → completing.
    Every terminal phase funnels through _cleanup() and returns to idle
    after reset_delay_s.

Per-slot stability: a tab resolves after 2 consecutive polls that see it
loaded on the same URL.  A resolved tab is repointed to the next queued URL;
a lost window is rebuilt with every in-flight URL requeued at the front.

Work is conserved: resolved + active slots + queue == discovered, always.
"""

import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field

from permalink_resolver.errors import (
    ReportError,
    SourceError,
    SurfaceAllocationError,
    SurfaceLostError,
)
from permalink_resolver.link_source import LinkSource
from permalink_resolver.reporter import ResultReporter
from permalink_resolver.status import (
    ACTIVE_PHASES,
    PHASE_ABORTED,
    PHASE_COMPLETING,
    PHASE_DONE,
    PHASE_ERROR,
    PHASE_FETCHING,
    PHASE_IDLE,
    PHASE_OPENED,
    PHASE_POLLING,
    PHASE_WAITING,
    PHASE_WARNING,
    RunState,
    StatusPublisher,
)
from permalink_resolver.surface import RenderSurface, TabInfo
from permalink_resolver.utils import LOGGER_NAME, ResolverConfig, collapse_preview

logger = logging.getLogger(LOGGER_NAME)

# -- Constants -------------------------------------------------------------------
STABLE_THRESHOLD = 2       # consecutive loaded + unchanged observations
IDLE_SLEEP       = 0.1     # max seconds the run loop sleeps between steps

CMD_START = "start"


class Clock:
    """Wall clock used by the run loop. Tests swap in a manual one."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


# =================================================================================
#  Slot / scheduler state
# =================================================================================

@dataclass
class Slot:
    """Tracking record for one tab that is loading a WorkItem."""

    slot_id: int
    intended_url: str
    stable_hits: int = 0
    last_observed_url: str = ""

    def observe(self, tab: TabInfo, threshold: int = STABLE_THRESHOLD) -> bool:
        """Fold one poll observation in. Returns True once the tab is stable."""
        if not tab.loaded:
            self.stable_hits = 0
            return False
        if self.last_observed_url and tab.url == self.last_observed_url:
            self.stable_hits = min(self.stable_hits + 1, threshold)
        else:
            self.stable_hits = 1
            self.last_observed_url = tab.url
        return self.stable_hits >= threshold

    @property
    def pending_url(self) -> str:
        return self.intended_url or self.last_observed_url


@dataclass
class SchedulerState:
    """Everything one run owns. Replaced wholesale when a new run starts."""

    config: ResolverConfig | None = None
    phase: str = PHASE_IDLE
    queue: deque = field(default_factory=deque)
    slots: dict = field(default_factory=dict)      # tab_id → Slot, allocation order
    resolved: list = field(default_factory=list)
    total_discovered: int = 0
    surface_window_id: int | None = None
    monitor_window_id: int | None = None
    started_at: float = 0.0
    timer_active: bool = False
    next_tick_at: float = 0.0
    idle_due_at: float | None = None
    cycles: int = 0

    @property
    def pending(self) -> int:
        return len(self.slots) + len(self.queue)

    def active_links(self) -> list[str]:
        """Intended URLs of active slots, de-duplicated, order preserved."""
        seen = set()
        links = []
        for slot in self.slots.values():
            link = slot.pending_url
            if link and link not in seen:
                seen.add(link)
                links.append(link)
        return links


# =================================================================================
#  Scheduler
# =================================================================================

class ResolutionScheduler:
    """
    Owns the queue, the concurrency window, per-slot tracking, recovery,
    the hard deadline and finalization for one run at a time.

    Control surface (safe from any thread): start(), abort(), get_status().
    Run loop (owning thread only): step(), tick(), serve(), run_once().
    """

    def __init__(
        self,
        surface: RenderSurface,
        config: ResolverConfig,
        *,
        publisher: StatusPublisher | None = None,
        link_source: LinkSource | None = None,
        reporter: ResultReporter | None = None,
        clock: Clock | None = None,
    ):
        self._surface = surface
        self._config = config
        self._publisher = publisher or StatusPublisher()
        self._link_source = link_source or LinkSource.from_config(config)
        self._reporter = reporter or ResultReporter.from_config(config)
        self._clock = clock or Clock()

        self._commands: queue.Queue = queue.Queue()
        self._abort = threading.Event()
        self._surface_guard = threading.Lock()

        self.state = SchedulerState()
        self._snapshot = RunState()
        self.last_terminal: RunState | None = None
        self.runs_completed = 0

    # ── Control surface ──────────────────────────────────────────────────

    def start(self) -> None:
        """Request a new run. Ignored (with a warning) while a run is active."""
        self._commands.put(CMD_START)

    def abort(self) -> bool:
        """
        Request a prompt stop of the active run.

        Idempotent: repeated calls, or calls while idle / after a terminal
        phase, are no-ops that never raise and never reopen a window.
        A start that the run loop has not picked up yet is cancelled instead.
        """
        if self.state.phase not in ACTIVE_PHASES:
            if self._discard_pending_starts():
                logger.info("  [scheduler] Abort requested — pending start cancelled")
                return True
            logger.debug(f"  [scheduler] Abort ignored — phase is '{self.state.phase}'")
            return False
        if not self._abort.is_set():
            logger.info("  [scheduler] Abort requested")
        self._abort.set()
        return True

    def _discard_pending_starts(self) -> bool:
        """Drop start commands not yet picked up by the run loop. Returns True if any were dropped."""
        dropped = False
        kept = []
        while True:
            try:
                cmd = self._commands.get_nowait()
            except queue.Empty:
                break
            if cmd == CMD_START:
                dropped = True
            else:
                kept.append(cmd)
        for cmd in kept:
            self._commands.put(cmd)
        return dropped

    def get_status(self) -> RunState:
        return self._publisher.latest()

    @property
    def abort_requested(self) -> bool:
        return self._abort.is_set()

    # ── Run loop ─────────────────────────────────────────────────────────

    def step(self) -> None:
        """One actor iteration: handle queued commands, then any due timer work."""
        self._drain_commands()

        st = self.state
        now = self._clock.monotonic()
        if st.timer_active and now >= st.next_tick_at:
            st.next_tick_at = now + st.config.poll_interval_s
            self.tick()
        elif st.idle_due_at is not None and now >= st.idle_due_at:
            self._reset_to_idle()

    def serve(self, stop_event: threading.Event | None = None) -> None:
        """Run the actor loop until ``stop_event`` is set."""
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            self.step()
            self._clock.sleep(self._sleep_hint())

    def run_once(self, stop_event: threading.Event | None = None) -> RunState | None:
        """Start one run and drive it until it has returned to idle. Returns its terminal snapshot."""
        stop_event = stop_event or threading.Event()
        target = self.runs_completed + 1
        self.start()
        while not stop_event.is_set() and self.runs_completed < target:
            self.step()
            if self.state.phase == PHASE_IDLE and self.state.idle_due_at is None and self._commands.empty():
                # start was cancelled by an abort before the run began
                break
            self._clock.sleep(self._sleep_hint())
        return self.last_terminal

    def _sleep_hint(self) -> float:
        st = self.state
        now = self._clock.monotonic()
        if st.timer_active:
            return max(0.0, min(IDLE_SLEEP, st.next_tick_at - now))
        if st.idle_due_at is not None:
            return max(0.0, min(IDLE_SLEEP, st.idle_due_at - now))
        return IDLE_SLEEP

    def _drain_commands(self) -> None:
        while True:
            try:
                cmd = self._commands.get_nowait()
            except queue.Empty:
                return
            if cmd == CMD_START:
                if self.state.phase in ACTIVE_PHASES:
                    logger.warning(f"  [scheduler] Start ignored — run already in phase '{self.state.phase}'")
                    continue
                self._begin_run()

    # ── Status publishing ────────────────────────────────────────────────

    def _publish(self, phase: str, message: str, *, counts: bool = True, **extra) -> None:
        st = self.state
        st.phase = phase
        updates = dict(phase=phase, message=message, **extra)
        if counts:
            updates.update(
                total=len(st.resolved) + st.pending,
                completed=len(st.resolved),
                active=len(st.slots),
                queued=len(st.queue),
                active_links=st.active_links(),
                resolved_links=list(st.resolved),
            )
        self._snapshot = self._snapshot.evolve(**updates)
        self._publisher.publish(self._snapshot)

    def _publish_progress(self) -> None:
        st = self.state
        self._publish(
            PHASE_POLLING,
            f"Processing: {len(st.resolved)} done, {len(st.slots)} active, {len(st.queue)} queued",
        )

    # ── Run start ────────────────────────────────────────────────────────

    def _begin_run(self) -> None:
        """idle → fetching → opened → waiting, then arm the poll timer."""
        cfg = self._config
        self._abort.clear()
        self.state = SchedulerState(config=cfg)
        st = self.state

        logger.info("=" * 60)
        logger.info("RUN START — resolving permalinks")
        logger.info(f"Concurrency:    {cfg.max_concurrent}")
        logger.info(f"Poll interval:  {cfg.check_interval_ms} ms")
        logger.info(f"Max wait:       {cfg.max_wait_minutes} min")
        logger.info(f"Report to:      {cfg.post_back_url or '(none)'}")
        logger.info("=" * 60)

        self._publish(PHASE_FETCHING, "Fetching link file...", last_error_sample="")

        try:
            links = self._link_source.fetch_links()
        except SourceError as e:
            logger.error(f"  [scheduler] Source error: {e}")
            if e.sample:
                logger.debug(f"  [scheduler] Source sample: {e.sample[:800]!r}")
            self._fail(str(e), sample=e.sample or str(e))
            return

        if self._abort.is_set():
            self._finish_aborted()
            return

        st.queue = deque(links)
        st.total_discovered = len(links)
        self._publish(PHASE_OPENED, f"Found {len(links)} links. Opening window...")
        logger.info(f"  [scheduler] {len(links)} link(s) queued")

        batch = self._take_batch()
        try:
            self._open_batch(batch)
        except SurfaceAllocationError as e:
            st.queue.extendleft(reversed(batch))
            self._fail(f"Failed to open initial window/tabs: {e}")
            return

        if self._abort.is_set():
            self._finish_aborted()
            return

        self._open_monitor_window()

        now = self._clock.monotonic()
        st.started_at = now
        st.timer_active = True
        st.next_tick_at = now + cfg.initial_delay_s + cfg.poll_interval_s
        self._publish(PHASE_WAITING, "Polling tabs for load completion...")
        logger.info(
            f"  [scheduler] {len(st.slots)} slot(s) open, {len(st.queue)} queued — "
            f"polling every {cfg.poll_interval_s:.1f}s"
        )

    def _take_batch(self) -> list[str]:
        st = self.state
        size = min(st.config.max_concurrent, len(st.queue))
        return [st.queue.popleft() for _ in range(size)]

    # ── Surface allocation ───────────────────────────────────────────────

    def _ensure_surface(self, batch: list[str]) -> tuple[int, list[str]]:
        """
        Open ``batch`` in the run's window, creating the window if needed.

        Returns the window id and the URLs whose tabs were actually created.
        Caller holds _surface_guard, so a second allocation attempt waits for
        the first and then finds the live window instead of opening another.
        """
        st = self.state
        sid = st.surface_window_id
        if sid is not None:
            try:
                self._surface.get_surface(sid)
            except SurfaceLostError:
                sid = st.surface_window_id = None

        opened = []
        rest = batch
        if sid is None:
            sid = self._surface.create_surface(batch[0], st.config.window_mode)
            st.surface_window_id = sid
            logger.info(f"  [scheduler] Window {sid} opened with {batch[0]}")
            opened.append(batch[0])
            rest = batch[1:]

        for url in rest:
            try:
                self._surface.create_tab(sid, url)
            except Exception as e:
                logger.warning(f"  [scheduler] Failed to create tab for {url}: {e}")
                continue
            opened.append(url)
        return sid, opened

    def _open_batch(self, batch: list[str]) -> None:
        """
        Allocate tabs for ``batch`` and create slots positionally.

        Items whose tab never materialized go back to the front of the queue,
        in batch order.  Raises SurfaceAllocationError if no window could be
        obtained or its tabs could not be listed.
        """
        if not batch:
            return
        st = self.state
        with self._surface_guard:
            try:
                sid, opened = self._ensure_surface(batch)
            except SurfaceAllocationError:
                raise
            except Exception as e:
                raise SurfaceAllocationError(str(e)) from e

            try:
                self._surface.sweep_strays(sid, batch)
            except Exception as e:
                logger.debug(f"  [scheduler] Stray sweep failed: {e}")

            try:
                tabs = self._surface.query_tabs(sid)
            except Exception as e:
                raise SurfaceAllocationError(f"could not list tabs of window {sid}: {e}") from e

        fresh = [t for t in tabs if t.tab_id not in st.slots]
        n = min(len(opened), len(fresh))
        leftovers = list(batch)
        for i in range(n):
            tab = fresh[i]
            st.slots[tab.tab_id] = Slot(tab.tab_id, opened[i] or tab.url)
            leftovers.remove(opened[i])

        if leftovers:
            st.queue.extendleft(reversed(leftovers))
            logger.warning(
                f"  [scheduler] Only {n}/{len(batch)} tab(s) materialized — "
                f"{len(leftovers)} item(s) requeued"
            )

    def _open_monitor_window(self) -> None:
        cfg = self.state.config
        if not cfg.open_monitor_window:
            return
        try:
            self.state.monitor_window_id = self._surface.create_surface(cfg.monitor_url, "popup")
        except Exception as e:
            logger.warning(f"  [scheduler] Failed to open monitor window: {e}")

    def _close_tab(self, tab_id: int) -> None:
        try:
            self._surface.remove_tab(tab_id)
        except Exception as e:
            logger.debug(f"  [scheduler] remove_tab({tab_id}) failed: {e}")

    # ── Poll cycle ───────────────────────────────────────────────────────

    def tick(self) -> None:
        """Run one poll cycle."""
        st = self.state
        if st.phase not in (PHASE_WAITING, PHASE_POLLING):
            return
        cfg = st.config
        st.cycles += 1

        # 1. Abort
        if self._abort.is_set():
            st.timer_active = False
            self._finish_aborted()
            return

        # 2. Hard deadline
        if self._clock.monotonic() - st.started_at > cfg.max_wait_s:
            st.timer_active = False
            logger.warning(
                f"  [scheduler] Max wait of {cfg.max_wait_minutes} min reached — "
                f"finalizing with {len(st.resolved)} resolved"
            )
            self._publish(PHASE_WARNING, "Max wait reached — proceeding with current loaded tabs")
            self._finalize(collect_loaded=True)
            return

        # 3. Window still there?
        try:
            if st.surface_window_id is None:
                raise SurfaceLostError("no window")
            self._surface.get_surface(st.surface_window_id)
        except SurfaceLostError:
            self._recover()
            self._publish_progress()
            if not st.queue and not st.slots:
                st.timer_active = False
                self._finalize()
            return

        # 4. Observe tabs, settle stable ones
        try:
            tabs = self._surface.query_tabs(st.surface_window_id)
        except Exception as e:
            st.timer_active = False
            logger.error(f"  [scheduler] Tab query failed: {e}")
            self._fail(f"Error during polling: {e}")
            return

        self._requeue_lost_tabs(tabs)

        for tab in tabs:
            if self._abort.is_set():
                break
            slot = st.slots.get(tab.tab_id)
            if slot is None:
                continue
            if slot.observe(tab):
                self._settle(slot, tab)

        # 5. Refill up to the concurrency window
        if not self._abort.is_set():
            self._refill()

        # 6. Status
        self._publish_progress()

        # 7. Completion
        if not st.queue and not st.slots:
            st.timer_active = False
            self._finalize()

    def _requeue_lost_tabs(self, tabs: list[TabInfo]) -> None:
        """Slots whose tab vanished from the window give their item back to the queue front."""
        st = self.state
        present = {t.tab_id for t in tabs}
        lost = [slot for tab_id, slot in st.slots.items() if tab_id not in present]
        for slot in lost:
            del st.slots[slot.slot_id]
        if lost:
            st.queue.extendleft(reversed([s.pending_url for s in lost]))
            logger.warning(f"  [scheduler] {len(lost)} tab(s) disappeared — items requeued")

    def _settle(self, slot: Slot, tab: TabInfo) -> None:
        """Record a stable tab and reuse it for the next queued item (or close it)."""
        st = self.state
        st.resolved.append(tab.url)
        del st.slots[slot.slot_id]
        logger.info(f"  ✓ Resolved [{len(st.resolved)}/{st.total_discovered}]: {slot.intended_url} → {tab.url}")

        if not st.queue:
            self._close_tab(tab.tab_id)
            return

        next_url = st.queue.popleft()
        try:
            updated = self._surface.update_tab(tab.tab_id, next_url)
        except Exception as e:
            st.queue.appendleft(next_url)
            logger.warning(f"  [scheduler] Tab reuse failed for {next_url}; requeued: {e}")
            self._close_tab(tab.tab_id)
            return

        if updated.surface_id != st.surface_window_id:
            st.queue.appendleft(next_url)
            logger.warning(
                f"  [scheduler] Reused tab landed in window {updated.surface_id}, "
                f"not {st.surface_window_id}; requeued {next_url}"
            )
            self._close_tab(updated.tab_id)
            return

        st.slots[updated.tab_id] = Slot(updated.tab_id, next_url)

    def _refill(self) -> None:
        """Open fresh tabs while below the concurrency window (after failed reuse or lost tabs)."""
        st = self.state
        while st.queue and len(st.slots) < st.config.max_concurrent:
            url = st.queue.popleft()
            try:
                tab_id = self._surface.create_tab(st.surface_window_id, url)
            except Exception as e:
                st.queue.appendleft(url)
                logger.warning(f"  [scheduler] Replacement tab failed; {url} stays queued: {e}")
                return
            st.slots[tab_id] = Slot(tab_id, url)

    # ── Recovery ─────────────────────────────────────────────────────────

    def _recover(self) -> None:
        """
        Rebuild after the window was lost.

        In-flight items go back to the queue front in slot order, then a new
        window is opened with a fresh batch.  Phase stays 'polling'.
        """
        st = self.state
        pending = [slot.pending_url for slot in st.slots.values()]
        st.slots.clear()
        st.surface_window_id = None
        st.queue.extendleft(reversed(pending))
        logger.warning(
            f"  [scheduler] Window lost — requeued {len(pending)} in-flight item(s), "
            f"{len(st.queue)} pending"
        )

        if not st.queue or self._abort.is_set():
            return

        batch = self._take_batch()
        try:
            self._open_batch(batch)
        except SurfaceAllocationError as e:
            st.queue.extendleft(reversed(batch))
            logger.error(f"  [scheduler] Recovery could not open a window: {e} — retrying next cycle")
            return
        logger.info(f"  [scheduler] Recovered — {len(st.slots)} slot(s) reopened")

    # ── Finalize / terminal phases ───────────────────────────────────────

    def _finalize(self, *, collect_loaded: bool = False) -> None:
        """
        completing → done (or error when the report fails), then cleanup.

        With ``collect_loaded`` (deadline path) every tracked tab that is loaded
        right now is collected with its current URL, best effort.
        """
        st = self.state
        st.timer_active = False

        if collect_loaded and st.surface_window_id is not None:
            try:
                tabs = self._surface.query_tabs(st.surface_window_id)
            except Exception as e:
                logger.warning(f"  [scheduler] Could not read tabs at deadline: {e}")
                tabs = []
            for tab in tabs:
                slot = st.slots.get(tab.tab_id)
                if slot is not None and tab.loaded:
                    st.resolved.append(tab.url)
                    del st.slots[slot.slot_id]
                    self._close_tab(tab.tab_id)

        count = len(st.resolved)
        self._publish(PHASE_COMPLETING, f"Posting {count} resolved urls...")

        try:
            outcome = self._reporter.submit(st.resolved)
        except ReportError as e:
            logger.error(f"  [report] {e}")
            self._publish(PHASE_ERROR, str(e), last_error_sample=e.preview)
            self._cleanup()
            return

        if outcome.posted:
            message = f"Posted {count}. Server: {collapse_preview(outcome.body, 200)}"
        else:
            message = f"Collected {count} resolved urls (no report endpoint configured)."
        self._publish(PHASE_DONE, message)
        logger.info(f"RUN COMPLETE — {count}/{st.total_discovered} resolved")
        self._cleanup()

    def _fail(self, message: str, *, sample: str = "") -> None:
        self.state.timer_active = False
        self._publish(PHASE_ERROR, message, last_error_sample=sample)
        self._cleanup()

    def _finish_aborted(self) -> None:
        self.state.timer_active = False
        logger.warning(f"  [scheduler] Run aborted — {len(self.state.resolved)} resolved before abort")
        self._publish(PHASE_ABORTED, "Abort requested — run stopped")
        self._cleanup()

    def _cleanup(self) -> None:
        """Release owned windows and transient bookkeeping; schedule the idle reset."""
        st = self.state
        self.last_terminal = self._snapshot
        with self._surface_guard:
            for attr in ("surface_window_id", "monitor_window_id"):
                window_id = getattr(st, attr)
                if window_id is None:
                    continue
                try:
                    self._surface.close_surface(window_id)
                except Exception as e:
                    logger.debug(f"  [scheduler] close_surface({window_id}) failed: {e}")
                setattr(st, attr, None)
        st.slots.clear()
        st.queue.clear()
        st.timer_active = False
        self._abort.clear()
        delay = st.config.reset_delay_s if st.config else 0
        st.idle_due_at = self._clock.monotonic() + delay

    def _reset_to_idle(self) -> None:
        st = self.state
        st.idle_due_at = None
        self._publish(PHASE_IDLE, "Ready.", counts=False, active_links=[])
        self.runs_completed += 1
