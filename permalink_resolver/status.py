"""
Run status — immutable snapshots and the fire-and-forget publisher.

The scheduler republishes a RunState after every transition.  The publisher:
  - keeps the latest snapshot in memory (pull on demand),
  - persists it to a JSON status file (atomic temp + rename under a filelock),
  - fans it out to subscriber queues (bounded; oldest entry dropped on overflow).

Publishing never raises: a missing file, a full queue, or no subscribers at
all must never affect a run.
"""

import json
import logging
import os
import queue
import threading
import time
from dataclasses import asdict, dataclass, field, replace

from filelock import FileLock, Timeout

from permalink_resolver.utils import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

# ── Phase constants ───────────────────────────────────────────────────────
PHASE_IDLE       = "idle"
PHASE_FETCHING   = "fetching"
PHASE_OPENED     = "opened"
PHASE_WAITING    = "waiting"
PHASE_POLLING    = "polling"
PHASE_WARNING    = "warning"
PHASE_COMPLETING = "completing"
PHASE_DONE       = "done"
PHASE_ABORTED    = "aborted"
PHASE_ERROR      = "error"

TERMINAL_PHASES = (PHASE_DONE, PHASE_ABORTED, PHASE_ERROR)
ACTIVE_PHASES = (
    PHASE_FETCHING, PHASE_OPENED, PHASE_WAITING,
    PHASE_POLLING, PHASE_WARNING, PHASE_COMPLETING,
)


@dataclass(frozen=True)
class RunState:
    """One published status snapshot."""

    phase: str = PHASE_IDLE
    message: str = "Ready."
    total: int = 0
    completed: int = 0
    active: int = 0
    queued: int = 0
    active_links: tuple = ()
    resolved_links: tuple = ()
    last_error_sample: str = ""
    updated_at: float = field(default_factory=time.time)

    def evolve(self, **updates) -> "RunState":
        """Return a copy with ``updates`` applied and a fresh timestamp."""
        for key in ("active_links", "resolved_links"):
            if key in updates:
                updates[key] = tuple(updates[key])
        updates.setdefault("updated_at", time.time())
        return replace(self, **updates)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def to_dict(self) -> dict:
        data = asdict(self)
        data["active_links"] = list(self.active_links)
        data["resolved_links"] = list(self.resolved_links)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RunState":
        known = cls.__dataclass_fields__
        kwargs = {k: v for k, v in (data or {}).items() if k in known}
        for key in ("active_links", "resolved_links"):
            if key in kwargs:
                kwargs[key] = tuple(kwargs[key] or ())
        return cls(**kwargs)


class StatusPublisher:
    """
    Latest-value status channel.

    Args:
        status_file: Optional JSON path for persisted snapshots.
        subscriber_capacity: Max snapshots buffered per subscriber queue.
    """

    def __init__(self, status_file: str | None = None, *, subscriber_capacity: int = 100):
        self._status_file = status_file
        self._file_lock = FileLock(status_file + ".lock", timeout=2) if status_file else None
        self._lock = threading.Lock()
        self._latest = RunState()
        self._subscribers: list[queue.Queue] = []
        self._capacity = subscriber_capacity

    # ── Public API ────────────────────────────────────────────────────────

    def latest(self) -> RunState:
        with self._lock:
            return self._latest

    def publish(self, state: RunState) -> None:
        """Store, persist and broadcast ``state``. Never raises."""
        with self._lock:
            self._latest = state
            subscribers = list(self._subscribers)

        for q in subscribers:
            self._offer(q, state)

        self._persist(state)
        logger.debug(f"  [status] {state.phase}: {state.message}")

    def subscribe(self) -> queue.Queue:
        """Register a subscriber; it immediately receives the latest snapshot."""
        q: queue.Queue = queue.Queue(maxsize=self._capacity)
        with self._lock:
            self._subscribers.append(q)
            current = self._latest
        self._offer(q, current)
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            try:
                self._subscribers.remove(q)
            except ValueError:
                pass

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    # ── Private helpers ───────────────────────────────────────────────────

    @staticmethod
    def _offer(q: queue.Queue, state: RunState) -> None:
        """Non-blocking put; drop the oldest snapshot when the queue is full."""
        while True:
            try:
                q.put_nowait(state)
                return
            except queue.Full:
                try:
                    q.get_nowait()
                except queue.Empty:
                    pass

    def _persist(self, state: RunState) -> None:
        """Write the snapshot atomically. Failures are logged and dropped."""
        if not self._status_file:
            return
        tmp = self._status_file + ".tmp"
        try:
            with self._file_lock:
                directory = os.path.dirname(self._status_file)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                with open(tmp, "w", encoding="utf-8") as f:
                    json.dump(state.to_dict(), f, indent=2)
                os.replace(tmp, self._status_file)
        except (Timeout, OSError, TypeError, ValueError) as e:
            logger.debug(f"  [status] Persist skipped: {e}")
            try:
                os.unlink(tmp)
            except OSError:
                pass


def read_status_file(status_file: str) -> RunState | None:
    """Load the last persisted snapshot, or None if there is none (or it is unreadable)."""
    if not os.path.exists(status_file):
        return None
    try:
        with FileLock(status_file + ".lock", timeout=5):
            with open(status_file, "r", encoding="utf-8") as f:
                return RunState.from_dict(json.load(f))
    except (Timeout, json.JSONDecodeError, OSError) as e:
        logger.warning(f"Status file corrupt or unreadable: {e}")
        return None
