"""
Exception taxonomy for a resolution run.

  SourceError            — link list fetch failed, was empty, or returned markup (fatal)
  SurfaceAllocationError — window/tab creation failed
  SurfaceLostError       — the render window disappeared (triggers recovery)
  PollError              — a tab query failed mid-cycle (fatal)
  ReportError            — result submission failed (surfaced, never undoes work)
"""


class ResolverError(Exception):
    """Base class for every error raised by the resolver."""


class SourceError(ResolverError):
    """The link source produced nothing usable.

    ``sample`` carries the first part of the fetched body for diagnostics.
    """

    def __init__(self, message: str, sample: str = ""):
        super().__init__(message)
        self.sample = sample


class SurfaceAllocationError(ResolverError):
    """A window or tab could not be created."""


class SurfaceLostError(ResolverError):
    """The surface window no longer exists."""


class PollError(ResolverError):
    """Querying the surface failed during a poll cycle."""


class ReportError(ResolverError):
    """Submitting results to the collector failed.

    ``kind`` is one of ``"markup"``, ``"rate_limited"``, ``"http"`` or ``"transport"``.
    """

    MARKUP = "markup"
    RATE_LIMITED = "rate_limited"
    HTTP = "http"
    TRANSPORT = "transport"

    def __init__(self, message: str, *, kind: str = HTTP, status_code: int | None = None, preview: str = ""):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.preview = preview

    @property
    def retryable(self) -> bool:
        return self.kind in (self.RATE_LIMITED, self.TRANSPORT)
