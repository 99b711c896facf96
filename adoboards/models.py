from __future__ import annotations

import datetime as dt
import enum
import html
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional

from .errors import ApiError

DEFAULT_BACKLOG_LEVEL = "Microsoft.RequirementCategory"


# -----------------------------
# Board identity
# -----------------------------
@dataclass(frozen=True)
class BoardSpec:
    organization: str
    project: str
    team: str
    iteration: Optional[str] = None              # iteration path or name; None => backlog
    backlog_level: str = DEFAULT_BACKLOG_LEVEL

    @property
    def label(self) -> str:
        base = f"{self.project}/{self.team}"
        if self.iteration:
            return f"{base} @ {self.iteration}"
        return base

    def item_url(self, item_id: int) -> str:
        return f"https://dev.azure.com/{self.organization}/{self.project}/_workitems/edit/{item_id}"


# -----------------------------
# Work items
# -----------------------------
@dataclass(frozen=True)
class WorkItem:
    id: int
    title: str
    type: str = ""
    state: str = ""
    assigned_to: Optional[str] = None
    description: str = ""
    acceptance_criteria: str = ""
    url: str = ""
    fields: Mapping[str, str] = field(default_factory=dict, compare=False, hash=False)


_HTML_TAG_RE = re.compile(r"<[^>]*>")


def _keep_img(match: re.Match) -> str:
    tag = match.group(0)
    name = re.split(r"[ >/]", tag.lstrip("<").lstrip("/"), maxsplit=1)[0]
    return tag if name.lower() == "img" else ""


def clean_ado_text(value: Optional[str]) -> str:
    """Decode HTML entities and drop markup, keeping <img> tags."""
    if not value:
        return ""
    decoded = html.unescape(value)
    return _HTML_TAG_RE.sub(_keep_img, decoded).strip()


# -----------------------------
# Board state
# -----------------------------
class FetchState(enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class FetchStatus:
    state: FetchState = FetchState.IDLE
    fetched_at: Optional[dt.datetime] = None
    error: Optional[ApiError] = None

    @property
    def is_loading(self) -> bool:
        return self.state is FetchState.LOADING

    @property
    def is_failed(self) -> bool:
        return self.state is FetchState.FAILED


class Board:
    """One configured board and the last item set fetched for it.

    Only the fetch scheduler mutates a board. A failed refresh keeps the previous
    items so stale data stays on screen next to the error indicator.
    """

    def __init__(self, spec: BoardSpec):
        self.spec = spec
        self.items: Dict[int, WorkItem] = {}
        self.status = FetchStatus()
        self.ever_fetched = False
        # last fetch outcome, kept while a new fetch is loading
        self.last_error: Optional[ApiError] = None
        self.details: Dict[int, WorkItem] = {}
        self.stale_ids: set = set()
        self.detail_errors: Dict[int, ApiError] = {}

    def __repr__(self) -> str:
        return f"Board({self.spec.label!r}, {self.status.state.value}, items={len(self.items)})"

    @property
    def label(self) -> str:
        return self.spec.label

    def mark_loading(self) -> None:
        self.status = FetchStatus(FetchState.LOADING, self.status.fetched_at, None)

    def replace_items(self, items: Iterable[WorkItem], fetched_at: Optional[dt.datetime] = None) -> None:
        self.items = {it.id: it for it in items}
        self.ever_fetched = True
        self.last_error = None
        # details are hydrated again on demand
        self.details = {}
        self.detail_errors = {}
        self.stale_ids = {i for i in self.stale_ids if i not in self.items}
        self.status = FetchStatus(FetchState.READY, fetched_at or dt.datetime.now(), None)

    def record_failure(self, error: ApiError) -> None:
        self.ever_fetched = True
        self.last_error = error
        self.status = FetchStatus(FetchState.FAILED, self.status.fetched_at, error)

    def store_detail(self, item: WorkItem) -> None:
        self.details[item.id] = item
        self.stale_ids.discard(item.id)
        self.detail_errors.pop(item.id, None)

    def mark_stale(self, item_id: int) -> None:
        self.stale_ids.add(item_id)
        self.details.pop(item_id, None)

    def record_detail_failure(self, item_id: int, error: ApiError) -> None:
        self.detail_errors[item_id] = error
