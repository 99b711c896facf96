from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple, Union

from .errors import ConfigError
from .filters import FilterState, available_types, visible
from .keys import PENDING_TIMEOUT_SECONDS, Action, KeyBindingTable, KeyResolver, Matched, format_sequence
from .models import Board, FetchState, WorkItem
from .scheduler import FetchScheduler, ListCompletion

logger = logging.getLogger('adoboards')

# single keys bound to these switch boards even while typing a search
BOARD_SWITCH_ACTIONS = (Action.NEXT_BOARD, Action.PREVIOUS_BOARD)


# -----------------------------
# Views
# -----------------------------
class ViewKind(enum.Enum):
    LIST = "list"
    DETAIL = "detail"
    SEARCH = "search"
    TYPE_FILTER = "type_filter"


@dataclass(frozen=True)
class ListView:
    kind = ViewKind.LIST


@dataclass(frozen=True)
class DetailView:
    board_index: int
    item_id: int
    kind = ViewKind.DETAIL


@dataclass(frozen=True)
class SearchView:
    previous: "View"
    original_query: str = ""
    kind = ViewKind.SEARCH


@dataclass(frozen=True)
class TypeFilterView:
    previous: "View"
    cursor: int = 0
    kind = ViewKind.TYPE_FILTER


View = Union[ListView, DetailView, SearchView, TypeFilterView]


# -----------------------------
# Snapshot handed to the renderer
# -----------------------------
@dataclass(frozen=True)
class BoardRow:
    label: str
    state: FetchState
    item_count: int
    active: bool
    error: Optional[str] = None

    @property
    def loading(self) -> bool:
        return self.state is FetchState.LOADING


@dataclass(frozen=True)
class DetailPayload:
    item: Optional[WorkItem]
    stale: bool = False
    loading: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class TypeFilterMenu:
    types: Tuple[str, ...]
    selected: FrozenSet[str]
    cursor: int


@dataclass(frozen=True)
class LaunchRequest:
    kind: str       # "browser" or "editor"
    target: str


@dataclass(frozen=True)
class ViewSnapshot:
    view: ViewKind
    boards: Tuple[BoardRow, ...]
    active_board: int
    rows: Tuple[WorkItem, ...]
    selected: Optional[int]
    loading: bool
    error: Optional[str]
    filter: FilterState
    search_query: Optional[str] = None
    pending_keys: str = ""
    preview: Optional[WorkItem] = None
    detail: Optional[DetailPayload] = None
    type_filter: Optional[TypeFilterMenu] = None
    status_line: str = ""
    launches: Tuple[LaunchRequest, ...] = field(default_factory=tuple)
    should_exit: bool = False

    @property
    def empty(self) -> bool:
        return not self.rows

    @property
    def selected_item(self) -> Optional[WorkItem]:
        if self.selected is None:
            return None
        return self.rows[self.selected]


# -----------------------------
# Controller
# -----------------------------
class SessionController:
    """Single-threaded view model for one interactive session.

    All state lives on this object. Keys come in through `handle_key`, fetch
    results through `poll` (both drain the scheduler first), and every call
    returns a fresh `ViewSnapshot`.
    """

    def __init__(
        self,
        scheduler: FetchScheduler,
        keys: KeyBindingTable,
        me: str = "",
        config_path: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        key_timeout: float = PENDING_TIMEOUT_SECONDS,
    ):
        if not scheduler.boards:
            raise ConfigError("No boards configured")
        self.scheduler = scheduler
        self.boards: Sequence[Board] = scheduler.boards
        self.me = me
        self.config_path = config_path
        self.resolver = KeyResolver(keys, timeout=key_timeout, clock=clock)
        self.active_board = 0
        self.view: View = ListView()
        self.filter = FilterState()
        self.selected = 0
        self.preview_visible = False
        self.status_line = ""
        self.should_exit = False
        self._launches: List[LaunchRequest] = []

        self._list_actions: Dict[Action, Callable[[], None]] = {
            Action.QUIT: self._quit,
            Action.NEXT: lambda: self._move(1),
            Action.PREVIOUS: lambda: self._move(-1),
            Action.JUMP_TO_TOP: self._jump_to_top,
            Action.JUMP_TO_END: self._jump_to_end,
            Action.HOVER: self._toggle_preview,
            Action.OPEN: self._open_detail,
            Action.OPEN_IN_BROWSER: self._open_in_browser,
            Action.NEXT_BOARD: lambda: self._switch_board(1),
            Action.PREVIOUS_BOARD: lambda: self._switch_board(-1),
            Action.SEARCH: self._start_search,
            Action.ASSIGNED_TO_ME_FILTER: self._toggle_assigned_to_me,
            Action.WORK_ITEM_TYPE_FILTER: self._open_type_filter,
            Action.REFRESH: self._refresh_active,
            Action.EDIT_CONFIG: self._edit_config,
            Action.CLEAR_FILTERS: self._clear_filters,
        }
        self._detail_actions: Dict[Action, Callable[[], None]] = {
            Action.QUIT: self._close_detail,
            Action.OPEN_IN_BROWSER: self._open_in_browser,
            Action.NEXT_BOARD: lambda: self._switch_board(1),
            Action.PREVIOUS_BOARD: lambda: self._switch_board(-1),
            Action.REFRESH: self._refresh_detail,
            Action.EDIT_CONFIG: self._edit_config,
        }
        self._search_actions: Dict[Action, Callable[[], None]] = {
            Action.NEXT: lambda: self._move(1),
            Action.PREVIOUS: lambda: self._move(-1),
            Action.NEXT_BOARD: lambda: self._switch_board(1),
            Action.PREVIOUS_BOARD: lambda: self._switch_board(-1),
        }
        self._type_filter_actions: Dict[Action, Callable[[], None]] = {
            Action.QUIT: self._close_type_filter,
            Action.NEXT: lambda: self._move_type_cursor(1),
            Action.PREVIOUS: lambda: self._move_type_cursor(-1),
            Action.NEXT_BOARD: lambda: self._switch_board(1),
            Action.PREVIOUS_BOARD: lambda: self._switch_board(-1),
        }

    # -- queries
    @property
    def board(self) -> Board:
        return self.boards[self.active_board]

    def visible_items(self) -> List[WorkItem]:
        return visible(self.board.items.values(), self.filter, self.me)

    def selected_item(self) -> Optional[WorkItem]:
        rows = self.visible_items()
        if not rows:
            return None
        return rows[min(self.selected, len(rows) - 1)]

    def _type_choices(self) -> List[str]:
        return sorted(set(available_types(self.board.items.values())) | set(self.filter.types))

    # -- entry points
    def start(self, prefetch_all: bool = False) -> ViewSnapshot:
        self.scheduler.request_refresh(self.active_board)
        if prefetch_all:
            for index in range(len(self.boards)):
                if index != self.active_board:
                    self.scheduler.request_refresh(index)
        self.status_line = f"Loading {self.board.label}…"
        return self.snapshot()

    def poll(self) -> ViewSnapshot:
        """Apply finished fetches and expire a stale pending key buffer."""
        self._launches = []
        self._sync()
        self.resolver.expire()
        return self.snapshot()

    def handle_key(self, key: str) -> ViewSnapshot:
        self._launches = []
        self._sync()
        view = self.view
        if isinstance(view, SearchView):
            self._search_key(view, key)
        elif isinstance(view, TypeFilterView):
            self._type_filter_key(view, key)
        elif isinstance(view, DetailView):
            self._detail_key(key)
        else:
            self._dispatch(key, self._list_actions)
        return self.snapshot()

    # -- fetch reconciliation
    def _sync(self) -> None:
        anchor = self.selected_item()
        applied = self.scheduler.drain()
        mine = [c for c in applied if isinstance(c, ListCompletion) and c.board_index == self.active_board]
        if not mine:
            return
        rows = self.visible_items()
        if anchor is not None:
            for index, item in enumerate(rows):
                if item.id == anchor.id:
                    self.selected = index
                    break
        self._clamp()
        if isinstance(self.view, TypeFilterView):
            self._move_type_cursor(0)
        last = mine[-1]
        if last.error is not None:
            self.status_line = f"Refresh failed: {last.error}"
        else:
            self.status_line = f"Loaded {len(self.board.items)} items"

    # -- key routing
    def _dispatch(self, key: str, actions: Dict[Action, Callable[[], None]]) -> None:
        result = self.resolver.feed(key)
        if not isinstance(result, Matched):
            return
        handler = actions.get(result.action)
        if handler is None:
            logger.debug("Action %s ignored in %s view", result.action.value, self.view.kind.value)
            return
        logger.debug("Action %s", result.action.value)
        handler()

    def _search_key(self, view: SearchView, key: str) -> None:
        if key == "escape":
            self.filter = self.filter.with_query(view.original_query)
            self.view = view.previous
            self.status_line = ""
            self._clamp()
        elif key == "enter":
            self.view = view.previous
            self.status_line = f"Search: {self.filter.query}" if self.filter.query else ""
        elif key == "backspace":
            self.filter = self.filter.with_query(self.filter.query[:-1])
            self._clamp()
        elif len(key) == 1 and self.resolver.table.lookup((key,)) not in BOARD_SWITCH_ACTIONS:
            self.filter = self.filter.with_query(self.filter.query + key)
            self._clamp()
        else:
            self._dispatch(key, self._search_actions)

    def _type_filter_key(self, view: TypeFilterView, key: str) -> None:
        if key == "escape":
            self._close_type_filter()
        elif key in ("enter", " "):
            choices = self._type_choices()
            if choices:
                self.filter = self.filter.toggle_type(choices[min(view.cursor, len(choices) - 1)])
                self._clamp()
        elif key == "c":
            self.filter = self.filter.without_types()
            self._clamp()
            self._close_type_filter()
        else:
            self._dispatch(key, self._type_filter_actions)

    def _detail_key(self, key: str) -> None:
        if key == "escape":
            self.resolver.reset()
            self._close_detail()
            return
        self._dispatch(key, self._detail_actions)

    # -- selection
    def _clamp(self) -> None:
        count = len(self.visible_items())
        if count == 0:
            self.selected = 0
        else:
            self.selected = max(0, min(self.selected, count - 1))

    def _move(self, step: int) -> None:
        self.preview_visible = False
        self.selected += step
        self._clamp()

    def _jump_to_top(self) -> None:
        self.preview_visible = False
        self.selected = 0

    def _jump_to_end(self) -> None:
        self.preview_visible = False
        self.selected = max(0, len(self.visible_items()) - 1)

    def _toggle_preview(self) -> None:
        self.preview_visible = not self.preview_visible and self.selected_item() is not None

    # -- boards
    def _switch_board(self, step: int) -> None:
        self.active_board = (self.active_board + step) % len(self.boards)
        self.selected = 0
        self.preview_visible = False
        if isinstance(self.view, (DetailView, TypeFilterView)):
            self.view = ListView()
        self._clamp()
        board = self.board
        if not board.ever_fetched:
            self.scheduler.request_refresh(self.active_board)
        self.status_line = f"Board {self.active_board + 1}/{len(self.boards)}: {board.label}"

    def _refresh_active(self) -> None:
        if self.scheduler.request_refresh(self.active_board):
            self.status_line = f"Refreshing {self.board.label}…"
        else:
            self.status_line = "Refresh already in progress"

    # -- filters
    def _start_search(self) -> None:
        self.preview_visible = False
        self.resolver.reset()
        self.view = SearchView(previous=self.view, original_query=self.filter.query)

    def _toggle_assigned_to_me(self) -> None:
        self.preview_visible = False
        self.filter = self.filter.toggle_assigned_to_me()
        self._clamp()
        self.status_line = "Assigned to me" if self.filter.assigned_to_me else "All assignees"

    def _clear_filters(self) -> None:
        self.preview_visible = False
        if self.filter.active:
            self.filter = FilterState()
            self._clamp()
            self.status_line = "Filters cleared"

    def _open_type_filter(self) -> None:
        self.preview_visible = False
        self.view = TypeFilterView(previous=self.view)

    def _close_type_filter(self) -> None:
        view = self.view
        self.view = view.previous if isinstance(view, TypeFilterView) else ListView()

    def _move_type_cursor(self, step: int) -> None:
        view = self.view
        if not isinstance(view, TypeFilterView):
            return
        count = len(self._type_choices())
        cursor = max(0, min(view.cursor + step, count - 1)) if count else 0
        self.view = TypeFilterView(previous=view.previous, cursor=cursor)

    # -- detail
    def _open_detail(self) -> None:
        item = self.selected_item()
        if item is None:
            self.status_line = "Nothing selected"
            return
        self.preview_visible = False
        self.view = DetailView(self.active_board, item.id)
        self.scheduler.request_detail(self.active_board, item.id)

    def _close_detail(self) -> None:
        self.view = ListView()
        self._clamp()

    def _refresh_detail(self) -> None:
        view = self.view
        if isinstance(view, DetailView):
            self.scheduler.request_detail(view.board_index, view.item_id)

    def _detail_item(self, view: DetailView) -> Optional[WorkItem]:
        board = self.boards[view.board_index]
        return board.details.get(view.item_id) or board.items.get(view.item_id)

    # -- outward requests
    def _quit(self) -> None:
        self.should_exit = True

    def _open_in_browser(self) -> None:
        view = self.view
        item = self._detail_item(view) if isinstance(view, DetailView) else self.selected_item()
        if item is None:
            self.status_line = "Nothing to open"
            return
        url = item.url or self.board.spec.item_url(item.id)
        self._launches.append(LaunchRequest("browser", url))
        self.status_line = f"Opening {url}"

    def _edit_config(self) -> None:
        if not self.config_path:
            self.status_line = "No config file to edit"
            return
        self._launches.append(LaunchRequest("editor", self.config_path))
        self.status_line = "Restart adoboards for config changes to take effect"

    # -- snapshot
    def _board_rows(self) -> Tuple[BoardRow, ...]:
        rows = []
        for index, board in enumerate(self.boards):
            error = board.last_error
            rows.append(BoardRow(
                label=board.label,
                state=board.status.state,
                item_count=len(board.items),
                active=index == self.active_board,
                error=str(error) if error is not None else None,
            ))
        return tuple(rows)

    def _detail_payload(self, view: DetailView) -> DetailPayload:
        board = self.boards[view.board_index]
        item = self._detail_item(view)
        stale = view.item_id in board.stale_ids or (item is None and board.ever_fetched)
        error = board.detail_errors.get(view.item_id)
        return DetailPayload(
            item=item,
            stale=stale,
            loading=self.scheduler.detail_in_flight(view.board_index, view.item_id),
            error=str(error) if error is not None else None,
        )

    def snapshot(self) -> ViewSnapshot:
        rows = tuple(self.visible_items())
        selected = min(self.selected, len(rows) - 1) if rows else None
        view = self.view
        board = self.board
        detail = self._detail_payload(view) if isinstance(view, DetailView) else None
        type_menu = None
        if isinstance(view, TypeFilterView):
            type_menu = TypeFilterMenu(tuple(self._type_choices()), self.filter.types, view.cursor)
        preview = None
        if self.preview_visible and selected is not None and isinstance(view, ListView):
            preview = rows[selected]
        return ViewSnapshot(
            view=view.kind,
            boards=self._board_rows(),
            active_board=self.active_board,
            rows=rows,
            selected=selected,
            loading=board.status.is_loading or not board.ever_fetched,
            error=str(board.last_error) if board.last_error is not None else None,
            filter=self.filter,
            search_query=self.filter.query if isinstance(view, SearchView) else None,
            pending_keys=format_sequence(self.resolver.buffer),
            preview=preview,
            detail=detail,
            type_filter=type_menu,
            status_line=self.status_line,
            launches=tuple(self._launches),
            should_exit=self.should_exit,
        )
