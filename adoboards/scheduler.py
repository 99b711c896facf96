from __future__ import annotations

import datetime as dt
import logging
import queue
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Set, Tuple, Union

from .auth import CredentialResolver
from .client import BoardClient
from .errors import ApiError, NetworkError, NotFound
from .models import Board, BoardSpec, WorkItem

logger = logging.getLogger('adoboards')


@dataclass(frozen=True)
class ListCompletion:
    board_index: int
    items: Optional[List[WorkItem]] = None
    error: Optional[ApiError] = None
    finished_at: dt.datetime = field(default_factory=dt.datetime.now)


@dataclass(frozen=True)
class DetailCompletion:
    board_index: int
    item_id: int
    item: Optional[WorkItem] = None
    error: Optional[ApiError] = None


Completion = Union[ListCompletion, DetailCompletion]


def _future_error(future: Future) -> Optional[ApiError]:
    if future.cancelled():
        return NetworkError("fetch cancelled")
    exc = future.exception()
    if exc is None:
        return None
    if isinstance(exc, ApiError):
        return exc
    logger.error("Fetch worker crashed", exc_info=(type(exc), exc, exc.__traceback__))
    return ApiError(f"{type(exc).__name__}: {exc}")


class FetchScheduler:
    """Run board fetches on a worker pool, one in flight per board.

    Workers never touch a Board. Each finished fetch is posted to a queue and
    `drain()` applies it on the caller's thread, so the session controller sees
    every mutation happen on its own loop.
    """

    def __init__(
        self,
        boards: Sequence[Board],
        client: BoardClient,
        credentials: CredentialResolver,
        executor: Optional[Executor] = None,
        notify: Optional[Callable[[], None]] = None,
        max_workers: int = 4,
    ):
        self.boards: List[Board] = list(boards)
        self._client = client
        self._credentials = credentials
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="adoboards-fetch")
        self._notify = notify
        self._completions: "queue.Queue[Completion]" = queue.Queue()
        self._details_in_flight: Set[Tuple[int, int]] = set()
        self.fetch_counts: List[int] = [0] * len(self.boards)

    def set_notify(self, notify: Optional[Callable[[], None]]) -> None:
        self._notify = notify

    # -- worker side
    def _fetch_items(self, spec: BoardSpec) -> List[WorkItem]:
        logger.info("Fetching %s", spec.label)
        return self._credentials.call(lambda token: self._client.list_items(spec, token))

    def _fetch_detail(self, spec: BoardSpec, item_id: int) -> WorkItem:
        return self._credentials.call(lambda token: self._client.fetch_item_detail(spec, token, item_id))

    def _post(self, completion: Completion) -> None:
        self._completions.put(completion)
        if self._notify is not None:
            try:
                self._notify()
            except Exception:
                logger.debug("Fetch notify callback failed", exc_info=True)

    def _post_list(self, board_index: int, future: Future) -> None:
        error = _future_error(future)
        if error is not None:
            self._post(ListCompletion(board_index, error=error))
        else:
            self._post(ListCompletion(board_index, items=list(future.result())))

    def _post_detail(self, board_index: int, item_id: int, future: Future) -> None:
        error = _future_error(future)
        item = None if error is not None else future.result()
        self._post(DetailCompletion(board_index, item_id, item=item, error=error))

    # -- controller side
    def request_refresh(self, board_index: int) -> bool:
        """Start a fetch for the board unless one is already in flight."""
        board = self.boards[board_index]
        if board.status.is_loading:
            logger.debug("Refresh of %s ignored; fetch already in flight", board.label)
            return False
        board.mark_loading()
        self.fetch_counts[board_index] += 1
        try:
            future = self._executor.submit(self._fetch_items, board.spec)
        except RuntimeError as exc:
            # executor already shut down
            board.record_failure(NetworkError(str(exc)))
            return False
        future.add_done_callback(lambda f, i=board_index: self._post_list(i, f))
        return True

    def request_detail(self, board_index: int, item_id: int) -> bool:
        key = (board_index, item_id)
        if key in self._details_in_flight:
            return False
        board = self.boards[board_index]
        self._details_in_flight.add(key)
        board.detail_errors.pop(item_id, None)
        try:
            future = self._executor.submit(self._fetch_detail, board.spec, item_id)
        except RuntimeError as exc:
            self._details_in_flight.discard(key)
            board.record_detail_failure(item_id, NetworkError(str(exc)))
            return False
        future.add_done_callback(lambda f, i=board_index, w=item_id: self._post_detail(i, w, f))
        return True

    def detail_in_flight(self, board_index: int, item_id: int) -> bool:
        return (board_index, item_id) in self._details_in_flight

    def _apply(self, completion: Completion) -> None:
        board = self.boards[completion.board_index]
        if isinstance(completion, ListCompletion):
            if completion.error is None:
                board.replace_items(completion.items or [], completion.finished_at)
                logger.info("Fetched %d items for %s", len(board.items), board.label)
            else:
                board.record_failure(completion.error)
                logger.warning("Fetch of %s failed: %s", board.label, completion.error)
            return
        self._details_in_flight.discard((completion.board_index, completion.item_id))
        if completion.item is not None:
            board.store_detail(completion.item)
        elif isinstance(completion.error, NotFound):
            logger.info("Work item %d vanished from %s", completion.item_id, board.label)
            board.mark_stale(completion.item_id)
        elif completion.error is not None:
            logger.warning("Detail fetch of %d failed: %s", completion.item_id, completion.error)
            board.record_detail_failure(completion.item_id, completion.error)

    def drain(self) -> List[Completion]:
        """Apply every queued completion and return them in arrival order."""
        applied: List[Completion] = []
        while True:
            try:
                completion = self._completions.get_nowait()
            except queue.Empty:
                break
            self._apply(completion)
            applied.append(completion)
        return applied

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
