import threading
from concurrent.futures import ThreadPoolExecutor

from adoboards.auth import CredentialResolver, Token
from adoboards.errors import ApiError, AuthError, NetworkError, NotFound
from adoboards.models import Board, FetchState
from adoboards.scheduler import DetailCompletion, FetchScheduler, ListCompletion

from conftest import StubClient, make_item, make_spec, static_credentials


def _scheduler(boards, client, executor, **kwargs):
    return FetchScheduler(boards, client, static_credentials(), executor=executor, **kwargs)


def test_second_board_completing_first(boards, executor):
    client = StubClient({'Team A': [make_item(1)], 'Team B': [make_item(2), make_item(3)]})
    scheduler = _scheduler(boards, client, executor)
    scheduler.request_refresh(0)
    scheduler.request_refresh(1)

    executor.run(1)
    applied = scheduler.drain()

    assert [type(c) for c in applied] == [ListCompletion]
    assert boards[1].status.state is FetchState.READY
    assert list(boards[1].items) == [2, 3]
    assert boards[0].status.state is FetchState.LOADING
    assert boards[0].items == {}


def test_refresh_while_loading_is_ignored(boards, executor):
    scheduler = _scheduler(boards, StubClient({'Team A': [make_item(1)]}), executor)
    assert scheduler.request_refresh(0) is True
    assert scheduler.request_refresh(0) is False
    assert scheduler.fetch_counts == [1, 0]
    assert len(executor.queue) == 1

    executor.run_all()
    scheduler.drain()
    assert scheduler.request_refresh(0) is True
    assert scheduler.fetch_counts == [2, 0]


def test_completion_is_not_applied_until_drain(boards, executor):
    scheduler = _scheduler(boards, StubClient({'Team A': [make_item(1)]}), executor)
    scheduler.request_refresh(0)
    executor.run_all()
    assert boards[0].status.is_loading
    scheduler.drain()
    assert boards[0].status.state is FetchState.READY


def test_failed_refresh_keeps_previous_items(boards, executor):
    client = StubClient({'Team A': [make_item(1), make_item(2)]})
    scheduler = _scheduler(boards, client, executor)
    scheduler.request_refresh(0)
    executor.run_all()
    scheduler.drain()

    client.lists['Team A'] = NetworkError('HTTP 503', 503)
    scheduler.request_refresh(0)
    executor.run_all()
    scheduler.drain()

    board = boards[0]
    assert board.status.state is FetchState.FAILED
    assert list(board.items) == [1, 2]
    assert isinstance(board.last_error, NetworkError)


def test_unexpected_worker_exception_becomes_api_error(boards, executor):
    client = StubClient({'Team A': KeyError('fields')})
    scheduler = _scheduler(boards, client, executor)
    scheduler.request_refresh(0)
    executor.run_all()
    scheduler.drain()
    error = boards[0].last_error
    assert type(error) is ApiError
    assert 'KeyError' in str(error)


def test_auth_failure_is_retried_with_fresh_credentials(boards, executor):
    tokens = iter(['old', 'new'])
    credentials = CredentialResolver([lambda: Token(value=next(tokens))])

    class RejectingClient(StubClient):
        def list_items(self, board, token, query_filter=None):
            if token.value == 'old':
                raise AuthError('HTTP 401', 401)
            return [make_item(9)]

    scheduler = FetchScheduler(boards, RejectingClient(), credentials, executor=executor)
    scheduler.request_refresh(0)
    executor.run_all()
    scheduler.drain()
    assert list(boards[0].items) == [9]
    assert credentials.resolutions == 2


def test_notify_is_called_for_each_completion(boards, executor):
    calls = []
    scheduler = _scheduler(boards, StubClient(), executor, notify=lambda: calls.append(1))
    scheduler.request_refresh(0)
    scheduler.request_refresh(1)
    executor.run_all()
    assert len(calls) == 2


def test_detail_success_stale_and_dedupe(boards, executor):
    client = StubClient(
        {'Team A': [make_item(1), make_item(2)]},
        details={1: make_item(1, 'Fresh title'), 2: NotFound('gone', 404)},
    )
    scheduler = _scheduler(boards, client, executor)
    scheduler.request_refresh(0)
    executor.run_all()
    scheduler.drain()

    assert scheduler.request_detail(0, 1) is True
    assert scheduler.request_detail(0, 1) is False
    assert scheduler.detail_in_flight(0, 1)
    scheduler.request_detail(0, 2)
    executor.run_all()
    applied = scheduler.drain()

    assert all(isinstance(c, DetailCompletion) for c in applied)
    board = boards[0]
    assert board.details[1].title == 'Fresh title'
    assert 2 in board.stale_ids
    assert not scheduler.detail_in_flight(0, 1)


def test_detail_failure_is_recorded_and_cleared_on_retry(boards, executor):
    client = StubClient({'Team A': [make_item(1)]}, details={1: NetworkError('timeout')})
    scheduler = _scheduler(boards, client, executor)
    scheduler.request_detail(0, 1)
    executor.run_all()
    scheduler.drain()
    assert isinstance(boards[0].detail_errors[1], NetworkError)

    scheduler.request_detail(0, 1)
    assert 1 not in boards[0].detail_errors


def test_submit_after_shutdown_records_failure(boards, executor):
    scheduler = _scheduler(boards, StubClient(), executor)
    executor.shutdown()
    assert scheduler.request_refresh(0) is False
    assert boards[0].status.is_failed


def test_threaded_fetches_share_one_reauthentication():
    boards = [Board(make_spec(f'Team {n}')) for n in range(4)]
    lock = threading.Lock()
    issued = []

    def strategy():
        with lock:
            issued.append(1)
            return Token(value=f'v{len(issued)}')

    barrier = threading.Barrier(4)

    class RejectFirstToken(StubClient):
        def list_items(self, board, token, query_filter=None):
            if token.value == 'v1':
                barrier.wait(timeout=5)
                raise AuthError('HTTP 401', 401)
            return [make_item(len(board.team))]

    credentials = CredentialResolver([strategy])
    pool = ThreadPoolExecutor(max_workers=4)
    scheduler = FetchScheduler(boards, RejectFirstToken(), credentials, executor=pool)
    for index in range(4):
        scheduler.request_refresh(index)
    pool.shutdown(wait=True)
    scheduler.drain()

    assert all(b.status.state is FetchState.READY for b in boards)
    assert credentials.resolutions == 2
