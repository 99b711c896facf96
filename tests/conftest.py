import os
import sys
from concurrent.futures import Future

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from adoboards.auth import CredentialResolver, Token
from adoboards.models import Board, BoardSpec, WorkItem


class ManualExecutor:
    """Executor that only runs submitted work when a test says so."""

    def __init__(self):
        self.queue = []
        self.closed = False

    def submit(self, fn, *args, **kwargs):
        if self.closed:
            raise RuntimeError('cannot schedule new futures after shutdown')
        fut = Future()
        self.queue.append((fut, fn, args, kwargs))
        return fut

    def run(self, index=0):
        fut, fn, args, kwargs = self.queue.pop(index)
        if not fut.set_running_or_notify_cancel():
            return fut
        try:
            fut.set_result(fn(*args, **kwargs))
        except BaseException as exc:
            fut.set_exception(exc)
        return fut

    def run_all(self):
        while self.queue:
            self.run(0)

    def shutdown(self, wait=True, cancel_futures=False):
        self.closed = True


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=''):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError('no json')
        return self._payload


class FakeSession:
    """Stand-in for requests.Session routing GETs by URL substring (first match wins)."""

    def __init__(self, routes=None):
        self.routes = list(routes or [])
        self.calls = []
        self.headers = {}
        self.closed = False

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, dict(params or {})))
        for needle, response in self.routes:
            if needle in url:
                if isinstance(response, Exception):
                    raise response
                return response
        return FakeResponse(404, {'message': 'not routed'})

    def close(self):
        self.closed = True


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class StubClient:
    """BoardClient double: per-board results keyed by team name.

    A result may be a list of items or an exception instance to raise.
    """

    def __init__(self, lists=None, details=None):
        self.lists = dict(lists or {})
        self.details = dict(details or {})
        self.list_calls = []
        self.detail_calls = []

    def list_items(self, board, token, query_filter=None):
        self.list_calls.append(board.team)
        result = self.lists.get(board.team, [])
        if isinstance(result, BaseException):
            raise result
        return list(result)

    def fetch_item_detail(self, board, token, item_id):
        self.detail_calls.append((board.team, item_id))
        result = self.details.get(item_id)
        if isinstance(result, BaseException):
            raise result
        if result is None:
            for item in self.lists.get(board.team, []):
                if item.id == item_id:
                    return item
        return result


def make_spec(team='Team A', **kwargs):
    kwargs.setdefault('organization', 'acme')
    kwargs.setdefault('project', 'Proj')
    return BoardSpec(team=team, **kwargs)


def make_item(item_id, title='Item', assigned_to=None, type='Task', state='Active', **kwargs):
    return WorkItem(id=item_id, title=title, type=type, state=state, assigned_to=assigned_to, **kwargs)


def static_credentials(value='token'):
    return CredentialResolver([lambda: Token(value=value, source='test')])


@pytest.fixture
def executor():
    return ManualExecutor()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def boards():
    return [Board(make_spec('Team A')), Board(make_spec('Team B'))]
