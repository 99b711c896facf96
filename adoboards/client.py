from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional
from urllib.parse import quote

import requests

from .auth import Token
from .errors import ApiError, AuthError, NetworkError, NotFound
from .models import BoardSpec, WorkItem, clean_ado_text

logger = logging.getLogger('adoboards')

BASE_URL = "https://dev.azure.com"
API_VERSION = "7.1"
# the work items batch endpoint accepts at most 200 ids per call
BATCH_SIZE = 200

FIELD_TITLE = "System.Title"
FIELD_TYPE = "System.WorkItemType"
FIELD_STATE = "System.State"
FIELD_ASSIGNED_TO = "System.AssignedTo"
FIELD_DESCRIPTION = "System.Description"
FIELD_ACCEPTANCE = "Microsoft.VSTS.Common.AcceptanceCriteria"


def _session(token: Token) -> requests.Session:
    s = requests.Session()
    s.headers["Authorization"] = token.authorization()
    s.headers["Accept"] = "application/json"
    return s


def _q(part: str) -> str:
    return quote(part, safe="")


def _assigned_name(value: object) -> Optional[str]:
    if isinstance(value, dict):
        name = value.get("displayName")
        return str(name) if name else None
    if isinstance(value, str) and value:
        # older payloads use "Display Name <user@domain>"
        return value.split("<", 1)[0].strip() or None
    return None


def work_item_from_payload(payload: Dict[str, object], spec: BoardSpec) -> WorkItem:
    """Build a WorkItem from one `wit/workitems` entry."""
    raw_fields = payload.get("fields") or {}
    if not isinstance(raw_fields, dict):
        raw_fields = {}
    item_id = int(payload.get("id") or 0)

    def text(key: str) -> str:
        val = raw_fields.get(key)
        return clean_ado_text(val) if isinstance(val, str) else ""

    fields = {k: clean_ado_text(v) for k, v in raw_fields.items() if isinstance(v, str)}
    return WorkItem(
        id=item_id,
        title=text(FIELD_TITLE),
        type=text(FIELD_TYPE),
        state=text(FIELD_STATE),
        assigned_to=_assigned_name(raw_fields.get(FIELD_ASSIGNED_TO)),
        description=text(FIELD_DESCRIPTION),
        acceptance_criteria=text(FIELD_ACCEPTANCE),
        url=spec.item_url(item_id),
        fields=fields,
    )


def _target_ids(links: Iterable[object]) -> List[int]:
    out: List[int] = []
    seen = set()
    for link in links or []:
        if not isinstance(link, dict):
            continue
        target = link.get("target") or {}
        wid = target.get("id") if isinstance(target, dict) else None
        if wid is None or wid in seen:
            continue
        seen.add(wid)
        out.append(int(wid))
    return out


class BoardClient:
    """Read-only Azure DevOps work item calls. Holds no board state."""

    def __init__(self, base_url: str = BASE_URL, timeout: float = 30.0,
                 session_factory: Callable[[Token], requests.Session] = _session):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session_factory = session_factory

    # -- urls
    def _project_url(self, spec: BoardSpec) -> str:
        return f"{self.base_url}/{_q(spec.organization)}/{_q(spec.project)}"

    def _team_url(self, spec: BoardSpec) -> str:
        return f"{self._project_url(spec)}/{_q(spec.team)}"

    # -- transport
    def _get(self, session: requests.Session, url: str, params: Optional[Dict[str, object]] = None) -> Dict:
        query = dict(params or {})
        query.setdefault("api-version", API_VERSION)
        try:
            resp = session.get(url, params=query, timeout=self.timeout)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
            raise NetworkError(f"{url}: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise NetworkError(f"{url}: {exc}") from exc
        status = resp.status_code
        if status in (401, 403):
            raise AuthError(f"HTTP {status} from {url}", status)
        if status == 203:
            # rejected PATs get a sign-in page instead of a 401
            raise AuthError(f"HTTP 203 sign-in page from {url}", status)
        if status == 404:
            raise NotFound(f"HTTP 404 from {url}", status)
        if status == 429 or status >= 500:
            raise NetworkError(f"HTTP {status} from {url}", status)
        if status >= 300:
            raise ApiError(f"HTTP {status} from {url}: {resp.text[:200]}", status)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ApiError(f"Invalid JSON from {url}", status) from exc
        return data if isinstance(data, dict) else {}

    # -- queries
    def backlog_ids(self, session: requests.Session, spec: BoardSpec, backlog_level: str) -> List[int]:
        url = f"{self._team_url(spec)}/_apis/work/backlogs/{_q(backlog_level)}/workItems"
        data = self._get(session, url)
        return _target_ids(data.get("workItems") or [])

    def resolve_iteration_id(self, session: requests.Session, spec: BoardSpec) -> str:
        url = f"{self._team_url(spec)}/_apis/work/teamsettings/iterations"
        data = self._get(session, url)
        for it in data.get("value") or []:
            if not isinstance(it, dict):
                continue
            if spec.iteration in (it.get("path"), it.get("name")) and it.get("id"):
                return str(it["id"])
        raise NotFound(f"Iteration not found for team '{spec.team}' and path or name '{spec.iteration}'")

    def iteration_ids(self, session: requests.Session, spec: BoardSpec) -> List[int]:
        iteration_id = self.resolve_iteration_id(session, spec)
        url = f"{self._team_url(spec)}/_apis/work/teamsettings/iterations/{_q(iteration_id)}/workitems"
        data = self._get(session, url)
        return _target_ids(data.get("workItemRelations") or [])

    def get_items(self, session: requests.Session, spec: BoardSpec, ids: List[int]) -> List[WorkItem]:
        items: List[WorkItem] = []
        url = f"{self._project_url(spec)}/_apis/wit/workitems"
        for start in range(0, len(ids), BATCH_SIZE):
            chunk = ids[start:start + BATCH_SIZE]
            params = {"ids": ",".join(str(i) for i in chunk), "errorPolicy": "omit"}
            data = self._get(session, url, params)
            for entry in data.get("value") or []:
                if isinstance(entry, dict) and entry.get("id") is not None:
                    items.append(work_item_from_payload(entry, spec))
        return items

    def list_items(self, board: BoardSpec, token: Token, query_filter: Optional[str] = None) -> List[WorkItem]:
        """Fetch the board's backlog (or iteration) items in API order.

        `query_filter` overrides the board's backlog level category.
        """
        session = self._session_factory(token)
        try:
            if board.iteration:
                ids = self.iteration_ids(session, board)
            else:
                ids = self.backlog_ids(session, board, query_filter or board.backlog_level)
            if not ids:
                logger.info("No work items for %s", board.label)
                return []
            return self.get_items(session, board, ids)
        finally:
            session.close()

    def fetch_item_detail(self, board: BoardSpec, token: Token, item_id: int) -> WorkItem:
        session = self._session_factory(token)
        try:
            url = f"{self._project_url(board)}/_apis/wit/workitems/{int(item_id)}"
            data = self._get(session, url)
        finally:
            session.close()
        if data.get("id") is None:
            raise NotFound(f"Work item {item_id} not found")
        return work_item_from_payload(data, board)
