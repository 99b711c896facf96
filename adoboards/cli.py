# adoboards: browse Azure DevOps boards from the terminal
#
# Default hotkeys (override any of them under `keys:` in the config)
#   j/k, down/up   move the selection        gg / G   jump to top / end
#   enter          open the work item        o        open it in the browser
#   K              toggle a hover preview    > / <    next / previous board
#   /              search id or title        m        assigned-to-me filter
#   t              work item type filter     esc      clear filters / close
#   r              refresh the board         c        edit the config file
#   q              quit (or leave the detail view)
#
# Environment
# - ADO_TOKEN (personal access token, used when `az login` is unavailable; also read from .env)
# - ADOBOARDS_CONFIG (config path, default ~/.config/adoboards/config.yml)
# - MOCK_FETCH=1 (optional offline demo)

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from logging.handlers import RotatingFileHandler
from typing import Dict, List, Optional, Sequence

from . import __version__
from .auth import CredentialResolver, Token
from .client import BoardClient
from .config import APPNAME, AppConfig, default_config_path, ensure_config, load_config
from .errors import AdoBoardsError, ConfigError, NotFound
from .launch import open_in_editor
from .models import Board, BoardSpec, WorkItem
from .scheduler import FetchScheduler
from .session import SessionController
from .ui import run_ui

logger = logging.getLogger('adoboards')


def default_log_path() -> str:
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.expanduser("~/.config")
    return os.path.join(base, APPNAME, f"{APPNAME}.log")


def setup_logging(log_file: Optional[str] = None, log_level: str = "ERROR") -> str:
    """Send the adoboards logger to a rotating file; the terminal stays clean."""
    log_path = log_file or default_log_path()
    d = os.path.dirname(log_path)
    if d:
        os.makedirs(d, exist_ok=True)
    # reset handlers so --log-level reliably controls file output
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    fh.setLevel(getattr(logging, str(log_level).upper(), logging.ERROR))
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    return log_path


# -----------------------------
# Offline demo (MOCK_FETCH=1)
# -----------------------------
MOCK_TYPES = ["User Story", "Bug", "Task", "Feature"]
MOCK_STATES = ["New", "Active", "Resolved", "Closed"]


def generate_mock_items(spec: BoardSpec, me: str = "", count: int = 24) -> List[WorkItem]:
    """Generate synthetic work items for offline demo & testing."""
    assignees = [me or "Demo User", "Alex Doe", None]
    seed = sum(ord(ch) for ch in spec.label) % 97
    items: List[WorkItem] = []
    for n in range(count):
        item_id = 1000 + seed * 100 + n
        wtype = MOCK_TYPES[(seed + n) % len(MOCK_TYPES)]
        items.append(WorkItem(
            id=item_id,
            title=f"{spec.team} {wtype.lower()} #{n + 1}",
            type=wtype,
            state=MOCK_STATES[(n // 2) % len(MOCK_STATES)],
            assigned_to=assignees[n % len(assignees)],
            description=f"Demo {wtype.lower()} generated for {spec.label}.",
            acceptance_criteria="- Works offline\n- Shows up in the list" if wtype == "User Story" else "",
            url=spec.item_url(item_id),
        ))
    return items


class MockBoardClient:
    """Drop-in for BoardClient that never touches the network."""

    def __init__(self, me: str = "", delay: float = 0.3):
        self.me = me
        self.delay = delay
        self._items: Dict[BoardSpec, Dict[int, WorkItem]] = {}

    def list_items(self, board: BoardSpec, token: Token, query_filter: Optional[str] = None) -> List[WorkItem]:
        time.sleep(self.delay)
        items = generate_mock_items(board, self.me)
        self._items[board] = {it.id: it for it in items}
        return items

    def fetch_item_detail(self, board: BoardSpec, token: Token, item_id: int) -> WorkItem:
        time.sleep(self.delay / 2)
        item = self._items.get(board, {}).get(item_id)
        if item is None:
            raise NotFound(f"Work item {item_id} not found")
        return item


def _mock_token() -> Token:
    return Token(value="mock", scheme="Bearer", source="mock")


# -----------------------------
# Wiring
# -----------------------------
def build_scheduler(cfg: AppConfig, executor=None) -> FetchScheduler:
    boards = [Board(spec) for spec in cfg.boards]
    if os.environ.get("MOCK_FETCH") == "1":
        logger.info("MOCK_FETCH enabled; generating mock work items")
        client = MockBoardClient(cfg.me)
        credentials = CredentialResolver([_mock_token])
    else:
        client = BoardClient()
        credentials = CredentialResolver()
    return FetchScheduler(boards, client, credentials, executor=executor)


def run_summary(cfg: AppConfig, out=None) -> int:
    """Fetch every board once and print one line per board. Non-zero if any failed."""
    out = out or sys.stdout
    executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="adoboards-fetch")
    scheduler = build_scheduler(cfg, executor=executor)
    for index in range(len(scheduler.boards)):
        scheduler.request_refresh(index)
    executor.shutdown(wait=True)
    scheduler.drain()
    failed = 0
    print(f"Boards: {len(scheduler.boards)}", file=out)
    for board in scheduler.boards:
        if board.status.is_failed:
            failed += 1
            print(f"  {board.label}: FAILED ({board.last_error})", file=out)
            continue
        counts = Counter(it.type or "?" for it in board.items.values())
        breakdown = ", ".join(f"{name} {n}" for name, n in sorted(counts.items()))
        print(f"  {board.label}: {len(board.items)} items" + (f" ({breakdown})" if breakdown else ""), file=out)
    return 1 if failed else 0


def _first_run(path: str) -> int:
    print(f"Created a config template at {path}")
    print("Add your boards (and common.me) to it, then run adoboards again.")
    if sys.stdin.isatty():
        try:
            answer = input("Open it in your editor now? [Y/n] ").strip().lower()
        except EOFError:
            answer = "n"
        if answer in ("", "y", "yes"):
            open_in_editor(path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog=APPNAME, description="Browse Azure DevOps boards in the terminal")
    ap.add_argument("--config", help="Path to YAML config (default: $ADOBOARDS_CONFIG or ~/.config/adoboards/config.yml)")
    ap.add_argument("--log-level", default="ERROR", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--log-file", help=f"Log file path (default: {default_log_path()})")
    ap.add_argument("--no-ui", action="store_true", help="Fetch every board once and print a summary")
    ap.add_argument("--edit-config", action="store_true", help="Open the config in $EDITOR and exit")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_file, args.log_level)
    config_path = os.path.expanduser(args.config) if args.config else default_config_path()

    if args.edit_config:
        ensure_config(config_path)
        return 0 if open_in_editor(config_path) else 1

    if ensure_config(config_path):
        return _first_run(config_path)

    try:
        cfg = load_config(config_path)
    except ConfigError as exc:
        logger.error("Config error: %s", exc)
        print(f"adoboards: {exc}", file=sys.stderr)
        print(f"Fix it with: adoboards --edit-config (file: {config_path})", file=sys.stderr)
        return 2

    if args.no_ui:
        return run_summary(cfg)

    try:
        controller = SessionController(build_scheduler(cfg), cfg.keys, me=cfg.me, config_path=config_path)
    except AdoBoardsError as exc:
        print(f"adoboards: {exc}", file=sys.stderr)
        return 2
    run_ui(controller, prefetch=cfg.prefetch)
    return 0


if __name__ == "__main__":
    sys.exit(main())
