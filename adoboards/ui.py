from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from prompt_toolkit import Application
from prompt_toolkit.application import get_app, run_in_terminal
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension
from prompt_toolkit.styles import Style
from prompt_toolkit.utils import get_cwidth

from . import launch
from .client import (
    FIELD_ACCEPTANCE,
    FIELD_ASSIGNED_TO,
    FIELD_DESCRIPTION,
    FIELD_STATE,
    FIELD_TITLE,
    FIELD_TYPE,
)
from .models import WorkItem
from .session import LaunchRequest, SessionController, ViewKind, ViewSnapshot

logger = logging.getLogger('adoboards')

Fragments = List[Tuple[str, str]]

BASE_STYLE: Dict[str, str] = {
    'board': '#a8a8a8',
    'board.active': 'bold reverse #ffd75f',
    'board.error': 'bold #ff8787',
    'board.loading': '#87d7ff',
    'header.rule': '#5f5f5f',
    'row': '#f0f0f0',
    'row.id': '#87d7ff',
    'row.type': '#d7afff',
    'row.state': '#87ff5f',
    'row.assignee': '#ffd787',
    'row.selected': 'bold reverse',
    'list.empty': 'italic #a8a8a8',
    'list.error': 'bold #ff8787',
    'preview': 'bg:#303030 #f0f0f0',
    'detail.title': 'bold #ffd75f',
    'detail.label': 'bold #87d7ff',
    'detail.text': '#f0f0f0',
    'detail.stale': 'bold #ff8787',
    'detail.meta': '#a8a8a8',
    'menu.item': '#d0d0d0',
    'menu.selected': 'bold #87ff5f',
    'menu.cursor': 'reverse',
    'footer': 'bg:#1c1c1c #d0d0d0',
    'footer.search': 'bg:#1c1c1c bold #ffffff',
    'footer.filter': 'bg:#1c1c1c #5fd7af',
    'footer.pending': 'bg:#1c1c1c bold #ffd75f',
}

# named keys forwarded to the controller as-is
NAMED_KEYS = (
    'enter', 'escape', 'backspace', 'delete', 'tab', 's-tab',
    'up', 'down', 'left', 'right', 'home', 'end', 'pageup', 'pagedown',
)
# ctrl keys that do not alias enter/tab/backspace/newline; c-c is reserved for exit
CTRL_KEYS = tuple(f'c-{ch}' for ch in 'abdefgklnopqrstuvwxyz')
# already rendered above the raw field list
DETAIL_SHOWN_FIELDS = frozenset({
    FIELD_TITLE, FIELD_TYPE, FIELD_STATE, FIELD_ASSIGNED_TO, FIELD_DESCRIPTION, FIELD_ACCEPTANCE,
})


# -----------------------------
# Rendering (pure functions of a snapshot)
# -----------------------------
def _sanitize_cell_text(s: Optional[str]) -> str:
    return (s or "").replace("\n", " ").replace("\r", " ")


def _truncate(s: str, maxlen: int) -> str:
    """Truncate to a maximum display width, preserving whole glyphs."""
    s = _sanitize_cell_text(s)
    if maxlen <= 0:
        return ""
    if get_cwidth(s) <= maxlen:
        return s
    out: List[str] = []
    width = 0
    for ch in s:
        ch_w = get_cwidth(ch)
        if width + ch_w + 1 > maxlen:
            break
        out.append(ch)
        width += ch_w
    return "".join(out) + "…"


def _cell(text: Optional[str], width: int) -> str:
    """Pad/truncate to an exact display width plus one separating space."""
    raw = _truncate(text, width)
    return raw + " " * (max(0, width - get_cwidth(raw)) + 1)


def window_start(count: int, selected: Optional[int], height: int) -> int:
    """First row to draw so that `selected` stays inside a `height` row window."""
    if height <= 0 or count <= height or selected is None:
        return 0
    start = selected - height // 2
    return max(0, min(start, count - height))


def build_header_fragments(snap: ViewSnapshot) -> Fragments:
    out: Fragments = []
    for index, row in enumerate(snap.boards):
        marker = ''
        if row.loading:
            marker = ' …'
        elif row.error:
            marker = ' !'
        if row.active:
            style = 'class:board.active'
        else:
            style = 'class:board.error' if row.error else 'class:board'
        out.append((style, f' {index + 1}:{row.label} ({row.item_count}){marker} '))
        out.append(('', ' '))
    out.append(('', '\n'))
    return out


def _row_fragments(item: WorkItem, selected: bool) -> Fragments:
    extra = ' class:row.selected' if selected else ''
    return [
        ('class:row.id' + extra, _cell(str(item.id), 7)),
        ('class:row.type' + extra, _cell(item.type, 13)),
        ('class:row.state' + extra, _cell(item.state, 11)),
        ('class:row.assignee' + extra, _cell(item.assigned_to or 'Unassigned', 19)),
        ('class:row' + extra, item.title or ''),
        ('', '\n'),
    ]


def build_list_fragments(snap: ViewSnapshot, height: int = 40) -> Fragments:
    out: Fragments = []
    if snap.error:
        note = ' (showing cached items)' if snap.rows else ''
        out.append(('class:list.error', f'! Refresh failed: {snap.error}{note}\n'))
    if snap.empty:
        if snap.loading:
            out.append(('class:list.empty', 'Loading work items…\n'))
        elif snap.filter.active:
            out.append(('class:list.empty', 'No work items match the current filters.\n'))
        else:
            out.append(('class:list.empty', 'No work items on this board.\n'))
        return out
    if snap.loading:
        out.append(('class:board.loading', 'Refreshing…\n'))
    start = window_start(len(snap.rows), snap.selected, height)
    for index in range(start, min(len(snap.rows), start + max(1, height))):
        out.extend(_row_fragments(snap.rows[index], index == snap.selected))
    if snap.preview is not None:
        item = snap.preview
        out.append(('class:preview', f'\n {item.id}: {item.title}\n'))
        out.append(('class:preview', f' Assigned To: {item.assigned_to or "Unassigned"}\n'))
        out.append(('class:preview', f' State: {item.state}\n'))
    return out


def build_detail_fragments(snap: ViewSnapshot) -> Fragments:
    detail = snap.detail
    if detail is None or detail.item is None:
        if detail is not None and detail.stale:
            return [('class:detail.stale', 'This work item no longer exists on the server.\n')]
        return [('class:list.empty', 'No item selected\n')]
    item = detail.item
    out: Fragments = [('class:detail.title', f'{item.id}: {item.title}\n')]
    if detail.stale:
        out.append(('class:detail.stale', 'This work item was removed on the server; showing the last copy.\n'))
    if detail.error:
        out.append(('class:list.error', f'! Could not refresh details: {detail.error}\n'))
    if detail.loading:
        out.append(('class:board.loading', 'Loading details…\n'))
    meta = f'{item.type} | {item.state} | {item.assigned_to or "Unassigned"}'
    out.append(('class:detail.meta', meta + '\n'))
    if item.url:
        out.append(('class:detail.meta', item.url + '\n'))
    for label, text in (('Description', item.description), ('Acceptance Criteria', item.acceptance_criteria)):
        out.append(('', '\n'))
        out.append(('class:detail.label', label + '\n'))
        out.append(('class:detail.text', (text or '-') + '\n'))
    extra = [(k, v) for k, v in sorted(item.fields.items()) if k not in DETAIL_SHOWN_FIELDS and v]
    if extra:
        out.append(('', '\n'))
        out.append(('class:detail.label', 'Fields\n'))
        for name, value in extra:
            out.append(('class:detail.meta', f'{name}: '))
            out.append(('class:detail.text', _sanitize_cell_text(value) + '\n'))
    return out


def build_type_filter_fragments(snap: ViewSnapshot) -> Fragments:
    menu = snap.type_filter
    out: Fragments = [('class:detail.label', 'Filter by work item type (enter/space toggle, c clear, esc close)\n\n')]
    if menu is None or not menu.types:
        out.append(('class:list.empty', '(no work item types on this board)\n'))
        return out
    for index, name in enumerate(menu.types):
        mark = '[x]' if name in menu.selected else '[ ]'
        style = 'class:menu.selected' if name in menu.selected else 'class:menu.item'
        if index == menu.cursor:
            style += ' class:menu.cursor'
        out.append((style, f' {mark} {name} '))
        out.append(('', '\n'))
    return out


def build_body_fragments(snap: ViewSnapshot, height: int = 40) -> Fragments:
    if snap.view is ViewKind.DETAIL:
        return build_detail_fragments(snap)
    if snap.view is ViewKind.TYPE_FILTER:
        return build_type_filter_fragments(snap)
    return build_list_fragments(snap, height)


def build_footer_fragments(snap: ViewSnapshot) -> Fragments:
    out: Fragments = []
    if snap.search_query is not None:
        out.append(('class:footer.search', f'/{snap.search_query}'))
        out.append(('class:footer', '  (enter accept, esc cancel)'))
        return out
    flags = []
    if snap.filter.query:
        flags.append(f'search:{snap.filter.query}')
    if snap.filter.assigned_to_me:
        flags.append('me')
    if snap.filter.types:
        flags.append('types:' + ','.join(sorted(snap.filter.types)))
    if snap.rows:
        position = f' {(snap.selected or 0) + 1}/{len(snap.rows)} '
    else:
        position = ' 0/0 '
    out.append(('class:footer', position))
    if flags:
        out.append(('class:footer.filter', '[' + '] ['.join(flags) + '] '))
    if snap.pending_keys:
        out.append(('class:footer.pending', snap.pending_keys + ' '))
    out.append(('class:footer', snap.status_line))
    return out


# -----------------------------
# Application glue
# -----------------------------
def handle_launches(requests: Tuple[LaunchRequest, ...],
                    editor: Callable[[str], bool] = launch.open_in_editor,
                    browser: Callable[[str], bool] = launch.open_in_browser,
                    in_terminal: Callable[[Callable[[], object]], object] = run_in_terminal) -> None:
    for req in requests:
        if req.kind == 'browser':
            browser(req.target)
        elif req.kind == 'editor':
            in_terminal(lambda path=req.target: editor(path))
        else:
            logger.warning("Unknown launch request %r", req)


def run_ui(controller: SessionController, prefetch: bool = False, poll_interval: float = 0.25) -> None:
    """Full-screen board browser driven by `controller`.

    Every key press goes to the controller; the screen is redrawn from the
    snapshot it returns. Fetch workers wake the loop through the scheduler's
    notify hook, and a ticker polls to expire half-typed key sequences.
    """
    snapshot = controller.start(prefetch_all=prefetch)
    app: Optional[Application] = None

    def body_height() -> int:
        try:
            return max(1, get_app().output.get_size().rows - 4)
        except Exception:
            return 40

    header_control = FormattedTextControl(text=lambda: build_header_fragments(snapshot))
    body_control = FormattedTextControl(text=lambda: build_body_fragments(snapshot, body_height()))
    footer_control = FormattedTextControl(text=lambda: build_footer_fragments(snapshot))

    container = HSplit([
        Window(content=header_control, height=Dimension.exact(1)),
        Window(char='─', height=Dimension.exact(1), style='class:header.rule'),
        Window(content=body_control, wrap_lines=False),
        Window(content=footer_control, height=Dimension.exact(1), style='class:footer'),
    ])

    def apply(snap: ViewSnapshot) -> None:
        nonlocal snapshot
        snapshot = snap
        if snap.launches:
            handle_launches(snap.launches)
        if snap.should_exit and app is not None:
            app.exit()
            return
        if app is not None:
            app.invalidate()

    kb = KeyBindings()

    def _forward(key: str) -> Callable:
        def handler(event) -> None:
            apply(controller.handle_key(key))
        return handler

    for name in NAMED_KEYS + CTRL_KEYS:
        kb.add(name)(_forward(name))

    @kb.add(Keys.Any)
    def _(event):
        data = event.data or ''
        if len(data) != 1 or not data.isprintable():
            return
        apply(controller.handle_key(data))

    @kb.add('c-c')
    def _(event):
        event.app.exit()

    def refresh() -> None:
        apply(controller.poll())

    async def _ticker():
        while True:
            await asyncio.sleep(poll_interval)
            refresh()

    def _pre_run() -> None:
        loop = asyncio.get_running_loop()
        controller.scheduler.set_notify(lambda: loop.call_soon_threadsafe(refresh))
        app.create_background_task(_ticker())

    app = Application(
        layout=Layout(container),
        key_bindings=kb,
        full_screen=True,
        style=Style.from_dict(BASE_STYLE),
    )
    # keep a lone Escape responsive
    app.ttimeoutlen = 0.05
    app.timeoutlen = 0.05
    try:
        app.run(pre_run=_pre_run)
    finally:
        controller.scheduler.set_notify(None)
        controller.scheduler.shutdown()
