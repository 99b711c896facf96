from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

from .errors import ConfigError

KeySeq = Tuple[str, ...]

# how long a partial sequence such as the first "g" of "gg" stays pending
PENDING_TIMEOUT_SECONDS = 1.0


class Action(enum.Enum):
    QUIT = "quit"
    NEXT = "next"
    PREVIOUS = "previous"
    HOVER = "hover"
    OPEN = "open"
    OPEN_IN_BROWSER = "open_in_browser"
    NEXT_BOARD = "next_board"
    PREVIOUS_BOARD = "previous_board"
    SEARCH = "search"
    ASSIGNED_TO_ME_FILTER = "assigned_to_me_filter"
    WORK_ITEM_TYPE_FILTER = "work_item_type_filter"
    JUMP_TO_TOP = "jump_to_top"
    JUMP_TO_END = "jump_to_end"
    REFRESH = "refresh"
    EDIT_CONFIG = "edit_config"
    CLEAR_FILTERS = "clear_filters"


DEFAULT_KEYS: Dict[str, List[str]] = {
    "quit": ["q"],
    "next": ["j", "<down>"],
    "previous": ["k", "<up>"],
    "hover": ["K"],
    "open": ["<enter>"],
    "open_in_browser": ["o"],
    "next_board": [">"],
    "previous_board": ["<"],
    "search": ["/"],
    "assigned_to_me_filter": ["m"],
    "work_item_type_filter": ["t"],
    "jump_to_top": ["gg"],
    "jump_to_end": ["G"],
    "refresh": ["r"],
    "edit_config": ["c"],
    "clear_filters": ["<escape>"],
}

# names accepted inside <...>; the value is the key name the UI reports
NAMED_KEYS: Dict[str, str] = {
    "enter": "enter", "return": "enter", "cr": "enter",
    "escape": "escape", "esc": "escape",
    "tab": "tab", "s-tab": "s-tab",
    "backspace": "backspace", "bs": "backspace",
    "delete": "delete", "del": "delete",
    "up": "up", "down": "down", "left": "left", "right": "right",
    "home": "home", "end": "end",
    "pageup": "pageup", "pagedown": "pagedown",
    "space": " ", "lt": "<", "gt": ">",
}


def parse_sequence(text: str) -> KeySeq:
    """Split a binding string into keys: "gg" -> ("g", "g"), "<c-n>" -> ("c-n",)."""
    keys: List[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "<":
            end = text.find(">", i + 1)
            if end > i + 1:
                name = text[i + 1:end].lower()
                if name in NAMED_KEYS:
                    keys.append(NAMED_KEYS[name])
                    i = end + 1
                    continue
                if name.startswith("c-") and len(name) == 3:
                    keys.append(name)
                    i = end + 1
                    continue
        keys.append(ch)
        i += 1
    return tuple(keys)


def format_sequence(seq: KeySeq) -> str:
    out = []
    for key in seq:
        if len(key) == 1 and key != " ":
            out.append(key)
        else:
            out.append(f"<{'space' if key == ' ' else key}>")
    return "".join(out)


class KeyBindingTable:
    """Immutable key-sequence -> Action table, validated on construction."""

    def __init__(self, bindings: Mapping[KeySeq, Action]):
        self._bindings: Dict[KeySeq, Action] = dict(bindings)
        self._prefixes: Set[KeySeq] = {seq[:n] for seq in self._bindings for n in range(1, len(seq))}

    @classmethod
    def from_config(cls, raw: Optional[Mapping[str, Union[str, Sequence[str]]]] = None,
                    defaults: Mapping[str, Sequence[str]] = DEFAULT_KEYS) -> "KeyBindingTable":
        merged: Dict[str, List[str]] = {name: list(seqs) for name, seqs in defaults.items()}
        for name, value in (raw or {}).items():
            try:
                Action(name)
            except ValueError:
                raise ConfigError(f"Unknown key action '{name}'") from None
            if isinstance(value, str):
                merged[name] = [value]
            elif isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
                merged[name] = list(value)
            else:
                raise ConfigError(f"Key binding for '{name}' must be a string or a list of strings")

        bindings: Dict[KeySeq, Action] = {}
        for name, texts in merged.items():
            action = Action(name)
            for text in texts:
                seq = parse_sequence(text)
                if not seq:
                    raise ConfigError(f"Empty key binding for '{name}'")
                other = bindings.get(seq)
                if other is not None and other is not action:
                    raise ConfigError(
                        f"Key '{format_sequence(seq)}' is bound to both '{other.value}' and '{name}'"
                    )
                bindings[seq] = action
        return cls(bindings)

    def lookup(self, seq: KeySeq) -> Optional[Action]:
        return self._bindings.get(seq)

    def is_prefix(self, seq: KeySeq) -> bool:
        return seq in self._prefixes

    def sequences_for(self, action: Action) -> List[str]:
        return [format_sequence(seq) for seq, act in self._bindings.items() if act is action]

    def __len__(self) -> int:
        return len(self._bindings)


# -----------------------------
# Resolution
# -----------------------------
@dataclass(frozen=True)
class Matched:
    action: Action
    sequence: KeySeq
    # kept pending when a longer binding starts with `sequence`
    buffer: KeySeq = ()


@dataclass(frozen=True)
class Pending:
    buffer: KeySeq


@dataclass(frozen=True)
class Unbound:
    key: str


Resolution = Union[Matched, Pending, Unbound]


def resolve(table: KeyBindingTable, buffer: KeySeq, key: str) -> Resolution:
    """Resolve one key press against the pending buffer.

    The longest candidate (buffer plus key) is tried first. An exact match fires
    at once, and stays pending when it also starts a longer binding, so `g`
    and `gg` can both be bound. A key that breaks the sequence drops the buffer
    and is looked up on its own.
    """
    candidate = tuple(buffer) + (key,)
    action = table.lookup(candidate)
    if action is not None:
        return Matched(action, candidate, candidate if table.is_prefix(candidate) else ())
    if table.is_prefix(candidate):
        return Pending(candidate)
    if buffer:
        return resolve(table, (), key)
    return Unbound(key)


class KeyResolver:
    """Stateful wrapper around `resolve` holding the pending buffer."""

    def __init__(self, table: KeyBindingTable, timeout: float = PENDING_TIMEOUT_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.table = table
        self.timeout = timeout
        self._clock = clock
        self.buffer: KeySeq = ()
        self._last_key_at = 0.0

    def expire(self) -> bool:
        """Drop a pending buffer older than the timeout; True if one was dropped."""
        if self.buffer and self._clock() - self._last_key_at >= self.timeout:
            self.buffer = ()
            return True
        return False

    def reset(self) -> None:
        self.buffer = ()

    def feed(self, key: str) -> Resolution:
        self.expire()
        result = resolve(self.table, self.buffer, key)
        self.buffer = result.buffer if isinstance(result, (Pending, Matched)) else ()
        self._last_key_at = self._clock()
        return result
