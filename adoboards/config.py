from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

import yaml

from .errors import ConfigError
from .keys import DEFAULT_KEYS, KeyBindingTable
from .models import DEFAULT_BACKLOG_LEVEL, BoardSpec

logger = logging.getLogger('adoboards')

APPNAME = "adoboards"
CONFIG_ENV_VAR = "ADOBOARDS_CONFIG"

PLACEHOLDER_BOARD = BoardSpec("<organization>", "<project>", "<team>")

CONFIG_TEMPLATE = """\
# adoboards configuration
#
# common.me must match your Azure DevOps display name exactly; it drives
# the "assigned to me" filter.
common:
  me: ""
  # fetch every board in the background at startup instead of on first visit
  prefetch: false

# One entry per board. Add `iteration: 'Project\\Sprint 1'` to browse a team
# iteration instead of the backlog.
boards:
  - organization: "<organization>"
    project: "<project>"
    team: "<team>"

# Override any key binding. Values are a key sequence or a list of them;
# named keys go in angle brackets, e.g. "<enter>", "<escape>", "<down>".
keys:
{keys}
"""


@dataclass
class AppConfig:
    me: str
    boards: List[BoardSpec]
    keys: KeyBindingTable
    prefetch: bool = False
    path: Optional[str] = None


def default_config_path() -> str:
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return os.path.expanduser(env_path)
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.expanduser("~/.config")
    return os.path.join(base, APPNAME, "config.yml")


def render_template() -> str:
    lines = []
    for name, seqs in DEFAULT_KEYS.items():
        rendered = ", ".join(f'"{s}"' for s in seqs)
        lines.append(f"  {name}: [{rendered}]")
    return CONFIG_TEMPLATE.format(keys="\n".join(lines))


def ensure_config(path: str) -> bool:
    """Write the template to `path` if nothing is there yet; True if created."""
    if os.path.exists(path):
        return False
    d = os.path.dirname(path)
    if d and not os.path.isdir(d):
        os.makedirs(d, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(render_template())
    logger.info("Created config template at %s", path)
    return True


def _parse_board(raw: object, index: int) -> BoardSpec:
    if not isinstance(raw, dict):
        raise ConfigError(f"Board #{index + 1} must be a mapping, got {raw!r}")
    missing = [k for k in ("organization", "project", "team") if not str(raw.get(k) or "").strip()]
    if missing:
        raise ConfigError(f"Board #{index + 1} is missing {', '.join(missing)}")
    iteration = raw.get("iteration")
    return BoardSpec(
        organization=str(raw["organization"]).strip(),
        project=str(raw["project"]).strip(),
        team=str(raw["team"]).strip(),
        iteration=str(iteration).strip() if iteration else None,
        backlog_level=str(raw.get("backlog_level") or DEFAULT_BACKLOG_LEVEL),
    )


def parse_config(raw: Optional[dict], path: Optional[str] = None) -> AppConfig:
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    common = raw.get("common") or {}
    if not isinstance(common, dict):
        raise ConfigError("Config: 'common' must be a mapping")
    boards = [_parse_board(b, i) for i, b in enumerate(raw.get("boards") or [])]
    boards = [b for b in boards if b != PLACEHOLDER_BOARD]
    if not boards:
        raise ConfigError("Config: add at least one board under 'boards'")
    keys_raw = raw.get("keys") or {}
    if not isinstance(keys_raw, dict):
        raise ConfigError("Config: 'keys' must be a mapping")
    me = str(common.get("me") or "").strip()
    if not me:
        logger.warning("Config: common.me is empty; the assigned-to-me filter will match nothing")
    return AppConfig(
        me=me,
        boards=boards,
        keys=KeyBindingTable.from_config(keys_raw),
        prefetch=bool(common.get("prefetch", False)),
        path=path,
    )


def load_config(path: str) -> AppConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigError(f"Cannot read config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    return parse_config(raw, path=path)
