from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
import webbrowser
from typing import Callable, List, Optional

logger = logging.getLogger('adoboards')


def editor_command(path: str, editor: Optional[str] = None) -> List[str]:
    editor = editor or os.environ.get("VISUAL") or os.environ.get("EDITOR")
    if not editor:
        editor = "notepad" if sys.platform.startswith("win") else "vi"
    return shlex.split(editor) + [path]


def open_in_editor(path: str, runner: Callable[..., subprocess.CompletedProcess] = subprocess.run) -> bool:
    """Run $EDITOR on `path` and wait for it to exit."""
    cmd = editor_command(path)
    logger.info("Opening %s with %s", path, cmd[0])
    try:
        completed = runner(cmd, check=False)
    except OSError as exc:
        logger.error("Failed to start editor %s: %s", cmd[0], exc)
        return False
    if completed.returncode != 0:
        logger.error("Editor %s exited with %s", cmd[0], completed.returncode)
        return False
    return True


def open_in_browser(url: str, opener: Callable[[str], bool] = webbrowser.open) -> bool:
    try:
        ok = bool(opener(url))
    except webbrowser.Error as exc:
        logger.error("Failed to open link %s: %s", url, exc)
        return False
    if not ok:
        logger.warning("No browser available to open %s", url)
    return ok
