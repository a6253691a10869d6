"""Filesystem helpers for workshop."""

import os
from pathlib import Path


def get_workshop_home() -> Path:
    """Return the workshop data directory.

    Honours ``WORKSHOP_HOME`` so tests and sandboxed environments can
    redirect all local state. Defaults to ``~/.workshop``.
    """
    override = os.environ.get("WORKSHOP_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".workshop"
