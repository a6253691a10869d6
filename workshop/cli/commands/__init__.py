"""CLI command modules for workshop.

Each module contains related command handlers dispatched from __main__.py.
"""

from workshop.cli.commands.auth import cmd_auth
from workshop.cli.commands.sync import cmd_sync
from workshop.cli.commands.units import cmd_unit, resolve_unit_id

__all__ = [
    "cmd_auth",
    "cmd_sync",
    "cmd_unit",
    "resolve_unit_id",
]
