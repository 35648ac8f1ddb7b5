"""
bmcsecretsync CLI -- run, inspect and debug credential synchronization.

The main Click group is defined here; each command module registers its
commands through a register function.

Entry point: bmcsecretsync.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="bmcsecretsync")
def main():
    """bmcsecretsync: keep BMC credentials in sync with Vault."""


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .run import register_run_commands
from .reconcile import register_reconcile_commands
from .status import register_status_commands
from .config_cmd import register_config_commands
from .render import register_render_commands

register_run_commands(main)
register_reconcile_commands(main)
register_status_commands(main)
register_config_commands(main)
register_render_commands(main)
