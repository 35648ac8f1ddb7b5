"""Backend configuration commands: config show, validate, apply, delete."""

from __future__ import annotations

import sys
from pathlib import Path

import click
import yaml
from pydantic import ValidationError

from ..backend.config import DEFAULT_BACKEND_CONFIG_NAME, load_backend_config
from ..backend.pathbuilder import PathTemplateBuilder
from ..errors import ConfigurationError
from ..models import BackendConfig
from ..registry import FileRegistry
from ._common import SYNC_HOME, console

MASK = "********"


def _masked(config: BackendConfig) -> dict:
    data = config.model_dump(mode="json")
    vault = data.get("vault") or {}
    if vault.get("token"):
        vault["token"] = MASK
    if vault.get("ca_cert"):
        vault["ca_cert"] = f"<{len(config.vault.ca_cert)} bytes PEM>"
    return data


def register_config_commands(main: click.Group) -> None:
    """Register the config command group."""

    @main.group("config")
    def config():
        """Inspect and manage the backend configuration.

        The registry record default-backend-config wins; without it the
        configuration is read from environment variables.
        """

    @config.command("show")
    @click.option("--home", default=SYNC_HOME, type=click.Path(), help="State directory.")
    def config_show(home: str):
        """Print the effective configuration (secrets masked)."""
        registry = FileRegistry(Path(home).expanduser())
        try:
            cfg, source = load_backend_config(registry)
        except ConfigurationError as exc:
            console.print(f"[bold red]Configuration error:[/] {exc}")
            sys.exit(1)

        console.print(f"\n  [dim]source: {source}[/]\n")
        click.echo(yaml.safe_dump(_masked(cfg), default_flow_style=False, sort_keys=False))

    @config.command("validate")
    @click.option("--home", default=SYNC_HOME, type=click.Path(), help="State directory.")
    def config_validate(home: str):
        """Load the configuration and compile every path template.

        Does not contact the backend.
        """
        registry = FileRegistry(Path(home).expanduser())
        try:
            cfg, source = load_backend_config(registry)
            PathTemplateBuilder(cfg.path_template)
            for engine in cfg.engines:
                PathTemplateBuilder(engine.path_template)
        except ConfigurationError as exc:
            console.print(f"[bold red]Invalid:[/] {exc}")
            sys.exit(1)

        console.print(
            f"[green]Valid[/] ({source}): backend={cfg.backend}, "
            f"engines={len(cfg.engines)}, sync_label={cfg.sync_label or '-'}"
        )

    @config.command("apply")
    @click.argument("file", type=click.Path(exists=True, dir_okay=False))
    @click.option("--home", default=SYNC_HOME, type=click.Path(), help="State directory.")
    def config_apply(file: str, home: str):
        """Validate a YAML configuration file and store it in the registry."""
        try:
            data = yaml.safe_load(Path(file).read_text(encoding="utf-8")) or {}
            cfg = BackendConfig.model_validate(data)
            PathTemplateBuilder(cfg.path_template)
            for engine in cfg.engines:
                PathTemplateBuilder(engine.path_template)
        except (yaml.YAMLError, ValidationError, ConfigurationError) as exc:
            console.print(f"[bold red]Invalid configuration:[/] {exc}")
            sys.exit(1)

        FileRegistry(Path(home).expanduser()).put_backend_config(
            DEFAULT_BACKEND_CONFIG_NAME, cfg
        )
        console.print(f"[green]Stored[/] {DEFAULT_BACKEND_CONFIG_NAME}")

    @config.command("delete")
    @click.option("--home", default=SYNC_HOME, type=click.Path(), help="State directory.")
    def config_delete(home: str):
        """Remove the registry record (falls back to environment)."""
        FileRegistry(Path(home).expanduser()).delete_backend_config(DEFAULT_BACKEND_CONFIG_NAME)
        console.print(f"[green]Removed[/] {DEFAULT_BACKEND_CONFIG_NAME}")
