"""CLI entry point for patchbay.

Commands:
  exec     run one SSH session (the authorized_keys / ForceCommand target)
  init     interactive setup wizard for a new server
  migrate  apply pending database schema migrations
  acl      ban public keys or addresses, list bans
"""

from __future__ import annotations

import functools
import importlib.metadata
import logging
import os
import shlex
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler

from patchbay_cli.commands.admin import acl_group, migrate_cmd
from patchbay_cli.commands.init import init_cmd


def _build_store(config: dict, auto_migrate: bool = True):
    """Instantiate the store from patchbay.yml settings.

    This factory lives in cli.py so neither patchbay_core nor patchbay_store
    know about the CLI config format.
    """
    from patchbay_store.sqlite import SQLiteStore

    return SQLiteStore(db_path=config["db_path"], auto_migrate=auto_migrate)


def _open_store(ctx: click.Context, auto_migrate: bool = True):
    store = _build_store(ctx.obj["config"], auto_migrate=auto_migrate)
    ctx.call_on_close(store.close)
    return store


def _configure_logging(level: str, log_file: str | None = None) -> None:
    """Log to ``log_file`` when given, otherwise to stderr through rich."""
    if not isinstance(logging.getLevelName(level.upper()), int):
        raise click.BadParameter(f"unknown log level {level!r}", param_hint="log_level")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    else:
        handler = RichHandler(console=Console(stderr=True), show_path=False)
    logging.basicConfig(level=level.upper(), format="%(message)s", handlers=[handler], force=True)


@click.group()
@click.version_option(
    version=importlib.metadata.version("patchbay"),
    prog_name="patchbay",
)
@click.option(
    "--config",
    "config_path",
    default="patchbay.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="PATCHBAY_CONFIG",
)
@click.option("--data-dir", default=None, help="Directory holding the database and log file.")
@click.option("--log-level", default=None, help="Logging level (DEBUG, INFO, WARNING, ...).")
@click.pass_context
def main(ctx: click.Context, config_path: str, data_dir: str | None, log_level: str | None):
    """Patch requests over SSH for teams that live in git format-patch."""
    from patchbay_core.config import load_config
    from patchbay_core.errors import ConfigError

    ctx.ensure_object(dict)

    try:
        config = load_config(config_path, {"data_dir": data_dir, "log_level": log_level})
    except ConfigError as exc:
        raise click.ClickException(str(exc))

    if ctx.invoked_subcommand != "exec":
        _configure_logging(config["log_level"])

    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path
    ctx.obj["open_store"] = functools.partial(_open_store, ctx)


@main.command(
    "exec",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.option("--pubkey", required=True, envvar="PATCHBAY_PUBKEY", help="Authenticated public key of the client.")
@click.option("--user", "user_name", required=True, envvar="PATCHBAY_USER", help="Name to register the key under.")
@click.option("--ip", "ip_address", default=None, help="Client address (default: from SSH_CONNECTION).")
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def exec_cmd(ctx: click.Context, pubkey: str, user_name: str, ip_address: str | None, command: tuple[str, ...]):
    """Run one SSH session command.

    COMMAND defaults to SSH_ORIGINAL_COMMAND, so this works as an
    authorized_keys command= entry. Patches are read from stdin.
    """
    from patchbay_cli.session import Session, dispatch

    config = ctx.obj["config"]
    # The session's stderr belongs to the remote client; logs go to the file.
    _configure_logging(config["log_level"], log_file=config["log_file"])

    args = list(command) or shlex.split(os.environ.get("SSH_ORIGINAL_COMMAND", ""))
    if ip_address is None and os.environ.get("SSH_CONNECTION"):
        ip_address = os.environ["SSH_CONNECTION"].split()[0]

    session = Session(
        pubkey=pubkey,
        user_name=user_name,
        ip_address=ip_address,
        args=args,
        stdin=click.get_binary_stream("stdin"),
        stdout=click.get_text_stream("stdout"),
        stderr=click.get_text_stream("stderr"),
    )
    code = dispatch(session, ctx.obj["open_store"](), config)
    session.stdout.flush()
    session.stderr.flush()
    ctx.exit(code)


main.add_command(init_cmd)
main.add_command(migrate_cmd)
main.add_command(acl_group)
