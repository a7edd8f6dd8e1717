"""repo commands: create and list repositories."""

from __future__ import annotations

import click

from patchbay_cli.commands.common import REPO_NAME
from patchbay_cli.render import plain_table


@click.group("repo")
def repo_group():
    """Manage repositories."""


@repo_group.command("create")
@click.argument("name")
@click.option("--desc", "description", default="", help="One-line description.")
@click.pass_obj
def repo_create(obj: dict, name: str, description: str):
    """Create NAME under your own namespace."""
    if not REPO_NAME.match(name):
        raise click.BadParameter("only letters, digits, '.', '_' and '-' are allowed", param_hint="NAME")
    obj["policy"].authorize("repo create", obj["pubkey"])
    repo = obj["store"].create_repo(obj["user"].id, name, description)
    obj["console"].print(f"created repo {repo.full_name}")


@repo_group.command("ls")
@click.pass_obj
def repo_ls(obj: dict):
    """List all repositories."""
    table = plain_table("Name", "Description")
    for repo in obj["store"].get_repos():
        table.add_row(repo.full_name, repo.description)
    obj["console"].print(table)
