"""Host-side administration: schema migrations and the ban list."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from patchbay_core.errors import StorageError
from patchbay_core.utils.keys import canonical_pubkey, fingerprint

console = Console()


@click.command("migrate")
@click.pass_context
def migrate_cmd(ctx: click.Context):
    """Apply pending database schema migrations."""
    store = ctx.obj["open_store"](auto_migrate=False)
    try:
        before = store.schema_version()
        after = store.migrate()
    except StorageError as exc:
        raise click.ClickException(str(exc))

    db_path = ctx.obj["config"]["db_path"]
    if before == after:
        console.print(f"{db_path} is up to date (schema version {after})", soft_wrap=True)
    else:
        console.print(f"[green]Migrated {db_path} from schema version {before} to {after}[/green]", soft_wrap=True)


@click.group("acl")
def acl_group():
    """Manage banned keys and addresses."""


@acl_group.command("ban")
@click.option("--pubkey", default=None, help="Public key (authorized_keys form) to ban.")
@click.option("--ip", "ip_address", default=None, help="Client address to ban.")
@click.pass_context
def acl_ban(ctx: click.Context, pubkey: str | None, ip_address: str | None):
    """Refuse every session from a key or an address."""
    if not pubkey and not ip_address:
        raise click.UsageError("Give --pubkey, --ip or both.")
    if pubkey:
        try:
            pubkey = canonical_pubkey(pubkey)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--pubkey")

    acl = ctx.obj["open_store"]().add_acl("banned", pubkey=pubkey, ip_address=ip_address)
    target = " and ".join(t for t in (pubkey and fingerprint(pubkey), ip_address) if t)
    console.print(f"[green]Banned {target}[/green] (acl {acl.id})", soft_wrap=True)


@acl_group.command("ls")
@click.pass_context
def acl_ls(ctx: click.Context):
    """List ban entries."""
    acls = ctx.obj["open_store"]().get_acls()
    if not acls:
        console.print("[yellow]No acl entries.[/yellow]")
        return

    table = Table(title="Access control", show_header=True, header_style="bold cyan")
    table.add_column("ID", justify="right")
    table.add_column("Permission", no_wrap=True, min_width=10)
    table.add_column("Key", overflow="fold")
    table.add_column("IP", no_wrap=True)
    table.add_column("Created", no_wrap=True, min_width=19)
    for acl in acls:
        table.add_row(
            str(acl.id),
            acl.permission,
            fingerprint(acl.pubkey) if acl.pubkey else "",
            acl.ip_address or "",
            acl.created_at[:19].replace("T", " "),
        )
    console.print(table)
