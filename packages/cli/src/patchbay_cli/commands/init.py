"""init command: interactive setup wizard for a new server.

Writes patchbay.yml with the first admin key and the repo-creation policy,
then prints the authorized_keys line that routes that key's SSH sessions
through ``patchbay exec``.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import click
import yaml
from rich.console import Console

from patchbay_core.utils.keys import canonical_pubkey, fingerprint

console = Console()

_AUTHORIZED_KEYS_OPTIONS = "no-port-forwarding,no-X11-forwarding,no-agent-forwarding,no-pty"


@click.command("init")
@click.option("--admin-key", default=None, help="Admin public key, or a path to a .pub file.")
@click.pass_context
def init_cmd(ctx: click.Context, admin_key: str | None):
    """Set up patchbay on this host.

    Creates patchbay.yml (or updates it, keeping existing keys) and prints
    the authorized_keys entry for the admin.
    """
    config_path = Path(ctx.obj["config_path"])
    console.print("\n[bold cyan]patchbay init[/bold cyan]: server setup wizard\n")

    # --- Admin key ---
    if admin_key is None:
        admin_key = click.prompt("Admin public key (or path to a .pub file)", default=_default_pubkey_path() or None)
    try:
        admin = canonical_pubkey(_read_key(admin_key))
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--admin-key")
    console.print(f"[dim]Admin key: {fingerprint(admin)}[/dim]")

    # --- Server settings ---
    current = ctx.obj["config"]
    data_dir = click.prompt("Data directory", default=current["data_dir"])
    url = click.prompt("Host name clients connect to", default=current["url"])
    ssh_port = click.prompt("SSH port", default=current["ssh_port"], type=int)

    console.print("\nWho may create repositories:")
    console.print("  [bold]user[/bold]   any key that connects (default)")
    console.print("  [bold]admin[/bold]  admins only")
    create_repo = click.prompt(
        "Repo creation policy",
        type=click.Choice(["user", "admin"]),
        default=current["create_repo"],
    )

    admins = list(dict.fromkeys([*current["admins"], admin]))
    _write_config(
        config_path,
        {"data_dir": data_dir, "url": url, "ssh_port": ssh_port, "create_repo": create_repo, "admins": admins},
    )
    console.print(f"[green]Wrote {config_path}[/green]")

    # --- authorized_keys ---
    name = click.prompt("Admin user name", default="admin")
    console.print("\nAdd this line to the service account's ~/.ssh/authorized_keys:\n")
    click.echo(authorized_keys_line(admin, name, config_path.resolve()))
    console.print("\n[bold green]Setup complete![/bold green]")
    port_flag = "" if ssh_port == 22 else f"-p {ssh_port} "
    console.print(f"Try it with: [bold]ssh {port_flag}{url} repo ls[/bold]")


def authorized_keys_line(pubkey: str, user_name: str, config_path: Path) -> str:
    """Build an authorized_keys entry that forces ``patchbay exec`` for ``pubkey``."""
    executable = shutil.which("patchbay") or "patchbay"
    command = f"{executable} --config {config_path} exec --pubkey '{pubkey}' --user {user_name}"
    return f'command="{command}",{_AUTHORIZED_KEYS_OPTIONS} {pubkey} {user_name}'


def _default_pubkey_path() -> str | None:
    for name in ("id_ed25519.pub", "id_ecdsa.pub", "id_rsa.pub"):
        path = Path.home() / ".ssh" / name
        if path.exists():
            return str(path)
    return None


def _read_key(value: str) -> str:
    """Accept the key itself or the path of a file holding it."""
    if " " in value.strip():
        return value
    path = Path(value).expanduser()
    if path.is_file():
        return path.read_text().strip()
    return value


def _write_config(path: Path, config: dict) -> None:
    """Write or update patchbay.yml, preserving any existing keys."""
    existing: dict = {}
    if path.exists():
        existing = yaml.safe_load(path.read_text()) or {}
    existing.update(config)
    path.write_text(yaml.dump(existing, default_flow_style=False, sort_keys=False))
