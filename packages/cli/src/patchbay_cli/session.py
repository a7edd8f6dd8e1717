"""One SSH session: an authenticated key, one command, stdin and stdout.

The SSH daemon authenticates the client and hands ``patchbay exec`` the
public key, the requested user name and the command line. ``dispatch``
turns that into exactly one call on the store and renders the result.

Error contract at this boundary:
  PatchbayError      → its message on stderr, exit status 1
  Unauthorized       → the fixed text "unauthorized", exit status 1
  StorageError/other → "internal error", logged with the key and command
  click usage errors → click's message, exit status 2
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from typing import BinaryIO, TextIO

import click

from patchbay_cli.commands.logs import logs_cmd
from patchbay_cli.commands.pr import pr_group
from patchbay_cli.commands.ps import ps_group
from patchbay_cli.commands.repo import repo_group
from patchbay_cli.render import session_console
from patchbay_core.errors import PatchbayError, StorageError, Unauthorized
from patchbay_core.policy import Policy
from patchbay_core.utils.keys import canonical_pubkey
from patchbay_store.base import BaseStore

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "internal error"


@dataclass
class Session:
    pubkey: str
    user_name: str
    stdin: BinaryIO
    stdout: TextIO
    stderr: TextIO
    args: list[str] = field(default_factory=list)
    ip_address: str | None = None

    @property
    def command(self) -> str:
        return shlex.join(self.args)


@click.group("patchbay", context_settings={"help_option_names": ["-h", "--help"]})
def ssh_cli():
    """Patch requests over SSH.

    Pipe `git format-patch --stdout` into `pr create` or `pr add`, and
    `pr print` back into `git am`.
    """


ssh_cli.add_command(logs_cmd)
ssh_cli.add_command(repo_group)
ssh_cli.add_command(pr_group)
ssh_cli.add_command(ps_group)


def _fail(session: Session, message: str) -> int:
    session.stderr.write(f"error: {message}\n")
    return 1


def dispatch(session: Session, store: BaseStore, config: dict) -> int:
    """Run the session's command and return its exit status."""
    if not session.args:
        session.stderr.write(ssh_cli.get_help(click.Context(ssh_cli, info_name="patchbay")) + "\n")
        return 2

    try:
        pubkey = canonical_pubkey(session.pubkey)
    except ValueError as exc:
        logger.warning("Rejected session with unparsable key: %s", exc)
        return _fail(session, Unauthorized.MESSAGE)

    try:
        if store.is_banned(pubkey, session.ip_address):
            raise Unauthorized("banned")
        user = store.upsert_user(pubkey, session.user_name)
        logger.info("%s (%s) ran %r", user.name, session.ip_address or "-", session.command)
        obj = {
            "store": store,
            "config": config,
            "policy": Policy.from_config(config),
            "pubkey": pubkey,
            "user": user,
            "stdin": session.stdin,
            "stdout": session.stdout,
            "console": session_console(session.stdout),
        }
        result = ssh_cli.main(args=session.args, prog_name="patchbay", standalone_mode=False, obj=obj)
    except Unauthorized as exc:
        logger.warning("Unauthorized %r from %s: %s", session.command, pubkey, exc.detail)
        return _fail(session, Unauthorized.MESSAGE)
    except StorageError:
        logger.exception("Storage failure pubkey=%s command=%r", pubkey, session.command)
        return _fail(session, INTERNAL_ERROR)
    except PatchbayError as exc:
        return _fail(session, str(exc))
    except click.ClickException as exc:
        exc.show(file=session.stderr)
        return exc.exit_code
    except click.Abort:
        return _fail(session, "aborted")
    except Exception:
        logger.exception("Unexpected failure pubkey=%s command=%r", pubkey, session.command)
        return _fail(session, INTERNAL_ERROR)

    # standalone_mode=False hands back the exit code of --help and ctx.exit().
    return result if isinstance(result, int) else 0
