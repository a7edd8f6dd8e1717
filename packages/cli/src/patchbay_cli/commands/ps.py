"""ps commands: individual patchsets."""

from __future__ import annotations

import click

from patchbay_core.policy import Ownership


@click.group("ps")
def ps_group():
    """Manage patchsets."""


@ps_group.command("rm")
@click.argument("patchset_id", type=int)
@click.pass_obj
def ps_rm(obj: dict, patchset_id: int):
    """Delete a patchset and its patches."""
    store = obj["store"]
    patchset = store.get_patchset_by_id(patchset_id)
    author = store.get_user_by_id(patchset.user_id)
    obj["policy"].authorize("ps rm", obj["pubkey"], Ownership(patchset_author=author.pubkey))
    store.delete_patchset(obj["user"].id, patchset.patch_request_id, patchset.id)
    obj["console"].print(f"deleted patchset {patchset.id} from patch request {patchset.patch_request_id}")
