"""Lookups shared by the SSH commands."""

from __future__ import annotations

import re

import click

from patchbay_core.policy import Ownership
from patchbay_store.base import BaseStore
from patchbay_store.models import PatchRequest, Patchset

REPO_NAME = re.compile(r"^[A-Za-z0-9._-]+$")


def split_repo(spec: str, actor_name: str) -> tuple[str, str]:
    """``owner/name`` or a bare ``name`` in the actor's namespace."""
    owner, _, name = spec.rpartition("/")
    owner = owner or actor_name
    for part in (owner, name):
        if not REPO_NAME.match(part):
            raise click.BadParameter(f"invalid repo {spec!r}, expected owner/name", param_hint="REPO")
    return owner, name


def pr_ownership(store: BaseStore, pr: PatchRequest) -> Ownership:
    repo = store.get_repo_by_id(pr.repo_id)
    return Ownership(
        submitter=store.get_user_by_id(pr.user_id).pubkey,
        repo_owner=store.get_user_by_id(repo.user_id).pubkey,
    )


def patchset_of(store: BaseStore, pr: PatchRequest, patchset_id: int) -> Patchset:
    """The patchset ``patchset_id``, provided it belongs to ``pr``."""
    patchset = store.get_patchset_by_id(patchset_id)
    if patchset.patch_request_id != pr.id:
        raise click.BadParameter(f"patchset {patchset_id} is not part of patch request {pr.id}")
    return patchset
