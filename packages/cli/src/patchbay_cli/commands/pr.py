"""pr commands: patch requests, their patchsets and their status."""

from __future__ import annotations

import click

from patchbay_cli.commands.common import patchset_of, pr_ownership, split_repo
from patchbay_cli.render import format_time, plain_table
from patchbay_core.errors import NotFound
from patchbay_core.patch import parse_patchset
from patchbay_core.policy import Status, check_transition
from patchbay_core.rangediff import range_diff, range_diff_to_str, short_sha
from patchbay_store.models import PatchsetOp


def _ssh_hint(config: dict, command: str) -> str:
    port = int(config.get("ssh_port", 22))
    port_flag = "" if port == 22 else f"-p {port} "
    return f"ssh {port_flag}{config.get('url', 'localhost')} {command}"


def _latest_patchset(store, pr):
    patchsets = store.get_patchsets_by_pr(pr.id)
    if not patchsets:
        raise NotFound(f"patch request {pr.id} has no patchsets")
    return patchsets[-1]


@click.group("pr")
def pr_group():
    """Submit and review patch requests."""


@pr_group.command("ls")
@click.option("--repo", "repo_spec", default=None, help="Only patch requests on this repo (owner/name).")
@click.pass_obj
def pr_ls(obj: dict, repo_spec: str | None):
    """List patch requests."""
    store = obj["store"]
    if repo_spec:
        repo = store.get_repo(*split_repo(repo_spec, obj["user"].name))
        prs = store.get_patch_requests_by_repo(repo.id)
    else:
        prs = store.get_patch_requests()
    repo_names = {repo.id: repo.full_name for repo in store.get_repos()}

    time_format = obj["config"].get("time_format", "")
    columns = ["ID", "RepoID", "Name", "Status", "Patchsets", "User"]
    if time_format:
        columns.append("Date")
    table = plain_table(*columns)
    for pr in prs:
        row = [
            str(pr.id),
            repo_names.get(pr.repo_id, str(pr.repo_id)),
            pr.name,
            pr.status,
            str(pr.patchset_count),
            pr.user_name,
        ]
        if time_format:
            row.append(format_time(pr.created_at, time_format))
        table.add_row(*row)
    obj["console"].print(table)


@pr_group.command("create")
@click.argument("repo_spec", metavar="REPO")
@click.pass_obj
def pr_create(obj: dict, repo_spec: str):
    """Open a patch request on REPO from the patches on stdin.

    REPO is owner/name, or a bare name in your own namespace. A missing repo
    in your own namespace is created first.
    """
    store, user = obj["store"], obj["user"]
    data = obj["stdin"].read()
    # Reject a bad stream before a repo gets created for it.
    patches = parse_patchset(data)

    owner, name = split_repo(repo_spec, user.name)
    try:
        repo = store.get_repo(owner, name)
    except NotFound:
        if owner != user.name:
            raise
        obj["policy"].authorize("repo create", obj["pubkey"])
        repo = store.create_repo(user.id, name)

    pr = store.submit_patch_request(repo.id, user.id, data)
    console = obj["console"]
    console.print(f"created patch request {pr.id} on {repo.full_name}: {pr.name}")
    console.print(f"{len(patches)} patch(es) in the first patchset")
    console.print(f"view with: {_ssh_hint(obj['config'], f'pr print {pr.id} | git am -3')}")


@pr_group.command("print")
@click.argument("pr_id", type=int)
@click.option("--patchset", "patchset_id", type=int, default=None, help="Patchset to print (default: latest).")
@click.pass_obj
def pr_print(obj: dict, pr_id: int, patchset_id: int | None):
    """Print a patchset as mbox text, ready for `git am`."""
    store = obj["store"]
    pr = store.get_patch_request_by_id(pr_id)
    patchset = patchset_of(store, pr, patchset_id) if patchset_id is not None else _latest_patchset(store, pr)
    out = obj["stdout"]
    for patch in store.get_patches_by_patchset(patchset.id):
        out.write(patch.raw_text)
    out.flush()


@pr_group.command("summary")
@click.argument("pr_id", type=int)
@click.pass_obj
def pr_summary(obj: dict, pr_id: int):
    """Show a patch request, its patchsets and its latest patches."""
    store, console = obj["store"], obj["console"]
    time_format = obj["config"].get("time_format", "")
    pr = store.get_patch_request_by_id(pr_id)
    repo = store.get_repo_by_id(pr.repo_id)

    console.print(f"#{pr.id} {pr.name}")
    console.print(f"repo: {repo.full_name}  status: {pr.status}  submitter: {pr.user_name}")
    if time_format:
        console.print(f"created: {format_time(pr.created_at, time_format)}")

    patchsets = store.get_patchsets_by_pr(pr.id)
    console.print()
    table = plain_table("Patchset", "User", "Review", "Patches", "Date")
    for patchset in patchsets:
        table.add_row(
            str(patchset.id),
            store.get_user_by_id(patchset.user_id).name,
            "yes" if patchset.review else "",
            str(len(store.get_patches_by_patchset(patchset.id))),
            format_time(patchset.created_at, time_format),
        )
    console.print(table)
    if not patchsets:
        return

    console.print()
    table = plain_table("#", "Commit", "Title", "Author")
    for idx, patch in enumerate(store.get_patches_by_patchset(patchsets[-1].id), 1):
        table.add_row(str(idx), short_sha(patch.commit_sha), patch.title, f"{patch.author_name} <{patch.author_email}>")
    console.print(table)


@pr_group.command("diff")
@click.argument("pr_id", type=int)
@click.option("--from", "from_id", type=int, default=None, help="Older patchset (default: the one before --to).")
@click.option("--to", "to_id", type=int, default=None, help="Newer patchset (default: latest).")
@click.option("--full", is_flag=True, help="Also show the diffs of added and removed patches.")
@click.pass_obj
def pr_diff(obj: dict, pr_id: int, from_id: int | None, to_id: int | None, full: bool):
    """Range-diff two patchsets of a patch request."""
    store = obj["store"]
    pr = store.get_patch_request_by_id(pr_id)
    patchsets = store.get_patchsets_by_pr(pr.id)
    if not patchsets:
        raise NotFound(f"patch request {pr.id} has no patchsets")

    new = patchset_of(store, pr, to_id) if to_id is not None else patchsets[-1]
    if from_id is not None:
        old = patchset_of(store, pr, from_id)
    else:
        position = [ps.id for ps in patchsets].index(new.id)
        old = patchsets[position - 1] if position > 0 else None

    old_patches = store.get_patches_by_patchset(old.id) if old else []
    new_patches = store.get_patches_by_patchset(new.id)
    out = obj["stdout"]
    out.write(range_diff_to_str(range_diff(old_patches, new_patches), full=full))
    out.flush()


def _set_status(obj: dict, pr_id: int, operation: str, target: Status) -> None:
    store = obj["store"]
    with store.transaction():
        pr = store.get_patch_request_by_id(pr_id)
        obj["policy"].authorize(operation, obj["pubkey"], pr_ownership(store, pr))
        check_transition(pr.status, target)
        store.update_patch_request_status(pr.id, obj["user"].id, target.value)
    obj["console"].print(f"patch request {pr.id} is now {target.value}")


@pr_group.command("accept")
@click.argument("pr_id", type=int)
@click.pass_obj
def pr_accept(obj: dict, pr_id: int):
    """Accept a patch request."""
    _set_status(obj, pr_id, "pr accept", Status.ACCEPTED)


@pr_group.command("close")
@click.argument("pr_id", type=int)
@click.pass_obj
def pr_close(obj: dict, pr_id: int):
    """Close a patch request."""
    _set_status(obj, pr_id, "pr close", Status.CLOSED)


@pr_group.command("reopen")
@click.argument("pr_id", type=int)
@click.pass_obj
def pr_reopen(obj: dict, pr_id: int):
    """Reopen a patch request."""
    _set_status(obj, pr_id, "pr reopen", Status.OPEN)


@pr_group.command("edit")
@click.argument("pr_id", type=int)
@click.argument("title", nargs=-1, required=True)
@click.pass_obj
def pr_edit(obj: dict, pr_id: int, title: tuple[str, ...]):
    """Rename a patch request."""
    name = " ".join(title).strip()
    if not name:
        raise click.BadParameter("title must not be empty", param_hint="TITLE")
    store = obj["store"]
    pr = store.get_patch_request_by_id(pr_id)
    obj["policy"].authorize("pr edit", obj["pubkey"], pr_ownership(store, pr))
    store.update_patch_request_name(pr.id, obj["user"].id, name)
    obj["console"].print(f"patch request {pr.id} renamed to: {name}")


@pr_group.command("add")
@click.argument("pr_id", type=int)
@click.option("--review", is_flag=True, help="Submit as a review and mark the PR reviewed.")
@click.option("--accept", is_flag=True, help="Submit as a review and accept the PR.")
@click.option("--close", is_flag=True, help="Submit and close the PR.")
@click.option("--force", is_flag=True, help="Replace all earlier patchsets.")
@click.pass_obj
def pr_add(obj: dict, pr_id: int, review: bool, accept: bool, close: bool, force: bool):
    """Add a patchset from stdin to a patch request."""
    if sum((review, accept, close)) > 1:
        raise click.UsageError("--review, --accept and --close are mutually exclusive")
    if force and (review or accept):
        raise click.UsageError("--force cannot be combined with --review or --accept")

    store, policy, pubkey = obj["store"], obj["policy"], obj["pubkey"]
    with store.transaction():
        pr = store.get_patch_request_by_id(pr_id)
        own = pr_ownership(store, pr)
        policy.authorize("pr add", pubkey, own)

        target = None
        op = PatchsetOp.REPLACE if force else PatchsetOp.NORMAL
        if review:
            policy.authorize("pr add --review", pubkey, own)
            op = PatchsetOp.REVIEW
            target = None if pr.status == Status.REVIEWED.value else Status.REVIEWED
        elif accept:
            policy.authorize("pr add --accept", pubkey, own)
            op = PatchsetOp.REVIEW
            target = check_transition(pr.status, Status.ACCEPTED)
        elif close:
            policy.authorize("pr add --close", pubkey, own)
            if not force and policy.can_review(pubkey, own):
                op = PatchsetOp.REVIEW
            target = check_transition(pr.status, Status.CLOSED)

        patches = store.submit_patchset(pr.id, obj["user"].id, op, obj["stdin"])
        if target is not None:
            store.update_patch_request_status(pr.id, obj["user"].id, target.value)

    console = obj["console"]
    if patches:
        console.print(f"added {len(patches)} patch(es) to patch request {pr.id}")
    else:
        console.print(f"no changes: patchset is identical to the latest one of patch request {pr.id}")
    if target is not None:
        console.print(f"patch request {pr.id} is now {target.value}")
