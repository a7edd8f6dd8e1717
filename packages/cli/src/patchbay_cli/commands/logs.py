"""logs command: the event log, newest first."""

from __future__ import annotations

import click

from patchbay_cli.commands.common import split_repo
from patchbay_cli.render import format_data, format_time, plain_table


@click.command("logs")
@click.option("--repo", "repo_spec", default=None, help="Only events on this repo (owner/name).")
@click.option("--pr", "pr_id", type=int, default=None, help="Only events on this patch request.")
@click.option("--mine", is_flag=True, help="Only your events and events on your patch requests.")
@click.pass_obj
def logs_cmd(obj: dict, repo_spec: str | None, pr_id: int | None, mine: bool):
    """Show the event log."""
    if sum(1 for flag in (repo_spec, pr_id, mine or None) if flag is not None) > 1:
        raise click.UsageError("--repo, --pr and --mine are mutually exclusive")

    store = obj["store"]
    if pr_id is not None:
        store.get_patch_request_by_id(pr_id)
        events = store.get_event_logs_by_pr(pr_id)
    elif repo_spec:
        repo = store.get_repo(*split_repo(repo_spec, obj["user"].name))
        events = store.get_event_logs_by_repo(repo.id)
    elif mine:
        events = store.get_event_logs_by_user(obj["user"].id)
    else:
        events = store.get_event_logs()

    time_format = obj["config"].get("time_format", "")
    columns = ["ID", "Event", "User", "PR", "Patchset", "Data"]
    if time_format:
        columns.append("Date")
    table = plain_table(*columns)
    for event in events:
        row = [
            str(event.id),
            event.event,
            event.user_name,
            "" if event.patch_request_id is None else str(event.patch_request_id),
            "" if event.patchset_id is None else str(event.patchset_id),
            format_data(event.data),
        ]
        if time_format:
            row.append(format_time(event.created_at, time_format))
        table.add_row(*row)
    obj["console"].print(table)
