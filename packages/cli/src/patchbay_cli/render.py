"""Text rendering shared by the SSH commands.

Session output is plain text: no colour, no markup, no wrapping of long
lines. Tables are rich tables drawn without borders so they read like
``column -t`` output and stay greppable on the client side.
"""

from __future__ import annotations

from datetime import datetime
from typing import TextIO

from rich.console import Console
from rich.table import Table


def session_console(stream: TextIO) -> Console:
    return Console(
        file=stream,
        width=200,
        no_color=True,
        markup=False,
        emoji=False,
        highlight=False,
        soft_wrap=True,
    )


def plain_table(*columns: str) -> Table:
    table = Table(box=None, show_edge=False, pad_edge=False, header_style="")
    for column in columns:
        table.add_column(column, no_wrap=True)
    return table


def format_time(timestamp: str, time_format: str) -> str:
    """Render a stored ISO-8601 timestamp with the configured strftime pattern."""
    if not time_format:
        return ""
    return datetime.fromisoformat(timestamp).strftime(time_format)


def format_data(data: dict) -> str:
    return " ".join(f"{key}={value}" for key, value in sorted(data.items()))
