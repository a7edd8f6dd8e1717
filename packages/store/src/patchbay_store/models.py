"""Persistent entities.

Plain dataclasses mirroring the database rows. Listing queries fill in a few
joined display fields (owner and submitter names, patchset counts); they are
not columns of their own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class PatchsetOp(str, Enum):
    NORMAL = "normal"
    REVIEW = "review"
    REPLACE = "replace"


class Event(str, Enum):
    REPO_CREATED = "repo_created"
    PR_CREATED = "pr_created"
    PR_PATCHSET_ADDED = "pr_patchset_added"
    PR_REVIEWED = "pr_reviewed"
    PR_PATCHSET_REPLACED = "pr_patchset_replaced"
    PR_STATUS_CHANGED = "pr_status_changed"
    PR_NAME_CHANGED = "pr_name_changed"
    PATCHSET_DELETED = "patchset_deleted"


PATCHSET_EVENTS = {
    PatchsetOp.NORMAL: Event.PR_PATCHSET_ADDED,
    PatchsetOp.REVIEW: Event.PR_REVIEWED,
    PatchsetOp.REPLACE: Event.PR_PATCHSET_REPLACED,
}


@dataclass
class User:
    id: int
    pubkey: str
    name: str
    created_at: str  # ISO-8601 UTC timestamp


@dataclass
class Repo:
    id: int
    user_id: int
    name: str
    description: str
    created_at: str
    owner_name: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.owner_name}/{self.name}"


@dataclass
class PatchRequest:
    id: int
    user_id: int
    repo_id: int
    name: str
    status: str  # "open" | "reviewed" | "accepted" | "closed"
    created_at: str
    updated_at: str
    user_name: str = ""
    patchset_count: int = 0


@dataclass
class Patchset:
    id: int
    user_id: int
    patch_request_id: int
    review: bool
    created_at: str


@dataclass
class Patch:
    """A stored patch. ``raw_text`` is what ``git am`` gets back."""

    id: int
    user_id: int
    patchset_id: int
    author_name: str
    author_email: str
    author_date: str
    title: str
    body: str
    body_appendix: str
    commit_sha: str
    content_sha: str
    base_commit_sha: str | None
    raw_text: str
    created_at: str


@dataclass
class EventLog:
    id: int
    user_id: int
    event: str
    created_at: str
    repo_id: int | None = None
    patch_request_id: int | None = None
    patchset_id: int | None = None
    data: dict = field(default_factory=dict)
    user_name: str = ""


@dataclass
class Acl:
    id: int
    permission: str  # only "banned" today
    created_at: str
    pubkey: str | None = None
    ip_address: str | None = None
