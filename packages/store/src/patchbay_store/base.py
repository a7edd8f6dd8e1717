"""Abstract store interface.

Every persistent operation the SSH commands need, in one place. The CLI
depends on BaseStore, not on SQLiteStore, so tests and alternative
backends plug in without touching command code.

Contract shared by every implementation:
- Mutations are all-or-nothing and write their event-log entry in the same
  transaction.
- Lookups of a single entity raise NotFound; listings return [] when empty.
- Uniqueness violations raise Conflict; other backend failures StorageError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import IO, TYPE_CHECKING, ContextManager

if TYPE_CHECKING:
    from patchbay_store.models import Acl, EventLog, Patch, PatchRequest, Patchset, PatchsetOp, Repo, User


class BaseStore(ABC):
    """Persistence layer for users, repos, patch requests and their history."""

    @abstractmethod
    def transaction(self) -> ContextManager[None]:
        """Run the operations inside the block as one all-or-nothing unit.

        State read inside the block cannot change under it: other sessions
        wait until the block commits or rolls back. Nested use joins the
        outer transaction.
        """

    # -- users ---------------------------------------------------------------

    @abstractmethod
    def upsert_user(self, pubkey: str, name: str) -> User:
        """Return the user owning ``pubkey``, creating it on first sight.

        A taken name gets a random 4-character suffix, retried once; a second
        collision raises Conflict.
        """

    @abstractmethod
    def get_user_by_id(self, user_id: int) -> User: ...

    @abstractmethod
    def get_user_by_name(self, name: str) -> User: ...

    @abstractmethod
    def get_user_by_pubkey(self, pubkey: str) -> User: ...

    # -- repos ---------------------------------------------------------------

    @abstractmethod
    def create_repo(self, user_id: int, name: str, description: str = "") -> Repo:
        """Create ``<user>/<name>``. Raises Conflict when the user already owns it."""

    @abstractmethod
    def get_repo_by_id(self, repo_id: int) -> Repo: ...

    @abstractmethod
    def get_repo(self, owner_name: str, name: str) -> Repo: ...

    @abstractmethod
    def get_repos(self) -> list[Repo]: ...

    # -- patch requests ------------------------------------------------------

    @abstractmethod
    def submit_patch_request(self, repo_id: int, user_id: int, stream: bytes | str | IO) -> PatchRequest:
        """Open a PR from a patch stream.

        The PR is named after the first patch. Raises ParseError before
        anything is written when the stream holds no patch.
        """

    @abstractmethod
    def submit_patchset(self, pr_id: int, user_id: int, op: PatchsetOp, stream: bytes | str | IO) -> list[Patch]:
        """Add a patchset to a PR and return the patches actually inserted.

        REPLACE drops the PR's earlier patchsets first. A series identical to
        the latest patchset inserts nothing and returns [].
        """

    @abstractmethod
    def update_patch_request_status(self, pr_id: int, user_id: int, status: str) -> None:
        """Write ``status`` unconditionally; transition rules live in the caller."""

    @abstractmethod
    def update_patch_request_name(self, pr_id: int, user_id: int, name: str) -> None: ...

    @abstractmethod
    def get_patch_requests(self) -> list[PatchRequest]: ...

    @abstractmethod
    def get_patch_requests_by_repo(self, repo_id: int) -> list[PatchRequest]: ...

    @abstractmethod
    def get_patch_request_by_id(self, pr_id: int) -> PatchRequest: ...

    # -- patchsets and patches -----------------------------------------------

    @abstractmethod
    def get_patchsets_by_pr(self, pr_id: int) -> list[Patchset]:
        """Oldest first."""

    @abstractmethod
    def get_patchset_by_id(self, patchset_id: int) -> Patchset: ...

    @abstractmethod
    def delete_patchset(self, user_id: int, pr_id: int, patchset_id: int) -> None: ...

    @abstractmethod
    def get_patches_by_patchset(self, patchset_id: int) -> list[Patch]: ...

    # -- event log -----------------------------------------------------------

    @abstractmethod
    def get_event_logs(self) -> list[EventLog]:
        """Newest first, as are all event-log queries."""

    @abstractmethod
    def get_event_logs_by_user(self, user_id: int) -> list[EventLog]:
        """Events the user wrote plus events on PRs the user submitted."""

    @abstractmethod
    def get_event_logs_by_pr(self, pr_id: int) -> list[EventLog]: ...

    @abstractmethod
    def get_event_logs_by_repo(self, repo_id: int) -> list[EventLog]: ...

    # -- access control ------------------------------------------------------

    @abstractmethod
    def add_acl(self, permission: str, pubkey: str | None = None, ip_address: str | None = None) -> Acl: ...

    @abstractmethod
    def get_acls(self) -> list[Acl]: ...

    @abstractmethod
    def is_banned(self, pubkey: str | None, ip_address: str | None) -> bool: ...

    def close(self) -> None:
        """Release the backend's connection. A no-op unless overridden."""
