"""PR state machine and capability checks.

Roles are derived per call from the actor's public key: admin (listed in
config), submitter (opened the PR) and repo owner. Capabilities are plain
predicates over those roles; ``authorize`` maps an SSH operation to the
capability it needs and raises Unauthorized when it is missing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from patchbay_core.errors import AlreadyInState, ConfigError, Unauthorized
from patchbay_core.utils.keys import canonical_pubkey, keys_equal

logger = logging.getLogger(__name__)


class Status(str, Enum):
    OPEN = "open"
    REVIEWED = "reviewed"
    ACCEPTED = "accepted"
    CLOSED = "closed"


def check_transition(current: str, target: str) -> Status:
    """Any status may move to any other; moving to itself is an error."""
    current, target = Status(current), Status(target)
    if current == target:
        raise AlreadyInState(target.value)
    return target


class Capability(str, Enum):
    MODIFY = "modify"
    REVIEW = "review"
    ADD_PATCHSET = "add_patchset"
    CREATE_REPO = "create_repo"
    DELETE_PATCHSET = "delete_patchset"


OPERATIONS: dict[str, Capability] = {
    "repo create": Capability.CREATE_REPO,
    "pr edit": Capability.MODIFY,
    "pr close": Capability.MODIFY,
    "pr reopen": Capability.MODIFY,
    "pr accept": Capability.REVIEW,
    "pr add": Capability.ADD_PATCHSET,
    "pr add --review": Capability.REVIEW,
    "pr add --accept": Capability.REVIEW,
    "pr add --close": Capability.MODIFY,
    "ps rm": Capability.DELETE_PATCHSET,
}


@dataclass
class Ownership:
    """Public keys of whoever owns the entity an operation targets."""

    submitter: str | None = None
    repo_owner: str | None = None
    patchset_author: str | None = None


class Policy:
    CREATE_REPO_VALUES = ("admin", "user")

    def __init__(self, admins: list[str] | None = None, create_repo: str = "user"):
        if create_repo not in self.CREATE_REPO_VALUES:
            raise ConfigError(f"create_repo must be one of {', '.join(self.CREATE_REPO_VALUES)}, got {create_repo!r}")
        self.admins = [canonical_pubkey(key) for key in admins or []]
        self.create_repo = create_repo

    @classmethod
    def from_config(cls, config: dict) -> Policy:
        return cls(admins=config.get("admins", []), create_repo=config.get("create_repo", "user"))

    def is_admin(self, pubkey: str) -> bool:
        return any(keys_equal(pubkey, admin) for admin in self.admins)

    @staticmethod
    def _same(pubkey: str, other: str | None) -> bool:
        return other is not None and keys_equal(pubkey, other)

    def can_modify(self, pubkey: str, own: Ownership) -> bool:
        return self.is_admin(pubkey) or self._same(pubkey, own.submitter) or self._same(pubkey, own.repo_owner)

    def can_review(self, pubkey: str, own: Ownership) -> bool:
        if self.is_admin(pubkey):
            return True
        # A repo owner may not review a PR they submitted themselves.
        return self._same(pubkey, own.repo_owner) and not self._same(pubkey, own.submitter)

    def can_add_patchset(self, pubkey: str, own: Ownership) -> bool:
        return self.can_modify(pubkey, own)

    def can_create_repo(self, pubkey: str) -> bool:
        return self.create_repo == "user" or self.is_admin(pubkey)

    def can_delete_patchset(self, pubkey: str, own: Ownership) -> bool:
        return self.is_admin(pubkey) or self._same(pubkey, own.patchset_author)

    def allows(self, capability: Capability, pubkey: str, own: Ownership | None = None) -> bool:
        own = own or Ownership()
        if capability == Capability.CREATE_REPO:
            return self.can_create_repo(pubkey)
        checks = {
            Capability.MODIFY: self.can_modify,
            Capability.REVIEW: self.can_review,
            Capability.ADD_PATCHSET: self.can_add_patchset,
            Capability.DELETE_PATCHSET: self.can_delete_patchset,
        }
        return checks[capability](pubkey, own)

    def authorize(self, operation: str, pubkey: str, own: Ownership | None = None) -> None:
        capability = OPERATIONS[operation]
        if not self.allows(capability, pubkey, own):
            logger.info("Denied %s (%s) for %s", operation, capability.value, pubkey)
            raise Unauthorized(f"{operation} requires {capability.value}")
