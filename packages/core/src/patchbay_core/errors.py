"""Error taxonomy shared by the parser, the store and the SSH dispatcher.

Every failure a caller can act on is one of the classes below. The SSH
boundary renders them as a single line on stderr; anything that is not a
PatchbayError is treated as an unexpected failure and logged.
"""

from __future__ import annotations


class PatchbayError(Exception):
    """Base class for all expected failures."""


class ParseError(PatchbayError):
    """The patch stream is empty, has no mbox boundary, or is malformed."""


class NotFound(PatchbayError):
    """An entity lookup failed."""


class Conflict(PatchbayError):
    """A uniqueness constraint was violated (e.g. a repo name is taken)."""


class AlreadyInState(PatchbayError):
    """A status transition targeted the status the PR already has."""

    def __init__(self, status: str):
        super().__init__(f"patch request is already {status}")
        self.status = status


class Unauthorized(PatchbayError):
    """A capability check failed.

    The message is fixed so that callers never learn whether the entity they
    asked about exists.
    """

    MESSAGE = "unauthorized"

    def __init__(self, detail: str | None = None):
        super().__init__(self.MESSAGE)
        # Kept for logs only, never shown to the remote user.
        self.detail = detail


class PatchExists(PatchbayError):
    """A patch with the same content_sha is already in the patchset.

    Internal to ingestion: the store skips the patch and carries on.
    """


class StorageError(PatchbayError):
    """Unexpected database or I/O failure."""


class InvalidValue(PatchbayError):
    """An argument is out of range, e.g. an empty title or an unknown status."""


class ConfigError(PatchbayError):
    """The configuration file holds an invalid value."""
