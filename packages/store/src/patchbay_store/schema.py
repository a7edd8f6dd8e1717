"""SQLite schema, as an append-only list of migrations.

The number of applied migrations is kept in ``PRAGMA user_version``. Each
migration runs in its own transaction together with the version bump, so a
database is always at exactly one version. Never edit a released migration;
add a new one.
"""

from __future__ import annotations

import logging
import sqlite3

from patchbay_core.errors import StorageError

logger = logging.getLogger(__name__)

_V1_TABLES = [
    """
    CREATE TABLE app_users (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        pubkey      TEXT NOT NULL UNIQUE,
        name        TEXT NOT NULL UNIQUE,
        created_at  TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE repos (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id     INTEGER NOT NULL REFERENCES app_users(id) ON DELETE CASCADE,
        name        TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        created_at  TEXT NOT NULL,
        UNIQUE (user_id, name)
    )
    """,
    """
    CREATE TABLE acl (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        pubkey      TEXT,
        ip_address  TEXT,
        permission  TEXT NOT NULL,
        created_at  TEXT NOT NULL,
        CHECK (pubkey IS NOT NULL OR ip_address IS NOT NULL)
    )
    """,
    """
    CREATE TABLE patch_requests (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id     INTEGER NOT NULL REFERENCES app_users(id) ON DELETE CASCADE,
        repo_id     INTEGER NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
        name        TEXT NOT NULL,
        status      TEXT NOT NULL DEFAULT 'open'
                    CHECK (status IN ('open', 'reviewed', 'accepted', 'closed')),
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE patchsets (
        id               INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id          INTEGER NOT NULL REFERENCES app_users(id) ON DELETE CASCADE,
        patch_request_id INTEGER NOT NULL REFERENCES patch_requests(id) ON DELETE CASCADE,
        review           INTEGER NOT NULL DEFAULT 0,
        created_at       TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE patches (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id         INTEGER NOT NULL REFERENCES app_users(id) ON DELETE CASCADE,
        patchset_id     INTEGER NOT NULL REFERENCES patchsets(id) ON DELETE CASCADE,
        author_name     TEXT NOT NULL,
        author_email    TEXT NOT NULL,
        author_date     TEXT NOT NULL,
        title           TEXT NOT NULL,
        body            TEXT NOT NULL DEFAULT '',
        body_appendix   TEXT NOT NULL DEFAULT '',
        commit_sha      TEXT NOT NULL,
        content_sha     TEXT NOT NULL,
        base_commit_sha TEXT,
        raw_text        TEXT NOT NULL,
        created_at      TEXT NOT NULL,
        UNIQUE (patchset_id, content_sha)
    )
    """,
    # A deleted patchset keeps its history: the reference is cleared, the row stays.
    """
    CREATE TABLE event_logs (
        id               INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id          INTEGER NOT NULL REFERENCES app_users(id) ON DELETE CASCADE,
        repo_id          INTEGER REFERENCES repos(id) ON DELETE CASCADE,
        patch_request_id INTEGER REFERENCES patch_requests(id) ON DELETE CASCADE,
        patchset_id      INTEGER REFERENCES patchsets(id) ON DELETE SET NULL,
        event            TEXT NOT NULL,
        data             TEXT NOT NULL DEFAULT '{}',
        created_at       TEXT NOT NULL
    )
    """,
]

_V2_INDEXES = [
    "CREATE INDEX idx_patch_requests_repo ON patch_requests (repo_id)",
    "CREATE INDEX idx_patchsets_pr ON patchsets (patch_request_id, created_at)",
    "CREATE INDEX idx_patches_patchset ON patches (patchset_id, created_at)",
    "CREATE INDEX idx_event_logs_pr ON event_logs (patch_request_id, created_at)",
    "CREATE INDEX idx_event_logs_user ON event_logs (user_id, created_at)",
    "CREATE INDEX idx_acl_pubkey ON acl (pubkey)",
    "CREATE INDEX idx_acl_ip ON acl (ip_address)",
]

MIGRATIONS: list[list[str]] = [_V1_TABLES, _V2_INDEXES]


def schema_version(conn: sqlite3.Connection) -> int:
    return conn.execute("PRAGMA user_version").fetchone()[0]


def migrate(conn: sqlite3.Connection) -> int:
    """Apply pending migrations and return the resulting version.

    ``conn`` must be in autocommit mode (``isolation_level=None``) so the
    explicit transactions below are the only ones.
    """
    current = schema_version(conn)
    if current > len(MIGRATIONS):
        raise StorageError(f"database schema version {current} is newer than this server ({len(MIGRATIONS)})")

    for version in range(current + 1, len(MIGRATIONS) + 1):
        logger.info("Applying schema migration %d", version)
        try:
            conn.execute("BEGIN IMMEDIATE")
            for statement in MIGRATIONS[version - 1]:
                conn.execute(statement)
            conn.execute(f"PRAGMA user_version = {version}")
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StorageError(f"schema migration {version} failed: {exc}") from exc
    return len(MIGRATIONS)
