"""SQLiteStore: the store every deployment runs on.

One database file per deployment, under ``data_dir``. Every mutation takes
the write lock up front with ``BEGIN IMMEDIATE``, so concurrent SSH sessions
writing to the same PR serialise.

One connection per store, shared across session threads behind a
re-entrant lock. The connection runs in autocommit mode and every mutation
opens its own explicit transaction through ``_tx``; the event-log row for an
operation is written inside that same transaction.

``SQLiteStore(":memory:")`` is a complete in-process store for tests.
"""

from __future__ import annotations

import json
import logging
import random
import sqlite3
import string
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import IO

from patchbay_core.errors import Conflict, InvalidValue, NotFound, PatchExists, StorageError
from patchbay_core.patch import ParsedPatch, parse_patchset
from patchbay_core.policy import Status
from patchbay_store.base import BaseStore
from patchbay_store.models import (
    PATCHSET_EVENTS,
    Acl,
    Event,
    EventLog,
    Patch,
    PatchRequest,
    Patchset,
    PatchsetOp,
    Repo,
    User,
)
from patchbay_store.schema import migrate, schema_version

logger = logging.getLogger(__name__)

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits

_REPO_SELECT = "SELECT r.*, u.name AS owner_name FROM repos r JOIN app_users u ON u.id = r.user_id"
_PR_SELECT = """
SELECT pr.*, u.name AS user_name,
       (SELECT COUNT(*) FROM patchsets ps WHERE ps.patch_request_id = pr.id) AS patchset_count
FROM patch_requests pr JOIN app_users u ON u.id = pr.user_id
"""
_EVENT_SELECT = "SELECT e.*, u.name AS user_name FROM event_logs e JOIN app_users u ON u.id = e.user_id"
_EVENT_ORDER = " ORDER BY e.created_at DESC, e.id DESC"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _name_suffix() -> str:
    return "".join(random.choices(_SUFFIX_ALPHABET, k=4))


def _status(value: str) -> Status:
    try:
        return Status(value)
    except ValueError:
        raise InvalidValue(f"unknown status {value!r}") from None


@contextmanager
def _translated():
    """Map sqlite3 failures onto the shared error taxonomy."""
    try:
        yield
    except sqlite3.IntegrityError as exc:
        msg = str(exc)
        if "UNIQUE" in msg:
            raise Conflict("already exists") from exc
        if "FOREIGN KEY" in msg:
            raise NotFound("referenced entity does not exist") from exc
        raise StorageError(msg) from exc
    except sqlite3.Error as exc:
        raise StorageError(str(exc)) from exc


class SQLiteStore(BaseStore):
    """Stores users, repos, patch requests and the event log in SQLite.

    The database path comes from ``db_path`` in patchbay.yml and defaults to
    ``<data_dir>/pr.db``. Pending migrations are applied on open unless
    ``auto_migrate`` is False.
    """

    def __init__(self, db_path: str = "pr.db", auto_migrate: bool = True):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        with _translated():
            self._conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA busy_timeout = 5000")
        if auto_migrate:
            self.migrate()

    # -- plumbing ------------------------------------------------------------

    @contextmanager
    def _tx(self):
        with self._lock:
            if self._conn.in_transaction:
                yield self._conn
                return
            with _translated():
                self._conn.execute("BEGIN IMMEDIATE")
            try:
                with _translated():
                    yield self._conn
                    self._conn.execute("COMMIT")
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise

    @contextmanager
    def transaction(self):
        with self._tx():
            yield

    def _all(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock, _translated():
            return self._conn.execute(sql, params).fetchall()

    def _one(self, sql: str, params: tuple, what: str) -> sqlite3.Row:
        with self._lock, _translated():
            row = self._conn.execute(sql, params).fetchone()
        if row is None:
            raise NotFound(f"{what} not found")
        return row

    def migrate(self) -> int:
        with self._lock:
            return migrate(self._conn)

    def schema_version(self) -> int:
        with self._lock, _translated():
            return schema_version(self._conn)

    def close(self) -> None:
        self._conn.close()

    # -- row mapping ---------------------------------------------------------

    @staticmethod
    def _patchset(row: sqlite3.Row) -> Patchset:
        return Patchset(**{**dict(row), "review": bool(row["review"])})

    @staticmethod
    def _event(row: sqlite3.Row) -> EventLog:
        return EventLog(**{**dict(row), "data": json.loads(row["data"] or "{}")})

    def _log(
        self,
        conn: sqlite3.Connection,
        user_id: int,
        event: Event,
        repo_id: int | None = None,
        pr_id: int | None = None,
        patchset_id: int | None = None,
        data: dict | None = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO event_logs
              (user_id, repo_id, patch_request_id, patchset_id, event, data, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, repo_id, pr_id, patchset_id, event.value, json.dumps(data or {}), _now()),
        )

    # -- users ---------------------------------------------------------------

    def upsert_user(self, pubkey: str, name: str) -> User:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM app_users WHERE pubkey = ?", (pubkey,)).fetchone()
            if row is not None:
                return User(**dict(row))
            for candidate in (name, name + _name_suffix()):
                try:
                    cur = conn.execute(
                        "INSERT INTO app_users (pubkey, name, created_at) VALUES (?, ?, ?)",
                        (pubkey, candidate, _now()),
                    )
                except sqlite3.IntegrityError:
                    logger.info("User name %r is taken", candidate)
                    continue
                logger.info("Created user %r", candidate)
                return User(**dict(conn.execute("SELECT * FROM app_users WHERE id = ?", (cur.lastrowid,)).fetchone()))
        raise Conflict(f"user name {name!r} is taken")

    def get_user_by_id(self, user_id: int) -> User:
        return User(**dict(self._one("SELECT * FROM app_users WHERE id = ?", (user_id,), "user")))

    def get_user_by_name(self, name: str) -> User:
        return User(**dict(self._one("SELECT * FROM app_users WHERE name = ?", (name,), "user")))

    def get_user_by_pubkey(self, pubkey: str) -> User:
        return User(**dict(self._one("SELECT * FROM app_users WHERE pubkey = ?", (pubkey,), "user")))

    # -- repos ---------------------------------------------------------------

    def create_repo(self, user_id: int, name: str, description: str = "") -> Repo:
        with self._tx() as conn:
            try:
                cur = conn.execute(
                    "INSERT INTO repos (user_id, name, description, created_at) VALUES (?, ?, ?, ?)",
                    (user_id, name, description, _now()),
                )
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" in str(exc):
                    raise Conflict(f"repo {name!r} already exists") from exc
                raise NotFound("user not found") from exc
            self._log(conn, user_id, Event.REPO_CREATED, repo_id=cur.lastrowid, data={"name": name})
            return Repo(**dict(conn.execute(f"{_REPO_SELECT} WHERE r.id = ?", (cur.lastrowid,)).fetchone()))

    def get_repo_by_id(self, repo_id: int) -> Repo:
        return Repo(**dict(self._one(f"{_REPO_SELECT} WHERE r.id = ?", (repo_id,), "repo")))

    def get_repo(self, owner_name: str, name: str) -> Repo:
        row = self._one(f"{_REPO_SELECT} WHERE u.name = ? AND r.name = ?", (owner_name, name), "repo")
        return Repo(**dict(row))

    def get_repos(self) -> list[Repo]:
        return [Repo(**dict(r)) for r in self._all(f"{_REPO_SELECT} ORDER BY u.name, r.name")]

    # -- patch requests ------------------------------------------------------

    def _insert_patchset(self, conn: sqlite3.Connection, pr_id: int, user_id: int, review: bool) -> int:
        cur = conn.execute(
            "INSERT INTO patchsets (user_id, patch_request_id, review, created_at) VALUES (?, ?, ?, ?)",
            (user_id, pr_id, int(review), _now()),
        )
        return cur.lastrowid

    def _insert_patch(self, conn: sqlite3.Connection, patchset_id: int, user_id: int, patch: ParsedPatch) -> Patch:
        try:
            cur = conn.execute(
                """
                INSERT INTO patches
                  (user_id, patchset_id, author_name, author_email, author_date, title, body,
                   body_appendix, commit_sha, content_sha, base_commit_sha, raw_text, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    patchset_id,
                    patch.author_name,
                    patch.author_email,
                    patch.author_date.isoformat(),
                    patch.title,
                    patch.body,
                    patch.body_appendix,
                    patch.commit_sha,
                    patch.content_sha,
                    patch.base_commit_sha,
                    patch.raw_text,
                    _now(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc):
                raise PatchExists(patch.content_sha) from exc
            raise
        return Patch(**dict(conn.execute("SELECT * FROM patches WHERE id = ?", (cur.lastrowid,)).fetchone()))

    def _insert_patches(
        self, conn: sqlite3.Connection, patchset_id: int, user_id: int, patches: list[ParsedPatch]
    ) -> list[Patch]:
        inserted = []
        for patch in patches:
            try:
                inserted.append(self._insert_patch(conn, patchset_id, user_id, patch))
            except PatchExists:
                logger.debug("Skipping duplicate patch %s in patchset %d", patch.content_sha[:12], patchset_id)
        return inserted

    def _get_pr(self, conn: sqlite3.Connection, pr_id: int) -> PatchRequest:
        row = conn.execute(f"{_PR_SELECT} WHERE pr.id = ?", (pr_id,)).fetchone()
        if row is None:
            raise NotFound(f"patch request {pr_id} not found")
        return PatchRequest(**dict(row))

    def submit_patch_request(self, repo_id: int, user_id: int, stream: bytes | str | IO) -> PatchRequest:
        patches = parse_patchset(stream)
        with self._tx() as conn:
            now = _now()
            cur = conn.execute(
                """
                INSERT INTO patch_requests (user_id, repo_id, name, status, created_at, updated_at)
                VALUES (?, ?, ?, 'open', ?, ?)
                """,
                (user_id, repo_id, patches[0].title, now, now),
            )
            pr_id = cur.lastrowid
            patchset_id = self._insert_patchset(conn, pr_id, user_id, review=False)
            inserted = self._insert_patches(conn, patchset_id, user_id, patches)
            self._log(
                conn,
                user_id,
                Event.PR_CREATED,
                repo_id=repo_id,
                pr_id=pr_id,
                patchset_id=patchset_id,
                data={"name": patches[0].title, "patches": len(inserted)},
            )
            logger.info("Created patch request %d with %d patches", pr_id, len(inserted))
            return self._get_pr(conn, pr_id)

    def submit_patchset(self, pr_id: int, user_id: int, op: PatchsetOp, stream: bytes | str | IO) -> list[Patch]:
        op = PatchsetOp(op)
        patches = parse_patchset(stream)
        with self._tx() as conn:
            pr = self._get_pr(conn, pr_id)
            if op == PatchsetOp.REPLACE:
                dropped = conn.execute("DELETE FROM patchsets WHERE patch_request_id = ?", (pr_id,)).rowcount
                logger.info("Replacing %d patchsets of patch request %d", dropped, pr_id)
            else:
                latest = conn.execute(
                    "SELECT id FROM patchsets WHERE patch_request_id = ? ORDER BY created_at DESC, id DESC LIMIT 1",
                    (pr_id,),
                ).fetchone()
                if latest is not None:
                    current = [
                        r["content_sha"]
                        for r in conn.execute(
                            "SELECT content_sha FROM patches WHERE patchset_id = ? ORDER BY created_at, id",
                            (latest["id"],),
                        )
                    ]
                    if current == list(dict.fromkeys(p.content_sha for p in patches)):
                        logger.info("Patch request %d already has this series; nothing to add", pr_id)
                        return []

            patchset_id = self._insert_patchset(conn, pr_id, user_id, review=op == PatchsetOp.REVIEW)
            inserted = self._insert_patches(conn, patchset_id, user_id, patches)
            if inserted:
                conn.execute("UPDATE patch_requests SET updated_at = ? WHERE id = ?", (_now(), pr_id))
                self._log(
                    conn,
                    user_id,
                    PATCHSET_EVENTS[op],
                    repo_id=pr.repo_id,
                    pr_id=pr_id,
                    patchset_id=patchset_id,
                    data={"patches": len(inserted)},
                )
            return inserted

    def update_patch_request_status(self, pr_id: int, user_id: int, status: str) -> None:
        status = _status(status).value
        with self._tx() as conn:
            pr = self._get_pr(conn, pr_id)
            conn.execute(
                "UPDATE patch_requests SET status = ?, updated_at = ? WHERE id = ?",
                (status, _now(), pr_id),
            )
            self._log(
                conn,
                user_id,
                Event.PR_STATUS_CHANGED,
                repo_id=pr.repo_id,
                pr_id=pr_id,
                data={"status": status, "previous": pr.status},
            )

    def update_patch_request_name(self, pr_id: int, user_id: int, name: str) -> None:
        name = name.strip()
        if not name:
            raise InvalidValue("patch request name must not be empty")
        with self._tx() as conn:
            pr = self._get_pr(conn, pr_id)
            conn.execute("UPDATE patch_requests SET name = ?, updated_at = ? WHERE id = ?", (name, _now(), pr_id))
            self._log(
                conn,
                user_id,
                Event.PR_NAME_CHANGED,
                repo_id=pr.repo_id,
                pr_id=pr_id,
                data={"name": name, "previous": pr.name},
            )

    def get_patch_requests(self) -> list[PatchRequest]:
        return [PatchRequest(**dict(r)) for r in self._all(f"{_PR_SELECT} ORDER BY pr.id")]

    def get_patch_requests_by_repo(self, repo_id: int) -> list[PatchRequest]:
        rows = self._all(f"{_PR_SELECT} WHERE pr.repo_id = ? ORDER BY pr.id", (repo_id,))
        return [PatchRequest(**dict(r)) for r in rows]

    def get_patch_request_by_id(self, pr_id: int) -> PatchRequest:
        return PatchRequest(**dict(self._one(f"{_PR_SELECT} WHERE pr.id = ?", (pr_id,), f"patch request {pr_id}")))

    # -- patchsets and patches -----------------------------------------------

    def get_patchsets_by_pr(self, pr_id: int) -> list[Patchset]:
        rows = self._all(
            "SELECT * FROM patchsets WHERE patch_request_id = ? ORDER BY created_at, id",
            (pr_id,),
        )
        return [self._patchset(r) for r in rows]

    def get_patchset_by_id(self, patchset_id: int) -> Patchset:
        row = self._one("SELECT * FROM patchsets WHERE id = ?", (patchset_id,), f"patchset {patchset_id}")
        return self._patchset(row)

    def delete_patchset(self, user_id: int, pr_id: int, patchset_id: int) -> None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT id FROM patchsets WHERE id = ? AND patch_request_id = ?",
                (patchset_id, pr_id),
            ).fetchone()
            if row is None:
                raise NotFound(f"patchset {patchset_id} not found")
            pr = self._get_pr(conn, pr_id)
            conn.execute("DELETE FROM patchsets WHERE id = ?", (patchset_id,))
            self._log(
                conn,
                user_id,
                Event.PATCHSET_DELETED,
                repo_id=pr.repo_id,
                pr_id=pr_id,
                data={"patchset_id": patchset_id},
            )

    def get_patches_by_patchset(self, patchset_id: int) -> list[Patch]:
        rows = self._all("SELECT * FROM patches WHERE patchset_id = ? ORDER BY created_at, id", (patchset_id,))
        return [Patch(**dict(r)) for r in rows]

    # -- event log -----------------------------------------------------------

    def get_event_logs(self) -> list[EventLog]:
        return [self._event(r) for r in self._all(_EVENT_SELECT + _EVENT_ORDER)]

    def get_event_logs_by_user(self, user_id: int) -> list[EventLog]:
        rows = self._all(
            _EVENT_SELECT
            + " WHERE e.user_id = ?"
            + " OR e.patch_request_id IN (SELECT id FROM patch_requests WHERE user_id = ?)"
            + _EVENT_ORDER,
            (user_id, user_id),
        )
        return [self._event(r) for r in rows]

    def get_event_logs_by_pr(self, pr_id: int) -> list[EventLog]:
        rows = self._all(_EVENT_SELECT + " WHERE e.patch_request_id = ?" + _EVENT_ORDER, (pr_id,))
        return [self._event(r) for r in rows]

    def get_event_logs_by_repo(self, repo_id: int) -> list[EventLog]:
        rows = self._all(_EVENT_SELECT + " WHERE e.repo_id = ?" + _EVENT_ORDER, (repo_id,))
        return [self._event(r) for r in rows]

    # -- access control ------------------------------------------------------

    def add_acl(self, permission: str, pubkey: str | None = None, ip_address: str | None = None) -> Acl:
        if not pubkey and not ip_address:
            raise InvalidValue("an acl entry needs a pubkey or an ip address")
        with self._tx() as conn:
            cur = conn.execute(
                "INSERT INTO acl (pubkey, ip_address, permission, created_at) VALUES (?, ?, ?, ?)",
                (pubkey, ip_address, permission, _now()),
            )
            logger.info("Added acl %s for pubkey=%s ip=%s", permission, pubkey, ip_address)
            return Acl(**dict(conn.execute("SELECT * FROM acl WHERE id = ?", (cur.lastrowid,)).fetchone()))

    def get_acls(self) -> list[Acl]:
        return [Acl(**dict(r)) for r in self._all("SELECT * FROM acl ORDER BY id")]

    def is_banned(self, pubkey: str | None, ip_address: str | None) -> bool:
        rows = self._all(
            """
            SELECT 1 FROM acl
            WHERE permission = 'banned'
              AND ((pubkey IS NOT NULL AND pubkey = ?) OR (ip_address IS NOT NULL AND ip_address = ?))
            LIMIT 1
            """,
            (pubkey, ip_address),
        )
        return bool(rows)
