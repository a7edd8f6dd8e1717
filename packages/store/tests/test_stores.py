"""Tests for the SQLite store."""

from __future__ import annotations

import sqlite3

import pytest

from patchbay_core.errors import AlreadyInState, Conflict, InvalidValue, NotFound, ParseError, StorageError
from patchbay_store.models import Event, PatchsetOp
from patchbay_store.schema import MIGRATIONS
from patchbay_store.sqlite import SQLiteStore

def _events(entries):
    return [e.event for e in entries]


# ---------------------------------------------------------------------------
# Users and repos
# ---------------------------------------------------------------------------


class TestUsers:
    def test_upsert_returns_existing_user(self, store, admin):
        again = store.upsert_user(admin.pubkey, "someone-else")
        assert again.id == admin.id
        assert again.name == "admin"

    def test_name_collision_gets_suffix(self, make_pubkey, store, admin):
        other = store.upsert_user(make_pubkey(3), "admin")
        assert other.name.startswith("admin")
        assert len(other.name) == len("admin") + 4

    def test_second_collision_fails(self, make_pubkey, store, admin, mocker):
        mocker.patch("patchbay_store.sqlite._name_suffix", return_value="zzzz")
        assert store.upsert_user(make_pubkey(3), "admin").name == "adminzzzz"
        with pytest.raises(Conflict):
            store.upsert_user(make_pubkey(4), "admin")

    def test_lookups(self, store, contributor):
        assert store.get_user_by_name("contributor").id == contributor.id
        assert store.get_user_by_pubkey(contributor.pubkey).id == contributor.id
        with pytest.raises(NotFound):
            store.get_user_by_id(999)


class TestRepos:
    def test_create_and_get(self, store, admin, repo):
        assert repo.full_name == "admin/test"
        assert repo.description == "demo repository"
        assert store.get_repo("admin", "test").id == repo.id
        assert store.get_repo_by_id(repo.id).owner_name == "admin"

    def test_duplicate_name_for_same_owner(self, store, admin, repo):
        with pytest.raises(Conflict, match="already exists"):
            store.create_repo(admin.id, "test")

    def test_same_name_other_owner(self, store, contributor, repo):
        mine = store.create_repo(contributor.id, "test")
        assert [r.full_name for r in store.get_repos()] == ["admin/test", "contributor/test"]
        assert mine.id != repo.id

    def test_repo_created_event(self, store, admin, repo):
        (event,) = store.get_event_logs_by_repo(repo.id)
        assert event.event == Event.REPO_CREATED.value
        assert event.data == {"name": "test"}

    def test_missing_repo(self, store):
        with pytest.raises(NotFound):
            store.get_repo("nobody", "nothing")


# ---------------------------------------------------------------------------
# Patch requests
# ---------------------------------------------------------------------------


class TestSubmitPatchRequest:
    def test_accepted_patch_flow(self, store, admin, contributor, repo, fixture_bytes):
        pr = store.submit_patch_request(repo.id, contributor.id, fixture_bytes("single.patch"))
        assert pr.id == 1
        assert pr.status == "open"
        assert pr.name == "feat: greet visitors"

        store.update_patch_request_name(pr.id, contributor.id, "Accepted patch")
        store.update_patch_request_status(pr.id, admin.id, "accepted")

        pr = store.get_patch_request_by_id(pr.id)
        assert pr.status == "accepted"
        assert pr.name == "Accepted patch"
        assert sorted(_events(store.get_event_logs_by_pr(pr.id))) == [
            "pr_created",
            "pr_name_changed",
            "pr_status_changed",
        ]

    def test_patches_stored_in_order(self, store, contributor, repo, fixture_bytes):
        pr = store.submit_patch_request(repo.id, contributor.id, fixture_bytes("with-cover.patch"))
        (ps,) = store.get_patchsets_by_pr(pr.id)
        patches = store.get_patches_by_patchset(ps.id)
        assert [p.title for p in patches] == ["feat: greet visitors", "feat: say goodbye"]
        assert all(p.patchset_id == ps.id for p in patches)
        assert patches[0].raw_text.startswith("From c1dfd96")

    def test_duplicate_patch_in_stream_is_skipped(self, store, contributor, repo, fixture_bytes):
        stream = fixture_bytes("a_b.patch") + b"\n" + fixture_bytes("a_c.patch")
        pr = store.submit_patch_request(repo.id, contributor.id, stream)
        (ps,) = store.get_patchsets_by_pr(pr.id)
        assert len(store.get_patches_by_patchset(ps.id)) == 1

    def test_parse_error_writes_nothing(self, store, contributor, repo):
        with pytest.raises(ParseError):
            store.submit_patch_request(repo.id, contributor.id, b"")
        assert store.get_patch_requests() == []

    def test_unknown_repo_rolls_back(self, store, contributor, fixture_bytes):
        with pytest.raises(NotFound):
            store.submit_patch_request(999, contributor.id, fixture_bytes("single.patch"))
        assert store.get_patch_requests() == []
        assert store.get_event_logs() == []

    def test_listing_fields(self, store, contributor, repo, fixture_bytes):
        store.submit_patch_request(repo.id, contributor.id, fixture_bytes("single.patch"))
        (pr,) = store.get_patch_requests_by_repo(repo.id)
        assert pr.user_name == "contributor"
        assert pr.patchset_count == 1
        assert store.get_patch_requests_by_repo(999) == []


class TestSubmitPatchset:
    @pytest.fixture
    def pr(self, store, contributor, repo, fixture_bytes):
        return store.submit_patch_request(repo.id, contributor.id, fixture_bytes("a_b_reorder.patch"))

    def test_review_patchset(self, store, admin, pr, fixture_bytes):
        inserted = store.submit_patchset(pr.id, admin.id, PatchsetOp.REVIEW, fixture_bytes("a_c_changed_commit.patch"))
        assert len(inserted) == 2
        first, second = store.get_patchsets_by_pr(pr.id)
        assert first.review is False
        assert second.review is True
        assert second.user_id == admin.id
        assert _events(store.get_event_logs_by_pr(pr.id))[0] == "pr_reviewed"

    def test_same_series_twice_inserts_nothing(self, store, contributor, pr, fixture_bytes):
        before = store.get_event_logs_by_pr(pr.id)
        inserted = store.submit_patchset(pr.id, contributor.id, PatchsetOp.NORMAL, fixture_bytes("a_b_reorder.patch"))
        assert inserted == []
        assert len(store.get_patchsets_by_pr(pr.id)) == 1
        assert len(store.get_event_logs_by_pr(pr.id)) == len(before)

    def test_rebased_series_counts_as_unchanged(self, store, contributor, repo, fixture_bytes):
        pr = store.submit_patch_request(repo.id, contributor.id, fixture_bytes("a_b.patch"))
        assert store.submit_patchset(pr.id, contributor.id, "normal", fixture_bytes("a_c.patch")) == []

    def test_new_revision_added(self, store, contributor, pr, fixture_bytes):
        inserted = store.submit_patchset(
            pr.id, contributor.id, PatchsetOp.NORMAL, fixture_bytes("a_c_added_commit.patch")
        )
        assert [p.title for p in inserted][-1] == "chore: make tensor 6x6"
        assert store.get_patch_request_by_id(pr.id).patchset_count == 2
        assert _events(store.get_event_logs_by_pr(pr.id))[0] == "pr_patchset_added"

    def test_replace_drops_earlier_patchsets(self, store, contributor, pr, fixture_bytes):
        store.submit_patchset(pr.id, contributor.id, PatchsetOp.REPLACE, fixture_bytes("a_c_changed_commit.patch"))
        (ps,) = store.get_patchsets_by_pr(pr.id)
        assert [p.commit_sha[:7] for p in store.get_patches_by_patchset(ps.id)] == ["5d1e9c0", "e41b6f2"]
        events = store.get_event_logs_by_pr(pr.id)
        assert _events(events) == ["pr_patchset_replaced", "pr_created"]
        assert events[1].patchset_id is None

    def test_unknown_pr(self, store, contributor, fixture_bytes):
        with pytest.raises(NotFound):
            store.submit_patchset(42, contributor.id, PatchsetOp.NORMAL, fixture_bytes("single.patch"))


class TestUpdates:
    @pytest.fixture
    def pr(self, store, contributor, repo, fixture_bytes):
        return store.submit_patch_request(repo.id, contributor.id, fixture_bytes("single.patch"))

    def test_status_event_data(self, store, admin, pr):
        store.update_patch_request_status(pr.id, admin.id, "closed")
        event = store.get_event_logs_by_pr(pr.id)[0]
        assert event.event == "pr_status_changed"
        assert event.data == {"status": "closed", "previous": "open"}
        assert event.user_name == "admin"

    def test_invalid_status(self, store, admin, pr):
        with pytest.raises(InvalidValue):
            store.update_patch_request_status(pr.id, admin.id, "merged")

    def test_empty_name(self, store, contributor, pr):
        with pytest.raises(InvalidValue):
            store.update_patch_request_name(pr.id, contributor.id, "   ")

    def test_transaction_rolls_back_every_write(self, store, admin, pr, fixture_bytes):
        with pytest.raises(AlreadyInState):
            with store.transaction():
                store.submit_patchset(pr.id, admin.id, PatchsetOp.REVIEW, fixture_bytes("a_b.patch"))
                store.update_patch_request_status(pr.id, admin.id, "accepted")
                raise AlreadyInState("accepted")

        assert len(store.get_patchsets_by_pr(pr.id)) == 1
        assert store.get_patch_request_by_id(pr.id).status == "open"
        assert _events(store.get_event_logs_by_pr(pr.id)) == ["pr_created"]

    def test_nested_transactions_join_the_outer_one(self, store, admin, pr):
        with store.transaction():
            store.update_patch_request_status(pr.id, admin.id, "closed")
            with store.transaction():
                store.update_patch_request_name(pr.id, admin.id, "Renamed")
        pr = store.get_patch_request_by_id(pr.id)
        assert (pr.status, pr.name) == ("closed", "Renamed")

    def test_delete_patchset_cascades(self, store, contributor, pr):
        (ps,) = store.get_patchsets_by_pr(pr.id)
        store.delete_patchset(contributor.id, pr.id, ps.id)
        assert store.get_patchsets_by_pr(pr.id) == []
        assert store.get_patches_by_patchset(ps.id) == []
        event = store.get_event_logs_by_pr(pr.id)[0]
        assert event.event == "patchset_deleted"
        assert event.data == {"patchset_id": ps.id}

    def test_delete_patchset_of_other_pr(self, store, contributor, pr):
        (ps,) = store.get_patchsets_by_pr(pr.id)
        with pytest.raises(NotFound):
            store.delete_patchset(contributor.id, pr.id + 1, ps.id)


# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------


class TestEventLog:
    def test_user_view_includes_events_on_own_prs(self, store, admin, contributor, repo, fixture_bytes):
        pr = store.submit_patch_request(repo.id, contributor.id, fixture_bytes("single.patch"))
        store.update_patch_request_status(pr.id, admin.id, "accepted")

        mine = store.get_event_logs_by_user(contributor.id)
        assert _events(mine) == ["pr_status_changed", "pr_created"]
        assert _events(store.get_event_logs_by_user(admin.id)) == ["pr_status_changed", "repo_created"]

    def test_global_newest_first(self, store, contributor, repo, fixture_bytes):
        store.submit_patch_request(repo.id, contributor.id, fixture_bytes("single.patch"))
        assert _events(store.get_event_logs()) == ["pr_created", "repo_created"]


# ---------------------------------------------------------------------------
# ACL
# ---------------------------------------------------------------------------


class TestAcl:
    def test_ban_pubkey(self, make_pubkey, store):
        key = make_pubkey(9)
        store.add_acl("banned", pubkey=key)
        assert store.is_banned(key, "10.0.0.1") is True
        assert store.is_banned(make_pubkey(8), "10.0.0.1") is False

    def test_ban_ip(self, make_pubkey, store):
        store.add_acl("banned", ip_address="10.0.0.9")
        assert store.is_banned(make_pubkey(8), "10.0.0.9") is True
        assert store.is_banned(make_pubkey(8), None) is False

    def test_list(self, store):
        store.add_acl("banned", ip_address="10.0.0.9")
        (acl,) = store.get_acls()
        assert acl.permission == "banned"
        assert acl.pubkey is None

    def test_needs_a_target(self, store):
        with pytest.raises(InvalidValue):
            store.add_acl("banned")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_fresh_database_is_current(self, tmp_path):
        store = SQLiteStore(str(tmp_path / "data" / "pr.db"))
        assert store.schema_version() == len(MIGRATIONS)
        store.close()

    def test_persists_across_connections(self, make_pubkey, tmp_path, fixture_bytes):
        db_path = str(tmp_path / "pr.db")
        store_a = SQLiteStore(db_path)
        user = store_a.upsert_user(make_pubkey(1), "admin")
        repo = store_a.create_repo(user.id, "test")
        store_a.submit_patch_request(repo.id, user.id, fixture_bytes("single.patch"))
        store_a.close()

        store_b = SQLiteStore(db_path)
        assert len(store_b.get_patch_requests()) == 1
        assert store_b.migrate() == len(MIGRATIONS)
        store_b.close()

    def test_newer_schema_rejected(self, tmp_path):
        db_path = str(tmp_path / "pr.db")
        conn = sqlite3.connect(db_path)
        conn.execute(f"PRAGMA user_version = {len(MIGRATIONS) + 1}")
        conn.close()
        with pytest.raises(StorageError, match="newer"):
            SQLiteStore(db_path)

    def test_without_auto_migrate(self, tmp_path):
        store = SQLiteStore(str(tmp_path / "pr.db"), auto_migrate=False)
        assert store.schema_version() == 0
        assert store.migrate() == len(MIGRATIONS)
        store.close()
