"""Tests for the mailbox parser and patch content identity."""

from __future__ import annotations

import io
from datetime import datetime, timezone

import pytest

from patchbay_core.errors import ParseError
from patchbay_core.patch import diff_files, parse_files, parse_patchset, reserialize

FIXTURE_NAMES = [
    "single.patch",
    "with-cover.patch",
    "a_b.patch",
    "a_b_reorder.patch",
    "a_c_added_commit.patch",
    "context_lines_v2.patch",
    "a_c_mode_change.patch",
    "a_c_file_added_removed.patch",
]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class TestParseSingle:
    def test_headers(self, fixture_text):
        (patch,) = parse_patchset(fixture_text("single.patch"))
        assert patch.author_name == "Ada Tester"
        assert patch.author_email == "ada@example.com"
        assert patch.author_date == datetime(2024, 3, 20, 14, 5, 9, tzinfo=timezone.utc)
        assert patch.title == "feat: greet visitors"

    def test_body_and_appendix(self, fixture_text):
        (patch,) = parse_patchset(fixture_text("single.patch"))
        assert patch.body.startswith("Print a greeting when the service starts")
        assert patch.body.endswith("Signed-off-by: Ada Tester <ada@example.com>")
        assert "---" not in patch.body
        assert "hello.txt | 2 ++" in patch.body_appendix

    def test_shas(self, fixture_text):
        (patch,) = parse_patchset(fixture_text("single.patch"))
        assert patch.commit_sha == "c1dfd96eea8cc2b62785275bca38ac261256e278"
        assert patch.base_commit_sha == "4e07408562bedb8b60ce05c1decfe3ad16b72230"
        assert len(patch.content_sha) == 64

    def test_file_section(self, fixture_text):
        (patch,) = parse_patchset(fixture_text("single.patch"))
        (f,) = patch.files
        assert f.path == "hello.txt"
        assert f.is_new is True
        assert f.old_name is None
        assert f.new_mode == "100644"
        assert f.hunks[0].lines == ["+hello", "+world", "\\ No newline at end of file"]

    def test_raw_text_kept(self, fixture_text):
        (patch,) = parse_patchset(fixture_text("single.patch"))
        assert patch.raw_text.startswith("From c1dfd96eea8cc2b62785275bca38ac261256e278 ")
        assert "base-commit:" in patch.raw_text

    def test_accepts_bytes_and_file_objects(self, fixture_text):
        text = fixture_text("single.patch")
        from_bytes = parse_patchset(text.encode("utf-8"))
        from_file = parse_patchset(io.BytesIO(text.encode("utf-8")))
        assert from_bytes[0].content_sha == from_file[0].content_sha


class TestParseSeries:
    def test_cover_letter_is_dropped(self, fixture_text):
        patches = parse_patchset(fixture_text("with-cover.patch"))
        assert [p.title for p in patches] == ["feat: greet visitors", "feat: say goodbye"]

    def test_encoded_author_name(self, fixture_text):
        patches = parse_patchset(fixture_text("with-cover.patch"))
        assert patches[1].author_name == "René Tester"
        assert patches[1].author_email == "rene@example.com"

    def test_order_preserved(self, fixture_text):
        patches = parse_patchset(fixture_text("a_b_reorder.patch"))
        assert [p.commit_sha[:7] for p in patches] == ["33c682a", "22dde12"]

    def test_subject_prefix_stripped(self, fixture_text):
        patches = parse_patchset(fixture_text("context_lines_v2.patch"))
        assert patches[0].title == "chore: make tensor 6x6"

    def test_crlf_input(self, fixture_text):
        text = fixture_text("a_b.patch")
        crlf = parse_patchset(text.replace("\n", "\r\n"))
        assert crlf[0].content_sha == parse_patchset(text)[0].content_sha


# ---------------------------------------------------------------------------
# Content identity
# ---------------------------------------------------------------------------


class TestContentSha:
    def test_same_change_different_commit(self, fixture_text):
        (a,) = parse_patchset(fixture_text("a_b.patch"))
        (c,) = parse_patchset(fixture_text("a_c.patch"))
        assert a.commit_sha != c.commit_sha
        assert a.content_sha == c.content_sha

    def test_ignores_context_lines_and_hunk_numbers(self, fixture_text):
        (v1,) = parse_patchset(fixture_text("context_lines_v1.patch"))
        (v2,) = parse_patchset(fixture_text("context_lines_v2.patch"))
        assert v1.files[0].hunks[0].old_start != v2.files[0].hunks[0].old_start
        assert v1.content_sha == v2.content_sha

    def test_position_does_not_matter(self, fixture_text):
        b = parse_patchset(fixture_text("a_b_reorder.patch"))
        c = parse_patchset(fixture_text("a_c_reorder.patch"))
        assert b[0].content_sha == c[1].content_sha
        assert b[1].content_sha == c[0].content_sha

    def test_changed_line_changes_sha(self, fixture_text):
        b = parse_patchset(fixture_text("a_b_reorder.patch"))
        c = parse_patchset(fixture_text("a_c_changed_commit.patch"))
        assert b[0].content_sha != c[0].content_sha
        assert b[1].content_sha == c[1].content_sha

    def test_body_changes_sha(self, fixture_text):
        text = fixture_text("a_b_reorder.patch")
        edited = text.replace("Explain what the playground is for.", "Explain the playground.")
        assert parse_patchset(text)[1].content_sha != parse_patchset(edited)[1].content_sha

    def test_author_changes_sha(self, fixture_text):
        text = fixture_text("a_b.patch")
        edited = text.replace("From: Ada Tester <ada@example.com>", "From: Bo Tester <bo@example.com>")
        assert parse_patchset(text)[0].content_sha != parse_patchset(edited)[0].content_sha

    def test_parsing_twice_is_stable(self, fixture_text):
        text = fixture_text("with-cover.patch")
        first = [p.content_sha for p in parse_patchset(text)]
        second = [p.content_sha for p in parse_patchset(text)]
        assert first == second

    @pytest.mark.parametrize("name", FIXTURE_NAMES)
    def test_reserialized_patch_keeps_identity(self, fixture_text, name):
        patches = parse_patchset(fixture_text(name))
        again = parse_patchset(reserialize(patches))
        assert [p.content_sha for p in again] == [p.content_sha for p in patches]
        assert [p.commit_sha for p in again] == [p.commit_sha for p in patches]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestParseErrors:
    @pytest.mark.parametrize("stream", ["", "   \n\n", b""])
    def test_empty_stream(self, stream):
        with pytest.raises(ParseError, match="empty"):
            parse_patchset(stream)

    def test_no_mbox_boundary(self):
        with pytest.raises(ParseError, match="mbox"):
            parse_patchset("Subject: hi\n\nnot a patch\n")

    def test_cover_letter_only(self, fixture_text):
        cover = fixture_text("with-cover.patch").split("\n\n\nFrom c1dfd96")[0]
        with pytest.raises(ParseError, match="no patches"):
            parse_patchset(cover)

    def test_missing_subject(self, fixture_text):
        text = fixture_text("a_b.patch").replace("Subject: [PATCH] chore: add torch and create random tensor\n", "")
        with pytest.raises(ParseError, match="Subject"):
            parse_patchset(text)

    def test_missing_date(self, fixture_text):
        text = fixture_text("a_b.patch").replace("Date: Tue, 12 Mar 2024 10:15:42 -0400\n", "")
        with pytest.raises(ParseError, match="Date"):
            parse_patchset(text)

    def test_malformed_hunk_header(self, fixture_text):
        text = fixture_text("a_b.patch").replace("@@ -0,0 +1,4 @@", "@@ -0,0 +one @@")
        with pytest.raises(ParseError, match="malformed hunk header"):
            parse_patchset(text)

    def test_hunk_shorter_than_header(self, fixture_text):
        text = fixture_text("a_b.patch").replace("@@ -0,0 +1,4 @@", "@@ -0,0 +1,9 @@")
        with pytest.raises(ParseError):
            parse_patchset(text)

    def test_invalid_utf8_is_rejected(self, fixture_text):
        data = fixture_text("a_b.patch").encode().replace(b"import torch", b"import t\xf6rch")
        with pytest.raises(ParseError, match="UTF-8"):
            parse_patchset(data)

    def test_non_ascii_content_is_kept(self, fixture_text):
        text = fixture_text("a_b.patch").replace("import torch", "import törch")
        (patch,) = parse_patchset(text.encode())
        assert patch.raw_text == text


# ---------------------------------------------------------------------------
# File sections
# ---------------------------------------------------------------------------


class TestFileSections:
    LINES = [
        "diff --git a/old.txt b/new.txt",
        "similarity index 100%",
        "rename from old.txt",
        "rename to new.txt",
        "diff --git a/run.sh b/run.sh",
        "old mode 100644",
        "new mode 100755",
        "diff --git a/logo.png b/logo.png",
        "new file mode 100644",
        "index 0000000..3f4e2a1",
        "Binary files /dev/null and b/logo.png differ",
        "-- ",
        "2.44.0",
    ]

    def test_sections_without_hunks(self):
        files, end = parse_files(self.LINES)
        assert [f.path for f in files] == ["new.txt", "run.sh", "logo.png"]
        assert self.LINES[end] == "-- "

    def test_markers(self):
        rename, mode, binary = parse_files(self.LINES)[0]
        assert rename.markers() == ["rename old.txt => new.txt"]
        assert mode.markers() == ["mode change 100644 => 100755"]
        assert binary.markers() == ["new file mode 100644", "binary"]

    def test_deleted_file(self):
        files, _ = parse_files(
            [
                "diff --git a/gone.txt b/gone.txt",
                "deleted file mode 100644",
                "index 3b18e51..0000000",
                "--- a/gone.txt",
                "+++ /dev/null",
                "@@ -1 +0,0 @@",
                "-bye",
            ]
        )
        (f,) = files
        assert f.is_delete is True
        assert f.new_name is None
        assert f.path == "gone.txt"
        assert f.changed_lines() == ["-bye"]

    def test_diff_files_from_raw_text(self, fixture_text):
        (patch,) = parse_patchset(fixture_text("a_b.patch"))
        assert [f.path for f in diff_files(patch.raw_text)] == ["requirements.txt", "train.py"]
