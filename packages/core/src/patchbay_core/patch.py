"""Mailbox parser for ``git format-patch`` streams.

A stream is split on mbox ``From <sha> <date>`` lines. Each record is read
with the standard ``email`` parser for its headers, then its payload is cut
into three parts the way ``git am`` sees them:

    commit message  ─┐
    ---              │ body / body_appendix (the diffstat)
    diffstat        ─┘
    diff --git ...   file sections, parsed hunk by hunk using the counts
                     in each ``@@`` header so trailing signatures are never
                     mistaken for diff lines

Records without any file section are cover letters and are dropped.

Two digests are kept per patch. ``commit_sha`` identifies the commit as it
arrived. ``content_sha`` identifies the change itself: author, title, body
and the added/removed lines of every file, with dates, index lines, hunk
line numbers and trailing whitespace normalised away. Re-sending a rebased
but otherwise identical series yields the same ``content_sha`` sequence.
"""

from __future__ import annotations

import email.parser
import email.policy
import email.utils
import hashlib
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import IO

from patchbay_core.errors import ParseError

logger = logging.getLogger(__name__)

_MBOX_FROM_RE = re.compile(
    r"^From (\S+) (?:Mon|Tue|Wed|Thu|Fri|Sat|Sun) \w{3} +\d{1,2} \d{2}:\d{2}:\d{2} \d{4}\s*$",
    re.MULTILINE,
)
_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@ ?(.*)$")
_SUBJECT_PREFIX_RE = re.compile(r"^\s*(?:\[[^\]]*\]\s*)+")
_BASE_COMMIT_RE = re.compile(r"^base-commit: ([0-9a-f]{7,40})\s*$", re.MULTILINE)
_SHA_RE = re.compile(r"^[0-9a-f]{40}$")

_DIFF_GIT = "diff --git "
# git format-patch writes this fixed date on every mbox separator line.
_MBOX_DATE = "Mon Sep 17 00:00:00 2001"


@dataclass
class Hunk:
    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    section: str = ""
    lines: list[str] = field(default_factory=list)

    def header(self) -> str:
        text = f"@@ -{self.old_start},{self.old_lines} +{self.new_start},{self.new_lines} @@"
        return f"{text} {self.section}" if self.section else text


@dataclass
class FileDiff:
    """One ``diff --git`` section of a patch."""

    old_name: str | None
    new_name: str | None
    is_new: bool = False
    is_delete: bool = False
    is_rename: bool = False
    is_copy: bool = False
    is_binary: bool = False
    old_mode: str | None = None
    new_mode: str | None = None
    hunks: list[Hunk] = field(default_factory=list)

    @property
    def path(self) -> str:
        return self.new_name or self.old_name or ""

    def markers(self) -> list[str]:
        """Non-hunk facts about the file that are part of the change."""
        out = []
        if self.is_new:
            out.append(f"new file mode {self.new_mode}")
        elif self.is_delete:
            out.append(f"deleted file mode {self.old_mode}")
        elif self.old_mode and self.new_mode and self.old_mode != self.new_mode:
            out.append(f"mode change {self.old_mode} => {self.new_mode}")
        if self.is_rename or self.is_copy:
            verb = "rename" if self.is_rename else "copy"
            out.append(f"{verb} {self.old_name} => {self.new_name}")
        if self.is_binary:
            out.append("binary")
        return out

    def all_lines(self) -> list[str]:
        return [line.rstrip() for hunk in self.hunks for line in hunk.lines if not line.startswith("\\")]

    def changed_lines(self) -> list[str]:
        return [line for line in self.all_lines() if line[:1] in ("+", "-")]


@dataclass
class ParsedPatch:
    """A normalised patch record, ready to be stored."""

    author_name: str
    author_email: str
    author_date: datetime
    title: str
    body: str
    body_appendix: str
    commit_sha: str
    content_sha: str
    raw_text: str
    base_commit_sha: str | None = None
    files: list[FileDiff] = field(default_factory=list)

    def to_mbox(self) -> str:
        """Render the patch back to ``git format-patch`` form."""
        sha = self.commit_sha if _SHA_RE.match(self.commit_sha) else "0" * 40
        out = [
            f"From {sha} {_MBOX_DATE}",
            f"From: {email.utils.formataddr((self.author_name, self.author_email))}",
            f"Date: {email.utils.format_datetime(self.author_date)}",
            f"Subject: [PATCH] {self.title}",
            "",
        ]
        if self.body:
            out.extend([self.body, ""])
        out.append("---")
        if self.body_appendix:
            out.append(self.body_appendix)
        out.append("")
        for f in self.files:
            out.extend(_render_file(f))
        if self.base_commit_sha:
            out.extend(["", f"base-commit: {self.base_commit_sha}"])
        out.extend(["-- ", "patchbay", ""])
        return "\n".join(out)


def _render_file(f: FileDiff) -> list[str]:
    old = f.old_name or f.new_name
    new = f.new_name or f.old_name
    out = [f"diff --git a/{old} b/{new}"]
    if f.is_new:
        out.append(f"new file mode {f.new_mode}")
    elif f.is_delete:
        out.append(f"deleted file mode {f.old_mode}")
    elif f.old_mode and f.new_mode and f.old_mode != f.new_mode:
        out.extend([f"old mode {f.old_mode}", f"new mode {f.new_mode}"])
    if f.is_rename or f.is_copy:
        verb = "rename" if f.is_rename else "copy"
        out.extend([f"{verb} from {f.old_name}", f"{verb} to {f.new_name}"])
    if f.is_binary:
        out.append(f"Binary files a/{old} and b/{new} differ")
        return out
    if f.hunks:
        out.append(f"--- a/{f.old_name}" if f.old_name and not f.is_new else "--- /dev/null")
        out.append(f"+++ b/{f.new_name}" if f.new_name and not f.is_delete else "+++ /dev/null")
        for hunk in f.hunks:
            out.append(hunk.header())
            out.extend(hunk.lines)
    return out


# --------------------------------------------------------------------------- #
# Content identity                                                            #
# --------------------------------------------------------------------------- #


def _canonical(text: str) -> str:
    lines = [line.rstrip() for line in text.replace("\r\n", "\n").split("\n")]
    return "\n".join(lines).strip("\n")


def calc_content_sha(author_name: str, author_email: str, title: str, body: str, files: list[FileDiff]) -> str:
    parts = [
        f"Author: {author_name.strip()} <{author_email.strip()}>",
        f"Subject: {_canonical(title)}",
        "",
        _canonical(body),
    ]
    for f in files:
        parts.append(f"@@ {f.path}")
        parts.extend(f.markers())
        parts.extend(f.changed_lines())
    return hashlib.sha256("\n".join(parts).encode("utf-8")).hexdigest()


def canonical_diff(files: list[FileDiff]) -> str:
    """Textual form of a patch's diff used by range-diff.

    Each file becomes ``"\\n@@ <path>\\n"`` followed by its hunk lines, so hunk
    line numbers never influence a comparison.
    """
    return "".join(f"\n@@ {f.path}\n" + "".join(line + "\n" for line in f.all_lines()) for f in files)


# --------------------------------------------------------------------------- #
# Diff sections                                                               #
# --------------------------------------------------------------------------- #


def _strip_prefix(name: str, prefix: str) -> str | None:
    name = name.strip()
    if name == "/dev/null":
        return None
    if name.startswith('"') and name.endswith('"'):
        name = name[1:-1]
    return name[len(prefix) :] if name.startswith(prefix) else name


def _split_git_names(rest: str) -> tuple[str, str]:
    if rest.startswith("a/") and " b/" in rest:
        old, new = rest[2:].split(" b/", 1)
        return old, new
    old, _, new = rest.partition(" ")
    return old, new


def _parse_hunk(lines: list[str], i: int, header: str) -> tuple[Hunk, int]:
    m = _HUNK_RE.match(header)
    if not m:
        raise ParseError(f"malformed hunk header: {header!r}")
    hunk = Hunk(
        old_start=int(m.group(1)),
        old_lines=int(m.group(2)) if m.group(2) is not None else 1,
        new_start=int(m.group(3)),
        new_lines=int(m.group(4)) if m.group(4) is not None else 1,
        section=m.group(5).strip(),
    )
    old_left, new_left = hunk.old_lines, hunk.new_lines
    while old_left > 0 or new_left > 0:
        if i >= len(lines):
            raise ParseError(f"truncated hunk: {header!r}")
        line = lines[i]
        op = line[:1]
        if op == "\\":
            hunk.lines.append(line)
        elif op in (" ", ""):
            # Mail transports sometimes strip the lone space of an empty
            # context line.
            hunk.lines.append(line or " ")
            old_left -= 1
            new_left -= 1
        elif op == "-":
            hunk.lines.append(line)
            old_left -= 1
        elif op == "+":
            hunk.lines.append(line)
            new_left -= 1
        else:
            raise ParseError(f"unexpected line in hunk {header!r}: {line!r}")
        if old_left < 0 or new_left < 0:
            raise ParseError(f"hunk longer than its header: {header!r}")
        i += 1
    while i < len(lines) and lines[i].startswith("\\"):
        hunk.lines.append(lines[i])
        i += 1
    return hunk, i


def parse_files(lines: list[str]) -> tuple[list[FileDiff], int]:
    """Parse consecutive ``diff --git`` sections.

    Returns the files and the index of the first line after the last one.
    """
    files: list[FileDiff] = []
    i = 0
    current: FileDiff | None = None
    while i < len(lines):
        line = lines[i]
        if line.startswith(_DIFF_GIT):
            old, new = _split_git_names(line[len(_DIFF_GIT) :])
            current = FileDiff(old_name=old, new_name=new)
            files.append(current)
            i += 1
            continue
        if current is None:
            break
        if line.startswith("@@"):
            hunk, i = _parse_hunk(lines, i + 1, line)
            current.hunks.append(hunk)
            continue
        if line.startswith("--- "):
            current.old_name = _strip_prefix(line[4:], "a/")
        elif line.startswith("+++ "):
            current.new_name = _strip_prefix(line[4:], "b/")
        elif line.startswith("new file mode "):
            current.is_new = True
            current.new_mode = line[len("new file mode ") :].strip()
        elif line.startswith("deleted file mode "):
            current.is_delete = True
            current.old_mode = line[len("deleted file mode ") :].strip()
        elif line.startswith("old mode "):
            current.old_mode = line[len("old mode ") :].strip()
        elif line.startswith("new mode "):
            current.new_mode = line[len("new mode ") :].strip()
        elif line.startswith("rename from "):
            current.is_rename = True
            current.old_name = line[len("rename from ") :].strip()
        elif line.startswith("rename to "):
            current.new_name = line[len("rename to ") :].strip()
        elif line.startswith("copy from "):
            current.is_copy = True
            current.old_name = line[len("copy from ") :].strip()
        elif line.startswith("copy to "):
            current.new_name = line[len("copy to ") :].strip()
        elif line.startswith("Binary files "):
            current.is_binary = True
        elif line.startswith("GIT binary patch"):
            current.is_binary = True
            i += 1
            while i < len(lines) and not lines[i].startswith(_DIFF_GIT) and lines[i] != "-- ":
                i += 1
            continue
        elif line.startswith(("index ", "similarity index ", "dissimilarity index ")):
            pass
        else:
            # Signature, base-commit trailer or anything else after the diff.
            break
        i += 1

    for f in files:
        if f.is_new:
            f.old_name = None
        if f.is_delete:
            f.new_name = None
    return files, i


def diff_files(raw_text: str) -> list[FileDiff]:
    """Parse only the file sections of a stored raw patch."""
    lines = raw_text.replace("\r\n", "\n").split("\n")
    for idx, line in enumerate(lines):
        if line.startswith(_DIFF_GIT):
            files, _ = parse_files(lines[idx:])
            return files
    return []


# --------------------------------------------------------------------------- #
# Records                                                                     #
# --------------------------------------------------------------------------- #


def _read_stream(stream: bytes | str | IO) -> str:
    if hasattr(stream, "read"):
        stream = stream.read()
    if isinstance(stream, bytes):
        try:
            stream = stream.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError(f"patch stream is not valid UTF-8 (byte {exc.start})") from exc
    return stream.replace("\r\n", "\n")


def _header(msg, name: str, idx: int) -> str:
    value = msg.get(name)
    if value is None or not str(value).strip():
        raise ParseError(f"patch {idx} is missing the {name} header")
    return re.sub(r"\s*\n\s*", " ", str(value)).strip()


def _payload(msg) -> str:
    if msg.is_multipart():
        raise ParseError("multipart messages are not supported")
    cte = str(msg.get("Content-Transfer-Encoding", "")).lower()
    if cte in ("base64", "quoted-printable"):
        raw = msg.get_payload(decode=True) or b""
        charset = msg.get_content_charset() or "utf-8"
        try:
            return raw.decode(charset)
        except (LookupError, UnicodeDecodeError) as exc:
            raise ParseError(f"patch body cannot be decoded as {charset}") from exc
    return msg.get_payload()


def split_mbox(text: str) -> list[tuple[str | None, str]]:
    """Split an mbox stream into ``(from_line_token, record_text)`` pairs."""
    matches = list(_MBOX_FROM_RE.finditer(text))
    records = []
    for pos, m in enumerate(matches):
        end = matches[pos + 1].start() if pos + 1 < len(matches) else len(text)
        records.append((m.group(1), text[m.start() : end]))
    return records


def _parse_record(token: str | None, record: str, idx: int) -> ParsedPatch | None:
    _, _, message = record.partition("\n")
    msg = email.parser.Parser(policy=email.policy.default).parsestr(message)

    subject = _header(msg, "Subject", idx)
    author_name, author_email = email.utils.parseaddr(_header(msg, "From", idx))
    if not author_email:
        raise ParseError(f"patch {idx} has no author email")
    try:
        author_date = email.utils.parsedate_to_datetime(_header(msg, "Date", idx))
    except (TypeError, ValueError):
        raise ParseError(f"patch {idx} has an unreadable Date header")

    lines = _payload(msg).replace("\r\n", "\n").split("\n")
    diff_start = next((n for n, line in enumerate(lines) if line.startswith(_DIFF_GIT)), None)
    if diff_start is None:
        logger.debug("Skipping cover letter %d: %s", idx, subject)
        return None

    message_lines = lines[:diff_start]
    if "---" in message_lines:
        sep = message_lines.index("---")
        body_lines, appendix_lines = message_lines[:sep], message_lines[sep + 1 :]
    else:
        body_lines, appendix_lines = message_lines, []

    files, _ = parse_files(lines[diff_start:])
    if not files:
        return None

    title = _SUBJECT_PREFIX_RE.sub("", subject).strip()
    body = "\n".join(line.rstrip() for line in body_lines).strip("\n")
    appendix = "\n".join(line.rstrip() for line in appendix_lines).strip("\n")
    raw_text = record if record.endswith("\n") else record + "\n"
    if token and _SHA_RE.match(token):
        commit_sha = token
    else:
        commit_sha = hashlib.sha1(raw_text.encode("utf-8")).hexdigest()
    base = _BASE_COMMIT_RE.search(record)

    return ParsedPatch(
        author_name=author_name,
        author_email=author_email,
        author_date=author_date,
        title=title,
        body=body,
        body_appendix=appendix,
        commit_sha=commit_sha,
        content_sha=calc_content_sha(author_name, author_email, title, body, files),
        raw_text=raw_text,
        base_commit_sha=base.group(1) if base else None,
        files=files,
    )


def parse_patchset(stream: bytes | str | IO) -> list[ParsedPatch]:
    """Parse a ``git format-patch`` stream into patches, in order.

    Cover letters are dropped. Raises ParseError when the stream is empty,
    has no mbox boundary, holds a malformed patch, or holds no patch at all.
    """
    text = _read_stream(stream)
    if not text.strip():
        raise ParseError("empty patch stream")
    records = split_mbox(text)
    if not records:
        raise ParseError("no mbox boundary found in patch stream")

    patches = []
    for idx, (token, record) in enumerate(records, 1):
        patch = _parse_record(token, record, idx)
        if patch is not None:
            patches.append(patch)
    if not patches:
        raise ParseError("no patches found in stream (cover letter only?)")
    return patches


def reserialize(patches: list[ParsedPatch]) -> str:
    buf = io.StringIO()
    for patch in patches:
        buf.write(patch.to_mbox())
    return buf.getvalue()
