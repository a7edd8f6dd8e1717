"""Range-diff between two revisions of a patch series.

Works like ``git range-diff``: patches with the same ``content_sha`` are
paired first, the remaining ones are paired by solving a minimum-cost
assignment over the sizes of their diff-of-diffs, and whatever is left over
is reported as added or removed.

Everything here is a pure function of its inputs. The same two sequences
always produce the same entries in the same order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from diff_match_patch import diff_match_patch

from patchbay_core.patch import FileDiff, ParsedPatch, canonical_diff, diff_files
from patchbay_core.utils.assignment import solve

logger = logging.getLogger(__name__)

COST_MAX = 65536
CREATION_FACTOR_DEFAULT = 60
_INFINITE = 2**31 - 1
_UNMATCHED = -1


class Change(str, Enum):
    EQUAL = "equal"
    MODIFIED = "modified"
    ADDED = "added"
    REMOVED = "removed"


@dataclass
class DiffLine:
    op: str  # "+", "-" or " "
    text: str


@dataclass
class RangeDiffFile:
    path: str
    lines: list[DiffLine] = field(default_factory=list)


@dataclass
class RangeDiffEntry:
    """One line of range-diff output plus, for changed pairs, its body."""

    change: Change
    title: str
    old_index: int | None = None  # 1-based position in the old series
    old_sha: str | None = None
    new_index: int | None = None  # 1-based position in the new series
    new_sha: str | None = None
    files: list[RangeDiffFile] = field(default_factory=list)

    @property
    def order(self) -> int:
        return self.old_index if self.change == Change.REMOVED else self.new_index

    def header(self) -> str:
        if self.change == Change.ADDED:
            return f"-:  ------- > {self.new_index}:  {short_sha(self.new_sha)} {self.title}\n"
        if self.change == Change.REMOVED:
            return f"{self.old_index}:  {short_sha(self.old_sha)} < -:  ------- {self.title}\n"
        mark = "=" if self.change == Change.EQUAL else "!"
        return (
            f"{self.old_index}:  {short_sha(self.old_sha)} {mark} "
            f"{self.new_index}:  {short_sha(self.new_sha)} {self.title}\n"
        )


def short_sha(sha: str | None) -> str:
    return (sha or "")[:7]


@dataclass
class _Side:
    patch: ParsedPatch
    files: list[FileDiff]
    diff: str
    size: int
    matching: int = _UNMATCHED


def _side(patch) -> _Side:
    # Stored patches only carry their raw text; parsed ones keep their files.
    files = patch.files if isinstance(patch, ParsedPatch) else diff_files(patch.raw_text)
    diff = canonical_diff(files)
    return _Side(patch=patch, files=files, diff=diff, size=diff.count("\n"))


# --------------------------------------------------------------------------- #
# Line diffs                                                                  #
# --------------------------------------------------------------------------- #


def line_diff(old: str, new: str) -> list[DiffLine]:
    """Line-oriented diff of two texts."""
    dmp = diff_match_patch()
    dmp.Diff_Timeout = 0  # never trade a minimal diff for speed
    old_chars, new_chars, lines = dmp.diff_linesToChars(old, new)
    diffs = dmp.diff_main(old_chars, new_chars, False)
    dmp.diff_charsToLines(diffs, lines)
    out = []
    for op, text in diffs:
        marker = "+" if op == dmp.DIFF_INSERT else "-" if op == dmp.DIFF_DELETE else " "
        lines = text.split("\n")
        if lines[-1] == "":
            lines.pop()
        out.extend(DiffLine(marker, line) for line in lines)
    return out


def _diff_size(a: _Side, b: _Side) -> int:
    return sum(1 for line in line_diff(a.diff, b.diff) if line.op != " ")


def _text(lines: list[str]) -> str:
    return "".join(line + "\n" for line in lines)


def _file_text(f: FileDiff) -> str:
    # Markers lead the body so mode, rename and binary changes show up even
    # for files without hunks.
    return _text([f"## {marker}" for marker in f.markers()] + f.all_lines())


def _metadata(patch) -> str:
    lines = [f"Author: {patch.author_name} <{patch.author_email}>", "", " ## Commit message ##"]
    lines.append(f"    {patch.title}")
    if patch.body:
        lines.append("")
        lines.extend(f"    {line}" if line else "" for line in patch.body.split("\n"))
    return _text(lines)


def _pair_files(a: _Side, b: _Side) -> list[RangeDiffFile]:
    out = []
    old_meta, new_meta = _metadata(a.patch), _metadata(b.patch)
    if old_meta != new_meta:
        out.append(RangeDiffFile("Metadata", line_diff(old_meta, new_meta)))

    new_by_path = {f.path: f for f in b.files}
    old_paths = set()
    for old in a.files:
        old_paths.add(old.path)
        new = new_by_path.get(old.path)
        if new is None:
            out.append(RangeDiffFile(old.path, line_diff(_file_text(old), "")))
            continue
        if old.changed_lines() == new.changed_lines() and old.markers() == new.markers():
            continue
        out.append(RangeDiffFile(old.path, line_diff(_file_text(old), _file_text(new))))
    for new in b.files:
        if new.path not in old_paths:
            out.append(RangeDiffFile(new.path, line_diff("", _file_text(new))))
    return out


def _one_sided(files: list[FileDiff], removed: bool) -> list[RangeDiffFile]:
    out = []
    for f in files:
        text = _file_text(f)
        out.append(RangeDiffFile(f.path, line_diff(text, "") if removed else line_diff("", text)))
    return out


# --------------------------------------------------------------------------- #
# Matching                                                                    #
# --------------------------------------------------------------------------- #


def _exact_matches(a: list[_Side], b: list[_Side]) -> None:
    for i, old in enumerate(a):
        for j, new in enumerate(b):
            if new.matching == _UNMATCHED and old.patch.content_sha == new.patch.content_sha:
                old.matching = j
                new.matching = i
                break


def _correspondences(a: list[_Side], b: list[_Side], creation_factor: int) -> None:
    m, n = len(a), len(b)
    size = m + n
    cost = [[0] * size for _ in range(size)]

    for i, old in enumerate(a):
        for j, new in enumerate(b):
            if old.matching == j:
                cost[i][j] = 0
            elif old.matching == _UNMATCHED and new.matching == _UNMATCHED:
                cost[i][j] = _diff_size(old, new)
            else:
                cost[i][j] = COST_MAX

    for j, new in enumerate(b):
        creation = _INFINITE if new.matching != _UNMATCHED else new.size * creation_factor // 100
        for i in range(m, size):
            cost[i][j] = creation

    for i, old in enumerate(a):
        deletion = _INFINITE if old.matching != _UNMATCHED else old.size * creation_factor // 100
        for j in range(n, size):
            cost[i][j] = deletion

    assignment = solve(cost)
    for i in range(m):
        j = assignment[i]
        if j < n and a[i].matching == _UNMATCHED and b[j].matching == _UNMATCHED:
            a[i].matching = j
            b[j].matching = i


def range_diff(
    old_patches: list, new_patches: list, creation_factor: int = CREATION_FACTOR_DEFAULT
) -> list[RangeDiffEntry]:
    """Compare two patch series.

    Accepts parsed patches or stored ones (anything with the patch fields and
    ``raw_text``). Entries come back ordered by their position in the new
    series; a removed patch is placed by its position in the old series and
    goes ahead of a new-series entry at the same position.
    """
    a = [_side(p) for p in old_patches]
    b = [_side(p) for p in new_patches]
    _exact_matches(a, b)
    _correspondences(a, b, creation_factor)

    entries = []
    for i, old in enumerate(a):
        if old.matching == _UNMATCHED:
            entries.append(
                RangeDiffEntry(
                    change=Change.REMOVED,
                    title=old.patch.title,
                    old_index=i + 1,
                    old_sha=old.patch.commit_sha,
                    files=_one_sided(old.files, removed=True),
                )
            )
    for j, new in enumerate(b):
        if new.matching == _UNMATCHED:
            entries.append(
                RangeDiffEntry(
                    change=Change.ADDED,
                    title=new.patch.title,
                    new_index=j + 1,
                    new_sha=new.patch.commit_sha,
                    files=_one_sided(new.files, removed=False),
                )
            )
            continue
        old = a[new.matching]
        equal = old.patch.content_sha == new.patch.content_sha
        entries.append(
            RangeDiffEntry(
                change=Change.EQUAL if equal else Change.MODIFIED,
                title=old.patch.title if equal else new.patch.title,
                old_index=new.matching + 1,
                old_sha=old.patch.commit_sha,
                new_index=j + 1,
                new_sha=new.patch.commit_sha,
                files=[] if equal else _pair_files(old, new),
            )
        )

    entries.sort(key=lambda e: (e.order, e.change != Change.REMOVED))
    logger.debug("range-diff of %d -> %d patches produced %d entries", len(a), len(b), len(entries))
    return entries


def range_diff_to_str(entries: list[RangeDiffEntry], full: bool = False) -> str:
    """Render entries as text.

    Modified entries always carry their body. Added and removed patches are
    shown as a header only unless ``full`` is set.
    """
    out = []
    for entry in entries:
        out.append(entry.header())
        if entry.change == Change.EQUAL or (entry.change != Change.MODIFIED and not full):
            continue
        for f in entry.files:
            out.append(f"    @@ {f.path}\n")
            out.extend(f"    {line.op}{line.text}\n" for line in f.lines)
    return "".join(out)
