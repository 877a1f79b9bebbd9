import difflib
import re

from docwatch.tracking.types import DiffSummary

_MARKDOWN_HEADING = re.compile(r"^\s{0,3}#{1,6}\s+(.+?)\s*#*\s*$")
_NUMBERED_HEADING = re.compile(r"^\s*\d+(?:\.\d+)+\.?\s+(\S.{0,78})$")

# Character-level matching is quadratic; larger replaced blocks are counted whole.
MAX_CHAR_DIFF = 20_000


def heading_of(line: str) -> str | None:
    match = _MARKDOWN_HEADING.match(line)
    if match is not None:
        return match.group(1).strip()
    if _NUMBERED_HEADING.match(line):
        return line.strip()
    return None


def _sections(lines: list[str]) -> list[str | None]:
    current: str | None = None
    result: list[str | None] = []
    for line in lines:
        heading = heading_of(line)
        if heading is not None:
            current = heading
        result.append(current)
    return result


def _char_delta(old: str, new: str) -> tuple[int, int]:
    if len(old) + len(new) > MAX_CHAR_DIFF:
        return len(new), len(old)
    added = removed = 0
    matcher = difflib.SequenceMatcher(None, old, new, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag in ("replace", "delete"):
            removed += i2 - i1
        if tag in ("replace", "insert"):
            added += j2 - j1
    return added, removed


def compute_diff(previous: str | None, current: str) -> DiffSummary:
    """Summarize what changed between two snapshot renderings."""
    if previous is None:
        new_lines = current.splitlines()
        headings = [h for h in (heading_of(line) for line in new_lines) if h]
        return DiffSummary(
            added_chars=sum(len(line) for line in new_lines),
            added_lines=len(new_lines),
            changed_headings=list(dict.fromkeys(headings)),
            summary="initial capture",
        )

    old = previous.splitlines()
    new = current.splitlines()
    old_sections = _sections(old)
    new_sections = _sections(new)

    added_chars = removed_chars = added_lines = removed_lines = 0
    headings: dict[str, None] = {}

    matcher = difflib.SequenceMatcher(None, old, new, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue
        old_block = old[i1:i2]
        new_block = new[j1:j2]
        if tag == "replace":
            added, removed = _char_delta("\n".join(old_block), "\n".join(new_block))
        else:
            added = sum(len(line) for line in new_block)
            removed = sum(len(line) for line in old_block)
        added_chars += added
        removed_chars += removed
        added_lines += len(new_block)
        removed_lines += len(old_block)

        for section in new_sections[j1:j2] + old_sections[i1:i2]:
            if section:
                headings.setdefault(section, None)

    changed_headings = list(headings)
    if not (added_chars or removed_chars):
        summary = "no textual changes"
    else:
        summary = f"+{added_chars}/-{removed_chars} chars"
        if changed_headings:
            summary += " in " + ", ".join(f'"{h}"' for h in changed_headings[:5])

    return DiffSummary(
        added_chars=added_chars,
        removed_chars=removed_chars,
        added_lines=added_lines,
        removed_lines=removed_lines,
        changed_headings=changed_headings,
        summary=summary,
    )
