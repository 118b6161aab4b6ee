"""String replacement engine for the Edit capability.

Replacement is exact and global: every non-overlapping occurrence of the
old string, found scanning left to right over the original content, is
replaced once. Text produced by a replacement is never rescanned, so
replacing "foo" with "foofoo" terminates.
"""

from __future__ import annotations


def count_occurrences(content: str, old_string: str) -> int:
    """Count non-overlapping occurrences, scanning left to right."""
    if not old_string:
        return 0
    return content.count(old_string)


def replace(content: str, old_string: str, new_string: str) -> tuple[str, int]:
    """Replace every occurrence of old_string with new_string.

    Returns (new_content, replacements).

    Raises ValueError:
      - "old_string must not be empty"
      - "not found" if old_string does not occur in content
    """
    if not old_string:
        raise ValueError("old_string must not be empty")

    count = count_occurrences(content, old_string)
    if count == 0:
        raise ValueError("not found")

    parts: list[str] = []
    pos = 0
    while True:
        hit = content.find(old_string, pos)
        if hit == -1:
            break
        parts.append(content[pos:hit])
        parts.append(new_string)
        pos = hit + len(old_string)
    parts.append(content[pos:])
    return "".join(parts), count
