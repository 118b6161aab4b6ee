"""Extraction of tool invocations from free-form model output.

The model requests tools with a small tag-delimited format embedded in its
reply::

    <tool_calls>
    <tool_call>
    <tool_name>Bash</tool_name>
    <parameters>
    <command>ls -la</command>
    </parameters>
    </tool_call>
    </tool_calls>

This is deliberately not an XML parser. Tags are located by first
occurrence, values are taken verbatim apart from whitespace trimming, and
malformed or unterminated regions are skipped rather than reported.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

TOOL_CALLS_OPEN = "<tool_calls>"
TOOL_CALLS_CLOSE = "</tool_calls>"

PARAMETER_NAMES = (
    "command",
    "description",
    "file_path",
    "content",
    "old_string",
    "new_string",
    "pattern",
    "path",
    "output_mode",
)


@dataclass(frozen=True)
class Invocation:
    """One parsed tool request: a capability name plus string parameters."""

    name: str
    parameters: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(
            self, "parameters", MappingProxyType(dict(self.parameters))
        )


def _extract_tag(text: str, tag: str) -> str | None:
    """Return the content between the first <tag> and the next </tag>."""
    open_tag = f"<{tag}>"
    close_tag = f"</{tag}>"
    start = text.find(open_tag)
    if start == -1:
        return None
    start += len(open_tag)
    end = text.find(close_tag, start)
    if end == -1:
        return None
    return text[start:end]


def _extract_all_tags(text: str, tag: str) -> list[str]:
    """Return every top-level, non-overlapping <tag>...</tag> region."""
    open_tag = f"<{tag}>"
    close_tag = f"</{tag}>"
    regions: list[str] = []
    pos = 0
    while True:
        start = text.find(open_tag, pos)
        if start == -1:
            break
        start += len(open_tag)
        end = text.find(close_tag, start)
        if end == -1:
            break
        regions.append(text[start:end])
        pos = end + len(close_tag)
    return regions


def has_invocations(text: str) -> bool:
    """Cheap precheck: does the text contain a tool_calls block opener?"""
    return TOOL_CALLS_OPEN in text


def extract_narration(text: str) -> str:
    """Return the human-readable text outside the tool_calls block."""
    if not has_invocations(text):
        return text.strip()

    start = text.find(TOOL_CALLS_OPEN)
    end = text.find(TOOL_CALLS_CLOSE, start + len(TOOL_CALLS_OPEN))
    if end == -1:
        return text.strip()

    before = text[:start]
    after = text[end + len(TOOL_CALLS_CLOSE) :]
    lines = (line.strip() for line in f"{before}\n{after}".splitlines())
    return "\n".join(line for line in lines if line)


def parse_invocations(text: str) -> list[Invocation]:
    """Return the invocations in the first tool_calls block, in order."""
    if not has_invocations(text):
        return []

    block = _extract_tag(text, "tool_calls")
    if not block:
        return []

    invocations: list[Invocation] = []
    for region in _extract_all_tags(block, "tool_call"):
        name = _extract_tag(region, "tool_name")
        if not name:
            continue

        parameters: dict[str, str] = {}
        params_block = _extract_tag(region, "parameters")
        if params_block:
            for param in PARAMETER_NAMES:
                value = _extract_tag(params_block, param)
                if value is None:
                    continue
                value = value.strip()
                if value:
                    parameters[param] = value

        invocations.append(Invocation(name=name, parameters=parameters))
    return invocations


def parse(text: str) -> tuple[str, list[Invocation]]:
    """Split a model reply into (narration, invocations)."""
    return extract_narration(text), parse_invocations(text)
