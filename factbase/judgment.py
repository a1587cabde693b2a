"""
Defensive parsing of free-text model replies.

Every reply from a judgment call is untrusted input. Parsers here never
raise: they return a Parsed result that is either ok (with a value) or a
parse error (with the default the caller should fall back to).
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ```json ... ``` or ``` ... ``` wrappers some models add around JSON
_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```\s*$", re.DOTALL)


@dataclass
class Parsed(Generic[T]):
    """Tagged result of parsing a model reply.

    `value` is always usable: on a parse error it holds the caller's default.
    """
    value: T
    ok: bool = True
    error: str = ""

    @classmethod
    def failure(cls, default: T, error: str) -> "Parsed[T]":
        return cls(value=default, ok=False, error=error)


@dataclass
class Group:
    """One group from a partition reply: label, summary, member indices."""
    label: str
    summary: str
    members: list[int] = field(default_factory=list)


def parse_csv(raw: Optional[str]) -> list[str]:
    """Split a comma-separated reply into trimmed non-empty tokens."""
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def parse_related(raw: Optional[str]) -> list[str]:
    """Parse a list-of-titles reply where "none" means no items."""
    text = (raw or "").strip()
    if not text or text.lower().rstrip(".") == "none":
        return []
    return parse_csv(text)


def is_yes(raw: Optional[str]) -> bool:
    """True if a yes/no reply starts with "yes" (case-insensitive)."""
    return (raw or "").strip().lower().startswith("yes")


def _strip_fences(text: str) -> str:
    m = _FENCE_RE.match(text.strip())
    return m.group(1).strip() if m else text.strip()


def _load_json_array(raw: str) -> Any:
    """Parse a JSON array, tolerating code fences and surrounding prose."""
    text = _strip_fences(raw)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    start, end = text.find("["), text.rfind("]")
    if start == -1 or end <= start:
        raise ValueError("no JSON array in reply")
    return json.loads(text[start:end + 1])


def parse_groups(
    raw: Optional[str],
    member_key: str,
    item_count: int,
) -> Parsed[list[Group]]:
    """
    Parse a partition reply of the form
    [{"label": ..., "summary": ..., "<member_key>": [indices]}].

    Out-of-range and non-integer indices are dropped. Groups without a
    label, or whose member value is not a list, are dropped. Returns a
    parse error (with an empty list) if the reply is not a JSON array of
    objects.

    Args:
        raw: Model reply text
        member_key: Name of the index list ("notes" or "children")
        item_count: Number of items the indices refer to
    """
    if not raw or not raw.strip():
        return Parsed.failure([], "empty reply")
    try:
        data = _load_json_array(raw)
    except (ValueError, json.JSONDecodeError) as e:
        return Parsed.failure([], f"invalid JSON: {e}")
    if not isinstance(data, list):
        return Parsed.failure([], "reply is not a JSON array")

    groups = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        label = str(entry.get("label") or "").strip()
        if not label:
            continue
        indices = entry.get(member_key)
        if indices is None:
            indices = []
        elif not isinstance(indices, list):
            continue
        members = []
        for idx in indices:
            # bool is an int subclass; reject it explicitly
            if isinstance(idx, bool) or not isinstance(idx, int):
                continue
            if 0 <= idx < item_count and idx not in members:
                members.append(idx)
        groups.append(Group(
            label=label,
            summary=str(entry.get("summary") or "").strip() or label,
            members=members,
        ))
    return Parsed(groups)


def select_labels(raw: Optional[str], labels: list[str]) -> Parsed[list[str]]:
    """
    Match a CSV selection reply against known labels.

    Matching is exact first, then case-insensitive. Unknown names are
    ignored. A reply naming no known label is a parse error whose value is
    the first label (or empty if there are no labels).
    """
    default = labels[:1]
    by_lower = {label.lower(): label for label in labels}
    selected: list[str] = []
    for name in parse_csv(raw):
        name = name.strip("\"'`*- ")
        match = name if name in labels else by_lower.get(name.lower())
        if match and match not in selected:
            selected.append(match)
    if not selected:
        return Parsed.failure(default, f"no known label in reply: {(raw or '')[:80]!r}")
    return Parsed(selected)
