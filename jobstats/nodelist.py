"""Expansion of compressed scheduler node-list expressions.

SLURM reports the nodes of a job in a compressed form such as
``cpu-[0-1,5],gpu3``.  The expanded list is stored alongside the job and is
joined with ``|`` into a PromQL regex matcher, so regex metacharacters in
each literal name are escaped.

Examples:
    >>> expand_nodelist("compute-a-[0-1]-b-[3-4]")
    ['compute-a-0-b-3', 'compute-a-0-b-4', 'compute-a-1-b-3', 'compute-a-1-b-4']
    >>> expand_nodelist("cpu-[0-1,5],gpu3")
    ['cpu-0', 'cpu-1', 'cpu-5', 'gpu3']
"""

import re

NONE_ASSIGNED = "None assigned"

_RANGE_RE = re.compile(r"\[([^\[\]]*)\]")
_META_RE = re.compile(r"([\\.+*?()|\[\]{}^$])")


def quote_meta(name: str) -> str:
    """Escape RE2/PromQL metacharacters (hyphens are left alone)."""
    return _META_RE.sub(r"\\\1", name)


def split_nodelist(expr: str) -> list[str]:
    """Split a node-list expression on top-level commas.

    Commas inside brackets separate sub-ranges and are kept, so
    ``a[0-1,3],b2`` becomes ``["a[0-1,3]", "b2"]``.
    """
    tokens = []
    depth = 0
    current = []
    for char in expr:
        if char == "[":
            depth += 1
        elif char == "]":
            depth = max(depth - 1, 0)
        if char == "," and depth == 0:
            tokens.append("".join(current))
            current = []
            continue
        current.append(char)
    tokens.append("".join(current))
    return [t.strip() for t in tokens if t.strip()]


def _range_values(spec: str) -> list[str]:
    """Enumerate a bracket body like ``0-2,5,08-10``.

    Values are zero-padded to the width of the lower bound as written.
    Malformed sub-ranges contribute nothing.
    """
    values = []
    for sub in spec.split(","):
        bounds = sub.strip().split("-")
        if len(bounds) == 1:
            bounds.append(bounds[0])
        if len(bounds) != 2:
            continue
        low, high = bounds
        try:
            start, stop = int(low), int(high)
        except ValueError:
            continue
        width = len(low) if low.startswith("0") and len(low) > 1 else 0
        values.extend(str(i).zfill(width) for i in range(start, stop + 1))
    return values


def _expand_token(token: str) -> list[str]:
    match = _RANGE_RE.search(token)
    if match is None:
        return [token]

    names = []
    for value in _range_values(match.group(1)):
        expanded = token[:match.start()] + value + token[match.end():]
        names.extend(_expand_token(expanded))
    return names


def expand_nodelist(expr: str, escape: bool = True) -> list[str]:
    """Expand a compressed node-list expression into node names.

    Args:
        expr: Compressed expression, e.g. ``"cpu-[0-1,5],gpu3"``
        escape: Regex-escape each name (the default, for PromQL matchers)

    Returns:
        Node names in the order they appear in ``expr``; within a bracket in
        ascending numeric order.  Empty for an empty expression or the
        ``None assigned`` sentinel.
    """
    if not expr or expr.strip() == NONE_ASSIGNED:
        return []

    names = []
    for token in split_nodelist(expr):
        names.extend(_expand_token(token))
    if escape:
        return [quote_meta(name) for name in names]
    return names
