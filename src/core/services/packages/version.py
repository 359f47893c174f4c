"""
Version constraints (pure) — npm-style range checks.

Supports the forms step headers use in practice: ``*``/``latest``,
exact versions, ``^``, ``~``, comparison operators and ``x`` ranges.
No I/O.
"""

from __future__ import annotations

import re

_OPERATOR = re.compile(r"^(>=|<=|>|<|=|\^|~)?\s*v?(.+)$")


def _parse_semver(v: str) -> tuple[int, int, int] | None:
    """Parse ``1.2.3`` (pre-release/build suffixes dropped)."""
    core = re.split(r"[-+]", v.strip().lstrip("v"), maxsplit=1)[0]
    parts = core.split(".")
    try:
        nums = [int(p) for p in parts[:3]]
    except ValueError:
        return None
    while len(nums) < 3:
        nums.append(0)
    return nums[0], nums[1], nums[2]


def _partial(v: str) -> list[int]:
    """Leading numeric parts of a possibly partial version (``1.x`` → [1])."""
    nums: list[int] = []
    for part in v.strip().lstrip("v").split("."):
        if part in ("x", "X", "*", ""):
            break
        try:
            nums.append(int(re.split(r"[-+]", part, maxsplit=1)[0]))
        except ValueError:
            break
    return nums


def _satisfies_one(version: tuple[int, int, int], clause: str) -> bool:
    clause = clause.strip()
    if clause in ("", "*", "latest", "x", "X"):
        return True

    match = _OPERATOR.match(clause)
    if not match:
        return False
    op, ref = match.group(1) or "", match.group(2)
    parts = _partial(ref)
    if not parts:
        return True
    ref_full = tuple(parts + [0] * (3 - len(parts)))

    if op == ">=":
        return version >= ref_full
    if op == ">":
        return version > ref_full
    if op == "<=":
        return version <= ref_full
    if op == "<":
        return version < ref_full
    if op == "^":
        if version < ref_full:
            return False
        # Caret: left-most non-zero component must match
        if ref_full[0] != 0 or len(parts) == 1:
            return version[0] == ref_full[0]
        if ref_full[1] != 0 or len(parts) == 2:
            return version[:2] == ref_full[:2]
        return version == ref_full
    if op == "~":
        if version < ref_full:
            return False
        if len(parts) == 1:
            return version[0] == ref_full[0]
        return version[:2] == ref_full[:2]

    # Exact or x-range: compare the specified components only
    return list(version[: len(parts)]) == parts


def satisfies(version: str, constraint: str) -> bool:
    """Whether ``version`` satisfies ``constraint``.

    Whitespace-separated clauses are ANDed; ``||`` separates alternatives.
    Dist-tags other than ``latest`` cannot be checked offline and are
    accepted.
    """
    parsed = _parse_semver(version)
    if parsed is None:
        return False

    constraint = (constraint or "").strip()
    if not constraint:
        return True
    if re.fullmatch(r"[A-Za-z][\w-]*", constraint) and constraint not in ("x", "X"):
        return True

    for alternative in constraint.split("||"):
        clauses = re.sub(r"(>=|<=|>|<|=|\^|~)\s+", r"\1", alternative).split()
        if all(_satisfies_one(parsed, c) for c in clauses):
            return True
    return False
