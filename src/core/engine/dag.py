"""
DAG utilities (pure) — phase partitioning, ordering and cycle detection.

No I/O. Operates on StepDescriptors; edges are ``depends_on`` links
restricted to the set of steps being planned.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable

from src.core.errors import DependencyCycle, PhaseOrderViolation, UnknownDependency
from src.core.models.step import StepDescriptor


def check_references(
    selected: Iterable[StepDescriptor],
    registry: dict[str, StepDescriptor],
) -> None:
    """Reject dependencies on unknown ids or on later-phase steps.

    Raises:
        UnknownDependency: A dependency id is not in the registry.
        PhaseOrderViolation: A dependency runs in a later phase.
    """
    for step in selected:
        for dep in sorted(step.depends_on):
            target = registry.get(dep)
            if target is None:
                raise UnknownDependency(f"Step '{step.id}' depends on unknown step '{dep}'")
            if target.phase > step.phase:
                raise PhaseOrderViolation(
                    f"Step '{step.id}' (phase {step.phase}) depends on "
                    f"'{dep}' (phase {target.phase}), which runs later"
                )


def partition_by_phase(steps: Iterable[StepDescriptor]) -> dict[int, list[StepDescriptor]]:
    """Group steps by phase, phases ascending."""
    phases: dict[int, list[StepDescriptor]] = {}
    for step in steps:
        phases.setdefault(step.phase, []).append(step)
    return dict(sorted(phases.items()))


def order_phase(phase: int, steps: list[StepDescriptor]) -> list[StepDescriptor]:
    """Topologically sort one phase (Kahn's algorithm, ties broken by id).

    Only edges between steps of this list count; dependencies on earlier
    phases or unselected steps are resolved at execution time.

    Raises:
        DependencyCycle: If the in-phase edges contain a cycle.
    """
    by_id = {s.id: s for s in steps}
    in_degree: dict[str, int] = {s.id: 0 for s in steps}
    successors: dict[str, list[str]] = {s.id: [] for s in steps}

    for step in steps:
        for dep in step.depends_on:
            if dep in by_id:
                in_degree[step.id] += 1
                successors[dep].append(step.id)

    queue = [sid for sid, deg in in_degree.items() if deg == 0]
    heapq.heapify(queue)
    ordered: list[StepDescriptor] = []

    while queue:
        sid = heapq.heappop(queue)
        ordered.append(by_id[sid])
        for succ in successors[sid]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                heapq.heappush(queue, succ)

    if len(ordered) < len(steps):
        remaining = {sid for sid, deg in in_degree.items() if deg > 0}
        raise DependencyCycle(phase, _find_cycle(remaining, by_id))

    return ordered


def _find_cycle(remaining: set[str], by_id: dict[str, StepDescriptor]) -> list[str]:
    """Walk dependency edges among ``remaining`` until a node repeats."""
    start = min(remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    node = start
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        deps = sorted(d for d in by_id[node].depends_on if d in remaining)
        if not deps:
            return sorted(remaining)
        node = deps[0]
    return path[seen[node]:] + [node]
