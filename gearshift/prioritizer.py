"""Dependency-aware ordering of roadmap items."""

from __future__ import annotations

import heapq
from collections.abc import Collection, Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog

from gearshift.errors import CycleDetected, InvalidParameter
from gearshift.models import (
    PRIORITY_ORDER,
    ImplementationScope,
    ItemStatus,
    Priority,
    ProjectContext,
    RoadmapItem,
    score_as_dict,
)
from gearshift.scorer import Scorer

logger = structlog.get_logger()

SCOPE_TIERS: dict[ImplementationScope, set[Priority]] = {
    ImplementationScope.NONE: set(),
    ImplementationScope.P0: {Priority.P0},
    ImplementationScope.P0_P1: {Priority.P0, Priority.P1},
    ImplementationScope.ALL: set(PRIORITY_ORDER),
}


@dataclass
class RoadmapPlan:
    """Result of planning a roadmap."""

    items: list[RoadmapItem]  # by priority score, highest first
    order: list[RoadmapItem]  # safe execution order
    ready: list[RoadmapItem]  # not started, every dependency complete
    groups: dict[Priority, list[RoadmapItem]]
    cycles: list[list[str]] = field(default_factory=list)
    missing_dependencies: list[str] = field(default_factory=list)
    blocks: dict[str, list[str]] = field(default_factory=dict)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)

    def to_dict(self) -> dict[str, Any]:
        def entry(item: RoadmapItem) -> dict[str, Any]:
            data = item.to_dict()
            if item.score is not None:
                data["score"] = score_as_dict(item.score)
            return data

        return {
            "items": [entry(item) for item in self.items],
            "order": [item.id for item in self.order],
            "ready": [item.id for item in self.ready],
            "groups": {
                tier.value: [item.id for item in members]
                for tier, members in self.groups.items()
            },
            "cycles": self.cycles,
            "missing_dependencies": self.missing_dependencies,
            "blocks": self.blocks,
        }


def _index(items: Iterable[RoadmapItem]) -> dict[str, RoadmapItem]:
    index: dict[str, RoadmapItem] = {}
    duplicates = []
    for item in items:
        if item.id in index:
            duplicates.append(item.id)
        index[item.id] = item
    if duplicates:
        raise InvalidParameter("items", f"duplicate item ids: {sorted(set(duplicates))}")
    return index


def _edges(index: dict[str, RoadmapItem]) -> dict[str, list[str]]:
    """Dependencies restricted to ids present in the item set, de-duplicated."""
    return {
        item_id: [d for d in dict.fromkeys(item.dependencies) if d in index]
        for item_id, item in index.items()
    }


def _normalize_cycle(cycle: list[str]) -> tuple[str, ...]:
    """Rotate a closed cycle to start at its smallest id, for de-duplication."""
    body = cycle[:-1]
    start = body.index(min(body))
    return tuple(body[start:] + body[:start])


class Prioritizer:
    """Builds the dependency graph and produces orderings and ready-sets."""

    def __init__(self, scorer: Scorer | None = None) -> None:
        self._scorer = scorer or Scorer()

    def detect_cycles(self, items: Iterable[RoadmapItem]) -> list[list[str]]:
        """Find circular dependency chains.

        Uses an explicit stack so deep graphs cannot exhaust the call stack.
        Each cycle is reported as a closed path, e.g. ``["A", "B", "A"]``.
        Dependencies on unknown ids are ignored.
        """
        graph = _edges(_index(items))
        on_path: set[str] = set()
        finished: set[str] = set()
        seen: set[tuple[str, ...]] = set()
        cycles: list[list[str]] = []

        for root in graph:
            if root in finished:
                continue
            path = [root]
            on_path.add(root)
            stack = [iter(graph[root])]
            while stack:
                for dep in stack[-1]:
                    if dep in on_path:
                        cycle = path[path.index(dep) :] + [dep]
                        key = _normalize_cycle(cycle)
                        if key not in seen:
                            seen.add(key)
                            cycles.append(cycle)
                    elif dep not in finished:
                        path.append(dep)
                        on_path.add(dep)
                        stack.append(iter(graph[dep]))
                        break
                else:
                    node = path.pop()
                    on_path.discard(node)
                    finished.add(node)
                    stack.pop()

        if cycles:
            logger.warning(
                "dependency_cycles_detected",
                count=len(cycles),
                cycles=[" -> ".join(c) for c in cycles],
            )
        return cycles

    def ensure_acyclic(self, items: Iterable[RoadmapItem]) -> None:
        """Raise CycleDetected for callers that treat a cycle as fatal."""
        cycles = self.detect_cycles(items)
        if cycles:
            raise CycleDetected(cycles)

    def find_missing_dependencies(self, items: Iterable[RoadmapItem]) -> list[str]:
        """Dependency ids that reference no item in the set."""
        index = _index(items)
        return sorted(
            {dep for item in index.values() for dep in item.dependencies if dep not in index}
        )

    def reverse_dependencies(self, items: Iterable[RoadmapItem]) -> dict[str, list[str]]:
        """Map each id to the items that depend on it."""
        index = _index(items)
        blocks: dict[str, list[str]] = {item_id: [] for item_id in index}
        for item in index.values():
            for dep in dict.fromkeys(item.dependencies):
                blocks.setdefault(dep, []).append(item.id)
        return blocks

    def group_by_priority(
        self, items: Iterable[RoadmapItem]
    ) -> dict[Priority, list[RoadmapItem]]:
        """Group items by tier, P0 first; empty tiers are omitted."""
        items = list(items)
        groups = {}
        for tier in PRIORITY_ORDER:
            members = [i for i in items if i.effective_priority == tier]
            if members:
                groups[tier] = members
        return groups

    def find_ready_items(
        self, items: Iterable[RoadmapItem], completed_ids: Collection[str]
    ) -> list[RoadmapItem]:
        """Items whose every dependency is a known, completed item.

        A dependency on an id outside the item set is never satisfied.
        """
        items = list(items)
        known = {item.id for item in items}
        completed = set(completed_ids)
        return [
            item
            for item in items
            if all(dep in known and dep in completed for dep in item.dependencies)
        ]

    def resolve_dependencies(self, items: Iterable[RoadmapItem]) -> list[RoadmapItem]:
        """Topologically order items, dependencies first.

        Among items that become eligible together, higher tiers come first,
        then ids in ascending order. With cycles the order is best effort:
        when no item is eligible, the blocked item with the fewest unmet
        dependencies is released, so every item still appears exactly once.
        """
        index = _index(items)
        graph = _edges(index)
        dependents: dict[str, list[str]] = {item_id: [] for item_id in index}
        for item_id, deps in graph.items():
            for dep in deps:
                dependents[dep].append(item_id)
        unmet = {item_id: len(deps) for item_id, deps in graph.items()}

        def key(item_id: str) -> tuple[int, str]:
            return (index[item_id].effective_priority.rank, item_id)

        heap = [key(i) for i, count in unmet.items() if count == 0]
        heapq.heapify(heap)
        queued = {item_id for _, item_id in heap}
        order: list[RoadmapItem] = []

        while len(order) < len(index):
            if not heap:
                blocked = min(
                    (i for i in index if i not in queued),
                    key=lambda i: (unmet[i], *key(i)),
                )
                logger.warning(
                    "dependency_cycle_released",
                    item=blocked,
                    unmet=unmet[blocked],
                )
                heapq.heappush(heap, key(blocked))
                queued.add(blocked)

            _, item_id = heapq.heappop(heap)
            order.append(index[item_id])
            for dependent in dependents[item_id]:
                if dependent in queued:
                    continue
                unmet[dependent] -= 1
                if unmet[dependent] == 0:
                    heapq.heappush(heap, key(dependent))
                    queued.add(dependent)

        return order

    def prioritize(
        self, items: Iterable[RoadmapItem], context: ProjectContext
    ) -> list[RoadmapItem]:
        """Score unscored items and sort by priority score, highest first."""
        scored = [
            item if item.score is not None else self._scorer.score_item(item, context)
            for item in items
        ]
        scored.sort(key=lambda i: (-i.priority_score, i.id))
        return scored

    def select_for_scope(
        self, items: Iterable[RoadmapItem], scope: ImplementationScope
    ) -> list[RoadmapItem]:
        """Keep the items an implementation scope covers."""
        tiers = SCOPE_TIERS[scope]
        return [item for item in items if item.effective_priority in tiers]

    def plan(
        self,
        items: Iterable[RoadmapItem],
        context: ProjectContext,
        completed_ids: Collection[str] = (),
    ) -> RoadmapPlan:
        """Score, order and find the ready frontier in one pass.

        Items with status ``done`` count as completed in addition to
        ``completed_ids``. Only ``not-started`` items can be ready; work that is
        in progress or blocked is left out.
        """
        prioritized = self.prioritize(items, context)
        completed = set(completed_ids) | {
            item.id for item in prioritized if item.status == ItemStatus.DONE
        }
        order = self.resolve_dependencies(prioritized)
        ready = [
            item
            for item in self.find_ready_items(order, completed)
            if item.id not in completed and item.status == ItemStatus.NOT_STARTED
        ]

        plan = RoadmapPlan(
            items=prioritized,
            order=order,
            ready=ready,
            groups=self.group_by_priority(prioritized),
            cycles=self.detect_cycles(prioritized),
            missing_dependencies=self.find_missing_dependencies(prioritized),
            blocks=self.reverse_dependencies(prioritized),
        )
        logger.info(
            "roadmap_planned",
            items=len(prioritized),
            ready=len(ready),
            cycles=len(plan.cycles),
            missing=len(plan.missing_dependencies),
        )
        return plan
