"""Tests for gearshift.prioritizer."""

import pytest

from gearshift.errors import CycleDetected, InvalidParameter
from gearshift.models import (
    ImplementationScope,
    ItemScore,
    ItemStatus,
    Priority,
    ProjectContext,
    RoadmapItem,
)
from gearshift.prioritizer import Prioritizer


def _item(item_id: str, *deps: str, **kwargs) -> RoadmapItem:
    return RoadmapItem(id=item_id, title=f"Item {item_id}", dependencies=deps, **kwargs)


def _scored(item_id: str, impact: float, priority_score: float, priority: Priority, *deps):
    score = ItemScore(
        impact=impact,
        effort=5,
        roi=impact / 5,
        strategic_value=5,
        risk_score=3,
        priority_score=priority_score,
        priority=priority,
        effort_hours=28,
    )
    return _item(item_id, *deps, score=score)


def _ids(items) -> list[str]:
    return [item.id for item in items]


class TestDetectCycles:
    """Tests for Prioritizer.detect_cycles."""

    def test_two_node_cycle(self):
        cycles = Prioritizer().detect_cycles([_item("A", "B"), _item("B", "A")])
        assert cycles == [["A", "B", "A"]]

    def test_chain_has_no_cycles(self):
        items = [_item("A"), _item("B", "A"), _item("C", "B")]
        assert Prioritizer().detect_cycles(items) == []

    def test_self_dependency(self):
        assert Prioritizer().detect_cycles([_item("A", "A")]) == [["A", "A"]]

    def test_rotations_are_reported_once(self):
        items = [_item("A", "B"), _item("B", "C"), _item("C", "A"), _item("D", "B")]
        cycles = Prioritizer().detect_cycles(items)
        assert len(cycles) == 1
        assert set(cycles[0]) == {"A", "B", "C"}
        assert cycles[0][0] == cycles[0][-1]

    def test_unknown_dependencies_are_ignored(self):
        assert Prioritizer().detect_cycles([_item("A", "GHOST")]) == []

    def test_deep_chain_does_not_exhaust_stack(self):
        # Deepest node first so the traversal walks the whole chain at once
        items = [_item(f"N{i}", f"N{i - 1}") for i in range(4999, 0, -1)]
        items.append(_item("N0"))
        assert Prioritizer().detect_cycles(items) == []

    def test_deep_cycle(self):
        size = 3000
        items = [_item(f"N{i}", f"N{(i + 1) % size}") for i in range(size)]
        cycles = Prioritizer().detect_cycles(items)
        assert len(cycles) == 1
        assert len(cycles[0]) == size + 1

    def test_ensure_acyclic(self):
        prioritizer = Prioritizer()
        prioritizer.ensure_acyclic([_item("A"), _item("B", "A")])
        with pytest.raises(CycleDetected) as exc_info:
            prioritizer.ensure_acyclic([_item("A", "B"), _item("B", "A")])
        assert exc_info.value.cycles == [["A", "B", "A"]]

    def test_duplicate_ids_are_rejected(self):
        with pytest.raises(InvalidParameter, match="duplicate"):
            Prioritizer().detect_cycles([_item("A"), _item("A")])


class TestReadyItems:
    """Tests for Prioritizer.find_ready_items."""

    def test_nothing_completed(self):
        items = [_item("A"), _item("B", "A")]
        assert _ids(Prioritizer().find_ready_items(items, set())) == ["A"]

    def test_dependency_completed(self):
        items = [_item("A"), _item("B", "A")]
        assert _ids(Prioritizer().find_ready_items(items, {"A"})) == ["A", "B"]

    def test_unknown_dependency_is_never_ready(self):
        items = [_item("A"), _item("B", "GHOST")]
        assert _ids(Prioritizer().find_ready_items(items, {"GHOST"})) == ["A"]


class TestResolveDependencies:
    """Tests for Prioritizer.resolve_dependencies."""

    def test_chain_order(self):
        items = [_item("C", "B"), _item("B", "A"), _item("A")]
        assert _ids(Prioritizer().resolve_dependencies(items)) == ["A", "B", "C"]

    def test_ties_break_by_tier_then_id(self):
        items = [
            _item("B", priority=Priority.P2),
            _item("A", priority=Priority.P2),
            _item("Z", priority=Priority.P0),
            _item("Y", "Z", priority=Priority.P0),
        ]
        assert _ids(Prioritizer().resolve_dependencies(items)) == ["Z", "Y", "A", "B"]

    def test_cycle_still_covers_every_item(self):
        items = [_item("A", "B"), _item("B", "A"), _item("C", "A"), _item("D")]

        order = _ids(Prioritizer().resolve_dependencies(items))

        assert sorted(order) == ["A", "B", "C", "D"]
        assert order[0] == "D"
        assert order.index("A") < order.index("C")

    def test_self_dependency_is_released(self):
        assert _ids(Prioritizer().resolve_dependencies([_item("A", "A")])) == ["A"]

    def test_unknown_dependency_does_not_block_order(self):
        items = [_item("B", "GHOST"), _item("A")]
        assert _ids(Prioritizer().resolve_dependencies(items)) == ["A", "B"]

    def test_is_deterministic(self):
        items = [_item("I0")] + [_item(f"I{i}", f"I{i // 2}") for i in range(1, 20)]
        prioritizer = Prioritizer()
        first = _ids(prioritizer.resolve_dependencies(items))
        assert _ids(prioritizer.resolve_dependencies(list(reversed(items)))) == first


class TestPrioritize:
    """Tests for Prioritizer.prioritize and grouping."""

    def test_high_impact_first(self):
        low = _scored("LOW", impact=2, priority_score=2.5, priority=Priority.P3)
        high = _scored("HIGH", impact=9, priority_score=8, priority=Priority.P0)

        result = Prioritizer().prioritize([low, high], ProjectContext())

        assert _ids(result) == ["HIGH", "LOW"]

    def test_unscored_items_are_scored(self):
        result = Prioritizer().prioritize([_item("A")], ProjectContext())
        assert result[0].score is not None
        assert result[0].effort_estimate is not None

    def test_group_by_priority_omits_empty_tiers(self):
        items = [
            _item("A", priority=Priority.P2),
            _item("B", priority=Priority.P0),
            _item("C", priority=Priority.P2),
        ]

        groups = Prioritizer().group_by_priority(items)

        assert list(groups) == [Priority.P0, Priority.P2]
        assert _ids(groups[Priority.P2]) == ["A", "C"]

    @pytest.mark.parametrize(
        ("scope", "expected"),
        [
            (ImplementationScope.NONE, []),
            (ImplementationScope.P0, ["A"]),
            (ImplementationScope.P0_P1, ["A", "B"]),
            (ImplementationScope.ALL, ["A", "B", "C"]),
        ],
    )
    def test_select_for_scope(self, scope, expected):
        items = [
            _item("A", priority=Priority.P0),
            _item("B", priority=Priority.P1),
            _item("C", priority=Priority.P3),
        ]
        assert _ids(Prioritizer().select_for_scope(items, scope)) == expected

    def test_missing_and_reverse_dependencies(self):
        items = [_item("A"), _item("B", "A", "GHOST"), _item("C", "A")]
        prioritizer = Prioritizer()

        assert prioritizer.find_missing_dependencies(items) == ["GHOST"]
        blocks = prioritizer.reverse_dependencies(items)
        assert blocks["A"] == ["B", "C"]
        assert blocks["GHOST"] == ["B"]
        assert blocks["C"] == []


class TestPlan:
    """Tests for Prioritizer.plan."""

    def test_plan(self):
        items = [
            _item("A", status=ItemStatus.DONE),
            _item("B", "A"),
            _item("C", "B"),
            _item("D", "GHOST"),
        ]

        plan = Prioritizer().plan(items, ProjectContext())

        assert _ids(plan.ready) == ["B"]
        assert _ids(plan.order).index("A") < _ids(plan.order).index("B")
        assert plan.missing_dependencies == ["GHOST"]
        assert not plan.has_cycles
        assert all(item.score is not None for item in plan.items)

    def test_plan_with_completed_ids(self):
        items = [_item("A"), _item("B", "A")]
        plan = Prioritizer().plan(items, ProjectContext(), completed_ids={"A"})
        assert _ids(plan.ready) == ["B"]

    def test_ready_excludes_claimed_work(self):
        items = [
            _item("A", status=ItemStatus.IN_PROGRESS),
            _item("B", status=ItemStatus.BLOCKED),
            _item("C"),
            _item("D", "A"),
        ]

        plan = Prioritizer().plan(items, ProjectContext())

        assert _ids(plan.ready) == ["C"]
        assert sorted(_ids(plan.order)) == ["A", "B", "C", "D"]

    def test_plan_reports_cycles(self):
        plan = Prioritizer().plan([_item("A", "B"), _item("B", "A")], ProjectContext())
        assert plan.has_cycles
        assert plan.ready == []
        assert sorted(_ids(plan.order)) == ["A", "B"]

    def test_to_dict(self):
        plan = Prioritizer().plan([_item("A"), _item("B", "A")], ProjectContext())

        data = plan.to_dict()

        assert data["order"] == ["A", "B"]
        assert data["ready"] == ["A"]
        assert data["blocks"] == {"A": ["B"], "B": []}
        assert data["items"][0]["score"]["priority"] in {"P0", "P1", "P2", "P3"}
        assert sum(len(ids) for ids in data["groups"].values()) == 2
