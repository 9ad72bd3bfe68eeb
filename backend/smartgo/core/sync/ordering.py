"""
Visit-order remapping for the rows of one day.

`(day_id, visit_order)` is unique at all times, so a permutation cannot be
written in place. The remap moves every row into a staging range that is
disjoint from both the current and the final orders, then writes the final
1..N orders.
"""

from dataclasses import dataclass
from typing import Dict, Hashable, Iterable, Mapping, Sequence

from smartgo.core.errors import ConstraintViolationError


@dataclass(frozen=True)
class OrderRemap:
    staging: Dict[Hashable, int]
    final: Dict[Hashable, int]

    @property
    def changed(self) -> bool:
        return bool(self.final)


def validate_permutation(current_ids: Iterable[Hashable], ordered_ids: Sequence[Hashable]) -> None:
    """Reject `ordered_ids` unless it is exactly a permutation of `current_ids`"""
    current = set(current_ids)
    if len(ordered_ids) != len(current):
        raise ConstraintViolationError(
            f"Expected {len(current)} day POI ids, got {len(ordered_ids)}"
        )
    if len(set(ordered_ids)) != len(ordered_ids):
        raise ConstraintViolationError("Duplicate day POI ids in reorder request")
    foreign = [i for i in ordered_ids if i not in current]
    if foreign:
        raise ConstraintViolationError(
            f"Day POI ids do not belong to this day: {', '.join(str(i) for i in foreign)}"
        )


def plan_remap(current_orders: Mapping[Hashable, int], ordered_ids: Sequence[Hashable]) -> OrderRemap:
    """
    Two-phase plan assigning `ordered_ids` the orders 1..N.

    Rows already at their target order are left out of both phases.
    """
    targets = {row_id: position for position, row_id in enumerate(ordered_ids, start=1)}
    moving = [row_id for row_id in ordered_ids if current_orders.get(row_id) != targets[row_id]]
    if not moving:
        return OrderRemap(staging={}, final={})

    offset = max(list(current_orders.values()) + [len(ordered_ids)]) + 1
    staging = {row_id: offset + index for index, row_id in enumerate(moving)}
    final = {row_id: targets[row_id] for row_id in moving}
    return OrderRemap(staging=staging, final=final)
