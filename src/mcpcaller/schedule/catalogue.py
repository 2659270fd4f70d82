"""Weighted call-target catalogue and selection."""

from __future__ import annotations

import random
from typing import Any, Dict, List, Optional, Sequence, Tuple

from mcpcaller.mcp.types import TARGET_KINDS, CallTarget, WeightedTarget


def _weighted(kind: str, name: str, weight: float, **arguments: Any) -> WeightedTarget:
    return WeightedTarget(target=CallTarget(kind=kind, name=name, arguments=dict(arguments)), weight=weight)


def default_catalogue() -> List[WeightedTarget]:
    """Built-in plant-shop traffic mix."""

    return [
        _weighted("tool", "get-products", 4),
        _weighted("tool", "get-plant-care-guide", 1, plantName="pothos"),
        _weighted("tool", "get-plant-care-guide", 1, plantName="fiddle fig"),
        _weighted("tool", "checkout", 2, items=[{"productId": 3, "quantity": 1}]),
        _weighted("resource", "seasonal-calendar", 1),
        _weighted("resource", "plant-diagnostics", 2),
        _weighted("resource", "plant-symptoms", 3),
        _weighted("prompt", "seasonal-care-guide", 1),
        _weighted("prompt", "plant-shopping-assistant", 2),
        _weighted("prompt", "new-plant-parent", 1),
    ]


def total_weight(catalogue: Sequence[WeightedTarget]) -> float:
    return sum(max(0.0, float(entry.weight)) for entry in catalogue)


def pick(catalogue: Sequence[WeightedTarget], rng: Optional[random.Random] = None) -> CallTarget:
    """Cumulative-weight draw over ``catalogue``."""

    if not catalogue:
        raise ValueError("catalogue is empty")
    total = total_weight(catalogue)
    if total <= 0:
        raise ValueError("catalogue has no positive weight")

    point = (rng or random).random() * total
    cumulative = 0.0
    for entry in catalogue:
        weight = max(0.0, float(entry.weight))
        if weight <= 0:
            continue
        cumulative += weight
        if point < cumulative:
            return entry.target
    # Float rounding can leave point == total; the last positive entry wins.
    for entry in reversed(catalogue):
        if entry.weight > 0:
            return entry.target
    raise ValueError("catalogue has no positive weight")


def parse_catalogue_rows(rows: object) -> Tuple[List[WeightedTarget], List[str]]:
    """Parse ``[[targets]]`` rows from the project config."""

    if rows is None:
        return [], []
    if not isinstance(rows, list):
        return [], ["invalid targets: must be an array of tables"]

    entries: List[WeightedTarget] = []
    errors: List[str] = []
    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            errors.append("targets[{0}] must be a table".format(index))
            continue

        kind = str(row.get("kind") or "").strip().lower()
        name = str(row.get("name") or "").strip()
        arguments = row.get("arguments")
        raw_weight = row.get("weight", 1)

        if kind not in TARGET_KINDS:
            errors.append(
                "targets[{0}] kind must be one of {1}".format(index, "|".join(TARGET_KINDS))
            )
            continue
        if not name:
            errors.append("targets[{0}] missing name".format(index))
            continue

        parsed_arguments: Dict[str, Any] = {}
        if isinstance(arguments, dict):
            parsed_arguments = dict(arguments)
        elif arguments is not None:
            errors.append("targets[{0}] arguments must be a table".format(index))
            continue

        try:
            weight = float(raw_weight)
        except (TypeError, ValueError):
            errors.append("targets[{0}] weight must be a number".format(index))
            continue
        if weight <= 0:
            errors.append("targets[{0}] weight must be positive".format(index))
            continue

        entries.append(
            WeightedTarget(
                target=CallTarget(kind=kind, name=name, arguments=parsed_arguments),
                weight=weight,
            )
        )

    return entries, errors
