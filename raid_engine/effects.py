"""Typed writes into Pending Queues.

Post-roll consequences and strategic activities both describe their effects as
:class:`~raid_engine.models.EffectRule` lists. This module routes each rule to
the first available scope and performs the write against that entity's
``turn.pending`` mapping. Nothing here touches persistent state directly.
"""
from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .models import EffectOp, EffectRule, EffectWrite, Scope

logger = logging.getLogger(__name__)

_LOCATION_TOKEN = "$location"
_NOW_TOKEN = "$now"


def _walk(pending: Dict[str, Any], path: str) -> Tuple[Dict[str, Any], str]:
    parts = [part for part in path.split(".") if part]
    if not parts:
        raise ValueError("empty queue path")
    node = pending
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    return node, parts[-1]


def increment(pending: Dict[str, Any], path: str, delta: float) -> Any:
    node, leaf = _walk(pending, path)
    current = node.get(leaf, 0)
    if isinstance(current, bool) or not isinstance(current, (int, float)):
        logger.warning("Queue value at %s is not numeric (%r); resetting before increment", path, current)
        current = 0
    node[leaf] = current + delta
    return node[leaf]


def append(pending: Dict[str, Any], path: str, record: Any) -> List[Any]:
    node, leaf = _walk(pending, path)
    current = node.get(leaf)
    items = list(current) if isinstance(current, list) else []
    items.append(record)
    node[leaf] = items
    return items


def assign(pending: Dict[str, Any], path: str, value: Any) -> Any:
    node, leaf = _walk(pending, path)
    node[leaf] = value
    return value


def _render(value: Any, context: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        if value == _LOCATION_TOKEN:
            return context.get("location")
        if value == _NOW_TOKEN:
            return context.get("now")
        return value
    if isinstance(value, dict):
        return {key: _render(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [_render(item, context) for item in value]
    return copy.deepcopy(value)


def apply_write(pending: Dict[str, Any], write: EffectWrite, context: Mapping[str, Any]) -> None:
    value = _render(write.value, context)
    if write.op is EffectOp.INCREMENT:
        increment(pending, write.path, value)
    elif write.op is EffectOp.APPEND:
        append(pending, write.path, value)
    else:
        assign(pending, write.path, value)


def apply_rules(
    rules: Sequence[EffectRule],
    targets: Mapping[Scope, Dict[str, Any]],
    *,
    location_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[Tuple[Scope, EffectWrite]]:
    """Apply ``rules`` to the pending queues in ``targets``.

    ``targets`` maps each available scope to that entity's pending mapping.
    Returns the writes that were performed along with their scope.
    """

    context = {
        "location": location_id,
        "now": (now or datetime.now(timezone.utc)).isoformat(),
    }
    performed: List[Tuple[Scope, EffectWrite]] = []
    for rule in rules:
        target = next((t for t in rule.targets if t.scope in targets), None)
        if target is None:
            logger.debug(
                "No scope available for rule routed to %s",
                ", ".join(t.scope.value for t in rule.targets),
            )
            continue
        pending = targets[target.scope]
        for write in target.writes:
            apply_write(pending, write, context)
            performed.append((target.scope, write))
    return performed


def describe(performed: Sequence[Tuple[Scope, EffectWrite]]) -> Dict[str, List[str]]:
    summary: Dict[str, List[str]] = {}
    for scope, write in performed:
        summary.setdefault(scope.value, []).append(f"{write.op.value} {write.path}")
    return summary


__all__ = ["append", "apply_rules", "apply_write", "assign", "describe", "increment"]
