"""Normalise legacy queue shapes in stored faction and location documents.

Two legacy shapes are handled:

* ``post.pending``: the old post-round queue. Keys missing from
  ``turn.pending`` are folded in and ``post`` is removed.
* ``nextRound``: the old name of the ``nextTurn`` overlay, under both
  ``turn.pending`` and ``bonuses``.
"""
from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, List, Mapping, Tuple

from .models import MigrationReport

logger = logging.getLogger(__name__)

LEGACY_QUEUE_KEY = "post"
LEGACY_NEXT_KEY = "nextRound"
CURRENT_NEXT_KEY = "nextTurn"


def legacy_keys(document: Mapping[str, Any]) -> List[str]:
    """Dotted paths of legacy keys present in ``document``."""

    found: List[str] = []
    post = document.get(LEGACY_QUEUE_KEY)
    if isinstance(post, dict) and isinstance(post.get("pending"), dict):
        found.append(f"{LEGACY_QUEUE_KEY}.pending")
    turn = document.get("turn")
    pending = turn.get("pending") if isinstance(turn, dict) else None
    if isinstance(pending, dict) and LEGACY_NEXT_KEY in pending:
        found.append(f"turn.pending.{LEGACY_NEXT_KEY}")
    bonuses = document.get("bonuses")
    if isinstance(bonuses, dict) and LEGACY_NEXT_KEY in bonuses:
        found.append(f"bonuses.{LEGACY_NEXT_KEY}")
    return found


def _rename_next(container: Dict[str, Any]) -> bool:
    if LEGACY_NEXT_KEY not in container:
        return False
    legacy = container[LEGACY_NEXT_KEY]
    current = container.get(CURRENT_NEXT_KEY)
    if current is None:
        container[CURRENT_NEXT_KEY] = container.pop(LEGACY_NEXT_KEY)
        return True
    if not (isinstance(current, dict) and isinstance(legacy, dict)):
        logger.warning(
            "Cannot merge %s=%r into %s=%r; legacy value left in place",
            LEGACY_NEXT_KEY,
            legacy,
            CURRENT_NEXT_KEY,
            current,
        )
        return False
    del container[LEGACY_NEXT_KEY]
    for key, value in legacy.items():
        current.setdefault(key, value)
    return True


def normalize_document(document: Dict[str, Any]) -> bool:
    """Rewrite ``document`` in place; return whether anything changed."""

    changed = False
    post = document.get(LEGACY_QUEUE_KEY)
    if isinstance(post, dict) and isinstance(post.get("pending"), dict):
        turn = document.get("turn")
        if not isinstance(turn, dict):
            turn = {}
            document["turn"] = turn
        pending = turn.get("pending")
        if not isinstance(pending, dict):
            pending = {}
            turn["pending"] = pending
        for key, value in post["pending"].items():
            if key not in pending:
                pending[key] = value
        del document[LEGACY_QUEUE_KEY]
        changed = True

    turn = document.get("turn")
    pending = turn.get("pending") if isinstance(turn, dict) else None
    if isinstance(pending, dict):
        changed = _rename_next(pending) or changed
    bonuses = document.get("bonuses")
    if isinstance(bonuses, dict):
        changed = _rename_next(bonuses) or changed
    return changed


def preview(documents: Mapping[str, Mapping[str, Any]]) -> Dict[str, List[str]]:
    """Legacy keys per entity, without modifying anything."""

    summary: Dict[str, List[str]] = {}
    for entity_id, document in documents.items():
        keys = legacy_keys(document)
        if keys:
            summary[entity_id] = keys
    return summary


def migrate_documents(
    documents: Mapping[str, Dict[str, Any]],
    save: Callable[[str, Dict[str, Any]], None],
    *,
    dry_run: bool = False,
) -> Tuple[MigrationReport, Dict[str, Dict[str, Any]]]:
    """Normalise every document and persist the changed ones through ``save``.

    A failure on one entity is logged and recorded; the rest still migrate.
    Returns the report and the normalised copies of the changed documents.
    """

    report = MigrationReport(dry_run=dry_run)
    normalized: Dict[str, Dict[str, Any]] = {}
    for entity_id, document in documents.items():
        report.scanned += 1
        try:
            candidate = copy.deepcopy(document)
            if not normalize_document(candidate):
                continue
            if not dry_run:
                save(entity_id, candidate)
            normalized[entity_id] = candidate
            report.changed.append(entity_id)
        except Exception as exc:  # log and continue
            logger.exception("Queue migration failed for %s", entity_id)
            report.failed[entity_id] = str(exc)
    if report.changed:
        logger.info(
            "Queue migration %s %d of %d entities",
            "would update" if dry_run else "updated",
            len(report.changed),
            report.scanned,
        )
    return report, normalized


__all__ = ["legacy_keys", "migrate_documents", "normalize_document", "preview"]
