"""Periodic turn advance driven by APScheduler."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .service import EngineService

logger = logging.getLogger(__name__)


class TurnScheduler:
    """Runs planned activities and advances every faction's turn on an interval."""

    def __init__(self, service: EngineService, interval_minutes: Optional[int] = None) -> None:
        self.service = service
        self.interval_minutes = interval_minutes or service.settings.advance_interval_minutes
        self.scheduler = BackgroundScheduler()

    def start(self) -> None:
        self.scheduler.add_job(
            self._advance_job,
            "interval",
            minutes=self.interval_minutes,
            id="advance_turns",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Turn scheduler started (every %d minutes)", self.interval_minutes)

    def shutdown(self) -> None:
        self.scheduler.shutdown(wait=False)

    def _advance_job(self) -> Dict[str, List[str]]:
        summary: Dict[str, List[str]] = {"applied": [], "empty": [], "busy": [], "failed": []}
        for faction in self.service.state.all_factions():
            try:
                self.service.consume_planned(faction.id)
                result = self.service.advance_turn(faction.id)
            except Exception as exc:  # pragma: no cover - log and continue
                logger.exception("Turn advance failed for %s", faction.id)
                self.service.push_admin_notification(f"Turn advance failed for {faction.id}: {exc}")
                summary["failed"].append(faction.id)
                continue
            if result.note == "applied":
                summary["applied"].append(faction.id)
            elif result.note == "empty":
                summary["empty"].append(faction.id)
            else:
                summary["busy"].append(faction.id)
        logger.info(
            "Turn tick: %d applied, %d empty, %d busy, %d failed",
            len(summary["applied"]),
            len(summary["empty"]),
            len(summary["busy"]),
            len(summary["failed"]),
        )
        return summary


__all__ = ["TurnScheduler", "BackgroundScheduler"]
