from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session, sessionmaker

from filterhours.core.config import Settings
from filterhours.repositories.devices import list_unreachable_candidates
from filterhours.services.worker_runs import WorkerOutcome, WorkerRunResult, run_worker

WORKER_NAME = "device_heartbeat"


class DeviceHeartbeatService:
    """Flags devices that have not reported within the offline threshold.

    Ingestion flips a device back to reachable when a newer event arrives.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logging.getLogger("filterhours.heartbeat")

    def run_once(self, now: datetime | None = None) -> WorkerRunResult:
        return run_worker(
            session_factory=self._session_factory,
            worker_name=WORKER_NAME,
            fn=lambda db: self.mark_unreachable(db, now=now),
        )

    def mark_unreachable(self, db: Session, *, now: datetime | None = None) -> WorkerOutcome:
        now = now or self._clock()
        seen_before = now - timedelta(minutes=self._settings.offline_threshold_minutes)
        marked: list[str] = []
        for state in list_unreachable_candidates(db, seen_before=seen_before):
            state.is_reachable = False
            marked.append(state.device_key)
            self._logger.info(
                "device marked unreachable device_key=%s last_seen_at=%s",
                state.device_key,
                state.last_seen_at.isoformat(),
            )
        db.flush()

        self._logger.info(
            "heartbeat complete threshold_minutes=%s marked_unreachable=%s",
            self._settings.offline_threshold_minutes,
            len(marked),
        )
        return WorkerOutcome(devices_processed=len(marked), details={"marked_unreachable": len(marked)})
