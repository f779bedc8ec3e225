from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session, sessionmaker

from filterhours.core.config import Settings
from filterhours.db.models import Device, DeviceState, EquipmentEvent, RuntimeSession
from filterhours.repositories.devices import get_device, list_device_keys, lock_device_state
from filterhours.repositories.events import list_events_after
from filterhours.repositories.sessions import (
    get_latest_closed_session_end,
    get_open_session,
    get_session,
)
from filterhours.services.filter_usage import FilterUsageService
from filterhours.services.status_classifier import HvacMode, normalize_status, resolve_active
from filterhours.services.worker_runs import WorkerOutcome, WorkerRunResult, run_worker

WORKER_NAME = "session_stitcher"


@dataclass
class StitchStats:
    events_processed: int = 0
    events_skipped: int = 0
    sessions_opened: int = 0
    sessions_resumed: int = 0
    sessions_closed: int = 0
    sessions_posted: int = 0
    sessions_deleted: int = 0
    posted_duplicates: int = 0
    percentages_refreshed: int = 0


class SessionStitcherService:
    """Turns each device's event stream into non-overlapping runtime sessions.

    Per device the machine is IDLE (no open session), RUNNING (open session,
    device active) or PENDING_CLOSE (open session, device inactive). A pending
    session is closed TAIL seconds after the OFF was observed, unless an ON
    arrives first, in which case it resumes.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        filter_usage: FilterUsageService,
        clock: Callable[[], datetime] | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._filter_usage = filter_usage
        self._clock = clock or _utc_now
        self._logger = logging.getLogger("filterhours.session_stitcher")

    @property
    def tail(self) -> timedelta:
        return timedelta(seconds=self._settings.tail_seconds)

    @property
    def max_session(self) -> timedelta:
        return timedelta(seconds=self._settings.max_session_seconds)

    def run_once(self, now: datetime | None = None) -> WorkerRunResult:
        return run_worker(
            session_factory=self._session_factory,
            worker_name=WORKER_NAME,
            fn=lambda db: self.process_all(db, now=now),
        )

    def process_all(self, db: Session, *, now: datetime | None = None) -> WorkerOutcome:
        now = now or self._clock()
        stats = StitchStats()
        device_keys = list_device_keys(db)
        for device_key in device_keys:
            self.process_device(db, device_key=device_key, now=now, stats=stats)

        # Cached percentages follow the counters even for devices with no new events.
        stats.percentages_refreshed = self._filter_usage.refresh_usage_percentages(db)
        self._logger.info(
            "stitch run complete devices=%s events_processed=%s events_skipped=%s "
            "sessions_opened=%s sessions_closed=%s sessions_posted=%s sessions_deleted=%s",
            len(device_keys),
            stats.events_processed,
            stats.events_skipped,
            stats.sessions_opened,
            stats.sessions_closed,
            stats.sessions_posted,
            stats.sessions_deleted,
        )
        return WorkerOutcome(devices_processed=len(device_keys), details=asdict(stats))

    def process_device(
        self,
        db: Session,
        *,
        device_key: str,
        now: datetime,
        stats: StitchStats | None = None,
    ) -> StitchStats:
        stats = stats if stats is not None else StitchStats()
        device = get_device(db, device_key)
        if device is None:
            return stats
        state = lock_device_state(db, device_key)

        for event in list_events_after(db, device_key=device_key, after_ts=state.last_event_ts):
            if event.runtime_seconds is not None and event.runtime_seconds > 0:
                self._apply_posted_runtime(db, device, state, event, stats)
            else:
                self._apply_transition(db, device, state, event, stats)
            state.last_event_ts = event.recorded_at
            stats.events_processed += 1

        self._sweep(db, device, state, now, stats)
        db.flush()
        return stats

    def _apply_posted_runtime(
        self,
        db: Session,
        device: Device,
        state: DeviceState,
        event: EquipmentEvent,
        stats: StitchStats,
    ) -> None:
        status = normalize_status(event.previous_status) or normalize_status(event.equipment_status)
        if status is None:
            stats.events_skipped += 1
            self._logger.info(
                "posted runtime without status skipped device_key=%s event_id=%s runtime_seconds=%s",
                device.device_key,
                event.id,
                event.runtime_seconds,
            )
            return

        ended_at = event.recorded_at
        started_at = ended_at - timedelta(seconds=int(event.runtime_seconds))

        latest_end = get_latest_closed_session_end(db, device_key=device.device_key)
        if latest_end is not None and latest_end >= ended_at:
            stats.posted_duplicates += 1
            self._logger.info(
                "posted runtime already covered device_key=%s event_id=%s ended_at=%s latest_session_end=%s",
                device.device_key,
                event.id,
                ended_at.isoformat(),
                latest_end.isoformat(),
            )
            return
        if latest_end is not None and latest_end > started_at:
            started_at = latest_end

        open_session = self._current_open_session(db, state)
        if open_session is not None and open_session.started_at < ended_at:
            if open_session.off_observed_at is not None and open_session.off_observed_at <= started_at:
                # Pending close that went quiet before the posted interval began.
                self._close_session(
                    db,
                    device,
                    state,
                    open_session,
                    ended_at=min(open_session.off_observed_at + self.tail, started_at),
                    stats=stats,
                )
            else:
                self._logger.info(
                    "open session superseded by posted runtime device_key=%s session_id=%s started_at=%s",
                    device.device_key,
                    open_session.id,
                    open_session.started_at.isoformat(),
                )
                self._discard_session(db, state, open_session, stats)
            state.is_active = False

        runtime_seconds = _seconds_between(started_at, ended_at)
        session = RuntimeSession(
            device_key=device.device_key,
            mode=event.hvac_mode or HvacMode.UNKNOWN.value,
            equipment_status=status,
            fan_assisted=bool(event.fan_assisted),
            started_at=started_at,
            ended_at=ended_at,
            runtime_seconds=runtime_seconds,
            tick_count=1,
            last_tick_at=ended_at,
            terminated_reason="posted_runtime",
        )
        db.add(session)
        db.flush()
        self._filter_usage.apply_session(db, device=device, state=state, session=session)
        stats.sessions_posted += 1

    def _apply_transition(
        self,
        db: Session,
        device: Device,
        state: DeviceState,
        event: EquipmentEvent,
        stats: StitchStats,
    ) -> None:
        active = resolve_active(event.is_active, event.equipment_status)
        if active is None:
            stats.events_skipped += 1
            self._logger.info(
                "event without activity signal skipped device_key=%s event_id=%s",
                device.device_key,
                event.id,
            )
            return

        open_session = self._current_open_session(db, state)
        if not active:
            if open_session is not None and open_session.off_observed_at is None:
                open_session.off_observed_at = event.recorded_at
            state.is_active = False
            return

        if open_session is None:
            self._open_session(db, state, event, stats)
        elif open_session.off_observed_at is not None:
            if event.recorded_at - open_session.off_observed_at <= self.tail:
                open_session.off_observed_at = None
                self._tick(open_session, event)
                stats.sessions_resumed += 1
            else:
                self._close_session(
                    db,
                    device,
                    state,
                    open_session,
                    ended_at=open_session.off_observed_at + self.tail,
                    stats=stats,
                )
                self._open_session(db, state, event, stats)
        elif event.recorded_at - _last_corroboration(open_session) > self.max_session:
            self._logger.warning(
                "polling gap discarded open session device_key=%s session_id=%s last_seen=%s event_at=%s",
                device.device_key,
                open_session.id,
                _last_corroboration(open_session).isoformat(),
                event.recorded_at.isoformat(),
            )
            self._discard_session(db, state, open_session, stats)
            self._open_session(db, state, event, stats)
        else:
            self._tick(open_session, event)
        state.is_active = True

    def _sweep(
        self,
        db: Session,
        device: Device,
        state: DeviceState,
        now: datetime,
        stats: StitchStats,
    ) -> None:
        open_session = self._current_open_session(db, state)
        if open_session is None:
            return

        if not state.is_active or open_session.off_observed_at is not None:
            off_at = open_session.off_observed_at or state.last_event_ts or _last_corroboration(open_session)
            close_at = off_at + self.tail
            if now >= close_at:
                self._close_session(db, device, state, open_session, ended_at=close_at, stats=stats)
            return

        last_seen = _last_corroboration(open_session)
        if now - last_seen > self.max_session:
            self._logger.warning(
                "active session without corroboration deleted device_key=%s session_id=%s "
                "started_at=%s last_seen=%s",
                device.device_key,
                open_session.id,
                open_session.started_at.isoformat(),
                last_seen.isoformat(),
            )
            self._discard_session(db, state, open_session, stats)
            state.is_active = False

    def _open_session(
        self,
        db: Session,
        state: DeviceState,
        event: EquipmentEvent,
        stats: StitchStats,
    ) -> RuntimeSession:
        started_at = event.recorded_at
        latest_end = get_latest_closed_session_end(db, device_key=state.device_key)
        if latest_end is not None and latest_end > started_at:
            # The ON fell inside the previous session's tail, which already covers it.
            self._logger.info(
                "session start clipped to previous session end device_key=%s event_at=%s latest_session_end=%s",
                state.device_key,
                started_at.isoformat(),
                latest_end.isoformat(),
            )
            started_at = latest_end
        session = RuntimeSession(
            device_key=state.device_key,
            mode=event.hvac_mode or HvacMode.UNKNOWN.value,
            equipment_status=event.equipment_status,
            fan_assisted=bool(event.fan_assisted),
            started_at=started_at,
            tick_count=1,
            last_tick_at=event.recorded_at,
        )
        db.add(session)
        db.flush()
        state.open_session_id = session.id
        stats.sessions_opened += 1
        return session

    def _close_session(
        self,
        db: Session,
        device: Device,
        state: DeviceState,
        session: RuntimeSession,
        *,
        ended_at: datetime,
        stats: StitchStats,
    ) -> None:
        runtime_seconds = _seconds_between(session.started_at, ended_at)
        if runtime_seconds > self._settings.max_session_seconds:
            self._logger.warning(
                "session exceeds ceiling and was deleted device_key=%s session_id=%s "
                "started_at=%s runtime_seconds=%s max_session_seconds=%s",
                device.device_key,
                session.id,
                session.started_at.isoformat(),
                runtime_seconds,
                self._settings.max_session_seconds,
            )
            self._discard_session(db, state, session, stats)
            return

        session.ended_at = ended_at
        session.runtime_seconds = runtime_seconds
        session.terminated_reason = "tail_close"
        if state.open_session_id == session.id:
            state.open_session_id = None
        db.flush()
        self._filter_usage.apply_session(db, device=device, state=state, session=session)
        stats.sessions_closed += 1

    def _discard_session(
        self,
        db: Session,
        state: DeviceState,
        session: RuntimeSession,
        stats: StitchStats,
    ) -> None:
        if state.open_session_id == session.id:
            state.open_session_id = None
        db.delete(session)
        db.flush()
        stats.sessions_deleted += 1

    def _current_open_session(self, db: Session, state: DeviceState) -> RuntimeSession | None:
        if state.open_session_id is not None:
            session = get_session(db, state.open_session_id)
            if session is not None and session.ended_at is None:
                return session
        session = get_open_session(db, device_key=state.device_key)
        state.open_session_id = session.id if session is not None else None
        return session

    @staticmethod
    def _tick(session: RuntimeSession, event: EquipmentEvent) -> None:
        session.tick_count = int(session.tick_count or 0) + 1
        session.last_tick_at = event.recorded_at
        if session.mode == HvacMode.UNKNOWN.value and event.hvac_mode not in (None, HvacMode.UNKNOWN.value):
            session.mode = event.hvac_mode
            session.equipment_status = event.equipment_status
        if event.fan_assisted:
            session.fan_assisted = True


def _last_corroboration(session: RuntimeSession) -> datetime:
    return session.last_tick_at or session.started_at


def _seconds_between(start: datetime, end: datetime) -> int:
    return max(0, int(round((end - start).total_seconds())))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
