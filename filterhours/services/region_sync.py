from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from filterhours.core.config import Settings

MAX_BACKOFF_SECONDS = 8.0


class RegionSyncError(RuntimeError):
    def __init__(self, *, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"region sync error {status_code}: {detail}")


@dataclass(frozen=True)
class RegionAveragePayload:
    region_prefix: str
    date: date
    avg_runtime_seconds: float | None
    avg_temperature: float | None
    avg_humidity: float | None
    sample_size: int
    updated_at: datetime

    def to_json(self) -> dict[str, Any]:
        return {
            "region_prefix": self.region_prefix,
            "date": self.date.isoformat(),
            "avg_runtime_seconds": self.avg_runtime_seconds,
            "avg_temperature": self.avg_temperature,
            "avg_humidity": self.avg_humidity,
            "sample_size": self.sample_size,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class RegionSyncReport:
    attempted: int
    delivered: int
    failed: int


class RegionSyncClient:
    """Pushes region averages to the downstream workflow system.

    Each row is posted on its own. A row that still fails after the last
    attempt is logged and dropped.
    """

    def __init__(
        self,
        *,
        url: str | None,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        initial_delay_seconds: float = 1.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._url = url
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._initial_delay_seconds = max(0.0, initial_delay_seconds)
        self._sleep = sleep
        self._logger = logging.getLogger("filterhours.region_sync")

    @classmethod
    def from_settings(cls, settings: Settings) -> RegionSyncClient:
        return cls(
            url=str(settings.region_sync_url) if settings.region_sync_url else None,
            timeout_seconds=settings.sync_timeout_seconds,
            max_attempts=settings.sync_max_attempts,
            initial_delay_seconds=settings.sync_initial_delay_seconds,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    def push(self, rows: Iterable[RegionAveragePayload]) -> RegionSyncReport:
        rows = list(rows)
        if not self.enabled:
            self._logger.debug("region sync disabled rows=%s", len(rows))
            return RegionSyncReport(attempted=0, delivered=0, failed=0)

        delivered = 0
        failed = 0
        for row in rows:
            if self._post_with_retry(row.to_json()):
                delivered += 1
            else:
                failed += 1
        self._logger.info(
            "region sync finished attempted=%s delivered=%s failed=%s",
            len(rows),
            delivered,
            failed,
        )
        return RegionSyncReport(attempted=len(rows), delivered=delivered, failed=failed)

    def _post_with_retry(self, payload: dict[str, Any]) -> bool:
        delay = self._initial_delay_seconds
        for attempt in range(1, self._max_attempts + 1):
            try:
                self._post(payload)
                return True
            except RegionSyncError as exc:
                if attempt >= self._max_attempts:
                    self._logger.error(
                        "region sync dropped row region_prefix=%s date=%s attempts=%s error=%s",
                        payload.get("region_prefix"),
                        payload.get("date"),
                        attempt,
                        exc,
                    )
                    return False
                self._logger.warning(
                    "region sync attempt failed region_prefix=%s date=%s attempt=%s retry_in_seconds=%.1f error=%s",
                    payload.get("region_prefix"),
                    payload.get("date"),
                    attempt,
                    delay,
                    exc,
                )
                self._sleep(delay)
                delay = min(delay * 2.0, MAX_BACKOFF_SECONDS)
        return False

    def _post(self, payload: dict[str, Any]) -> None:
        request = Request(
            url=self._url,
            method="POST",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                body = response.read().decode("utf-8", errors="replace")
                if response.status not in (200, 201, 202, 204):
                    raise RegionSyncError(status_code=response.status, detail=body or "Unexpected response")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise RegionSyncError(status_code=exc.code, detail=detail)
        except URLError as exc:
            raise RegionSyncError(status_code=503, detail=str(exc))
        except TimeoutError as exc:
            raise RegionSyncError(status_code=504, detail=str(exc))
