from __future__ import annotations

import json
from datetime import date
from unittest import TestCase
from unittest.mock import MagicMock, patch
from urllib.error import URLError

from filterhours.core.config import Settings
from filterhours.services.region_sync import RegionAveragePayload, RegionSyncClient
from tests.support import utc

ROW = RegionAveragePayload(
    region_prefix="941",
    date=date(2026, 5, 10),
    avg_runtime_seconds=1500.0,
    avg_temperature=70.0,
    avg_humidity=None,
    sample_size=2,
    updated_at=utc(2026, 5, 10, 12),
)


def _response(status: int = 200) -> MagicMock:
    response = MagicMock()
    response.__enter__.return_value = response
    response.status = status
    response.read.return_value = b"{}"
    return response


class RegionSyncClientTests(TestCase):
    def setUp(self) -> None:
        self.sleeps: list[float] = []
        self.client = RegionSyncClient(
            url="http://workflow.local/region-averages",
            max_attempts=3,
            initial_delay_seconds=1.5,
            sleep=self.sleeps.append,
        )

    def test_posts_each_row_as_json(self) -> None:
        with patch("filterhours.services.region_sync.urlopen", return_value=_response()) as urlopen:
            report = self.client.push([ROW])

        self.assertEqual(report.delivered, 1)
        request = urlopen.call_args.args[0]
        self.assertEqual(request.get_method(), "POST")
        body = json.loads(request.data.decode("utf-8"))
        self.assertEqual(body["region_prefix"], "941")
        self.assertEqual(body["date"], "2026-05-10")
        self.assertIsNone(body["avg_humidity"])

    def test_retries_with_exponential_backoff(self) -> None:
        side_effect = [URLError("down"), URLError("down"), _response()]
        with patch("filterhours.services.region_sync.urlopen", side_effect=side_effect) as urlopen:
            report = self.client.push([ROW])

        self.assertEqual(urlopen.call_count, 3)
        self.assertEqual(report.delivered, 1)
        self.assertEqual(self.sleeps, [1.5, 3.0])

    def test_gives_up_after_last_attempt(self) -> None:
        with patch("filterhours.services.region_sync.urlopen", side_effect=URLError("down")):
            with self.assertLogs("filterhours.region_sync", level="ERROR"):
                report = self.client.push([ROW, ROW])

        self.assertEqual(report.failed, 2)
        self.assertEqual(report.delivered, 0)

    def test_backoff_is_capped(self) -> None:
        client = RegionSyncClient(
            url="http://workflow.local/region-averages",
            max_attempts=4,
            initial_delay_seconds=5.0,
            sleep=self.sleeps.append,
        )
        with patch("filterhours.services.region_sync.urlopen", side_effect=URLError("down")):
            client.push([ROW])

        self.assertEqual(self.sleeps, [5.0, 8.0, 8.0])

    def test_disabled_without_url(self) -> None:
        client = RegionSyncClient.from_settings(Settings(region_sync_url=None))
        with patch("filterhours.services.region_sync.urlopen") as urlopen:
            report = client.push([ROW])

        self.assertFalse(client.enabled)
        self.assertEqual(report.attempted, 0)
        urlopen.assert_not_called()
