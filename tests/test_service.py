import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from opsdash.config import DashboardSettings
from opsdash.models import (
    EngagementOverview,
    Location,
    Mode,
    OrderRecord,
    ReferrerRecord,
    TimeRange,
    ViewRecord,
)
from opsdash.service import DashboardService, TrafficSourceVisibility

NOW = datetime(2026, 1, 8, 12, 0, tzinfo=timezone.utc)


class FakeRepo:
    def __init__(self):
        self.last_overview_range = None
        self.last_orders_call = None

    def fetch_engagement_overview(self, start_time, end_time):
        self.last_overview_range = (start_time, end_time)
        return EngagementOverview(
            unique_device_ids=42,
            views=[
                ViewRecord(view_identifier="https://www.phi.health/stack?fbclid=1", unique_device_count=5),
                ViewRecord(view_identifier="/stack", unique_device_count=3),
                ViewRecord(view_identifier="/origami?utm_source=newsletter", unique_device_count=2),
                ViewRecord(view_identifier="/water", unique_device_count=None),
            ],
            referrers=[
                ReferrerRecord(referrer="https://www.phi.health/stack", unique_device_count=9),
                ReferrerRecord(referrer="https://www.google.com/?q=stack", unique_device_count=4),
                ReferrerRecord(referrer=None, unique_device_count=2),
            ],
            locations=[Location(latitude=52.5, longitude=13.4, country_code="DE")],
            device_category_percentages={"mobile": 75.0, "desktop": 25.0},
        )

    def fetch_orders(self, start_time, end_time, excluded_source=None, limit=1000):
        self.last_orders_call = (start_time, end_time, excluded_source, limit)
        return [
            OrderRecord(created_at=end_time - timedelta(minutes=10), identifier="o-1"),
            OrderRecord(created_at=end_time - timedelta(minutes=20), identifier="o-2"),
        ]


class FailingRepo(FakeRepo):
    def fetch_engagement_overview(self, start_time, end_time):
        raise ConnectionError("engagement backend unavailable")


def _service(repo=None):
    return DashboardService(repo or FakeRepo(), clock=lambda: NOW)


def test_service_uses_explicit_period():
    repo = FakeRepo()
    service = _service(repo)
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    end = datetime(2026, 1, 7, tzinfo=timezone.utc)

    snapshot = service.refresh(Mode.HISTORICAL, TimeRange(start, end))

    assert repo.last_overview_range == (start, end)
    assert repo.last_orders_call == (start, end, "AppleAppStoreNotification", 1000)
    assert snapshot.window == TimeRange(start, end)
    assert snapshot.time_stats.days == 7
    assert snapshot.time_stats.users_per_day == 6
    assert service.latest is snapshot


def test_service_live_mode_queries_rolling_window():
    repo = FakeRepo()
    service = _service(repo)

    snapshot = service.refresh(Mode.LIVE)

    assert repo.last_overview_range == (NOW - timedelta(minutes=30), NOW)
    assert snapshot.mode is Mode.LIVE
    assert snapshot.time_stats.users_per_hour == 84
    assert len(snapshot.orders_chart_data) == 1
    assert snapshot.orders_chart_data[0].orders == 2
    assert all(not point.traffic for point in snapshot.traffic_sources_by_date)


def test_refresh_live_callback_uses_given_window():
    repo = FakeRepo()
    service = _service(repo)
    window = TimeRange(NOW - timedelta(minutes=30), NOW)

    snapshot = asyncio.run(service.refresh_live(window))

    assert repo.last_overview_range == (window.start_time, window.end_time)
    assert snapshot.mode is Mode.LIVE


def test_snapshot_breakdowns():
    service = _service()

    snapshot = service.refresh(Mode.HISTORICAL)

    assert [(entry.key, entry.count) for entry in snapshot.grouped_views] == [
        ("/stack", 8),
        ("/origami", 2),
    ]
    assert snapshot.total_views == 10
    assert [(entry.key, entry.count) for entry in snapshot.traffic_sources] == [
        ("Facebook", 5),
        ("Direct/Other", 3),
        ("UTM: newsletter", 2),
    ]
    assert snapshot.total_chart_views == 10
    assert [entry.key for entry in snapshot.referrers] == ["https://www.google.com/", "(direct)"]
    assert snapshot.device_category_percentages == {"mobile": 75.0, "desktop": 25.0}
    assert all(point.is_estimated for point in snapshot.traffic_sources_by_date)
    assert len(snapshot.traffic_sources_by_date) == len(snapshot.orders_chart_data)


def test_stale_refresh_results_are_discarded():
    service = _service()
    first = service.begin_refresh()
    second = service.begin_refresh()

    late = service.build_snapshot(Mode.HISTORICAL, version=first)
    current = service.build_snapshot(Mode.HISTORICAL, version=second)

    assert service.complete_refresh(late) is False
    assert service.latest is None
    assert service.complete_refresh(current) is True
    assert service.latest is current


def test_invalidate_discards_in_flight_refresh():
    service = _service()
    version = service.begin_refresh()
    snapshot = service.build_snapshot(Mode.LIVE, version=version)

    service.invalidate()

    assert service.complete_refresh(snapshot) is False


def test_toggle_all_traffic_sources_selects_then_clears():
    service = _service()
    service.refresh(Mode.HISTORICAL)
    assert service.visible_traffic_sources == frozenset()

    service.toggle_all_traffic_sources()
    assert service.visible_traffic_sources == {"Facebook", "Direct/Other", "UTM: newsletter"}

    service.toggle_all_traffic_sources()
    assert service.visible_traffic_sources == frozenset()


def test_toggle_single_traffic_source():
    service = _service()
    service.refresh(Mode.HISTORICAL)

    service.toggle_traffic_source("Facebook")
    assert service.visible_traffic_sources == {"Facebook"}

    service.toggle_all_traffic_sources()
    assert service.visible_traffic_sources == {"Facebook", "Direct/Other", "UTM: newsletter"}

    service.toggle_traffic_source("Facebook")
    assert service.visible_traffic_sources == {"Direct/Other", "UTM: newsletter"}


def test_visibility_toggle_all_with_nothing_available():
    visibility = TrafficSourceVisibility()

    visibility.toggle_all([])

    assert len(visibility) == 0


def test_displayed_views_respects_settings_limit():
    service = DashboardService(
        FakeRepo(), settings=DashboardSettings(displayed_views_limit=1), clock=lambda: NOW
    )
    assert service.displayed_views() == []

    service.refresh(Mode.HISTORICAL)

    assert [entry.key for entry in service.displayed_views()] == ["/stack"]
    assert len(service.displayed_views(show_all=True)) == 2
    assert len(service.displayed_views(show_raw_paths=True, show_all=True)) == 3


def test_repository_errors_propagate():
    service = _service(FailingRepo())

    with pytest.raises(ConnectionError):
        service.refresh(Mode.HISTORICAL)

    assert service.latest is None


class RecoveringRepo(FakeRepo):
    def __init__(self):
        super().__init__()
        self.available = False

    def fetch_engagement_overview(self, start_time, end_time):
        if not self.available:
            raise ConnectionError("engagement backend unavailable")
        return super().fetch_engagement_overview(start_time, end_time)


def test_repository_failure_is_kept_until_next_success():
    repo = RecoveringRepo()
    service = _service(repo)

    with pytest.raises(ConnectionError):
        service.refresh(Mode.HISTORICAL)
    assert isinstance(service.last_error, ConnectionError)

    repo.available = True
    service.refresh(Mode.HISTORICAL)

    assert service.last_error is None
    assert service.latest is not None


class GatedRepo(FakeRepo):
    """Blocks fetches for the ``slow_start`` window until ``release`` is set."""

    def __init__(self, slow_start):
        super().__init__()
        self.slow_start = slow_start
        self.release = threading.Event()

    def fetch_engagement_overview(self, start_time, end_time):
        if start_time == self.slow_start:
            self.release.wait(timeout=2)
        return super().fetch_engagement_overview(start_time, end_time)


def test_overlapping_refreshes_publish_only_the_newest():
    slow = TimeRange(datetime(2026, 1, 1, tzinfo=timezone.utc), datetime(2026, 1, 7, tzinfo=timezone.utc))
    fast = TimeRange(datetime(2026, 1, 2, tzinfo=timezone.utc), datetime(2026, 1, 7, tzinfo=timezone.utc))
    repo = GatedRepo(slow.start_time)
    service = _service(repo)

    async def scenario():
        older = asyncio.ensure_future(service.arefresh(Mode.HISTORICAL, slow))
        await asyncio.sleep(0)
        newer = await service.arefresh(Mode.HISTORICAL, fast)
        repo.release.set()
        return await older, newer

    older, newer = asyncio.run(scenario())

    assert older is None
    assert newer is not None
    assert service.latest is newer
    assert service.latest.window == fast


def test_invalidate_drops_live_refresh_in_flight():
    window = TimeRange(NOW - timedelta(minutes=30), NOW)
    repo = GatedRepo(window.start_time)
    service = _service(repo)

    async def scenario():
        pending = asyncio.ensure_future(service.refresh_live(window))
        await asyncio.sleep(0)
        service.invalidate(Mode.HISTORICAL)
        repo.release.set()
        return await pending

    assert asyncio.run(scenario()) is None
    assert service.latest is None


def test_async_refresh_failure_is_recorded():
    service = _service(FailingRepo())

    with pytest.raises(ConnectionError):
        asyncio.run(service.refresh_live(TimeRange(NOW - timedelta(minutes=30), NOW)))

    assert isinstance(service.last_error, ConnectionError)
    assert service.latest is None
