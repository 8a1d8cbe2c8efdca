"""Application service orchestrating the repository and pure analytics."""

import asyncio
import logging
from datetime import datetime, timezone
from random import Random
from typing import Callable, FrozenSet, List, Optional, Sequence

from .analytics import (
    build_orders_chart_data,
    build_traffic_sources_chart_data,
    collect_raw_views,
    compute_time_stats,
    estimate_traffic_sources_by_date,
    group_traffic_sources,
    group_views_by_path,
    normalize_referrers,
    select_displayed_views,
    total_views,
)
from .config import DashboardSettings
from .live import default_time_range, live_window
from .models import (
    AggregatedEntry,
    DashboardSnapshot,
    EngagementOverview,
    Mode,
    OrderRecord,
    TimeRange,
)
from .ports import EngagementRepository

logger = logging.getLogger(__name__)


class TrafficSourceVisibility:
    """Set of traffic channels drawn on the orders chart. Starts empty (all hidden)."""

    def __init__(self):
        self._visible = set()

    def __contains__(self, name: str) -> bool:
        return name in self._visible

    def __len__(self) -> int:
        return len(self._visible)

    @property
    def visible(self) -> FrozenSet[str]:
        return frozenset(self._visible)

    def toggle(self, name: str) -> None:
        if name in self._visible:
            self._visible.remove(name)
        else:
            self._visible.add(name)

    def toggle_all(self, available: Sequence[str]) -> None:
        """Show every available channel, or hide all when every one is already shown."""
        if len(self._visible) == len(available):
            self._visible = set()
        else:
            self._visible = set(available)


class DashboardService:
    """
    Facade that fetches one window of data and derives the dashboard snapshot.

    Each refresh is tagged with an increasing version. Only the snapshot of
    the most recently started refresh is kept; results of older refreshes that
    complete late are discarded. When the latest refresh fails, its exception
    is kept in ``last_error`` until a later refresh is published.
    """

    def __init__(
        self,
        repo: EngagementRepository,
        settings: Optional[DashboardSettings] = None,
        rng: Optional[Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repo = repo
        self.settings = settings or DashboardSettings()
        self.rng = rng
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.visibility = TrafficSourceVisibility()
        self._version = 0
        self._latest: Optional[DashboardSnapshot] = None
        self.last_error: Optional[Exception] = None

    @property
    def latest(self) -> Optional[DashboardSnapshot]:
        return self._latest

    @property
    def available_traffic_sources(self) -> List[str]:
        if self._latest is None:
            return []
        return [source.key for source in self._latest.traffic_sources]

    @property
    def visible_traffic_sources(self) -> FrozenSet[str]:
        return self.visibility.visible

    def toggle_traffic_source(self, name: str) -> None:
        self.visibility.toggle(name)

    def toggle_all_traffic_sources(self) -> None:
        self.visibility.toggle_all(self.available_traffic_sources)

    def resolve_window(
        self,
        mode: Mode,
        time_range: Optional[TimeRange] = None,
        now: Optional[datetime] = None,
    ) -> TimeRange:
        if time_range is not None:
            return time_range
        now = now or self.clock()
        if Mode(mode) is Mode.LIVE:
            return live_window(now, self.settings.live_window_minutes)
        return default_time_range(self.settings.default_range_days, now)

    def begin_refresh(self) -> int:
        """Start a refresh; any refresh started earlier becomes stale."""
        self._version += 1
        return self._version

    def invalidate(self, mode: Optional[Mode] = None) -> None:
        """
        Mark in-flight refreshes stale.

        Accepts the new mode so it can be passed directly as the controller's
        ``on_mode_change`` callback.
        """
        self.begin_refresh()

    def complete_refresh(self, snapshot: DashboardSnapshot) -> bool:
        """Publish a snapshot unless a newer refresh has started since."""
        if snapshot.version != self._version:
            logger.debug(
                "Discarding stale snapshot version %s (latest %s)", snapshot.version, self._version
            )
            return False
        self._latest = snapshot
        return True

    def build_snapshot(
        self,
        mode: Mode,
        time_range: Optional[TimeRange] = None,
        now: Optional[datetime] = None,
        version: int = 0,
    ) -> DashboardSnapshot:
        """Fetch one window from the repository and derive every chart from it."""
        mode = Mode(mode)
        now = now or self.clock()
        window = self.resolve_window(mode, time_range, now)

        overview = self.repo.fetch_engagement_overview(window.start_time, window.end_time)
        orders = self.repo.fetch_orders(
            window.start_time,
            window.end_time,
            excluded_source=self.settings.excluded_order_source,
            limit=self.settings.orders_page_size,
        )
        return compose_snapshot(
            mode,
            window,
            overview,
            orders,
            settings=self.settings,
            now=now,
            version=version,
            rng=self.rng,
        )

    def refresh(
        self,
        mode: Mode,
        time_range: Optional[TimeRange] = None,
        now: Optional[datetime] = None,
    ) -> Optional[DashboardSnapshot]:
        """Run a full refresh and publish it. Returns ``None`` if it went stale."""
        version = self.begin_refresh()
        try:
            snapshot = self.build_snapshot(mode, time_range, now=now, version=version)
        except Exception as exc:
            self._record_failure(version, exc)
            raise
        return self._publish(snapshot)

    async def arefresh(
        self,
        mode: Mode,
        time_range: Optional[TimeRange] = None,
        now: Optional[datetime] = None,
    ) -> Optional[DashboardSnapshot]:
        """
        Like :meth:`refresh`, but runs the repository fetch in a worker thread.

        The event loop stays free while the fetch is in flight, so refreshes
        may overlap; whichever was started last wins.
        """
        version = self.begin_refresh()
        try:
            snapshot = await asyncio.to_thread(
                self.build_snapshot, mode, time_range, now, version
            )
        except Exception as exc:
            self._record_failure(version, exc)
            raise
        return self._publish(snapshot)

    async def refresh_live(self, window: TimeRange) -> Optional[DashboardSnapshot]:
        """Refresh callback for the live-mode polling timer."""
        return await self.arefresh(Mode.LIVE, window)

    def _publish(self, snapshot: DashboardSnapshot) -> Optional[DashboardSnapshot]:
        if not self.complete_refresh(snapshot):
            return None
        self.last_error = None
        logger.info(
            "Refreshed %s dashboard: %s views, %s sources, %s order points",
            snapshot.mode.value,
            snapshot.total_views,
            len(snapshot.traffic_sources),
            len(snapshot.orders_chart_data),
        )
        return snapshot

    def _record_failure(self, version: int, exc: Exception) -> None:
        if version == self._version:
            self.last_error = exc

    def displayed_views(self, show_raw_paths: bool = False, show_all: bool = False) -> List[AggregatedEntry]:
        if self._latest is None:
            return []
        return select_displayed_views(
            self._latest.grouped_views,
            self._latest.raw_views,
            show_raw_paths=show_raw_paths,
            show_all=show_all,
            limit=self.settings.displayed_views_limit,
        )


def compose_snapshot(
    mode: Mode,
    window: TimeRange,
    overview: EngagementOverview,
    orders: Sequence[OrderRecord],
    settings: Optional[DashboardSettings] = None,
    now: Optional[datetime] = None,
    version: int = 0,
    rng: Optional[Random] = None,
) -> DashboardSnapshot:
    """Derive every breakdown and series of the dashboard from one fetch."""
    settings = settings or DashboardSettings()

    grouped_views = group_views_by_path(overview.views)
    traffic_sources = group_traffic_sources(overview.views)
    chart_data = build_traffic_sources_chart_data(traffic_sources, settings.chart_colors)
    time_stats = compute_time_stats(
        mode,
        window if mode is Mode.HISTORICAL else None,
        overview.unique_device_ids,
        live_window_minutes=settings.live_window_minutes,
    )
    orders_chart_data = build_orders_chart_data(mode, orders, time_stats.days, now=now)

    return DashboardSnapshot(
        mode=mode,
        window=window,
        version=version,
        unique_device_ids=overview.unique_device_ids,
        total_views=total_views(grouped_views),
        grouped_views=grouped_views,
        raw_views=collect_raw_views(overview.views),
        traffic_sources=traffic_sources,
        traffic_sources_chart_data=chart_data,
        total_chart_views=sum(chart_slice.value for chart_slice in chart_data),
        referrers=normalize_referrers(overview.referrers, settings.excluded_referrer_prefixes),
        orders_chart_data=orders_chart_data,
        traffic_sources_by_date=estimate_traffic_sources_by_date(
            mode, orders_chart_data, traffic_sources, time_stats.days, rng=rng
        ),
        time_stats=time_stats,
        locations=tuple(overview.locations),
        device_category_percentages=dict(overview.device_category_percentages),
    )
