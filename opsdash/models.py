"""Core domain models used by the dashboard analytics."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Mapping, Optional, Sequence


class Mode(str, Enum):
    """Dashboard time-window mode."""

    LIVE = "live"
    HISTORICAL = "historical"


@dataclass(frozen=True)
class ViewRecord:
    """Unique devices that hit one raw view identifier (URL or path)."""

    view_identifier: Optional[str]
    unique_device_count: Optional[int]


@dataclass(frozen=True)
class ReferrerRecord:
    """Unique devices that arrived from one referrer URL."""

    referrer: Optional[str]
    unique_device_count: Optional[int]


@dataclass(frozen=True)
class OrderRecord:
    """A commerce order; only the creation time matters for charts."""

    created_at: datetime
    identifier: Optional[str] = None
    source: Optional[str] = None


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    country_code: Optional[str] = None


@dataclass(frozen=True)
class EngagementOverview:
    """Engagement query result for one time window."""

    unique_device_ids: int
    views: Sequence[ViewRecord] = ()
    referrers: Sequence[ReferrerRecord] = ()
    locations: Sequence[Location] = ()
    device_category_percentages: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class TimeRange:
    """Time window, inclusive of both endpoints."""

    start_time: datetime
    end_time: datetime


@dataclass(frozen=True)
class AggregatedEntry:
    key: str
    count: int


@dataclass(frozen=True)
class TimeSeriesPoint:
    """
    One point of the orders/traffic chart.

    ``traffic`` holds per-channel values for the day. They are not measured:
    when ``is_estimated`` is set they come from spreading channel totals over
    the range.
    """

    date: str
    orders: int
    traffic: Mapping[str, int] = field(default_factory=dict)
    is_estimated: bool = False

    def as_dict(self) -> Dict:
        data: Dict = {"date": self.date, "orders": self.orders}
        data.update(self.traffic)
        return data


@dataclass(frozen=True)
class ChartSlice:
    name: str
    value: int
    color: str


@dataclass(frozen=True)
class TimeStats:
    days: int
    users_per_day: int
    users_per_hour: int


@dataclass(frozen=True)
class DashboardSnapshot:
    """Everything the presentation layer renders for one refresh."""

    mode: Mode
    window: TimeRange
    version: int
    unique_device_ids: int
    total_views: int
    grouped_views: Sequence[AggregatedEntry]
    raw_views: Sequence[AggregatedEntry]
    traffic_sources: Sequence[AggregatedEntry]
    traffic_sources_chart_data: Sequence[ChartSlice]
    total_chart_views: int
    referrers: Sequence[AggregatedEntry]
    orders_chart_data: Sequence[TimeSeriesPoint]
    traffic_sources_by_date: Sequence[TimeSeriesPoint]
    time_stats: TimeStats
    locations: Sequence[Location] = ()
    device_category_percentages: Mapping[str, float] = field(default_factory=dict)
