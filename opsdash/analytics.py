"""Pure analytics functions that turn raw engagement and order records into chart data."""

import random
import re
from datetime import date, datetime, timedelta, tzinfo
from math import ceil, floor
from random import Random
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlsplit

from .config import CHART_COLORS
from .models import (
    AggregatedEntry,
    ChartSlice,
    Mode,
    OrderRecord,
    ReferrerRecord,
    TimeRange,
    TimeSeriesPoint,
    TimeStats,
    ViewRecord,
)

PLACEHOLDER_BASE_URL = "https://example.com"
DIRECT_REFERRER = "(direct)"
DIRECT_TRAFFIC_SOURCE = "Direct/Other"
DEFAULT_RANGE_DAYS = 7

_UTM_SOURCE_PATTERN = re.compile(r"utm_source=([^&]+)")
_DEFAULT_PORTS = {"http": 80, "https": 443}


def extract_url_path(view_identifier: str) -> str:
    """Return the path of a view identifier, dropping origin and query string."""
    try:
        path = urlsplit(urljoin(PLACEHOLDER_BASE_URL, view_identifier)).path
    except ValueError:
        # Not parseable as a URL, treat it as a bare path.
        return view_identifier.split("?", 1)[0] or "/"

    # A leading "//" would be read back as a network location.
    return "/" + path.lstrip("/")


def categorize_traffic_source(view_identifier: str) -> str:
    """
    Attribute a view to a traffic channel from markers in its URL.

    Rules are checked in order and the first match wins, so an identifier
    carrying both ``fbclid=`` and ``utm_source=ig`` is Facebook traffic.
    """
    url = view_identifier.lower()

    if "fbclid=" in url:
        return "Facebook"
    # Affiliate links carry a bare "a=" parameter; this also matches any
    # parameter whose name ends in "a".
    if "a=" in url:
        return "Phi Affiliate"
    if "srsltid=" in url:
        return "Google Merchant Center"
    if "hs_email=" in url:
        return "HubSpot Email Campaign"
    if "utm_source=substack" in url:
        return "Substack"
    if "utm_source=reddit" in url:
        return "Reddit"
    if "twclid=" in url:
        return "Twitter"
    if "utm_medium=paid" in url and "utm_source=ig" in url:
        return "Instagram (Paid)"
    if "utm_source=ig" in url:
        return "Instagram"
    if "utm_source=" in url:
        match = _UTM_SOURCE_PATTERN.search(url)
        if match:
            return f"UTM: {match.group(1)}"

    return DIRECT_TRAFFIC_SOURCE


def aggregate_counts(pairs: Iterable[Tuple[str, int]]) -> List[AggregatedEntry]:
    """
    Sum counts per key and sort by descending count.

    Keys with equal counts keep the order in which they were first seen.
    """
    totals: Dict[str, int] = {}
    for key, count in pairs:
        totals[key] = totals.get(key, 0) + count

    entries = [AggregatedEntry(key=key, count=count) for key, count in totals.items()]
    return sorted(entries, key=lambda entry: -entry.count)


def group_views_by_path(views: Iterable[ViewRecord]) -> List[AggregatedEntry]:
    """Group views by URL path, ignoring origin and search parameters."""
    return aggregate_counts(
        (extract_url_path(identifier), count) for identifier, count in _countable_views(views)
    )


def group_traffic_sources(views: Iterable[ViewRecord]) -> List[AggregatedEntry]:
    """Group views by traffic channel."""
    return aggregate_counts(
        (categorize_traffic_source(identifier), count)
        for identifier, count in _countable_views(views)
    )


def collect_raw_views(views: Iterable[ViewRecord]) -> List[AggregatedEntry]:
    """Return ungrouped views keyed by their full identifier."""
    entries = [
        AggregatedEntry(key=identifier, count=count)
        for identifier, count in _countable_views(views)
    ]
    return sorted(entries, key=lambda entry: -entry.count)


def total_views(entries: Iterable[AggregatedEntry]) -> int:
    return sum(entry.count for entry in entries)


def select_displayed_views(
    grouped_views: Sequence[AggregatedEntry],
    raw_views: Sequence[AggregatedEntry],
    show_raw_paths: bool = False,
    show_all: bool = False,
    limit: int = 10,
) -> List[AggregatedEntry]:
    """Pick the view list to display: grouped or raw, top ``limit`` or all."""
    views = raw_views if show_raw_paths else grouped_views
    return list(views) if show_all else list(views[:limit])


def normalize_referrer(referrer: Optional[str]) -> str:
    """Collapse a referrer URL to origin and path."""
    if not referrer:
        return DIRECT_REFERRER

    try:
        parts = urlsplit(referrer)
        if not parts.scheme or not parts.hostname:
            raise ValueError(f"not an absolute URL: {referrer!r}")
        host = parts.hostname
        if ":" in host:
            host = f"[{host}]"
        origin = f"{parts.scheme}://{host}"
        port = parts.port
        if port is not None and port != _DEFAULT_PORTS.get(parts.scheme):
            origin = f"{origin}:{port}"
        return origin + (parts.path or "/")
    except ValueError:
        return referrer.split("?", 1)[0] or referrer


def normalize_referrers(
    records: Iterable[ReferrerRecord],
    excluded_prefixes: Sequence[str] = (),
) -> List[AggregatedEntry]:
    """
    Group referrers by origin and path.

    Referrers starting with one of ``excluded_prefixes`` (the dashboard's own
    domains) are dropped; empty referrers are grouped as ``(direct)``.
    """
    prefixes = tuple(excluded_prefixes)
    pairs = []
    for record in records:
        referrer = record.referrer
        if referrer and prefixes and referrer.startswith(prefixes):
            continue
        if record.unique_device_count is None:
            continue
        pairs.append((normalize_referrer(referrer), record.unique_device_count))
    return aggregate_counts(pairs)


def build_traffic_sources_chart_data(
    traffic_sources: Iterable[AggregatedEntry],
    colors: Sequence[str] = CHART_COLORS,
) -> List[ChartSlice]:
    """Assign palette colours to channels by rank, cycling when they run out."""
    return [
        ChartSlice(name=source.key, value=source.count, color=colors[index % len(colors)])
        for index, source in enumerate(traffic_sources)
    ]


def count_days(time_range: TimeRange) -> int:
    """Number of calendar days covered by a range, counting both endpoints."""
    elapsed = time_range.end_time - time_range.start_time
    return max(ceil(elapsed / timedelta(days=1)) + 1, 0)


def compute_time_stats(
    mode: Mode,
    time_range: Optional[TimeRange],
    unique_device_ids: int,
    live_window_minutes: int = 30,
) -> TimeStats:
    """Compute the period length and per-day or per-hour user averages."""
    if mode is Mode.LIVE:
        users_per_hour = _round_half_up(unique_device_ids * 60 / live_window_minutes)
        return TimeStats(days=0, users_per_day=0, users_per_hour=users_per_hour)

    if time_range is None:
        return TimeStats(days=DEFAULT_RANGE_DAYS, users_per_day=0, users_per_hour=0)

    days = count_days(time_range)
    return TimeStats(
        days=days,
        users_per_day=_round_half_up(unique_device_ids / days) if days else 0,
        users_per_hour=0,
    )


def build_orders_chart_data(
    mode: Mode,
    orders: Iterable[OrderRecord],
    days: int,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> List[TimeSeriesPoint]:
    """
    Count orders per local calendar day.

    In historical mode one zero bucket is seeded per day, ending today. In
    live mode all orders of the window fall into a single point for today.
    ``tz`` defaults to the local time zone of the process.
    """
    now = now if now is not None else datetime.now(tz)
    today = _local_date(now, tz)
    orders_list = list(orders)

    if mode is Mode.LIVE:
        if not orders_list:
            return []
        return [TimeSeriesPoint(date=today.isoformat(), orders=len(orders_list))]

    orders_by_date: Dict[date, int] = {}
    for offset in range(days - 1, -1, -1):
        orders_by_date[today - timedelta(days=offset)] = 0

    for order in orders_list:
        order_date = _local_date(order.created_at, tz)
        orders_by_date[order_date] = orders_by_date.get(order_date, 0) + 1

    return [
        TimeSeriesPoint(date=day.isoformat(), orders=count)
        for day, count in sorted(orders_by_date.items())
    ]


def estimate_traffic_sources_by_date(
    mode: Mode,
    orders_chart_data: Sequence[TimeSeriesPoint],
    traffic_sources: Sequence[AggregatedEntry],
    days: int,
    rng: Optional[Random] = None,
) -> List[TimeSeriesPoint]:
    """
    Spread channel totals over the order chart's days.

    The backend only reports totals per channel, so each day gets the daily
    average plus up to 50% random jitter. Points are flagged ``is_estimated``.
    Live mode carries orders only.
    """
    if not traffic_sources or not orders_chart_data:
        return []

    if mode is Mode.LIVE or days <= 0:
        return [TimeSeriesPoint(date=point.date, orders=point.orders) for point in orders_chart_data]

    source = rng if rng is not None else random
    points = []
    for point in orders_chart_data:
        traffic = {}
        for channel in traffic_sources:
            baseline = floor(channel.count / days)
            variance = floor(source.random() * (baseline * 0.5))
            traffic[channel.key] = max(0, baseline + variance)
        points.append(
            TimeSeriesPoint(date=point.date, orders=point.orders, traffic=traffic, is_estimated=True)
        )
    return points


def align(
    mode: Mode,
    time_range: Optional[TimeRange],
    orders: Iterable[OrderRecord],
    channel_totals: Sequence[AggregatedEntry],
    now: Optional[datetime] = None,
    rng: Optional[Random] = None,
    tz: Optional[tzinfo] = None,
) -> List[TimeSeriesPoint]:
    """Build the orders time axis and fold estimated channel values onto it."""
    days = compute_time_stats(mode, time_range, 0).days
    orders_chart_data = build_orders_chart_data(mode, orders, days, now=now, tz=tz)
    if not channel_totals:
        return orders_chart_data
    return estimate_traffic_sources_by_date(mode, orders_chart_data, channel_totals, days, rng=rng)


def _countable_views(views: Iterable[ViewRecord]) -> Iterable[Tuple[str, int]]:
    for view in views:
        if view.view_identifier and view.unique_device_count is not None:
            yield view.view_identifier, view.unique_device_count


def _local_date(value: datetime, tz: Optional[tzinfo]) -> date:
    # Naive datetimes are taken to be local already.
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(tz).date()


def _round_half_up(value: float) -> int:
    return floor(value + 0.5)
