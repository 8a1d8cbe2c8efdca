"""opsdash - engagement and order analytics for the ops dashboard."""

from .analytics import (
    aggregate_counts,
    align,
    categorize_traffic_source,
    compute_time_stats,
    count_days,
    extract_url_path,
    group_traffic_sources,
    group_views_by_path,
    normalize_referrers,
)
from .config import DashboardSettings
from .live import LiveModeController
from .models import Mode
from .service import DashboardService

__all__ = [
    "DashboardService",
    "DashboardSettings",
    "LiveModeController",
    "Mode",
    "extract_url_path",
    "categorize_traffic_source",
    "aggregate_counts",
    "group_views_by_path",
    "group_traffic_sources",
    "normalize_referrers",
    "count_days",
    "compute_time_stats",
    "align",
]

__version__ = "0.1.0"
