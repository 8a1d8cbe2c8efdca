"""Dashboard settings, overridable through ``OPSDASH_*`` environment variables."""

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Tuple

DEFAULT_EXCLUDED_REFERRER_PREFIXES = (
    "https://localhost.phi.health",
    "https://www.phi.health",
)

CHART_COLORS = (
    "#3B82F6",  # blue
    "#10B981",  # green
    "#F59E0B",  # yellow
    "#EF4444",  # red
    "#8B5CF6",  # purple
    "#06B6D4",  # cyan
    "#F97316",  # orange
    "#84CC16",  # lime
    "#EC4899",  # pink
    "#6B7280",  # gray
)


@dataclass(frozen=True)
class DashboardSettings:
    """Tunables for windows, polling cadence and data filters."""

    excluded_referrer_prefixes: Tuple[str, ...] = DEFAULT_EXCLUDED_REFERRER_PREFIXES
    excluded_order_source: str = "AppleAppStoreNotification"
    live_window_minutes: int = 30
    refresh_interval_seconds: float = 10
    countdown_seconds: int = 10
    countdown_tick_seconds: float = 1
    default_range_days: int = 7
    orders_page_size: int = 1000
    displayed_views_limit: int = 10
    chart_colors: Tuple[str, ...] = CHART_COLORS

    def __post_init__(self):
        for name in (
            "live_window_minutes",
            "refresh_interval_seconds",
            "countdown_seconds",
            "countdown_tick_seconds",
            "default_range_days",
            "orders_page_size",
            "displayed_views_limit",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)!r}")
        if not self.chart_colors:
            raise ValueError("chart_colors must not be empty")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DashboardSettings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            excluded_referrer_prefixes=_split_list(
                env.get("OPSDASH_EXCLUDED_REFERRER_PREFIXES"),
                defaults.excluded_referrer_prefixes,
            ),
            excluded_order_source=env.get(
                "OPSDASH_EXCLUDED_ORDER_SOURCE", defaults.excluded_order_source
            ),
            live_window_minutes=int(
                env.get("OPSDASH_LIVE_WINDOW_MINUTES", defaults.live_window_minutes)
            ),
            refresh_interval_seconds=float(
                env.get("OPSDASH_REFRESH_INTERVAL_SECONDS", defaults.refresh_interval_seconds)
            ),
            countdown_seconds=int(
                env.get("OPSDASH_COUNTDOWN_SECONDS", defaults.countdown_seconds)
            ),
            default_range_days=int(
                env.get("OPSDASH_DEFAULT_RANGE_DAYS", defaults.default_range_days)
            ),
            orders_page_size=int(env.get("OPSDASH_ORDERS_PAGE_SIZE", defaults.orders_page_size)),
            displayed_views_limit=int(
                env.get("OPSDASH_DISPLAYED_VIEWS_LIMIT", defaults.displayed_views_limit)
            ),
        )


def _split_list(raw: Optional[str], default: Sequence[str]) -> Tuple[str, ...]:
    if raw is None:
        return tuple(default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())
