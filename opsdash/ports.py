"""Port definitions for fetching engagement and order data from any source."""

from datetime import datetime
from typing import Optional, Protocol, Sequence

from .models import EngagementOverview, OrderRecord


class EngagementRepository(Protocol):
    """Repository interface that adapters can implement for any backend."""

    def fetch_engagement_overview(
        self,
        start_time: datetime,
        end_time: datetime,
    ) -> EngagementOverview:
        """Return views, referrers, locations and device mix for a window."""

    def fetch_orders(
        self,
        start_time: datetime,
        end_time: datetime,
        excluded_source: Optional[str] = None,
        limit: int = 1000,
    ) -> Sequence[OrderRecord]:
        """Return orders created inside a window, skipping ``excluded_source``."""
