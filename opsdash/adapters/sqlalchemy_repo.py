"""SQLAlchemy repository adapter for opsdash."""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.orm import Session

from ..models import EngagementOverview, Location, OrderRecord, ReferrerRecord, ViewRecord

logger = logging.getLogger(__name__)


class SQLAlchemyEngagementRepository:
    """Aggregates raw engagement events and orders from relational tables."""

    def __init__(self, db: Session):
        self.db = db

    def fetch_engagement_overview(
        self,
        start_time: datetime,
        end_time: datetime,
    ) -> EngagementOverview:
        params = {"start_time": _to_db_timestamp(start_time), "end_time": _to_db_timestamp(end_time)}

        unique_device_ids = self.db.execute(
            _windowed_text(
                """
                SELECT COUNT(DISTINCT device_id)
                FROM engagement_events
                WHERE created_at >= :start_time AND created_at <= :end_time
                """
            ),
            params,
        ).scalar()

        view_rows = self.db.execute(
            _windowed_text(
                """
                SELECT view_identifier, COUNT(DISTINCT device_id) AS unique_device_count
                FROM engagement_events
                WHERE created_at >= :start_time AND created_at <= :end_time
                GROUP BY view_identifier
                """
            ),
            params,
        ).fetchall()

        referrer_rows = self.db.execute(
            _windowed_text(
                """
                SELECT referrer, COUNT(DISTINCT device_id) AS unique_device_count
                FROM engagement_events
                WHERE created_at >= :start_time AND created_at <= :end_time
                GROUP BY referrer
                """
            ),
            params,
        ).fetchall()

        location_rows = self.db.execute(
            _windowed_text(
                """
                SELECT DISTINCT latitude, longitude, country_code
                FROM engagement_events
                WHERE created_at >= :start_time AND created_at <= :end_time
                  AND latitude IS NOT NULL AND longitude IS NOT NULL
                """
            ),
            params,
        ).fetchall()

        category_rows = self.db.execute(
            _windowed_text(
                """
                SELECT device_category, COUNT(DISTINCT device_id) AS device_count
                FROM engagement_events
                WHERE created_at >= :start_time AND created_at <= :end_time
                  AND device_category IS NOT NULL
                GROUP BY device_category
                ORDER BY device_count DESC
                """
            ),
            params,
        ).fetchall()

        return EngagementOverview(
            unique_device_ids=int(unique_device_ids or 0),
            views=[
                ViewRecord(
                    view_identifier=row.view_identifier,
                    unique_device_count=row.unique_device_count,
                )
                for row in view_rows
            ],
            referrers=[
                ReferrerRecord(
                    referrer=row.referrer,
                    unique_device_count=row.unique_device_count,
                )
                for row in referrer_rows
            ],
            locations=[
                Location(
                    latitude=float(row.latitude),
                    longitude=float(row.longitude),
                    country_code=row.country_code,
                )
                for row in location_rows
            ],
            device_category_percentages=_to_percentages(
                {row.device_category: int(row.device_count) for row in category_rows}
            ),
        )

    def fetch_orders(
        self,
        start_time: datetime,
        end_time: datetime,
        excluded_source: Optional[str] = None,
        limit: int = 1000,
    ) -> Sequence[OrderRecord]:
        rows = self.db.execute(
            _windowed_text(
                """
                SELECT identifier, source, created_at
                FROM commerce_orders
                WHERE created_at >= :start_time AND created_at <= :end_time
                  AND (:excluded_source IS NULL OR source IS NULL OR source != :excluded_source)
                ORDER BY created_at DESC
                LIMIT :limit
                """
            ),
            {
                "start_time": _to_db_timestamp(start_time),
                "end_time": _to_db_timestamp(end_time),
                "excluded_source": excluded_source,
                "limit": limit,
            },
        ).fetchall()

        if len(rows) == limit:
            logger.warning("Order query hit the page limit of %s; chart may be incomplete", limit)

        return [
            OrderRecord(
                created_at=_parse_timestamp(row.created_at),
                identifier=row.identifier,
                source=row.source,
            )
            for row in rows
        ]


def _windowed_text(sql: str):
    return text(sql).bindparams(
        bindparam("start_time", type_=DateTime()),
        bindparam("end_time", type_=DateTime()),
    )


def _to_db_timestamp(value: datetime) -> datetime:
    # Timestamps are stored as naive UTC.
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _parse_timestamp(raw_value) -> datetime:
    # SQLite hands timestamps back as ISO strings.
    if not isinstance(raw_value, datetime):
        raw_value = datetime.fromisoformat(str(raw_value))
    if raw_value.tzinfo is None:
        raw_value = raw_value.replace(tzinfo=timezone.utc)
    return raw_value


def _to_percentages(counts: Dict[str, int]) -> Dict[str, float]:
    total = sum(counts.values())
    if total == 0:
        return {}
    return {category: round(count * 100 / total, 1) for category, count in counts.items()}
