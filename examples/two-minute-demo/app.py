"""Two-minute opsdash demo: FastAPI backend serving dashboard snapshots."""

import logging
import os
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from random import Random
from typing import Optional

from fastapi import FastAPI, HTTPException

from opsdash.config import DashboardSettings
from opsdash.models import EngagementOverview, Location, Mode, OrderRecord, ReferrerRecord, TimeRange, ViewRecord
from opsdash.service import DashboardService

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

RNG = Random(42)

VIEW_IDENTIFIERS = [
    "https://www.phi.health/",
    "https://www.phi.health/products/stack?fbclid=IwAR0demo",
    "https://www.phi.health/products/stack?utm_source=ig&utm_medium=paid",
    "https://www.phi.health/products/origami?utm_source=newsletter",
    "/products/bento?srsltid=AfmBOo",
    "/blog/launch?utm_source=substack",
    "/blog/launch?utm_source=reddit",
    "/products/water",
    "/?a=partner-17",
]

REFERRERS = [
    None,
    "https://www.google.com/",
    "https://l.facebook.com/l.php?u=https%3A%2F%2Fwww.phi.health",
    "https://www.phi.health/products",
    "https://substack.com/inbox/post/123?utm_source=substack",
]


class DemoRepository:
    """In-memory repository producing random but stable demo data."""

    def __init__(self, rng: Random):
        now = datetime.now(timezone.utc)
        self.events = [
            (
                now - timedelta(minutes=idx * 7),
                f"device-{rng.randint(1, 400)}",
                rng.choice(VIEW_IDENTIFIERS),
                rng.choice(REFERRERS),
                rng.choice(["desktop", "mobile", "mobile", "tablet"]),
            )
            for idx in range(2000)
        ]
        self.orders = [
            OrderRecord(
                created_at=now - timedelta(minutes=idx * 41),
                identifier=f"ord-{idx}",
                source="AppleAppStoreNotification" if idx % 11 == 0 else "Web",
            )
            for idx in range(400)
        ]

    def fetch_engagement_overview(self, start_time, end_time) -> EngagementOverview:
        events = [event for event in self.events if start_time <= event[0] <= end_time]
        views = {}
        referrers = {}
        categories = {}
        for _, device, view, referrer, category in events:
            views.setdefault(view, set()).add(device)
            referrers.setdefault(referrer, set()).add(device)
            categories.setdefault(category, set()).add(device)

        category_total = sum(len(devices) for devices in categories.values()) or 1
        return EngagementOverview(
            unique_device_ids=len({event[1] for event in events}),
            views=[ViewRecord(view, len(devices)) for view, devices in views.items()],
            referrers=[ReferrerRecord(referrer, len(devices)) for referrer, devices in referrers.items()],
            locations=[Location(latitude=52.52, longitude=13.40, country_code="DE")],
            device_category_percentages={
                category: round(len(devices) * 100 / category_total, 1)
                for category, devices in categories.items()
            },
        )

    def fetch_orders(self, start_time, end_time, excluded_source=None, limit=1000):
        orders = [
            order
            for order in self.orders
            if start_time <= order.created_at <= end_time and order.source != excluded_source
        ]
        return orders[:limit]


SETTINGS = DashboardSettings.from_env()
SERVICE = DashboardService(DemoRepository(RNG), settings=SETTINGS, rng=RNG)

app = FastAPI(title="opsdash Two-Minute Demo", version="0.1.0")


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "demo": "opsdash-two-minute"}


@app.get("/api/dashboard")
def dashboard(
    mode: Mode = Mode.HISTORICAL,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
) -> dict:
    time_range = None
    if mode is Mode.HISTORICAL and start_time and end_time:
        time_range = TimeRange(start_time=_as_utc(start_time), end_time=_as_utc(end_time))
        if time_range.end_time < time_range.start_time:
            raise HTTPException(status_code=422, detail="end_time must not precede start_time")

    snapshot = SERVICE.refresh(mode, time_range)
    return {
        "snapshot": asdict(snapshot),
        "displayed_views": [asdict(entry) for entry in SERVICE.displayed_views()],
        "traffic_sources_by_date": [point.as_dict() for point in snapshot.traffic_sources_by_date],
        "visible_traffic_sources": sorted(SERVICE.visible_traffic_sources),
    }


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@app.post("/api/traffic-sources/{name}/toggle")
def toggle_traffic_source(name: str) -> dict:
    SERVICE.toggle_traffic_source(name)
    return {"visible_traffic_sources": sorted(SERVICE.visible_traffic_sources)}


@app.post("/api/traffic-sources/toggle-all")
def toggle_all_traffic_sources() -> dict:
    SERVICE.toggle_all_traffic_sources()
    return {"visible_traffic_sources": sorted(SERVICE.visible_traffic_sources)}
