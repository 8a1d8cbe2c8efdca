"""Live/historical mode switching with the polling and countdown timers."""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from .config import DashboardSettings
from .models import Mode, TimeRange

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[TimeRange], Any]
ModeChangeCallback = Callable[[Mode], Any]


def live_window(now: datetime, minutes: int = 30) -> TimeRange:
    """Return the rolling live window ``[now - minutes, now]``."""
    return TimeRange(start_time=now - timedelta(minutes=minutes), end_time=now)


def default_time_range(days: int = 7, now: Optional[datetime] = None) -> TimeRange:
    """Return the last ``days`` days, ending at the end of today (local time)."""
    now = (now or datetime.now()).astimezone()
    end_of_today = now.replace(hour=23, minute=59, second=59, microsecond=999999)
    return TimeRange(start_time=end_of_today - timedelta(days=days), end_time=end_of_today)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LiveModeController:
    """
    Owns the dashboard mode and, while live, two repeating timers.

    The refresh timer calls ``on_refresh`` with a freshly computed live window
    every ``refresh_interval_seconds``. The countdown timer only drives the
    "refreshing in N s" label and is not synchronised with the refresh timer.
    Both run as asyncio tasks on the running loop and are cancelled when the
    mode leaves live or the controller is closed.

    A failed refresh is logged and kept in ``last_error`` until the next one
    succeeds; polling carries on. ``on_mode_change`` is told about every mode
    switch so in-flight refreshes can be invalidated.

    Use as an async context manager to guarantee the timers are torn down::

        async with LiveModeController(
            on_refresh=service.refresh_live, on_mode_change=service.invalidate
        ) as controller:
            controller.set_mode(Mode.LIVE)
            ...
    """

    def __init__(
        self,
        on_refresh: Optional[RefreshCallback] = None,
        settings: Optional[DashboardSettings] = None,
        time_range: Optional[TimeRange] = None,
        clock: Callable[[], datetime] = _utcnow,
        on_mode_change: Optional[ModeChangeCallback] = None,
    ):
        self.settings = settings or DashboardSettings()
        self.on_refresh = on_refresh
        self.on_mode_change = on_mode_change
        self.last_error: Optional[Exception] = None
        self._clock = clock
        self._mode = Mode.HISTORICAL
        self._time_range = time_range or default_time_range(self.settings.default_range_days)
        self.refresh_countdown = self.settings.countdown_seconds
        self._refresh_task: Optional[asyncio.Task] = None
        self._countdown_task: Optional[asyncio.Task] = None
        self._cancelled_tasks: List[asyncio.Task] = []

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def time_range(self) -> TimeRange:
        """The last explicitly selected historical range."""
        return self._time_range

    @property
    def timers_active(self) -> bool:
        return any(
            task is not None and not task.done()
            for task in (self._refresh_task, self._countdown_task)
        )

    def set_mode(self, mode) -> None:
        """
        Switch between live and historical mode.

        Entering live mode starts the timers when called from a running event
        loop; otherwise they start on :meth:`start`. Leaving it cancels them
        before returning.
        """
        mode = Mode(mode)
        if mode is self._mode:
            return

        logger.info("Dashboard mode %s -> %s", self._mode.value, mode.value)
        self._mode = mode
        if self.on_mode_change is not None:
            self.on_mode_change(mode)
        if mode is Mode.LIVE:
            if _has_running_loop():
                self.start()
        else:
            self.stop()

    def set_time_range(self, time_range: TimeRange) -> None:
        """Remember a user-selected range; it applies whenever the mode is historical."""
        self._time_range = time_range

    def get_query_window(self, now: Optional[datetime] = None) -> TimeRange:
        if self._mode is Mode.LIVE:
            return live_window(now or self._clock(), self.settings.live_window_minutes)
        return self._time_range

    def start(self) -> None:
        """Start both timers on the running loop if live and not already running."""
        if self._mode is not Mode.LIVE or self.timers_active:
            return

        loop = asyncio.get_running_loop()
        self.refresh_countdown = self.settings.countdown_seconds
        self._refresh_task = loop.create_task(self._refresh_loop())
        self._countdown_task = loop.create_task(self._countdown_loop())
        logger.debug(
            "Started live timers (refresh every %ss)", self.settings.refresh_interval_seconds
        )

    def stop(self) -> None:
        """Cancel both timers and reset the countdown."""
        for task in (self._refresh_task, self._countdown_task):
            if task is not None and not task.done():
                task.cancel()
                self._cancelled_tasks.append(task)
                task.add_done_callback(self._forget_task)
        self._refresh_task = None
        self._countdown_task = None
        self.refresh_countdown = self.settings.countdown_seconds

    async def aclose(self) -> None:
        """Cancel the timers and wait for the tasks to finish unwinding."""
        self.stop()
        tasks, self._cancelled_tasks = self._cancelled_tasks, []
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _forget_task(self, task: asyncio.Task) -> None:
        if task in self._cancelled_tasks:
            self._cancelled_tasks.remove(task)

    async def __aenter__(self) -> "LiveModeController":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _refresh_loop(self) -> None:
        while True:
            await self._trigger_refresh()
            await asyncio.sleep(self.settings.refresh_interval_seconds)

    async def _trigger_refresh(self) -> None:
        if self.on_refresh is None:
            return
        window = self.get_query_window()
        try:
            result = self.on_refresh(window)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self.last_error = exc
            logger.exception(
                "Live refresh failed for window %s - %s", window.start_time, window.end_time
            )
        else:
            self.last_error = None

    async def _countdown_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.countdown_tick_seconds)
            if self.refresh_countdown <= 1:
                self.refresh_countdown = self.settings.countdown_seconds
            else:
                self.refresh_countdown -= 1


def _has_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
