"""
Session Ticker - Background worker driving the inactivity sweep and title generation.

``tick()`` can be called directly, so tests drive it deterministically
without the timer.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .lifecycle import SessionLifecycleManager
from .title_generator import TitleGenerator

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    """What a single tick did."""
    deactivated: List[str] = field(default_factory=list)
    titles_generated: int = 0
    titles_pending: bool = False  # a background title pass is still running
    errors: List[str] = field(default_factory=list)


class SessionTicker:
    """Periodic sweep and title pass with an explicit start/stop lifecycle."""

    def __init__(
        self,
        lifecycle: SessionLifecycleManager,
        titles: TitleGenerator,
        interval_seconds: float = 5.0
    ):
        self.lifecycle = lifecycle
        self.titles = titles
        self.interval_seconds = interval_seconds

        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._title_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._tick_loop())
        logger.info(f"Session ticker started (interval={self.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the loop and cancel any title pass still in flight."""
        self._running = False
        for task in (self._loop_task, self._title_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._title_task = None
        logger.info("Session ticker stopped")

    async def tick(self, now: Optional[datetime] = None, wait_for_titles: bool = True) -> TickReport:
        """
        Run one sweep and one title pass. Never raises.

        Args:
            now: Reference time for the sweep (defaults to the current time)
            wait_for_titles: Await the title pass; when False it runs in the
                background and a new one starts only after the previous finished
        """
        report = TickReport()

        try:
            report.deactivated = await self.lifecycle.sweep(now=now)
        except Exception as e:
            logger.error(f"Inactivity sweep failed: {e}", exc_info=True)
            report.errors.append(f"sweep: {e}")

        if wait_for_titles:
            try:
                report.titles_generated = await self.titles.run_tick()
            except Exception as e:
                logger.error(f"Title pass failed: {e}", exc_info=True)
                report.errors.append(f"titles: {e}")
        elif self._title_task is None or self._title_task.done():
            self._title_task = asyncio.create_task(self._title_pass())
            report.titles_pending = True
        else:
            report.titles_pending = True

        return report

    async def _title_pass(self) -> None:
        try:
            generated = await self.titles.run_tick()
            if generated:
                logger.info(f"Generated {generated} session titles")
        except Exception as e:
            logger.error(f"Title pass failed: {e}", exc_info=True)

    async def _tick_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            await self.tick(wait_for_titles=False)
