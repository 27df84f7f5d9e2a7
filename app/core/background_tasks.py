# app/core/background_tasks.py
"""
Background tasks for dispatching scheduled campaigns.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from app.core.config import settings
from app.database.engine import get_db

logger = logging.getLogger(__name__)


class BackgroundTaskManager:
    """Manages periodic background tasks."""

    def __init__(self, poll_seconds: Optional[float] = None):
        self.tasks: list[asyncio.Task] = []
        self._running = False
        self.poll_seconds = poll_seconds or settings.SCHEDULED_CAMPAIGN_POLL_SECONDS

    async def start(self):
        """Start all background tasks."""
        if self._running:
            logger.warning("Background tasks already running")
            return

        self._running = True
        logger.info("Starting background tasks...")

        self.tasks.append(asyncio.create_task(self.process_scheduled_campaigns_task()))

        logger.info(f"Started {len(self.tasks)} background tasks")

    async def stop(self):
        """Stop all background tasks."""
        if not self._running:
            return

        logger.info("Stopping background tasks...")
        self._running = False

        for task in self.tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self.tasks.clear()
        logger.info("Background tasks stopped")

    async def run_due_campaigns(self) -> int:
        """
        Send every scheduled campaign that is due, in a fresh session.

        Returns:
            Number of campaigns dispatched
        """
        from app.services.campaign_service import CampaignService

        db_gen = get_db()
        db = next(db_gen)

        try:
            results = await CampaignService(db).send_due_campaigns(datetime.utcnow())
            for result in results:
                logger.info(f"Scheduled campaign dispatched: {result.sent_count} sent, {result.errors} failed")
            return len(results)
        finally:
            # Close the database session
            try:
                next(db_gen)
            except StopIteration:
                pass

    async def process_scheduled_campaigns_task(self):
        """
        Check for campaigns due to be sent and send them.
        Runs every SCHEDULED_CAMPAIGN_POLL_SECONDS.
        """
        while self._running:
            try:
                await asyncio.sleep(self.poll_seconds)
                await self.run_due_campaigns()

            except asyncio.CancelledError:
                logger.info("Scheduled campaigns task cancelled")
                break
            except Exception as e:
                logger.error(f"Error in scheduled campaigns task: {e}")
                await asyncio.sleep(self.poll_seconds)


# Global background task manager instance
background_task_manager: Optional[BackgroundTaskManager] = None
