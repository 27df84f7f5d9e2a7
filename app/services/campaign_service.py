# app/services/campaign_service.py
"""
Campaign Service for scheduling, cancelling and dispatching newsletter campaigns.

Dispatch fans a campaign out to its resolved recipients through a bounded
pool of concurrent deliveries. Workers only talk to the mailer; every
database write happens on the task that called ``send_campaign``.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from sqlmodel import Session

from app.core.config import Settings, settings as default_settings
from app.core.email import build_unsubscribe_url, render_campaign_email, send_email
from app.core.exceptions import DeliveryFailure, InvalidStateTransition, NotFoundError
from app.crud.campaign import CampaignCRUD
from app.crud.subscriber import SubscriberCRUD
from app.models.newsletter import Campaign, CampaignStatus, Locale, Subscriber
from app.services.recipient_resolver import RecipientResolver

logger = logging.getLogger(__name__)

Mailer = Callable[..., Awaitable[bool]]

SENDABLE_STATUSES = (CampaignStatus.draft, CampaignStatus.scheduled)


@dataclass
class SendResult:
    """Outcome of a campaign dispatch."""
    success: bool
    sent_count: int
    errors: int


@dataclass
class OutgoingMessage:
    """A fully rendered message for one recipient."""
    to_email: str
    subject: str
    html_content: str


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff for ``attempt`` (0-based) with up to 50% jitter."""
    delay = min(max_delay, base_delay * (2 ** attempt))
    if delay:
        delay = delay + random.uniform(0, delay / 2)
    return delay


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class CampaignService:
    """Service for the campaign lifecycle and delivery."""

    def __init__(
        self,
        db: Session,
        mailer: Mailer = send_email,
        settings: Optional[Settings] = None
    ):
        self.db = db
        self.mailer = mailer
        self.settings = settings or default_settings
        self.campaigns = CampaignCRUD(db)
        self.resolver = RecipientResolver(SubscriberCRUD(db))

    def _get_campaign(self, campaign_id: int) -> Campaign:
        campaign = self.campaigns.get_by_id(campaign_id)
        if not campaign:
            raise NotFoundError("Campaign", campaign_id)
        return campaign

    def _reject(self, campaign_id: int, operation: str, allowed) -> InvalidStateTransition:
        # Re-read so the error reports the status that beat us
        campaign = self._get_campaign(campaign_id)
        self.db.refresh(campaign)
        error = InvalidStateTransition(campaign_id, campaign.status, operation, allowed=allowed)
        logger.warning(str(error))
        return error

    # ============================================================
    # Scheduling
    # ============================================================

    def schedule_campaign(self, campaign_id: int, scheduled_at: datetime) -> Campaign:
        """
        Schedule a draft campaign for future sending.

        Args:
            campaign_id: Campaign ID
            scheduled_at: Send time, timezone-aware or naive UTC

        Returns:
            The scheduled Campaign

        Raises:
            NotFoundError: unknown campaign
            InvalidStateTransition: campaign is not a draft
        """
        self._get_campaign(campaign_id)
        scheduled_at = to_naive_utc(scheduled_at)

        if not self.campaigns.transition_status(
            campaign_id, [CampaignStatus.draft], CampaignStatus.scheduled, scheduled_at=scheduled_at
        ):
            raise self._reject(campaign_id, "schedule", [CampaignStatus.draft])

        logger.info(f"Campaign {campaign_id} scheduled for {scheduled_at.isoformat()}")
        return self._get_campaign(campaign_id)

    def cancel_campaign(self, campaign_id: int) -> Campaign:
        """
        Cancel a scheduled campaign.

        Raises:
            NotFoundError: unknown campaign
            InvalidStateTransition: campaign is not scheduled
        """
        self._get_campaign(campaign_id)

        if not self.campaigns.transition_status(
            campaign_id, [CampaignStatus.scheduled], CampaignStatus.cancelled,
            cancelled_at=datetime.utcnow()
        ):
            raise self._reject(campaign_id, "cancel", [CampaignStatus.scheduled])

        logger.info(f"Campaign {campaign_id} cancelled")
        return self._get_campaign(campaign_id)

    # ============================================================
    # Dispatch
    # ============================================================

    async def send_campaign(self, campaign_id: int) -> SendResult:
        """
        Send a draft or scheduled campaign to all of its recipients.

        The campaign is claimed with a conditional status update before any
        recipient is contacted, so two callers can never both dispatch it.
        Individual delivery failures are counted, never raised.

        Args:
            campaign_id: Campaign ID

        Returns:
            SendResult with the number of successful and failed deliveries

        Raises:
            NotFoundError: unknown campaign
            InvalidStateTransition: campaign is not draft or scheduled
        """
        campaign = self._get_campaign(campaign_id)

        if not self.campaigns.transition_status(campaign_id, SENDABLE_STATUSES, CampaignStatus.sending):
            raise self._reject(campaign_id, "send", SENDABLE_STATUSES)

        self.db.refresh(campaign)
        recipients = self.resolver.resolve_for(campaign)
        self.campaigns.set_recipient_count(campaign_id, len(recipients))
        logger.info(f"Campaign {campaign_id} started sending to {len(recipients)} recipients")

        messages: List[OutgoingMessage] = []
        errors = 0
        for subscriber in recipients:
            try:
                messages.append(self.build_message(campaign, subscriber))
            except Exception as e:
                errors += 1
                logger.error(f"Failed to render campaign {campaign_id} for {subscriber.email}: {e}")

        sent_count = 0
        if messages:
            semaphore = asyncio.Semaphore(max(1, self.settings.CAMPAIGN_SEND_CONCURRENCY))
            outcomes = await asyncio.gather(
                *(self._deliver(semaphore, message) for message in messages)
            )
            sent_count = sum(1 for delivered in outcomes if delivered)
            errors += len(outcomes) - sent_count

        self.campaigns.complete_send(campaign_id, sent_count)
        logger.info(f"Campaign {campaign_id} sent: {sent_count} delivered, {errors} failed")

        return SendResult(success=True, sent_count=sent_count, errors=errors)

    def build_message(self, campaign: Campaign, subscriber: Subscriber) -> OutgoingMessage:
        """Render the campaign in the subscriber's locale."""
        locale = getattr(subscriber.locale, "value", subscriber.locale) or Locale.ar.value
        subject = campaign.localized("subject", locale)

        html_content = render_campaign_email(
            locale=locale,
            subject=subject,
            content=campaign.localized("content", locale),
            preheader=campaign.localized("preheader", locale),
            unsubscribe_url=build_unsubscribe_url(
                subscriber.email, subscriber.unsubscribe_token, self.settings.CLIENT_URL
            ),
            name=subscriber.name
        )
        return OutgoingMessage(to_email=subscriber.email, subject=subject, html_content=html_content)

    async def _deliver(self, semaphore: asyncio.Semaphore, message: OutgoingMessage) -> bool:
        async with semaphore:
            try:
                await self._send_with_retry(message)
            except DeliveryFailure as e:
                logger.error(str(e))
                return False
            return True

    async def _send_with_retry(self, message: OutgoingMessage) -> None:
        """
        Deliver one message, retrying raised errors and timeouts.

        Raises:
            DeliveryFailure: the mailer rejected the message or every
            attempt failed
        """
        max_attempts = max(1, self.settings.CAMPAIGN_SEND_MAX_ATTEMPTS)

        for attempt in range(max_attempts):
            try:
                accepted = await asyncio.wait_for(
                    self.mailer(
                        to_email=message.to_email,
                        subject=message.subject,
                        html_content=message.html_content
                    ),
                    timeout=self.settings.CAMPAIGN_SEND_TIMEOUT_SECONDS
                )
            except asyncio.TimeoutError:
                reason = f"timed out after {self.settings.CAMPAIGN_SEND_TIMEOUT_SECONDS}s"
            except Exception as e:
                reason = str(e) or type(e).__name__
            else:
                if accepted:
                    return
                raise DeliveryFailure(message.to_email, "rejected by mail server")

            if attempt >= max_attempts - 1:
                raise DeliveryFailure(message.to_email, f"{reason} ({max_attempts} attempts)")

            delay = backoff_delay(
                attempt,
                self.settings.CAMPAIGN_RETRY_BASE_DELAY,
                self.settings.CAMPAIGN_RETRY_MAX_DELAY
            )
            logger.warning(f"Delivery to {message.to_email} failed ({reason}), retrying in {delay:.2f}s")
            if delay:
                await asyncio.sleep(delay)

    async def send_due_campaigns(self, now: Optional[datetime] = None) -> List[SendResult]:
        """
        Dispatch every scheduled campaign whose send time has passed.

        A campaign claimed by another worker in the meantime is skipped.
        """
        now = to_naive_utc(now) if now else datetime.utcnow()
        results = []

        for campaign in self.campaigns.get_due_scheduled(now):
            try:
                results.append(await self.send_campaign(campaign.id))
            except (InvalidStateTransition, NotFoundError) as e:
                logger.warning(f"Skipping scheduled campaign {campaign.id}: {e}")

        return results

    # ============================================================
    # Statistics
    # ============================================================

    def get_campaign_stats(self, campaign_id: int) -> dict:
        """
        Get delivery and engagement rates for a campaign.

        Returns:
            Dictionary with the raw metrics and percentage rates
        """
        campaign = self._get_campaign(campaign_id)
        metrics = campaign.metrics
        sent = metrics["sent_count"]
        total = metrics["recipient_count"]

        def rate(count: int, base: int) -> float:
            return round((count / base) * 100, 2) if base > 0 else 0

        return {
            "metrics": metrics,
            "open_rate": rate(metrics["open_count"], sent),
            "click_rate": rate(metrics["click_count"], sent),
            "bounce_rate": rate(metrics["bounce_count"], total),
            "unsubscribe_rate": rate(metrics["unsubscribe_count"], sent),
        }
