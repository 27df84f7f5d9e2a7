# app/services/newsletter_service.py
"""
Newsletter Service for the subscriber lifecycle: subscribe, verify,
unsubscribe, import and export.
"""
import csv
import io
import logging
import secrets
from typing import Iterable, List, Optional, Union
from datetime import datetime
import pydantic
from sqlmodel import Session

from app.core.config import Settings, settings as default_settings
from app.core.email import send_email, send_welcome_email
from app.core.exceptions import ValidationError
from app.crud.subscriber import SubscriberCRUD, is_valid_email, normalize_email
from app.models.newsletter import Subscriber, SubscriberStatus, SubscriberSource, Locale
from app.schemas.common import clean_tags
from app.schemas.newsletter import ImportResult, SubscriberImportRow

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = ["email", "name", "status", "tags", "subscribed_at"]


class NewsletterService:
    """Service for managing newsletter subscriptions."""

    def __init__(
        self,
        db: Session,
        mailer=send_email,
        settings: Optional[Settings] = None
    ):
        self.db = db
        self.mailer = mailer
        self.settings = settings or default_settings
        self.subscribers = SubscriberCRUD(db)

    async def subscribe(
        self,
        email: str,
        name: Optional[str] = None,
        locale: Optional[Locale] = None,
        source: SubscriberSource = SubscriberSource.website,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        referrer: Optional[str] = None
    ) -> tuple[Subscriber, bool]:
        """
        Subscribe an email to the newsletter.

        Args:
            email: Email address to subscribe
            name: Subscriber's name (optional)
            locale: Preferred language, Arabic when not given
            source: Where the subscription came from
            ip_address: Client IP address
            user_agent: Client user agent
            referrer: Page the form was submitted from

        Returns:
            Tuple of (Subscriber, is_new) - is_new is False for an existing
            address, whether already active or reactivated

        Raises:
            ValidationError: malformed email
        """
        email = normalize_email(email)
        existing = self.subscribers.get_by_email(email)

        if existing:
            if existing.status == SubscriberStatus.active:
                logger.info(f"Email {email} is already actively subscribed")
                return existing, False

            return self._reactivate(existing, name, locale, ip_address, user_agent, referrer), False

        try:
            subscriber = self.subscribers.create_subscriber(
                email=email,
                name=name,
                status=SubscriberStatus.active,
                source=source,
                locale=locale or Locale.ar,
                ip_address=ip_address,
                user_agent=user_agent,
                referrer=referrer
            )
        except ValidationError:
            # Lost a race against a concurrent subscribe for the same address
            existing = self.subscribers.get_by_email(email)
            if not existing:
                raise
            return existing, False

        logger.info(f"New subscriber {email} created from {subscriber.source.value}")

        await self._send_welcome_email(subscriber)
        return subscriber, True

    def _reactivate(
        self,
        subscriber: Subscriber,
        name: Optional[str],
        locale: Optional[Locale],
        ip_address: Optional[str],
        user_agent: Optional[str],
        referrer: Optional[str]
    ) -> Subscriber:
        previous = subscriber.status
        self.subscribers.apply_status(subscriber, SubscriberStatus.active)
        subscriber.subscribed_at = datetime.utcnow()

        if name:
            subscriber.name = name
        if locale:
            subscriber.locale = locale
        if ip_address:
            subscriber.ip_address = ip_address
        if user_agent:
            subscriber.user_agent = user_agent
        if referrer:
            subscriber.referrer = referrer

        self.subscribers.save(subscriber)
        logger.info(f"Re-activated {previous.value} subscriber {subscriber.email}")
        return subscriber

    async def _send_welcome_email(self, subscriber: Subscriber) -> bool:
        """Send the welcome email. Failures never fail the subscription."""
        try:
            success = await send_welcome_email(
                email=subscriber.email,
                unsubscribe_token=subscriber.unsubscribe_token,
                locale=subscriber.locale.value,
                name=subscriber.name,
                mailer=self.mailer,
                client_url=self.settings.CLIENT_URL
            )
        except Exception as e:
            logger.warning(f"Failed to send welcome email to {subscriber.email}: {e}")
            return False

        if success:
            logger.info(f"Welcome email sent to {subscriber.email}")
        else:
            logger.warning(f"Welcome email to {subscriber.email} was not delivered")
        return success

    def unsubscribe(self, email: str, token: str) -> bool:
        """
        Unsubscribe via the link in an email.

        Args:
            email: Subscriber's email address
            token: Unsubscribe token from the link

        Returns:
            False if the address is unknown or the token does not match
        """
        subscriber = self.subscribers.get_by_email(email)
        if not subscriber:
            logger.warning(f"Unsubscribe requested for unknown email {normalize_email(email)}")
            return False

        if not token or not secrets.compare_digest(subscriber.unsubscribe_token.encode(), token.encode()):
            logger.warning(f"Invalid unsubscribe token for {subscriber.email}")
            return False

        if self.subscribers.apply_status(subscriber, SubscriberStatus.unsubscribed):
            self.subscribers.save(subscriber)
            logger.info(f"Subscriber {subscriber.email} unsubscribed")
        return True

    def verify_email(self, token: str) -> Optional[Subscriber]:
        """
        Confirm a pending subscription via its verification token.

        Returns:
            Activated Subscriber or None if the token is unknown or already used
        """
        subscriber = self.subscribers.get_pending_by_verification_token(token)

        if not subscriber:
            logger.warning(f"Invalid verification token: {token[:10]}...")
            return None

        self.subscribers.apply_status(subscriber, SubscriberStatus.active)
        self.subscribers.save(subscriber)
        logger.info(f"Email verified for {subscriber.email}")
        return subscriber

    def import_subscribers(
        self,
        rows: Iterable[Union[SubscriberImportRow, dict]],
        locale: Optional[Locale] = None,
        tags: Optional[List[str]] = None
    ) -> ImportResult:
        """
        Import a batch of subscribers, one row at a time.

        Each row is either imported, counted as a duplicate (address already
        known in any status), counted as invalid (missing or malformed
        email), or recorded in ``errors``. One bad row never stops the batch.
        """
        rows = list(rows)
        result = ImportResult(total=len(rows))
        batch_tags = clean_tags(tags)

        for index, row in enumerate(rows, start=1):
            if not isinstance(row, SubscriberImportRow):
                try:
                    row = SubscriberImportRow.model_validate(row)
                except pydantic.ValidationError as e:
                    message = e.errors()[0]["msg"]
                    logger.warning(f"Skipping import row {index}: {message}")
                    result.errors.append(f"Row {index}: {message}")
                    continue

            email = normalize_email(row.email)

            if not email or not is_valid_email(email):
                result.invalid += 1
                continue

            if self.subscribers.get_by_email(email):
                result.duplicates += 1
                continue

            try:
                self.subscribers.create_subscriber(
                    email=email,
                    name=row.name,
                    status=SubscriberStatus.active,
                    source=SubscriberSource.import_,
                    locale=locale or Locale.ar,
                    tags=clean_tags(list(row.tags) + batch_tags)
                )
                result.imported += 1
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to import {email}: {e}")
                result.errors.append(f"Failed to import {email}: {e}")

        logger.info(
            f"Imported {result.imported}/{result.total} subscribers "
            f"({result.duplicates} duplicates, {result.invalid} invalid, {len(result.errors)} errors)"
        )
        return result

    def export_subscribers(
        self,
        status: Optional[SubscriberStatus] = None,
        tags: Optional[List[str]] = None
    ) -> List[dict]:
        """Flat rows for export, tags joined with ", "."""
        return [
            {
                "email": subscriber.email,
                "name": subscriber.name or "",
                "status": subscriber.status.value,
                "tags": ", ".join(subscriber.tags),
                "subscribed_at": subscriber.subscribed_at.isoformat(),
            }
            for subscriber in self.subscribers.find_for_export(status=status, tags=tags)
        ]

    def export_subscribers_csv(
        self,
        status: Optional[SubscriberStatus] = None,
        tags: Optional[List[str]] = None
    ) -> str:
        """Render the export rows as CSV text with a header row."""
        output = io.StringIO()
        writer = csv.writer(output)

        writer.writerow(EXPORT_COLUMNS)
        for row in self.export_subscribers(status=status, tags=tags):
            writer.writerow([row[column] for column in EXPORT_COLUMNS])

        return output.getvalue()
