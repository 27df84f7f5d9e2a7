# app/crud/subscriber.py
from sqlmodel import Session, select, func, and_, or_, update
from sqlalchemy.exc import IntegrityError
from typing import List, Optional, Iterable
from datetime import datetime
from enum import Enum
import re
import secrets

from app.core.exceptions import ValidationError
from app.models.newsletter import (
    Subscriber, SubscriberTag, SubscriberStatus, SubscriberSource, Locale
)
from app.schemas.common import Pagination, clean_tags, create_pagination
from app.schemas.newsletter import SubscriberUpdate

EMAIL_PATTERN = re.compile(r"^\S+@\S+\.\S+$")


def generate_token() -> str:
    """Generate a secure random token (64 hex chars)."""
    return secrets.token_hex(32)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


def order_by_clause(model, sort: Optional[str], allowed: set, default: str):
    """Translate ``"field"`` / ``"-field"`` into an ORDER BY clause."""
    sort = sort or default
    descending = sort.startswith("-")
    field = sort.lstrip("-")
    if field not in allowed:
        raise ValidationError(f"Unsupported sort field '{field}'", field="sort")
    column = getattr(model, field)
    return column.desc() if descending else column.asc()


def _enum_key(value) -> str:
    return value.value if isinstance(value, Enum) else str(value)


class SubscriberCRUD:
    """Persistence and query surface for newsletter subscribers."""

    SORT_FIELDS = {"subscribed_at", "email", "name", "created_at"}
    RECENT_LIMIT = 5

    def __init__(self, db: Session):
        self.db = db

    # ============================================================
    # Lookups
    # ============================================================

    def get(self, subscriber_id: int) -> Optional[Subscriber]:
        """Get subscriber by ID."""
        return self.db.get(Subscriber, subscriber_id)

    def get_by_email(self, email: str) -> Optional[Subscriber]:
        """Case-insensitive exact lookup by email."""
        return self.db.exec(
            select(Subscriber).where(Subscriber.email == normalize_email(email))
        ).first()

    def get_pending_by_verification_token(self, token: str) -> Optional[Subscriber]:
        """Get a pending subscriber holding this verification token."""
        return self.db.exec(
            select(Subscriber).where(
                and_(
                    Subscriber.verification_token == token,
                    Subscriber.status == SubscriberStatus.pending
                )
            )
        ).first()

    def _ids_with_any_tag(self, tags: List[str]):
        return select(SubscriberTag.subscriber_id).where(SubscriberTag.tag.in_(tags))

    def get_subscribers(
        self,
        status: Optional[SubscriberStatus] = None,
        source: Optional[SubscriberSource] = None,
        tags: Optional[List[str]] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        sort: Optional[str] = None
    ) -> tuple[List[Subscriber], int, Pagination]:
        """Get subscribers with filtering and pagination."""
        conditions = []

        if status:
            conditions.append(Subscriber.status == status)

        if source:
            conditions.append(Subscriber.source == source)

        tags = clean_tags(tags)
        if tags:
            conditions.append(Subscriber.id.in_(self._ids_with_any_tag(tags)))

        if search:
            search_pattern = f"%{search.strip()}%"
            conditions.append(
                or_(
                    Subscriber.email.ilike(search_pattern),
                    Subscriber.name.ilike(search_pattern)
                )
            )

        query = select(Subscriber)
        count_query = select(func.count(Subscriber.id))
        if conditions:
            query = query.where(and_(*conditions))
            count_query = count_query.where(and_(*conditions))

        total = self.db.exec(count_query).first() or 0

        query = query.order_by(
            order_by_clause(Subscriber, sort, self.SORT_FIELDS, "-subscribed_at"),
            Subscriber.id.desc()
        )
        query = query.offset((page - 1) * limit).limit(limit)

        subscribers = self.db.exec(query).all()
        return list(subscribers), total, create_pagination(total, page, limit)

    def get_active_subscribers(self, tags: Optional[List[str]] = None) -> List[Subscriber]:
        """
        Get all active subscribers, optionally those having any of ``tags``.

        ``tags=None`` means no tag filter. A tag list that is empty after
        cleaning matches nobody.
        """
        query = select(Subscriber).where(Subscriber.status == SubscriberStatus.active)

        if tags is not None:
            tags = clean_tags(tags)
            if not tags:
                return []
            query = query.where(Subscriber.id.in_(self._ids_with_any_tag(tags)))

        return list(self.db.exec(query.order_by(Subscriber.id)).all())

    def get_active_by_ids(self, ids: List[int]) -> List[Subscriber]:
        """Get active subscribers among ``ids``; unknown or inactive ids are skipped."""
        if not ids:
            return []
        return list(self.db.exec(
            select(Subscriber).where(
                and_(
                    Subscriber.id.in_(ids),
                    Subscriber.status == SubscriberStatus.active
                )
            ).order_by(Subscriber.id)
        ).all())

    def get_all_tags(self) -> List[str]:
        """Distinct tags across all subscribers, alphabetically."""
        return list(self.db.exec(
            select(SubscriberTag.tag).distinct().order_by(SubscriberTag.tag)
        ).all())

    def find_for_export(
        self,
        status: Optional[SubscriberStatus] = None,
        tags: Optional[List[str]] = None
    ) -> List[Subscriber]:
        """All subscribers matching the filters, without pagination."""
        query = select(Subscriber)
        if status:
            query = query.where(Subscriber.status == status)
        tags = clean_tags(tags)
        if tags:
            query = query.where(Subscriber.id.in_(self._ids_with_any_tag(tags)))
        return list(self.db.exec(
            query.order_by(Subscriber.subscribed_at.desc(), Subscriber.id.desc())
        ).all())

    def get_stats(self) -> dict:
        """Totals per status and source plus the most recent subscribers."""
        total = self.db.exec(select(func.count(Subscriber.id))).first() or 0

        by_status = {
            _enum_key(status): count
            for status, count in self.db.exec(
                select(Subscriber.status, func.count(Subscriber.id)).group_by(Subscriber.status)
            ).all()
        }
        by_source = {
            _enum_key(source): count
            for source, count in self.db.exec(
                select(Subscriber.source, func.count(Subscriber.id)).group_by(Subscriber.source)
            ).all()
        }

        recent = self.db.exec(
            select(Subscriber)
            .order_by(Subscriber.subscribed_at.desc(), Subscriber.id.desc())
            .limit(self.RECENT_LIMIT)
        ).all()

        return {
            "total": total,
            "active": by_status.get(SubscriberStatus.active.value, 0),
            "unsubscribed": by_status.get(SubscriberStatus.unsubscribed.value, 0),
            "bounced": by_status.get(SubscriberStatus.bounced.value, 0),
            "pending": by_status.get(SubscriberStatus.pending.value, 0),
            "by_source": by_source,
            "recent_subscribers": list(recent),
        }

    # ============================================================
    # Mutations
    # ============================================================

    def set_tags(self, subscriber: Subscriber, tags: Iterable[str]) -> None:
        """Replace the subscriber's tag set, keeping rows for unchanged tags."""
        existing = {link.tag: link for link in subscriber.tag_links}
        subscriber.tag_links = [existing.get(tag) or SubscriberTag(tag=tag) for tag in clean_tags(tags)]

    def create_subscriber(
        self,
        email: str,
        name: Optional[str] = None,
        status: SubscriberStatus = SubscriberStatus.active,
        source: SubscriberSource = SubscriberSource.manual,
        locale: Locale = Locale.ar,
        tags: Optional[List[str]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        referrer: Optional[str] = None
    ) -> Subscriber:
        """
        Create a new subscriber.

        Raises:
            ValidationError: malformed email, or the email already exists in
            any status.
        """
        email = normalize_email(email)
        if not is_valid_email(email):
            raise ValidationError("Please enter a valid email", field="email")

        if self.get_by_email(email):
            raise ValidationError("A subscriber with this email already exists", field="email")

        subscriber = Subscriber(
            email=email,
            name=name,
            status=status,
            source=source,
            locale=locale,
            unsubscribe_token=generate_token(),
            verification_token=generate_token() if status == SubscriberStatus.pending else None,
            ip_address=ip_address,
            user_agent=user_agent,
            referrer=referrer
        )
        self.set_tags(subscriber, tags or [])

        self.db.add(subscriber)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValidationError("A subscriber with this email already exists", field="email")

        self.db.refresh(subscriber)
        return subscriber

    def save(self, subscriber: Subscriber) -> Subscriber:
        """Persist in-place changes to a subscriber."""
        subscriber.updated_at = datetime.utcnow()
        self.db.add(subscriber)
        self.db.commit()
        self.db.refresh(subscriber)
        return subscriber

    def apply_status(self, subscriber: Subscriber, status: SubscriberStatus) -> bool:
        """
        Move a subscriber to ``status`` with its side effects (not committed).

        Entering ``unsubscribed`` stamps ``unsubscribed_at``; entering
        ``active`` issues a fresh unsubscribe token so old links stop working.

        Returns:
            False if the subscriber already had that status
        """
        if subscriber.status == status:
            return False

        subscriber.status = status
        if status == SubscriberStatus.unsubscribed:
            subscriber.unsubscribed_at = datetime.utcnow()
        elif status == SubscriberStatus.active:
            subscriber.unsubscribed_at = None
            subscriber.verification_token = None
            subscriber.unsubscribe_token = generate_token()
        return True

    def update_subscriber(self, subscriber_id: int, data: SubscriberUpdate) -> Optional[Subscriber]:
        """Admin update of name, status, tags and locale."""
        subscriber = self.get(subscriber_id)
        if not subscriber:
            return None

        update_data = data.model_dump(exclude_unset=True, exclude={'tags', 'status'})
        for field, value in update_data.items():
            setattr(subscriber, field, value)

        if data.status is not None:
            self.apply_status(subscriber, data.status)

        if data.tags is not None:
            self.set_tags(subscriber, data.tags)

        return self.save(subscriber)

    def delete_subscriber(self, subscriber_id: int) -> bool:
        """Delete subscriber and its tags."""
        subscriber = self.get(subscriber_id)
        if not subscriber:
            return False

        self.db.delete(subscriber)
        self.db.commit()
        return True

    # ============================================================
    # Bulk Operations
    # ============================================================

    def bulk_update_status(self, ids: List[int], status: SubscriberStatus) -> int:
        """
        Set ``status`` for all given ids in one transaction.

        Returns:
            Number of subscribers whose status actually changed
        """
        if not ids:
            return 0

        now = datetime.utcnow()

        if status == SubscriberStatus.active:
            # Each reactivated row needs its own unsubscribe token
            subscribers = self.db.exec(
                select(Subscriber).where(
                    and_(Subscriber.id.in_(ids), Subscriber.status != status)
                )
            ).all()
            for subscriber in subscribers:
                self.apply_status(subscriber, status)
                subscriber.updated_at = now
            self.db.commit()
            return len(subscribers)

        values = {"status": status, "updated_at": now}
        if status == SubscriberStatus.unsubscribed:
            values["unsubscribed_at"] = now

        result = self.db.exec(
            update(Subscriber)
            .where(and_(Subscriber.id.in_(ids), Subscriber.status != status))
            .values(**values)
        )
        self.db.commit()
        return result.rowcount

    def bulk_add_tags(self, ids: List[int], tags: List[str]) -> int:
        """Add tags to every subscriber in ``ids``; returns subscribers modified."""
        tags = clean_tags(tags)
        if not ids or not tags:
            return 0

        modified = 0
        for subscriber in self.db.exec(select(Subscriber).where(Subscriber.id.in_(ids))).all():
            current = subscriber.tags
            missing = [tag for tag in tags if tag not in current]
            if missing:
                self.set_tags(subscriber, current + missing)
                subscriber.updated_at = datetime.utcnow()
                modified += 1

        self.db.commit()
        return modified

    def bulk_remove_tags(self, ids: List[int], tags: List[str]) -> int:
        """Remove tags from every subscriber in ``ids``; returns subscribers modified."""
        tags = clean_tags(tags)
        if not ids or not tags:
            return 0

        modified = 0
        for subscriber in self.db.exec(select(Subscriber).where(Subscriber.id.in_(ids))).all():
            current = subscriber.tags
            remaining = [tag for tag in current if tag not in tags]
            if len(remaining) != len(current):
                self.set_tags(subscriber, remaining)
                subscriber.updated_at = datetime.utcnow()
                modified += 1

        self.db.commit()
        return modified

    def bulk_delete(self, ids: List[int]) -> int:
        """Delete every subscriber in ``ids``; returns number deleted."""
        if not ids:
            return 0

        subscribers = self.db.exec(select(Subscriber).where(Subscriber.id.in_(ids))).all()
        for subscriber in subscribers:
            self.db.delete(subscriber)
        self.db.commit()
        return len(subscribers)
