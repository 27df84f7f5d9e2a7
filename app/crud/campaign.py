# app/crud/campaign.py
from sqlmodel import Session, select, func, and_, or_, update
from typing import List, Optional, Iterable, Mapping
from datetime import datetime
from enum import Enum
import math

from app.core.exceptions import InvalidStateTransition, ValidationError
from app.crud.subscriber import order_by_clause
from app.models.newsletter import Campaign, CampaignStatus, RecipientType, METRIC_FIELDS
from app.schemas.common import Pagination, create_pagination
from app.schemas.newsletter import CampaignCreate, CampaignUpdate

COPY_SUFFIXES = {"ar": " (نسخة)", "en": " (Copy)"}


def percent(part: int, whole: int) -> int:
    """Whole-number percentage rounded half up; 0 when ``whole`` is 0."""
    if not whole:
        return 0
    return math.floor(part * 100 / whole + 0.5)


class CampaignCRUD:
    """Persistence and query surface for newsletter campaigns."""

    SORT_FIELDS = {"created_at", "sent_at", "scheduled_at"}
    RECENT_LIMIT = 5

    def __init__(self, db: Session):
        self.db = db

    # ============================================================
    # Lookups
    # ============================================================

    def get_by_id(self, campaign_id: int) -> Optional[Campaign]:
        """Get campaign by ID."""
        return self.db.get(Campaign, campaign_id)

    def get_campaigns(
        self,
        status: Optional[CampaignStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        sort: Optional[str] = None
    ) -> tuple[List[Campaign], int, Pagination]:
        """Get campaigns with filtering and pagination."""
        conditions = []

        if status:
            conditions.append(Campaign.status == status)

        if search:
            search_pattern = f"%{search.strip()}%"
            conditions.append(
                or_(
                    Campaign.subject_ar.ilike(search_pattern),
                    Campaign.subject_en.ilike(search_pattern)
                )
            )

        query = select(Campaign)
        count_query = select(func.count(Campaign.id))
        if conditions:
            query = query.where(and_(*conditions))
            count_query = count_query.where(and_(*conditions))

        total = self.db.exec(count_query).first() or 0

        query = query.order_by(
            order_by_clause(Campaign, sort, self.SORT_FIELDS, "-created_at"),
            Campaign.id.desc()
        )
        query = query.offset((page - 1) * limit).limit(limit)

        campaigns = self.db.exec(query).all()
        return list(campaigns), total, create_pagination(total, page, limit)

    def get_due_scheduled(self, before: datetime) -> List[Campaign]:
        """Scheduled campaigns whose send time is at or before ``before``."""
        return list(self.db.exec(
            select(Campaign).where(
                and_(
                    Campaign.status == CampaignStatus.scheduled,
                    Campaign.scheduled_at <= before
                )
            ).order_by(Campaign.scheduled_at, Campaign.id)
        ).all())

    def get_stats(self) -> dict:
        """Campaign counts, totals over sent campaigns and average rates."""
        by_status = {
            (status.value if isinstance(status, Enum) else status): count
            for status, count in self.db.exec(
                select(Campaign.status, func.count(Campaign.id)).group_by(Campaign.status)
            ).all()
        }

        recipients, sent, opens, clicks = self.db.exec(
            select(
                func.coalesce(func.sum(Campaign.recipient_count), 0),
                func.coalesce(func.sum(Campaign.sent_count), 0),
                func.coalesce(func.sum(Campaign.open_count), 0),
                func.coalesce(func.sum(Campaign.click_count), 0)
            ).where(Campaign.status == CampaignStatus.sent)
        ).one()

        recent = self.db.exec(
            select(Campaign)
            .order_by(Campaign.created_at.desc(), Campaign.id.desc())
            .limit(self.RECENT_LIMIT)
        ).all()

        return {
            "total": sum(by_status.values()),
            "draft": by_status.get(CampaignStatus.draft.value, 0),
            "scheduled": by_status.get(CampaignStatus.scheduled.value, 0),
            "sent": by_status.get(CampaignStatus.sent.value, 0),
            "total_recipients": recipients,
            "total_sent": sent,
            "total_opens": opens,
            "total_clicks": clicks,
            "average_open_rate": percent(opens, sent),
            "average_click_rate": percent(clicks, opens),
            "recent_campaigns": list(recent),
        }

    # ============================================================
    # Authoring
    # ============================================================

    def create_campaign(self, data: CampaignCreate, created_by_id: Optional[int] = None) -> Campaign:
        """Create a new draft campaign."""
        preheader = data.preheader
        campaign = Campaign(
            subject_ar=data.subject.ar,
            subject_en=data.subject.en,
            preheader_ar=preheader.ar if preheader else None,
            preheader_en=preheader.en if preheader else None,
            content_ar=data.content.ar,
            content_en=data.content.en,
            status=CampaignStatus.draft,
            recipient_type=data.recipient_type,
            recipient_tags=data.recipient_tags or [],
            recipient_ids=data.recipient_ids or [],
            created_by_id=created_by_id
        )

        self.db.add(campaign)
        self.db.commit()
        self.db.refresh(campaign)
        return campaign

    def update_campaign(
        self,
        campaign_id: int,
        data: CampaignUpdate,
        updated_by_id: Optional[int] = None
    ) -> Optional[Campaign]:
        """
        Update a draft campaign.

        Raises:
            InvalidStateTransition: the campaign is no longer a draft
        """
        campaign = self.get_by_id(campaign_id)
        if not campaign:
            return None

        if campaign.status != CampaignStatus.draft:
            raise InvalidStateTransition(
                campaign_id, campaign.status, "update", allowed=(CampaignStatus.draft,)
            )

        recipient_type = data.recipient_type or campaign.recipient_type
        recipient_tags = data.recipient_tags if data.recipient_tags is not None else campaign.recipient_tags
        recipient_ids = data.recipient_ids if data.recipient_ids is not None else campaign.recipient_ids
        if recipient_type == RecipientType.tags and not recipient_tags:
            raise ValidationError("At least one tag is required", field="recipient_tags")
        if recipient_type == RecipientType.specific and not recipient_ids:
            raise ValidationError("At least one recipient is required", field="recipient_ids")

        if data.subject is not None:
            campaign.subject_ar = data.subject.ar
            campaign.subject_en = data.subject.en
        if "preheader" in data.model_fields_set:
            campaign.preheader_ar = data.preheader.ar if data.preheader else None
            campaign.preheader_en = data.preheader.en if data.preheader else None
        if data.content is not None:
            campaign.content_ar = data.content.ar
            campaign.content_en = data.content.en
        campaign.recipient_type = recipient_type
        campaign.recipient_tags = recipient_tags
        campaign.recipient_ids = recipient_ids

        campaign.updated_by_id = updated_by_id
        campaign.updated_at = datetime.utcnow()

        self.db.add(campaign)
        self.db.commit()
        self.db.refresh(campaign)
        return campaign

    def delete_campaign(self, campaign_id: int) -> bool:
        """
        Delete a campaign.

        Raises:
            InvalidStateTransition: the campaign is currently sending
        """
        campaign = self.get_by_id(campaign_id)
        if not campaign:
            return False

        if campaign.status == CampaignStatus.sending:
            raise InvalidStateTransition(campaign_id, campaign.status, "delete")

        self.db.delete(campaign)
        self.db.commit()
        return True

    def duplicate_campaign(self, campaign_id: int, created_by_id: Optional[int] = None) -> Optional[Campaign]:
        """Copy content and targeting into a new draft with zeroed metrics."""
        original = self.get_by_id(campaign_id)
        if not original:
            return None

        copy = Campaign(
            subject_ar=f"{original.subject_ar}{COPY_SUFFIXES['ar']}",
            subject_en=f"{original.subject_en}{COPY_SUFFIXES['en']}",
            preheader_ar=original.preheader_ar,
            preheader_en=original.preheader_en,
            content_ar=original.content_ar,
            content_en=original.content_en,
            status=CampaignStatus.draft,
            recipient_type=original.recipient_type,
            recipient_tags=list(original.recipient_tags or []),
            recipient_ids=list(original.recipient_ids or []),
            created_by_id=created_by_id
        )

        self.db.add(copy)
        self.db.commit()
        self.db.refresh(copy)
        return copy

    # ============================================================
    # Lifecycle and Metrics
    # ============================================================

    def transition_status(
        self,
        campaign_id: int,
        from_statuses: Iterable[CampaignStatus],
        to_status: CampaignStatus,
        **fields
    ) -> bool:
        """
        Atomically move a campaign to ``to_status`` if it is in ``from_statuses``.

        Args:
            campaign_id: Campaign ID
            from_statuses: Statuses the campaign may currently be in
            to_status: Target status
            **fields: Extra columns written in the same statement

        Returns:
            True if exactly one row changed
        """
        values = {"status": to_status, "updated_at": datetime.utcnow(), **fields}
        result = self.db.exec(
            update(Campaign)
            .where(
                and_(
                    Campaign.id == campaign_id,
                    Campaign.status.in_(list(from_statuses))
                )
            )
            .values(**values)
        )
        self.db.commit()
        return result.rowcount == 1

    def update_metrics(self, campaign_id: int, partial: Mapping[str, Optional[int]]) -> Optional[Campaign]:
        """
        Add each provided counter to the stored value with a single UPDATE.

        Raises:
            ValidationError: unknown metric name or negative increment
        """
        increments = {name: amount for name, amount in partial.items() if amount is not None}

        unknown = sorted(set(increments) - set(METRIC_FIELDS))
        if unknown:
            raise ValidationError(f"Unknown metric(s): {', '.join(unknown)}", field="metrics")

        for name, amount in increments.items():
            if amount < 0:
                raise ValidationError(f"Metric '{name}' cannot be decremented", field=name)

        if not increments:
            return self.get_by_id(campaign_id)

        values = {name: getattr(Campaign, name) + amount for name, amount in increments.items()}
        values["updated_at"] = datetime.utcnow()

        result = self.db.exec(
            update(Campaign).where(Campaign.id == campaign_id).values(**values)
        )
        self.db.commit()

        if result.rowcount == 0:
            return None
        return self.get_by_id(campaign_id)

    def set_recipient_count(self, campaign_id: int, count: int) -> None:
        self.db.exec(
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values(recipient_count=count, updated_at=datetime.utcnow())
        )
        self.db.commit()

    def complete_send(self, campaign_id: int, sent_count: int) -> bool:
        """Mark a sending campaign as sent with its final success count."""
        return self.transition_status(
            campaign_id,
            [CampaignStatus.sending],
            CampaignStatus.sent,
            sent_at=datetime.utcnow(),
            sent_count=sent_count
        )
