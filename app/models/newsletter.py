# app/models/newsletter.py
from sqlmodel import SQLModel, Field, Relationship, Column, Text, JSON
from sqlalchemy import DateTime, Enum as SAEnum, UniqueConstraint
from typing import Optional, List
from datetime import datetime
from enum import Enum


def _enum_values(enum_cls) -> List[str]:
    return [member.value for member in enum_cls]


# Enums
class SubscriberStatus(str, Enum):
    pending = "pending"           # Awaiting email verification
    active = "active"             # Receives campaigns
    unsubscribed = "unsubscribed" # Opted out via link or admin
    bounced = "bounced"           # Address rejected by the mail server


class SubscriberSource(str, Enum):
    website = "website"
    import_ = "import"
    manual = "manual"
    api = "api"


class Locale(str, Enum):
    ar = "ar"
    en = "en"


class CampaignStatus(str, Enum):
    draft = "draft"
    scheduled = "scheduled"
    sending = "sending"
    sent = "sent"
    cancelled = "cancelled"


class RecipientType(str, Enum):
    all = "all"
    tags = "tags"
    specific = "specific"


METRIC_FIELDS = (
    "recipient_count",
    "sent_count",
    "open_count",
    "click_count",
    "bounce_count",
    "unsubscribe_count",
)


# Subscriber tag (one row per subscriber/tag pair)
class SubscriberTag(SQLModel, table=True):
    __tablename__ = "newsletter_subscriber_tags"
    __table_args__ = (UniqueConstraint("subscriber_id", "tag", name="uq_subscriber_tag"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    subscriber_id: int = Field(foreign_key="newsletter_subscribers.id", index=True)
    tag: str = Field(max_length=50, index=True)
    added_at: datetime = Field(default_factory=datetime.utcnow, sa_type=DateTime)

    # Relationships
    subscriber: "Subscriber" = Relationship(back_populates="tag_links")


# Newsletter Subscriber
class Subscriber(SQLModel, table=True):
    __tablename__ = "newsletter_subscribers"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(max_length=255, unique=True, index=True)  # Stored lowercased
    name: Optional[str] = Field(default=None, max_length=100)
    status: SubscriberStatus = Field(default=SubscriberStatus.pending, index=True)
    source: SubscriberSource = Field(
        default=SubscriberSource.website,
        sa_column=Column(
            SAEnum(SubscriberSource, name="subscribersource", values_callable=_enum_values),
            nullable=False,
            index=True
        )
    )
    locale: Locale = Field(default=Locale.ar)

    subscribed_at: datetime = Field(default_factory=datetime.utcnow, sa_type=DateTime, index=True)
    unsubscribed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    # Verification (single use) and unsubscribe (rotated on every activation)
    verification_token: Optional[str] = Field(default=None, max_length=255, index=True)
    unsubscribe_token: str = Field(max_length=255, index=True)

    # Request metadata
    ip_address: Optional[str] = Field(default=None, max_length=45)
    user_agent: Optional[str] = Field(default=None, sa_column=Column(Text))
    referrer: Optional[str] = Field(default=None, max_length=2000)

    created_at: datetime = Field(default_factory=datetime.utcnow, sa_type=DateTime, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_type=DateTime)

    # Relationships
    tag_links: List[SubscriberTag] = Relationship(
        back_populates="subscriber",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "lazy": "selectin"}
    )

    @property
    def tags(self) -> List[str]:
        return sorted(link.tag for link in self.tag_links)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriberStatus.active


# Newsletter Campaign
class Campaign(SQLModel, table=True):
    __tablename__ = "newsletter_campaigns"

    id: Optional[int] = Field(default=None, primary_key=True)

    # Bilingual content
    subject_ar: str = Field(max_length=200)
    subject_en: str = Field(max_length=200)
    preheader_ar: Optional[str] = Field(default=None, max_length=150)
    preheader_en: Optional[str] = Field(default=None, max_length=150)
    content_ar: str = Field(sa_column=Column(Text, nullable=False))
    content_en: str = Field(sa_column=Column(Text, nullable=False))

    # Status and scheduling
    status: CampaignStatus = Field(default=CampaignStatus.draft, index=True)
    scheduled_at: Optional[datetime] = Field(default=None, sa_type=DateTime, index=True)
    sent_at: Optional[datetime] = Field(default=None, sa_type=DateTime, index=True)
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    # Targeting
    recipient_type: RecipientType = Field(default=RecipientType.all)
    recipient_tags: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    recipient_ids: Optional[List[int]] = Field(default=None, sa_column=Column(JSON))

    # Metrics
    recipient_count: int = Field(default=0)
    sent_count: int = Field(default=0)
    open_count: int = Field(default=0)
    click_count: int = Field(default=0)
    bounce_count: int = Field(default=0)
    unsubscribe_count: int = Field(default=0)

    # Attribution (external user identity)
    created_by_id: Optional[int] = Field(default=None)
    updated_by_id: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow, sa_type=DateTime, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_type=DateTime)

    def localized(self, field: str, locale: str) -> Optional[str]:
        """Return the ``ar``/``en`` variant of subject, preheader or content."""
        return getattr(self, f"{field}_{locale}")

    @property
    def metrics(self) -> dict:
        return {name: getattr(self, name) for name in METRIC_FIELDS}
