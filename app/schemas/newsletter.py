# app/schemas/newsletter.py
from pydantic import BaseModel, Field, EmailStr, field_validator, model_validator
from typing import Optional, List
from datetime import datetime, timezone
from enum import Enum

from app.models.newsletter import (
    SubscriberStatus, SubscriberSource, Locale, CampaignStatus, RecipientType
)
from app.schemas.common import Pagination, clean_tags


# ============================================================
# Bilingual Fields
# ============================================================

class LocalizedString(BaseModel):
    """Required Arabic/English text pair."""
    ar: str = Field(..., min_length=1)
    en: str = Field(..., min_length=1)

    @field_validator('ar', 'en')
    def validate_not_blank(cls, v):
        if not v.strip():
            raise ValueError('Both Arabic and English values are required')
        return v.strip()


class OptionalLocalizedString(BaseModel):
    """Optional Arabic/English text pair (e.g. preheader)."""
    ar: Optional[str] = None
    en: Optional[str] = None


# ============================================================
# Subscriber Schemas
# ============================================================

class SubscribeRequest(BaseModel):
    """Public subscription request."""
    email: EmailStr
    name: Optional[str] = Field(None, max_length=100)
    locale: Locale = Locale.ar


class UnsubscribeRequest(BaseModel):
    """Public unsubscribe request (from the link in every email)."""
    email: EmailStr
    token: str = Field(..., min_length=1)


class SubscriberCreate(BaseModel):
    """Admin schema to add a subscriber manually."""
    email: EmailStr
    name: Optional[str] = Field(None, max_length=100)
    status: SubscriberStatus = SubscriberStatus.active
    source: SubscriberSource = SubscriberSource.manual
    tags: List[str] = []
    locale: Locale = Locale.ar

    @field_validator('tags')
    def validate_tags(cls, v):
        return v if v is None else clean_tags(v)


class SubscriberUpdate(BaseModel):
    """Admin schema to update a subscriber. Source is immutable."""
    name: Optional[str] = Field(None, max_length=100)
    status: Optional[SubscriberStatus] = None
    tags: Optional[List[str]] = None
    locale: Optional[Locale] = None

    @field_validator('tags')
    def validate_tags(cls, v):
        return v if v is None else clean_tags(v)

    @model_validator(mode='after')
    def validate_not_empty(self):
        if not self.model_fields_set:
            raise ValueError('At least one field is required')
        return self


class BulkAction(str, Enum):
    delete = "delete"
    unsubscribe = "unsubscribe"
    activate = "activate"
    add_tags = "addTags"
    remove_tags = "removeTags"


class BulkSubscriberAction(BaseModel):
    """Admin bulk action over a set of subscribers."""
    ids: List[int] = Field(..., min_length=1)
    action: BulkAction
    tags: Optional[List[str]] = None

    @field_validator('tags')
    def validate_tags(cls, v):
        return v if v is None else clean_tags(v)

    @model_validator(mode='after')
    def validate_tags_for_tag_actions(self):
        if self.action in (BulkAction.add_tags, BulkAction.remove_tags) and not self.tags:
            raise ValueError('Tags are required for this action')
        return self


class BulkActionResult(BaseModel):
    message: str
    count: int


class SubscriberImportRow(BaseModel):
    """One row of an import file. Email format is checked during import."""
    email: Optional[str] = None
    name: Optional[str] = Field(None, max_length=100)
    tags: List[str] = []


class SubscriberImportRequest(BaseModel):
    subscribers: List[SubscriberImportRow] = Field(..., min_length=1)
    locale: Locale = Locale.ar
    tags: List[str] = []

    @field_validator('tags')
    def validate_tags(cls, v):
        return v if v is None else clean_tags(v)


class ImportResult(BaseModel):
    """Result of bulk import."""
    total: int = 0
    imported: int = 0
    duplicates: int = 0
    invalid: int = 0
    errors: List[str] = []


class Subscriber(BaseModel):
    """Subscriber response."""
    id: int
    email: str
    name: Optional[str]
    status: SubscriberStatus
    source: SubscriberSource
    locale: Locale
    tags: List[str] = []
    subscribed_at: datetime
    unsubscribed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SubscriberListResponse(BaseModel):
    """Paginated list of subscribers."""
    subscribers: List[Subscriber]
    total: int
    pagination: Pagination


class RecentSubscriber(BaseModel):
    email: str
    name: Optional[str]
    status: SubscriberStatus
    subscribed_at: datetime

    class Config:
        from_attributes = True


class SubscriberStats(BaseModel):
    total: int
    active: int
    unsubscribed: int
    bounced: int
    pending: int
    by_source: dict[str, int]
    recent_subscribers: List[RecentSubscriber]


class SubscriberExportRow(BaseModel):
    email: str
    name: str
    status: str
    tags: str
    subscribed_at: str


class SubscriberTagsResponse(BaseModel):
    tags: List[str]


# ============================================================
# Campaign Schemas
# ============================================================

class CampaignCreate(BaseModel):
    subject: LocalizedString
    preheader: Optional[OptionalLocalizedString] = None
    content: LocalizedString
    recipient_type: RecipientType = RecipientType.all
    recipient_tags: Optional[List[str]] = None
    recipient_ids: Optional[List[int]] = None

    @field_validator('recipient_tags')
    def validate_recipient_tags(cls, v):
        return v if v is None else clean_tags(v)

    @field_validator('subject')
    def validate_subject_length(cls, v):
        if len(v.ar) > 200 or len(v.en) > 200:
            raise ValueError('Subject cannot exceed 200 characters')
        return v

    @field_validator('preheader')
    def validate_preheader_length(cls, v):
        if v and any(len(text) > 150 for text in (v.ar, v.en) if text):
            raise ValueError('Preheader cannot exceed 150 characters')
        return v

    @model_validator(mode='after')
    def validate_targeting(self):
        if self.recipient_type == RecipientType.tags and not self.recipient_tags:
            raise ValueError('At least one tag is required')
        if self.recipient_type == RecipientType.specific and not self.recipient_ids:
            raise ValueError('At least one recipient is required')
        return self


class CampaignUpdate(BaseModel):
    subject: Optional[LocalizedString] = None
    preheader: Optional[OptionalLocalizedString] = None
    content: Optional[LocalizedString] = None
    recipient_type: Optional[RecipientType] = None
    recipient_tags: Optional[List[str]] = None
    recipient_ids: Optional[List[int]] = None

    @field_validator('recipient_tags')
    def validate_recipient_tags(cls, v):
        return v if v is None else clean_tags(v)

    @model_validator(mode='after')
    def validate_not_empty(self):
        if not self.model_fields_set:
            raise ValueError('At least one field is required')
        return self


class CampaignScheduleRequest(BaseModel):
    """Request to schedule a campaign. Stored as naive UTC."""
    scheduled_at: datetime

    @field_validator('scheduled_at')
    def validate_scheduled_at(cls, v):
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        if v <= datetime.utcnow():
            raise ValueError('Scheduled time must be in the future')
        return v


class CampaignMetrics(BaseModel):
    recipient_count: int = 0
    sent_count: int = 0
    open_count: int = 0
    click_count: int = 0
    bounce_count: int = 0
    unsubscribe_count: int = 0


class MetricsIncrement(BaseModel):
    """Partial metrics applied as increments (tracking webhooks)."""
    open_count: Optional[int] = Field(None, ge=0)
    click_count: Optional[int] = Field(None, ge=0)
    bounce_count: Optional[int] = Field(None, ge=0)
    unsubscribe_count: Optional[int] = Field(None, ge=0)


class Campaign(BaseModel):
    id: int
    subject: LocalizedString
    preheader: OptionalLocalizedString
    content: LocalizedString
    status: CampaignStatus
    recipient_type: RecipientType
    recipient_tags: List[str] = []
    recipient_ids: List[int] = []
    scheduled_at: Optional[datetime]
    sent_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    metrics: CampaignMetrics
    created_by_id: Optional[int]
    updated_by_id: Optional[int]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, campaign) -> "Campaign":
        """Build the response from a Campaign row (per-locale columns)."""
        return cls(
            id=campaign.id,
            subject=LocalizedString(ar=campaign.subject_ar, en=campaign.subject_en),
            preheader=OptionalLocalizedString(ar=campaign.preheader_ar, en=campaign.preheader_en),
            content=LocalizedString(ar=campaign.content_ar, en=campaign.content_en),
            status=campaign.status,
            recipient_type=campaign.recipient_type,
            recipient_tags=campaign.recipient_tags or [],
            recipient_ids=campaign.recipient_ids or [],
            scheduled_at=campaign.scheduled_at,
            sent_at=campaign.sent_at,
            cancelled_at=campaign.cancelled_at,
            metrics=CampaignMetrics(**campaign.metrics),
            created_by_id=campaign.created_by_id,
            updated_by_id=campaign.updated_by_id,
            created_at=campaign.created_at,
            updated_at=campaign.updated_at,
        )


class CampaignListResponse(BaseModel):
    """Paginated list of campaigns."""
    campaigns: List[Campaign]
    total: int
    pagination: Pagination


class CampaignStats(BaseModel):
    """Aggregate statistics across campaigns."""
    total: int
    draft: int
    scheduled: int
    sent: int
    total_recipients: int
    total_sent: int
    total_opens: int
    total_clicks: int
    average_open_rate: int  # percentage
    average_click_rate: int  # percentage
    recent_campaigns: List[Campaign] = []


class CampaignRates(BaseModel):
    """Per-campaign delivery and engagement rates."""
    metrics: CampaignMetrics
    open_rate: float
    click_rate: float
    bounce_rate: float
    unsubscribe_rate: float


class CampaignSendResponse(BaseModel):
    message: str
    success: bool
    sent_count: int
    errors: int


# ============================================================
# Public Response Schemas
# ============================================================

class SubscribeResponse(BaseModel):
    """Response for public subscription."""
    message: str
    email: str
    name: Optional[str] = None
    is_new: bool


class MessageResponse(BaseModel):
    message: str
