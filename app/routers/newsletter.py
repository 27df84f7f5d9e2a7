# app/routers/newsletter.py
"""
Newsletter Router - Handles public subscriptions and admin subscriber/campaign management.
"""
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from sqlmodel import Session
from typing import List, Optional
from datetime import datetime

from app.database.engine import get_db
from app.core.deps import require_admin, get_newsletter_service, get_campaign_service
from app.core.exceptions import InvalidStateTransition, NotFoundError, ValidationError
from app.crud.campaign import CampaignCRUD
from app.crud.subscriber import SubscriberCRUD
from app.models.newsletter import SubscriberStatus, SubscriberSource, CampaignStatus
from app.services.campaign_service import CampaignService
from app.services.newsletter_service import NewsletterService
from app.schemas.newsletter import (
    # Public schemas
    SubscribeRequest, SubscribeResponse, UnsubscribeRequest, MessageResponse,
    # Subscriber schemas
    SubscriberCreate, SubscriberUpdate, Subscriber, SubscriberListResponse,
    SubscriberStats, RecentSubscriber, SubscriberTagsResponse, SubscriberExportRow,
    SubscriberImportRequest, ImportResult,
    BulkSubscriberAction, BulkAction, BulkActionResult,
    # Campaign schemas
    CampaignCreate, CampaignUpdate, CampaignScheduleRequest, Campaign,
    CampaignListResponse, CampaignStats, CampaignRates, CampaignSendResponse,
    MetricsIncrement,
)

router = APIRouter(
    tags=["newsletter"],
    responses={404: {"description": "Not found"}},
)

admin_only = [Depends(require_admin)]


def _split_tags(tags: Optional[str]) -> Optional[List[str]]:
    if not tags:
        return None
    return [tag.strip() for tag in tags.split(",") if tag.strip()]


def register_exception_handlers(app: FastAPI) -> None:
    """Map newsletter errors to HTTP responses."""

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(InvalidStateTransition)
    async def invalid_state_handler(request: Request, exc: InvalidStateTransition):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "detail": str(exc),
                "current_status": exc.current_status,
                "allowed": exc.allowed,
            }
        )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": str(exc), "field": exc.field}
        )


# ========================================
# SUBSCRIPTION ENDPOINTS (Public)
# ========================================

@router.post("/newsletter/subscribe", response_model=SubscribeResponse)
async def subscribe_to_newsletter(
    data: SubscribeRequest,
    request: Request,
    service: NewsletterService = Depends(get_newsletter_service)
):
    """
    Subscribe to the newsletter.

    New subscribers receive a welcome email. Subscribing again with an
    address that has unsubscribed reactivates it.

    **Permissions**: Public
    """
    subscriber, is_new = await service.subscribe(
        email=data.email,
        name=data.name,
        locale=data.locale,
        source=SubscriberSource.website,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        referrer=request.headers.get("referer")
    )

    return SubscribeResponse(
        message="Thank you for subscribing to our newsletter!" if is_new
        else "You are subscribed to our newsletter.",
        email=subscriber.email,
        name=subscriber.name,
        is_new=is_new
    )


@router.post("/newsletter/unsubscribe", response_model=MessageResponse)
def unsubscribe_from_newsletter(
    data: UnsubscribeRequest,
    service: NewsletterService = Depends(get_newsletter_service)
):
    """
    Unsubscribe using the email and token from an unsubscribe link.

    **Permissions**: Public
    """
    if not service.unsubscribe(data.email, data.token):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid unsubscribe link"
        )

    return MessageResponse(message="You have been successfully unsubscribed.")


@router.get("/newsletter/verify/{token}", response_model=MessageResponse)
def verify_email(
    token: str,
    service: NewsletterService = Depends(get_newsletter_service)
):
    """
    Confirm a pending subscription via token.

    **Permissions**: Public
    """
    if not service.verify_email(token):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired verification link"
        )

    return MessageResponse(message="Your email has been verified. Thank you!")


# ========================================
# SUBSCRIBER MANAGEMENT ENDPOINTS (Admin)
# ========================================

@router.get("/newsletter/subscribers", response_model=SubscriberListResponse, dependencies=admin_only)
def get_subscribers(
    status_filter: Optional[SubscriberStatus] = Query(None, alias="status"),
    source: Optional[SubscriberSource] = None,
    tags: Optional[str] = Query(None, description="Comma-separated tags (any of)"),
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort: str = "-subscribed_at",
    db: Session = Depends(get_db)
):
    """
    List subscribers with filtering and pagination.

    **Permissions**: Admin only
    """
    subscribers, total, pagination = SubscriberCRUD(db).get_subscribers(
        status=status_filter,
        source=source,
        tags=_split_tags(tags),
        search=search,
        page=page,
        limit=limit,
        sort=sort
    )

    return SubscriberListResponse(
        subscribers=[Subscriber.model_validate(s) for s in subscribers],
        total=total,
        pagination=pagination
    )


@router.get("/newsletter/subscribers/stats", response_model=SubscriberStats, dependencies=admin_only)
def get_subscriber_stats(db: Session = Depends(get_db)):
    """
    Subscriber counts by status and source.

    **Permissions**: Admin only
    """
    stats = SubscriberCRUD(db).get_stats()
    stats["recent_subscribers"] = [RecentSubscriber.model_validate(s) for s in stats["recent_subscribers"]]
    return SubscriberStats(**stats)


@router.get("/newsletter/subscribers/tags", response_model=SubscriberTagsResponse, dependencies=admin_only)
def get_subscriber_tags(db: Session = Depends(get_db)):
    """
    All tags in use, alphabetically.

    **Permissions**: Admin only
    """
    return SubscriberTagsResponse(tags=SubscriberCRUD(db).get_all_tags())


@router.get(
    "/newsletter/subscribers/export",
    response_model=List[SubscriberExportRow],
    dependencies=admin_only
)
def export_subscribers(
    status_filter: Optional[SubscriberStatus] = Query(None, alias="status"),
    tags: Optional[str] = Query(None, description="Comma-separated tags (any of)"),
    format: str = Query("json", pattern="^(json|csv)$"),
    service: NewsletterService = Depends(get_newsletter_service)
):
    """
    Export subscribers as JSON rows or a CSV file.

    **Permissions**: Admin only
    """
    if format == "csv":
        filename = f"subscribers_export_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
        return StreamingResponse(
            iter([service.export_subscribers_csv(status=status_filter, tags=_split_tags(tags))]),
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"}
        )

    return service.export_subscribers(status=status_filter, tags=_split_tags(tags))


@router.post("/newsletter/subscribers/import", response_model=ImportResult, dependencies=admin_only)
def import_subscribers(
    data: SubscriberImportRequest,
    service: NewsletterService = Depends(get_newsletter_service)
):
    """
    Import subscribers; each row is imported, skipped as duplicate or invalid.

    **Permissions**: Admin only
    """
    return service.import_subscribers(data.subscribers, locale=data.locale, tags=data.tags)


@router.post("/newsletter/subscribers/bulk", response_model=BulkActionResult, dependencies=admin_only)
def bulk_subscriber_action(
    data: BulkSubscriberAction,
    db: Session = Depends(get_db)
):
    """
    Apply one action to many subscribers.

    **Permissions**: Admin only
    """
    crud = SubscriberCRUD(db)

    if data.action == BulkAction.delete:
        count = crud.bulk_delete(data.ids)
    elif data.action == BulkAction.unsubscribe:
        count = crud.bulk_update_status(data.ids, SubscriberStatus.unsubscribed)
    elif data.action == BulkAction.activate:
        count = crud.bulk_update_status(data.ids, SubscriberStatus.active)
    elif data.action == BulkAction.add_tags:
        count = crud.bulk_add_tags(data.ids, data.tags)
    else:
        count = crud.bulk_remove_tags(data.ids, data.tags)

    return BulkActionResult(message=f"{data.action.value} applied to {count} subscribers", count=count)


@router.post(
    "/newsletter/subscribers",
    response_model=Subscriber,
    status_code=status.HTTP_201_CREATED,
    dependencies=admin_only
)
def create_subscriber(
    data: SubscriberCreate,
    db: Session = Depends(get_db)
):
    """
    Add a subscriber manually.

    **Permissions**: Admin only
    """
    subscriber = SubscriberCRUD(db).create_subscriber(
        email=data.email,
        name=data.name,
        status=data.status,
        source=data.source,
        locale=data.locale,
        tags=data.tags
    )
    return Subscriber.model_validate(subscriber)


@router.get("/newsletter/subscribers/{subscriber_id}", response_model=Subscriber, dependencies=admin_only)
def get_subscriber(
    subscriber_id: int,
    db: Session = Depends(get_db)
):
    """
    Get a subscriber.

    **Permissions**: Admin only
    """
    subscriber = SubscriberCRUD(db).get(subscriber_id)
    if not subscriber:
        raise HTTPException(status_code=404, detail="Subscriber not found")

    return Subscriber.model_validate(subscriber)


@router.patch("/newsletter/subscribers/{subscriber_id}", response_model=Subscriber, dependencies=admin_only)
def update_subscriber(
    subscriber_id: int,
    data: SubscriberUpdate,
    db: Session = Depends(get_db)
):
    """
    Update name, status, tags or locale of a subscriber.

    **Permissions**: Admin only
    """
    subscriber = SubscriberCRUD(db).update_subscriber(subscriber_id, data)
    if not subscriber:
        raise HTTPException(status_code=404, detail="Subscriber not found")

    return Subscriber.model_validate(subscriber)


@router.delete(
    "/newsletter/subscribers/{subscriber_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=admin_only
)
def delete_subscriber(
    subscriber_id: int,
    db: Session = Depends(get_db)
):
    """
    Delete a subscriber.

    **Permissions**: Admin only
    """
    if not SubscriberCRUD(db).delete_subscriber(subscriber_id):
        raise HTTPException(status_code=404, detail="Subscriber not found")


# ========================================
# CAMPAIGN ENDPOINTS (Admin)
# ========================================

@router.get("/newsletter/campaigns", response_model=CampaignListResponse, dependencies=admin_only)
def get_campaigns(
    status_filter: Optional[CampaignStatus] = Query(None, alias="status"),
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort: str = "-created_at",
    db: Session = Depends(get_db)
):
    """
    List campaigns with filtering and pagination.

    **Permissions**: Admin only
    """
    campaigns, total, pagination = CampaignCRUD(db).get_campaigns(
        status=status_filter,
        search=search,
        page=page,
        limit=limit,
        sort=sort
    )

    return CampaignListResponse(
        campaigns=[Campaign.from_model(c) for c in campaigns],
        total=total,
        pagination=pagination
    )


@router.get("/newsletter/campaigns/stats", response_model=CampaignStats, dependencies=admin_only)
def get_campaigns_overview(db: Session = Depends(get_db)):
    """
    Aggregate statistics across all campaigns.

    **Permissions**: Admin only
    """
    stats = CampaignCRUD(db).get_stats()
    stats["recent_campaigns"] = [Campaign.from_model(c) for c in stats["recent_campaigns"]]
    return CampaignStats(**stats)


@router.post(
    "/newsletter/campaigns",
    response_model=Campaign,
    status_code=status.HTTP_201_CREATED,
    dependencies=admin_only
)
def create_campaign(
    data: CampaignCreate,
    db: Session = Depends(get_db)
):
    """
    Create a draft campaign.

    **Permissions**: Admin only
    """
    return Campaign.from_model(CampaignCRUD(db).create_campaign(data))


@router.get("/newsletter/campaigns/{campaign_id}", response_model=Campaign, dependencies=admin_only)
def get_campaign(
    campaign_id: int,
    db: Session = Depends(get_db)
):
    """
    Get a campaign.

    **Permissions**: Admin only
    """
    campaign = CampaignCRUD(db).get_by_id(campaign_id)
    if not campaign:
        raise HTTPException(status_code=404, detail="Campaign not found")

    return Campaign.from_model(campaign)


@router.patch("/newsletter/campaigns/{campaign_id}", response_model=Campaign, dependencies=admin_only)
def update_campaign(
    campaign_id: int,
    data: CampaignUpdate,
    db: Session = Depends(get_db)
):
    """
    Update a draft campaign.

    **Permissions**: Admin only
    """
    campaign = CampaignCRUD(db).update_campaign(campaign_id, data)
    if not campaign:
        raise HTTPException(status_code=404, detail="Campaign not found")

    return Campaign.from_model(campaign)


@router.delete(
    "/newsletter/campaigns/{campaign_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=admin_only
)
def delete_campaign(
    campaign_id: int,
    db: Session = Depends(get_db)
):
    """
    Delete a campaign that is not currently sending.

    **Permissions**: Admin only
    """
    if not CampaignCRUD(db).delete_campaign(campaign_id):
        raise HTTPException(status_code=404, detail="Campaign not found")


@router.post(
    "/newsletter/campaigns/{campaign_id}/duplicate",
    response_model=Campaign,
    status_code=status.HTTP_201_CREATED,
    dependencies=admin_only
)
def duplicate_campaign(
    campaign_id: int,
    db: Session = Depends(get_db)
):
    """
    Copy a campaign into a new draft.

    **Permissions**: Admin only
    """
    campaign = CampaignCRUD(db).duplicate_campaign(campaign_id)
    if not campaign:
        raise HTTPException(status_code=404, detail="Campaign not found")

    return Campaign.from_model(campaign)


@router.post("/newsletter/campaigns/{campaign_id}/schedule", response_model=Campaign, dependencies=admin_only)
def schedule_campaign(
    campaign_id: int,
    data: CampaignScheduleRequest,
    service: CampaignService = Depends(get_campaign_service)
):
    """
    Schedule a draft campaign for future sending.

    **Permissions**: Admin only
    """
    return Campaign.from_model(service.schedule_campaign(campaign_id, data.scheduled_at))


@router.post("/newsletter/campaigns/{campaign_id}/cancel", response_model=Campaign, dependencies=admin_only)
def cancel_campaign(
    campaign_id: int,
    service: CampaignService = Depends(get_campaign_service)
):
    """
    Cancel a scheduled campaign.

    **Permissions**: Admin only
    """
    return Campaign.from_model(service.cancel_campaign(campaign_id))


@router.post(
    "/newsletter/campaigns/{campaign_id}/send",
    response_model=CampaignSendResponse,
    dependencies=admin_only
)
async def send_campaign(
    campaign_id: int,
    service: CampaignService = Depends(get_campaign_service)
):
    """
    Send a draft or scheduled campaign now.

    **Permissions**: Admin only
    """
    result = await service.send_campaign(campaign_id)

    return CampaignSendResponse(
        message=f"Campaign sent to {result.sent_count} subscribers",
        success=result.success,
        sent_count=result.sent_count,
        errors=result.errors
    )


@router.get("/newsletter/campaigns/{campaign_id}/stats", response_model=CampaignRates, dependencies=admin_only)
def get_campaign_stats(
    campaign_id: int,
    service: CampaignService = Depends(get_campaign_service)
):
    """
    Delivery and engagement rates for a campaign.

    **Permissions**: Admin only
    """
    return CampaignRates.model_validate(service.get_campaign_stats(campaign_id))


@router.post("/newsletter/campaigns/{campaign_id}/metrics", response_model=Campaign, dependencies=admin_only)
def record_campaign_metrics(
    campaign_id: int,
    data: MetricsIncrement,
    db: Session = Depends(get_db)
):
    """
    Add opens, clicks, bounces or unsubscribes reported by tracking.

    **Permissions**: Admin only
    """
    campaign = CampaignCRUD(db).update_metrics(campaign_id, data.model_dump(exclude_none=True))
    if not campaign:
        raise HTTPException(status_code=404, detail="Campaign not found")

    return Campaign.from_model(campaign)
