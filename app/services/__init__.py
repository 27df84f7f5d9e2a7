# app/services/__init__.py
"""
Newsletter services layer.
"""

from app.services.campaign_service import CampaignService, SendResult
from app.services.newsletter_service import NewsletterService
from app.services.recipient_resolver import RecipientResolver

__all__ = [
    "CampaignService",
    "SendResult",
    "NewsletterService",
    "RecipientResolver",
]
