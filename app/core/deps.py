# app/core/deps.py
"""
FastAPI dependencies shared by the newsletter endpoints.
"""
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlmodel import Session

from app.core.config import settings
from app.core.email import send_email
from app.database.engine import get_db
from app.services.campaign_service import CampaignService
from app.services.newsletter_service import NewsletterService

security = HTTPBearer(auto_error=False)


def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> str:
    """Check the bearer token against ADMIN_API_TOKEN."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    expected = settings.ADMIN_API_TOKEN
    if not expected or not secrets.compare_digest(
        credentials.credentials.encode(), expected.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only administrators can perform this action"
        )
    return credentials.credentials


def get_mailer():
    """Mail delivery function used by the services."""
    return send_email


def get_newsletter_service(
    db: Session = Depends(get_db),
    mailer=Depends(get_mailer)
) -> NewsletterService:
    return NewsletterService(db, mailer=mailer, settings=settings)


def get_campaign_service(
    db: Session = Depends(get_db),
    mailer=Depends(get_mailer)
) -> CampaignService:
    return CampaignService(db, mailer=mailer, settings=settings)
