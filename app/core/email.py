"""
Email service for newsletter delivery.
Supports async email sending with Jinja2 templates.
"""

import re
from pathlib import Path
from typing import Optional
from datetime import datetime
from urllib.parse import quote
import logging

import aiosmtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.core.config import settings

logger = logging.getLogger(__name__)

# Get the templates directory
TEMPLATES_DIR = Path(__file__).parent.parent / "templates" / "email"

# Initialize Jinja2 environment
jinja_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(['html', 'xml'])
)

# Connection-level failures worth retrying; everything else is a definitive answer
TRANSIENT_SMTP_ERRORS = (
    aiosmtplib.SMTPConnectError,
    aiosmtplib.SMTPServerDisconnected,
    aiosmtplib.SMTPTimeoutError,
)

WELCOME_SUBJECTS = {
    "ar": "مرحباً بك في النشرة البريدية - {brand}",
    "en": "Welcome to our Newsletter - {brand}",
}


async def send_email(
    to_email: str,
    subject: str,
    html_content: str,
    text_content: Optional[str] = None
) -> bool:
    """
    Send an email using aiosmtplib.

    Args:
        to_email: Recipient email address
        subject: Email subject
        html_content: HTML content of the email
        text_content: Plain text content (optional, falls back to stripped HTML)

    Returns:
        True if the server accepted the message, False if it was rejected or
        SMTP is not configured.

    Raises:
        aiosmtplib.SMTPException: on transient failures (connection problems,
        timeouts, 4xx replies) so the caller may retry.
    """
    # Validate SMTP settings
    if not settings.SMTP_HOST or not settings.EMAIL_FROM:
        logger.error("SMTP settings not configured. Cannot send email.")
        logger.info(f"Would have sent email to {to_email} with subject: {subject}")
        return False

    # Create message
    message = MIMEMultipart("alternative")
    message["From"] = f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>"
    message["To"] = to_email
    message["Subject"] = subject

    # Add plain text version (simple fallback if not provided)
    if not text_content:
        text_content = re.sub('<[^<]+?>', '', html_content)

    message.attach(MIMEText(text_content, "plain", "utf-8"))
    message.attach(MIMEText(html_content, "html", "utf-8"))

    try:
        # Port 587: Use STARTTLS (start_tls=True)
        # Port 465: Use implicit TLS (use_tls=True)
        await aiosmtplib.send(
            message,
            hostname=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USERNAME,
            password=settings.SMTP_PASSWORD,
            use_tls=True if settings.SMTP_PORT == 465 else False,
            start_tls=True if settings.SMTP_PORT == 587 else False,
        )
    except TRANSIENT_SMTP_ERRORS as e:
        logger.warning(f"Transient SMTP failure sending to {to_email}: {e}")
        raise
    except aiosmtplib.SMTPResponseException as e:
        if 400 <= e.code < 500:
            logger.warning(f"SMTP server deferred {to_email} ({e.code}): {e.message}")
            raise
        logger.error(f"SMTP server rejected {to_email} ({e.code}): {e.message}")
        return False
    except Exception as e:
        logger.error(f"Failed to send email to {to_email}: {str(e)}")
        return False

    logger.info(f"Email sent successfully to {to_email}")
    return True


def build_unsubscribe_url(email: str, token: str, client_url: Optional[str] = None) -> str:
    """Public self-service unsubscribe link for a subscriber."""
    return (
        f"{client_url or settings.CLIENT_URL}/newsletter/unsubscribe"
        f"?email={quote(email, safe='')}&token={token}"
    )


def render_welcome_email(
    locale: str,
    unsubscribe_url: str,
    name: Optional[str] = None
) -> str:
    """Render the subscription welcome email for a locale."""
    template = jinja_env.get_template("newsletter/welcome.html")
    return template.render(
        locale=locale,
        is_arabic=locale == "ar",
        name=name,
        brand=settings.BRAND_NAME,
        unsubscribe_url=unsubscribe_url,
        current_year=datetime.now().year
    )


def render_campaign_email(
    locale: str,
    subject: str,
    content: str,
    unsubscribe_url: str,
    preheader: Optional[str] = None,
    name: Optional[str] = None
) -> str:
    """
    Render a campaign email in the recipient's locale.

    ``content`` is trusted admin-authored HTML and is inserted unescaped.
    """
    template = jinja_env.get_template("newsletter/campaign.html")
    return template.render(
        locale=locale,
        is_arabic=locale == "ar",
        subject=subject,
        preheader=preheader,
        content=content,
        name=name,
        brand=settings.BRAND_NAME,
        unsubscribe_url=unsubscribe_url,
        current_year=datetime.now().year
    )


async def send_welcome_email(
    email: str,
    unsubscribe_token: str,
    locale: str = "ar",
    name: Optional[str] = None,
    mailer=send_email,
    client_url: Optional[str] = None
) -> bool:
    """
    Send the newsletter welcome email.

    Args:
        email: Subscriber's email address
        unsubscribe_token: Current unsubscribe token of the subscriber
        locale: Subscriber's locale ("ar" or "en")
        name: Subscriber's name (optional)
        mailer: Delivery function, defaults to SMTP
        client_url: Public site URL for the unsubscribe link

    Returns:
        True if email was sent successfully
    """
    html_content = render_welcome_email(
        locale=locale,
        unsubscribe_url=build_unsubscribe_url(email, unsubscribe_token, client_url),
        name=name
    )
    subject = WELCOME_SUBJECTS.get(locale, WELCOME_SUBJECTS["en"]).format(brand=settings.BRAND_NAME)

    return await mailer(
        to_email=email,
        subject=subject,
        html_content=html_content
    )
