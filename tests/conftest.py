import asyncio
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from app.main import app
from app.database.engine import get_db
from app.core.config import Settings, settings
from app.core.deps import get_mailer
from app.crud.campaign import CampaignCRUD
from app.crud.subscriber import SubscriberCRUD
from app.models.newsletter import SubscriberStatus, SubscriberSource, Locale
from app.schemas.newsletter import CampaignCreate

ADMIN_TOKEN = "test-admin-token"


class FakeMailer:
    """In-memory stand-in for send_email.

    ``outcomes`` maps an address to either a bool, an exception to raise, a
    list of those (consumed per attempt) or ``"hang"`` to never return.
    """

    def __init__(self, default: bool = True):
        self.default = default
        self.outcomes = {}
        self.sent = []
        self.attempts = {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, to_email, subject, html_content, text_content=None):
        self.attempts[to_email] = self.attempts.get(to_email, 0) + 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            outcome = self.outcomes.get(to_email, self.default)
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
            if outcome == "hang":
                await asyncio.sleep(3600)
            if isinstance(outcome, Exception):
                raise outcome
            if outcome:
                self.sent.append({"to_email": to_email, "subject": subject, "html_content": html_content})
            return outcome
        finally:
            self.in_flight -= 1

    def sent_to(self, email):
        return [message for message in self.sent if message["to_email"] == email]


# Test database setup
@pytest.fixture(name="session")
def session_fixture():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session

@pytest.fixture(name="mailer")
def mailer_fixture():
    return FakeMailer()

@pytest.fixture(name="test_settings")
def test_settings_fixture():
    return Settings(
        CLIENT_URL="https://mwm.test",
        CAMPAIGN_SEND_CONCURRENCY=5,
        CAMPAIGN_SEND_TIMEOUT_SECONDS=0.5,
        CAMPAIGN_SEND_MAX_ATTEMPTS=3,
        CAMPAIGN_RETRY_BASE_DELAY=0,
        CAMPAIGN_RETRY_MAX_DELAY=0,
    )

@pytest.fixture(name="subscriber_crud")
def subscriber_crud_fixture(session: Session):
    return SubscriberCRUD(session)

@pytest.fixture(name="campaign_crud")
def campaign_crud_fixture(session: Session):
    return CampaignCRUD(session)

@pytest.fixture(name="make_subscriber")
def make_subscriber_fixture(subscriber_crud: SubscriberCRUD):
    def make(email, status=SubscriberStatus.active, tags=None, locale=Locale.ar,
             source=SubscriberSource.manual, name=None):
        return subscriber_crud.create_subscriber(
            email=email,
            name=name,
            status=status,
            source=source,
            locale=locale,
            tags=tags
        )
    return make

@pytest.fixture(name="make_campaign")
def make_campaign_fixture(campaign_crud: CampaignCRUD):
    def make(**overrides):
        data = {
            "subject": {"ar": "نشرة أكتوبر", "en": "October newsletter"},
            "preheader": {"ar": "أخبار الشهر", "en": "News of the month"},
            "content": {"ar": "<p>مرحبا بالجميع</p>", "en": "<p>Hello everyone</p>"},
            "recipient_type": "all",
        }
        data.update(overrides)
        return campaign_crud.create_campaign(CampaignCreate(**data))
    return make

@pytest.fixture(name="client")
def client_fixture(session: Session, mailer: FakeMailer, monkeypatch):
    def get_session_override():
        return session

    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", ADMIN_TOKEN)
    monkeypatch.setattr(settings, "CAMPAIGN_RETRY_BASE_DELAY", 0)
    monkeypatch.setattr(settings, "CAMPAIGN_RETRY_MAX_DELAY", 0)

    app.dependency_overrides[get_db] = get_session_override
    app.dependency_overrides[get_mailer] = lambda: mailer
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()

@pytest.fixture(name="admin_headers")
def admin_headers_fixture():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
