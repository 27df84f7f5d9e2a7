import pytest
from datetime import datetime
from sqlalchemy import DateTime

from app.models.newsletter import Campaign, Subscriber, SubscriberTag, SubscriberStatus


TIMESTAMP_COLUMNS = [
    (SubscriberTag, "added_at"),
    (Subscriber, "subscribed_at"),
    (Subscriber, "unsubscribed_at"),
    (Subscriber, "created_at"),
    (Subscriber, "updated_at"),
    (Campaign, "scheduled_at"),
    (Campaign, "sent_at"),
    (Campaign, "cancelled_at"),
    (Campaign, "created_at"),
    (Campaign, "updated_at"),
]


class TestTimestampColumns:
    @pytest.mark.parametrize("model,column", TIMESTAMP_COLUMNS)
    def test_stored_as_naive_datetime(self, model, column):
        column_type = model.__table__.c[column].type
        assert type(column_type) is DateTime
        assert column_type.timezone is False

    def test_naive_utc_values_round_trip(self, make_subscriber, make_campaign, session):
        subscriber = make_subscriber("clock@example.com", status=SubscriberStatus.unsubscribed)
        subscriber.unsubscribed_at = datetime(2026, 1, 2, 3, 4, 5)
        session.add(subscriber)
        session.commit()
        session.refresh(subscriber)

        assert subscriber.unsubscribed_at == datetime(2026, 1, 2, 3, 4, 5)
        assert subscriber.subscribed_at.tzinfo is None

        campaign = make_campaign()
        assert campaign.created_at.tzinfo is None
