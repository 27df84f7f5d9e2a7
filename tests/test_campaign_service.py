import asyncio
import pytest
from datetime import datetime, timedelta, timezone

from app.core.exceptions import InvalidStateTransition, NotFoundError
from app.models.newsletter import CampaignStatus, SubscriberStatus, Locale
from app.services.campaign_service import CampaignService, SendResult, backoff_delay


@pytest.fixture(name="service")
def service_fixture(session, mailer, test_settings):
    return CampaignService(session, mailer=mailer, settings=test_settings)


class TestSendCampaign:
    @pytest.mark.asyncio
    async def test_sends_to_every_active_subscriber(self, service, mailer, make_subscriber, make_campaign, campaign_crud):
        make_subscriber("a@example.com")
        make_subscriber("b@example.com")
        make_subscriber("gone@example.com", status=SubscriberStatus.unsubscribed)
        campaign = make_campaign()

        result = await service.send_campaign(campaign.id)

        assert result == SendResult(success=True, sent_count=2, errors=0)
        assert {m["to_email"] for m in mailer.sent} == {"a@example.com", "b@example.com"}

        sent = campaign_crud.get_by_id(campaign.id)
        assert sent.status == CampaignStatus.sent
        assert sent.sent_count == 2
        assert sent.recipient_count == 2
        assert sent.sent_at is not None

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, service, mailer, make_subscriber, make_campaign, campaign_crud):
        for i in range(5):
            make_subscriber(f"user{i}@example.com")
        mailer.outcomes["user1@example.com"] = False
        mailer.outcomes["user3@example.com"] = ConnectionError("connection reset")
        campaign = make_campaign()

        result = await service.send_campaign(campaign.id)

        assert result.success is True
        assert result.sent_count == 3
        assert result.errors == 2
        sent = campaign_crud.get_by_id(campaign.id)
        assert sent.status == CampaignStatus.sent
        assert sent.sent_count == 3
        assert sent.recipient_count == 5

    @pytest.mark.asyncio
    async def test_rejection_is_not_retried(self, service, mailer, make_subscriber, make_campaign):
        make_subscriber("reject@example.com")
        mailer.outcomes["reject@example.com"] = False

        result = await service.send_campaign(make_campaign().id)

        assert result.errors == 1
        assert mailer.attempts["reject@example.com"] == 1

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, service, mailer, make_subscriber, make_campaign):
        make_subscriber("flaky@example.com")
        mailer.outcomes["flaky@example.com"] = [ConnectionError("busy"), ConnectionError("busy"), True]

        result = await service.send_campaign(make_campaign().id)

        assert result.sent_count == 1
        assert result.errors == 0
        assert mailer.attempts["flaky@example.com"] == 3

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, service, mailer, make_subscriber, make_campaign, test_settings):
        make_subscriber("down@example.com")
        mailer.outcomes["down@example.com"] = ConnectionError("refused")

        result = await service.send_campaign(make_campaign().id)

        assert result.errors == 1
        assert mailer.attempts["down@example.com"] == test_settings.CAMPAIGN_SEND_MAX_ATTEMPTS

    @pytest.mark.asyncio
    async def test_stalled_delivery_times_out(self, session, mailer, test_settings, make_subscriber, make_campaign):
        settings = test_settings.model_copy(update={
            "CAMPAIGN_SEND_TIMEOUT_SECONDS": 0.05,
            "CAMPAIGN_SEND_MAX_ATTEMPTS": 2,
        })
        make_subscriber("stuck@example.com")
        make_subscriber("fine@example.com")
        mailer.outcomes["stuck@example.com"] = "hang"

        result = await CampaignService(session, mailer=mailer, settings=settings).send_campaign(make_campaign().id)

        assert result.sent_count == 1
        assert result.errors == 1
        assert mailer.attempts["stuck@example.com"] == 2

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, session, mailer, test_settings, make_subscriber, make_campaign):
        settings = test_settings.model_copy(update={"CAMPAIGN_SEND_CONCURRENCY": 2})
        for i in range(8):
            make_subscriber(f"user{i}@example.com")

        result = await CampaignService(session, mailer=mailer, settings=settings).send_campaign(make_campaign().id)

        assert result.sent_count == 8
        assert mailer.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_concurrency_one_is_sequential(self, session, mailer, test_settings, make_subscriber, make_campaign):
        settings = test_settings.model_copy(update={"CAMPAIGN_SEND_CONCURRENCY": 1})
        for i in range(4):
            make_subscriber(f"user{i}@example.com")

        await CampaignService(session, mailer=mailer, settings=settings).send_campaign(make_campaign().id)

        assert mailer.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_no_recipients(self, service, mailer, make_campaign, campaign_crud):
        campaign = make_campaign()

        result = await service.send_campaign(campaign.id)

        assert result == SendResult(success=True, sent_count=0, errors=0)
        assert mailer.sent == []
        assert campaign_crud.get_by_id(campaign.id).status == CampaignStatus.sent

    @pytest.mark.asyncio
    async def test_message_uses_subscriber_locale(self, service, mailer, make_subscriber, make_campaign):
        make_subscriber("en@example.com", locale=Locale.en, name="Adam")
        arabic = make_subscriber("ar+1@example.com", locale=Locale.ar)

        await service.send_campaign(make_campaign().id)

        english_message = mailer.sent_to("en@example.com")[0]
        assert english_message["subject"] == "October newsletter"
        assert "<p>Hello everyone</p>" in english_message["html_content"]
        assert "News of the month" in english_message["html_content"]
        assert "Hi Adam," in english_message["html_content"]

        arabic_message = mailer.sent_to("ar+1@example.com")[0]
        assert arabic_message["subject"] == "نشرة أكتوبر"
        assert 'dir="rtl"' in arabic_message["html_content"]
        assert "https://mwm.test/newsletter/unsubscribe?email=ar%2B1%40example.com" in arabic_message["html_content"]
        assert arabic.unsubscribe_token in arabic_message["html_content"]

    @pytest.mark.asyncio
    async def test_scheduled_campaign_can_be_sent(self, service, make_campaign, campaign_crud):
        campaign = make_campaign()
        service.schedule_campaign(campaign.id, datetime.utcnow() + timedelta(days=1))

        result = await service.send_campaign(campaign.id)

        assert result.success is True
        assert campaign_crud.get_by_id(campaign.id).status == CampaignStatus.sent

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [CampaignStatus.sent, CampaignStatus.cancelled, CampaignStatus.sending])
    async def test_cannot_send_from_terminal_or_sending(self, service, mailer, make_subscriber, make_campaign,
                                                        campaign_crud, status):
        make_subscriber("a@example.com")
        campaign = make_campaign()
        campaign_crud.transition_status(campaign.id, [CampaignStatus.draft], status)
        before = campaign_crud.get_by_id(campaign.id).metrics

        with pytest.raises(InvalidStateTransition) as exc:
            await service.send_campaign(campaign.id)

        assert exc.value.current_status == status.value
        assert mailer.attempts == {}
        after = campaign_crud.get_by_id(campaign.id)
        assert after.status == status
        assert after.metrics == before

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, service):
        with pytest.raises(NotFoundError):
            await service.send_campaign(404)

    @pytest.mark.asyncio
    async def test_concurrent_sends_dispatch_once(self, service, mailer, make_subscriber, make_campaign):
        for i in range(3):
            make_subscriber(f"user{i}@example.com")
        campaign = make_campaign()

        results = await asyncio.gather(
            service.send_campaign(campaign.id),
            service.send_campaign(campaign.id),
            return_exceptions=True
        )

        assert sum(isinstance(r, SendResult) for r in results) == 1
        assert sum(isinstance(r, InvalidStateTransition) for r in results) == 1
        assert all(count == 1 for count in mailer.attempts.values())
        assert len(mailer.sent) == 3


class TestScheduling:
    def test_schedule_and_cancel(self, service, make_campaign, campaign_crud):
        campaign = make_campaign()
        when = datetime.utcnow() + timedelta(hours=2)

        scheduled = service.schedule_campaign(campaign.id, when)
        assert scheduled.status == CampaignStatus.scheduled
        assert scheduled.scheduled_at == when

        cancelled = service.cancel_campaign(campaign.id)
        assert cancelled.status == CampaignStatus.cancelled
        assert cancelled.cancelled_at is not None

    def test_schedule_converts_aware_datetime_to_utc(self, service, make_campaign):
        campaign = make_campaign()
        when = datetime(2030, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=3)))

        scheduled = service.schedule_campaign(campaign.id, when)
        assert scheduled.scheduled_at == datetime(2030, 1, 1, 9, 0)

    def test_schedule_requires_draft(self, service, make_campaign):
        campaign = make_campaign()
        service.schedule_campaign(campaign.id, datetime.utcnow() + timedelta(hours=1))

        with pytest.raises(InvalidStateTransition) as exc:
            service.schedule_campaign(campaign.id, datetime.utcnow() + timedelta(hours=2))
        assert exc.value.operation == "schedule"
        assert exc.value.allowed == ["draft"]

    def test_cancel_requires_scheduled(self, service, make_campaign, campaign_crud):
        campaign = make_campaign()
        with pytest.raises(InvalidStateTransition):
            service.cancel_campaign(campaign.id)
        assert campaign_crud.get_by_id(campaign.id).status == CampaignStatus.draft

    def test_unknown_campaign(self, service):
        with pytest.raises(NotFoundError):
            service.schedule_campaign(1, datetime.utcnow() + timedelta(hours=1))
        with pytest.raises(NotFoundError):
            service.cancel_campaign(1)

    @pytest.mark.asyncio
    async def test_schedule_cancel_then_send_fails(self, service, mailer, make_subscriber, make_campaign, campaign_crud):
        make_subscriber("a@example.com")
        campaign = make_campaign()
        service.schedule_campaign(campaign.id, datetime.utcnow() + timedelta(hours=1))
        service.cancel_campaign(campaign.id)

        with pytest.raises(InvalidStateTransition):
            await service.send_campaign(campaign.id)

        assert mailer.attempts == {}
        assert campaign_crud.get_by_id(campaign.id).status == CampaignStatus.cancelled

    @pytest.mark.asyncio
    async def test_send_due_campaigns(self, service, mailer, make_subscriber, make_campaign, campaign_crud):
        make_subscriber("a@example.com")
        due = make_campaign()
        future = make_campaign()
        now = datetime.utcnow()
        campaign_crud.transition_status(
            due.id, [CampaignStatus.draft], CampaignStatus.scheduled, scheduled_at=now - timedelta(minutes=5)
        )
        campaign_crud.transition_status(
            future.id, [CampaignStatus.draft], CampaignStatus.scheduled, scheduled_at=now + timedelta(days=1)
        )

        results = await service.send_due_campaigns(now)

        assert len(results) == 1
        assert campaign_crud.get_by_id(due.id).status == CampaignStatus.sent
        assert campaign_crud.get_by_id(future.id).status == CampaignStatus.scheduled
        assert len(mailer.sent) == 1


class TestCampaignStats:
    def test_rates(self, service, make_campaign, campaign_crud):
        campaign = make_campaign()
        campaign_crud.set_recipient_count(campaign.id, 10)
        campaign_crud.update_metrics(campaign.id, {
            "sent_count": 8, "open_count": 4, "click_count": 2, "bounce_count": 1, "unsubscribe_count": 1
        })

        stats = service.get_campaign_stats(campaign.id)

        assert stats["metrics"]["sent_count"] == 8
        assert stats["open_rate"] == 50.0
        assert stats["click_rate"] == 25.0
        assert stats["bounce_rate"] == 10.0
        assert stats["unsubscribe_rate"] == 12.5

    def test_rates_without_sends(self, service, make_campaign):
        stats = service.get_campaign_stats(make_campaign().id)
        assert stats["open_rate"] == 0
        assert stats["bounce_rate"] == 0


class TestBackoff:
    def test_backoff_grows_and_is_capped(self):
        for attempt in range(6):
            delay = backoff_delay(attempt, 0.5, 4.0)
            base = min(4.0, 0.5 * (2 ** attempt))
            assert base <= delay <= base * 1.5

    def test_zero_base_means_no_delay(self):
        assert backoff_delay(3, 0, 0) == 0
