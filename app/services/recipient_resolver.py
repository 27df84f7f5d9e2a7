# app/services/recipient_resolver.py
"""
Turns a campaign's targeting rule into the concrete list of subscribers.
"""
from typing import List, Optional

from app.crud.subscriber import SubscriberCRUD
from app.models.newsletter import Campaign, RecipientType, Subscriber
from app.schemas.common import clean_tags


class RecipientResolver:
    """Resolve targeting rules against the subscriber store."""

    def __init__(self, subscribers: SubscriberCRUD):
        self.subscribers = subscribers

    def resolve(
        self,
        recipient_type: RecipientType,
        recipient_tags: Optional[List[str]] = None,
        recipient_ids: Optional[List[int]] = None
    ) -> List[Subscriber]:
        """
        Resolve recipients for a targeting rule.

        Args:
            recipient_type: all, tags or specific
            recipient_tags: Tags to match (any of) for ``tags``
            recipient_ids: Subscriber IDs for ``specific``

        Returns:
            Active subscribers, each at most once. Inactive or unknown IDs
            are left out without error.
        """
        if recipient_type == RecipientType.tags:
            tags = clean_tags(recipient_tags)
            if not tags:
                return []
            resolved = self.subscribers.get_active_subscribers(tags=tags)
        elif recipient_type == RecipientType.specific:
            resolved = self.subscribers.get_active_by_ids(list(dict.fromkeys(recipient_ids or [])))
        else:
            resolved = self.subscribers.get_active_subscribers()

        unique = {}
        for subscriber in resolved:
            if subscriber.is_active:
                unique.setdefault(subscriber.id, subscriber)
        return list(unique.values())

    def resolve_for(self, campaign: Campaign) -> List[Subscriber]:
        return self.resolve(campaign.recipient_type, campaign.recipient_tags, campaign.recipient_ids)
