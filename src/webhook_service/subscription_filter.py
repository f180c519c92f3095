"""Subscription filter: decides whether an event goes to a business at all."""
from __future__ import annotations

from dataclasses import dataclass

from webhook_service.core.exceptions import RepositoryError, SubscriptionLookupError
from webhook_service.domain.webhooks import SubscriptionStore, WebhookSubscription

NOT_SUBSCRIBED_MESSAGE = "Business not subscribed to this event"
NO_CONFIG_MESSAGE = "No webhook configuration for business"


@dataclass(frozen=True)
class TargetLookup:
    subscription: WebhookSubscription | None
    reason: str | None = None

    @property
    def should_deliver(self) -> bool:
        return self.subscription is not None


async def resolve_target(
    store: SubscriptionStore, business_id: str, event_type: str
) -> TargetLookup:
    """Load the business's webhook config and check its subscription flag.

    A missing config or a false/absent flag yields a lookup without a
    subscription; only a storage failure raises.
    """
    try:
        subscription = await store.get(business_id)
    except RepositoryError as exc:
        raise SubscriptionLookupError(f"Failed to load webhook configuration: {exc}") from exc
    if subscription is None:
        return TargetLookup(None, NO_CONFIG_MESSAGE)
    if not subscription.is_subscribed(event_type):
        return TargetLookup(None, NOT_SUBSCRIBED_MESSAGE)
    return TargetLookup(subscription)
