"""Common exceptions for domain and repository layers."""
from __future__ import annotations


class WebhookServiceError(Exception):
    """Base error for the service layer."""


class RepositoryError(WebhookServiceError):
    """Raised when storage operations fail."""


class NotFoundError(RepositoryError):
    """Raised when requested entity is missing."""


class InvalidWebhookUrlError(WebhookServiceError):
    """Raised when a webhook URL does not parse as an absolute http(s) URL."""


class UnknownEventTypeError(WebhookServiceError):
    """Raised for event names outside the supported set."""


class SubscriptionLookupError(WebhookServiceError):
    """Raised when the webhook configuration could not be loaded.

    Distinct from "not subscribed", which is not an error.
    """


class InvalidStatusTransitionError(WebhookServiceError):
    """Raised when a delivery attempts an unsupported status change."""
