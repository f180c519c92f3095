"""Delivery status transition validation."""
from __future__ import annotations

from webhook_service.core.exceptions import InvalidStatusTransitionError
from webhook_service.domain.enums import DeliveryStatus

DELIVERY_TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    DeliveryStatus.PENDING: {DeliveryStatus.IN_PROGRESS, DeliveryStatus.RETRYING},
    DeliveryStatus.IN_PROGRESS: {
        DeliveryStatus.RETRYING,
        DeliveryStatus.SUCCESS,
        DeliveryStatus.FAILED,
    },
    DeliveryStatus.RETRYING: {
        DeliveryStatus.IN_PROGRESS,
        DeliveryStatus.SUCCESS,
        DeliveryStatus.FAILED,
    },
    # manual replay
    DeliveryStatus.SUCCESS: {DeliveryStatus.PENDING},
    DeliveryStatus.FAILED: {DeliveryStatus.PENDING},
}


def validate_delivery_transition(current: DeliveryStatus, new: DeliveryStatus) -> None:
    if current == new:
        return
    if new not in DELIVERY_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransitionError(
            f"Invalid delivery status transition: {current.value} → {new.value}"
        )
