"""Webhook configuration and delivery history endpoints."""
from __future__ import annotations

from uuid import UUID

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from bmglass_common.aiohttp_app import read_json
from webhook_service.core.exceptions import (
    InvalidStatusTransitionError,
    InvalidWebhookUrlError,
    NotFoundError,
    UnknownEventTypeError,
)
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.services.dependencies import get_webhook_service

routes = web.RouteTableDef()

_BASE = "/api/v1/businesses/{business_id}/webhook"
_DEFAULT_PAGE_SIZE = 50
_MAX_PAGE_SIZE = 100


class WebhookConfigDTO(BaseModel):
    url: str
    events: dict[str, bool] = Field(default_factory=dict)
    secret: str | None = Field(default=None, min_length=16)


def _business_id(request: web.Request) -> str:
    business_id = request.match_info["business_id"].strip()
    if not business_id:
        raise web.HTTPBadRequest(text="business_id is required")
    return business_id


def _event_id(request: web.Request) -> UUID:
    try:
        return UUID(request.match_info["event_id"])
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid event_id") from exc


def _history_page(request: web.Request) -> tuple[int, int]:
    try:
        limit = int(request.rel_url.query.get("limit", _DEFAULT_PAGE_SIZE))
        offset = int(request.rel_url.query.get("offset", 0))
    except ValueError as exc:
        raise web.HTTPBadRequest(text="limit and offset must be integers") from exc
    if limit <= 0:
        limit = _DEFAULT_PAGE_SIZE
    return min(limit, _MAX_PAGE_SIZE), max(offset, 0)


@routes.put(_BASE)
async def save_webhook(request: web.Request):
    business_id = _business_id(request)
    body = await read_json(request)
    try:
        dto = WebhookConfigDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc

    service = get_webhook_service(request)
    try:
        subscription = await service.save_config(
            business_id=business_id,
            url=dto.url,
            events=dto.events,
            secret=dto.secret,
        )
    except (InvalidWebhookUrlError, UnknownEventTypeError) as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    # the only response that carries the signing secret
    return web.json_response(subscription.model_dump(mode="json"))


@routes.get(_BASE)
async def get_webhook(request: web.Request):
    business_id = _business_id(request)
    service = get_webhook_service(request)
    subscription = await service.get_config(business_id)
    if subscription is None:
        raise web.HTTPNotFound(text="Webhook configuration not found")
    return web.json_response(subscription.public_view())


@routes.delete(_BASE)
async def delete_webhook(request: web.Request):
    business_id = _business_id(request)
    service = get_webhook_service(request)
    try:
        await service.delete_config(business_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.Response(status=204)


@routes.post(_BASE + "/secret")
async def rotate_webhook_secret(request: web.Request):
    business_id = _business_id(request)
    service = get_webhook_service(request)
    try:
        subscription = await service.rotate_secret(business_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response({"business_id": business_id, "secret": subscription.secret})


@routes.get(_BASE + "/deliveries")
async def list_deliveries(request: web.Request):
    business_id = _business_id(request)
    status_value = request.rel_url.query.get("status")
    status: DeliveryStatus | None = None
    if status_value:
        try:
            status = DeliveryStatus(status_value)
        except ValueError as exc:
            raise web.HTTPBadRequest(text=f"Invalid status: {status_value}") from exc
    limit, offset = _history_page(request)
    service = get_webhook_service(request)
    items, total = await service.list_deliveries(
        business_id, status=status, limit=limit, offset=offset
    )
    return web.json_response(
        {
            "deliveries": [item.public_view() for item in items],
            "total": total,
            "limit": limit,
            "offset": offset,
        }
    )


@routes.get(_BASE + "/deliveries/{event_id}")
async def get_delivery(request: web.Request):
    business_id = _business_id(request)
    event_id = _event_id(request)
    service = get_webhook_service(request)
    try:
        delivery, attempts = await service.get_delivery(business_id, event_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    payload = delivery.public_view()
    payload["attempts"] = [a.model_dump(mode="json") for a in attempts]
    return web.json_response(payload)


@routes.post(_BASE + "/deliveries/{event_id}/retry")
async def retry_delivery(request: web.Request):
    business_id = _business_id(request)
    event_id = _event_id(request)
    service = get_webhook_service(request)
    try:
        await service.replay_delivery(business_id, event_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except InvalidStatusTransitionError as exc:
        raise web.HTTPConflict(text=str(exc)) from exc
    return web.json_response({"event_id": str(event_id), "status": "pending"}, status=202)
