"""Internal trigger: transaction processing reports a state change here."""
from __future__ import annotations

from typing import Any

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from bmglass_common.aiohttp_app import read_json
from webhook_service.core.exceptions import SubscriptionLookupError, UnknownEventTypeError
from webhook_service.services.dependencies import (
    get_delivery_engine,
    get_settings,
    get_webhook_service,
)
from webhook_service.services.webhooks import validate_event_types

routes = web.RouteTableDef()


class EventDTO(BaseModel):
    business_id: str = Field(min_length=1)
    event_type: str
    data: Any = None


@routes.post("/api/v1/events")
async def trigger_event(request: web.Request):
    body = await read_json(request)
    try:
        dto = EventDTO.model_validate(body)
        validate_event_types([dto.event_type])
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc
    except UnknownEventTypeError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc

    if get_settings(request).webhook_delivery_mode == "inline":
        engine = get_delivery_engine(request)
        result = await engine.deliver(dto.business_id, dto.event_type, dto.data)
        return web.json_response(result.model_dump(mode="json"))

    service = get_webhook_service(request)
    try:
        result = await service.emit(
            business_id=dto.business_id,
            event_type=dto.event_type,
            data=dto.data,
        )
    except SubscriptionLookupError as exc:
        raise web.HTTPServiceUnavailable(text=str(exc)) from exc
    status = 202 if result.success else 200
    return web.json_response(result.model_dump(mode="json"), status=status)
