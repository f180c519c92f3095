"""Dependency providers for aiohttp handlers.

Everything handlers need is built once at startup and stored on the
application; handlers never reach for module-level state.
"""
from __future__ import annotations

from aiohttp import web

from webhook_service.delivery import WebhookDeliveryEngine
from webhook_service.services.webhooks import WebhookService
from webhook_service.settings import Settings

SETTINGS_KEY = "settings"
WEBHOOK_SERVICE_KEY = "webhook_service"
DELIVERY_ENGINE_KEY = "webhook_delivery_engine"


def _require(app: web.Application, key: str):
    value = app.get(key)
    if value is None:
        raise web.HTTPServiceUnavailable(text=f"{key} is not initialized")
    return value


def get_settings(request: web.Request) -> Settings:
    return _require(request.app, SETTINGS_KEY)


def get_webhook_service(request: web.Request) -> WebhookService:
    return _require(request.app, WEBHOOK_SERVICE_KEY)


def get_delivery_engine(request: web.Request) -> WebhookDeliveryEngine:
    return _require(request.app, DELIVERY_ENGINE_KEY)
