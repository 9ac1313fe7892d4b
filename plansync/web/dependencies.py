"""Shared dependencies for PlanSync web routes.

Services are built once in the app lifespan and stored on ``app.state``;
tests replace these callables through ``app.dependency_overrides``.
"""

from __future__ import annotations

from fastapi import Request

from plansync.cache.store import CacheStore
from plansync.services import Services
from plansync.sync.webhook import WebhookSyncController


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_store(request: Request) -> CacheStore:
    return get_services(request).store


def get_webhook_controller(request: Request) -> WebhookSyncController:
    return get_services(request).webhook
