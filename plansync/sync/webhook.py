"""ProductBoard webhook -> Azure DevOps push controller.

Each inbound event gets an audit row that is updated in place as it moves
through the states in ``SyncLogStatus``. A push fires only on a transition
into the ready status (edge-triggered), and events for the same feature are
serialised within the process.
"""

from __future__ import annotations

import asyncio
import hmac
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs, urlparse

import structlog

from plansync.cache.store import CacheStore, utcnow
from plansync.config import AdoConfig, WebhookConfig
from plansync.core.errors import AuthError, ParseError, RemoteAPIError, StoreError
from plansync.integration.ado_client import AdoClient
from plansync.integration.productboard_client import ProductBoardClient
from plansync.mapping.extract import extract_planning_item
from plansync.mapping.project import (
    build_create_operations,
    build_update_operations,
    operations_payload,
    ps_tag,
)
from plansync.models import Mapping, PlanningItem, SyncLogStatus, SyncStatus

logger = structlog.get_logger()

FEATURE_EVENT_PREFIX = "feature."
CUSTOM_FIELD_EVENT = "hierarchy-entity.custom-field-value.updated"
HIERARCHY_ENTITY_PARAM = "hierarchyEntity.id"


@dataclass
class WebhookEvent:
    event_type: str | None
    item_id: str | None
    item_type: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookOutcome:
    status: SyncLogStatus
    log_id: int | None = None
    details: str = ""
    wts_payload: list[dict[str, Any]] | None = None
    malformed: bool = False


def verify_secret(expected: str | None, provided: str | None) -> None:
    """Compare the shared secret against the Authorization header.

    Raises:
        AuthError: if no secret is configured or the header does not match
    """
    if not expected:
        raise AuthError("Webhook secret is not configured")
    if provided is None or not hmac.compare_digest(
        provided.encode("utf-8"), expected.encode("utf-8")
    ):
        raise AuthError("Unauthorized: Invalid signature")


def _hierarchy_entity_id(target: str | None) -> str | None:
    if not target:
        return None
    values = parse_qs(urlparse(target).query).get(HIERARCHY_ENTITY_PARAM)
    return values[0] if values else None


def parse_event(payload: Any) -> WebhookEvent:
    """Classify an inbound payload and pull out the ProductBoard item id.

    Raises:
        ParseError: for an unknown event family or an unresolvable id
    """
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        raise ParseError("Payload has no data object")

    event_type = data.get("eventType")
    if isinstance(event_type, str) and event_type.startswith(FEATURE_EVENT_PREFIX):
        item_id = data.get("id")
        if not item_id:
            raise ParseError(f"No feature id in {event_type} event")
        return WebhookEvent(event_type, str(item_id), "feature", payload)

    if event_type == CUSTOM_FIELD_EVENT:
        target = (data.get("links") or {}).get("target")
        item_id = _hierarchy_entity_id(target)
        if not item_id:
            raise ParseError(f"Could not extract {HIERARCHY_ENTITY_PARAM} from {target!r}")
        return WebhookEvent(event_type, item_id, "hierarchy-entity", payload)

    raise ParseError(f"Unrecognized event type: {event_type!r}")


def should_trigger(current: str | None, last_known: str | None, ready: str) -> bool:
    """Edge trigger: the status moved into ``ready`` since the last event."""
    return current == ready and last_known != ready


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class WebhookSyncController:
    """Drives one webhook event from receipt to a terminal audit state."""

    def __init__(
        self,
        webhook_config: WebhookConfig,
        ado_config: AdoConfig,
        productboard: ProductBoardClient,
        ado: AdoClient,
        store: CacheStore,
    ):
        self.webhook_config = webhook_config
        self.ado_config = ado_config
        self.productboard = productboard
        self.ado = ado
        self.store = store
        self._locks = KeyedLock()

    async def handle(self, body: bytes, authorization: str | None) -> WebhookOutcome:
        """Verify, parse and process one POSTed event.

        Raises:
            AuthError: on shared-secret mismatch (nothing is recorded)
        """
        verify_secret(self.webhook_config.shared_secret, authorization)

        try:
            payload = json.loads(body)
        except ValueError as exc:
            details = f"Malformed JSON payload: {exc}"
            log_id = await self._create_log(SyncLogStatus.IGNORED, details=details)
            logger.warning("webhook_ignored", reason=details, log_id=log_id)
            return WebhookOutcome(SyncLogStatus.IGNORED, log_id, details, malformed=True)

        return await self.handle_payload(payload)

    async def handle_payload(self, payload: Any) -> WebhookOutcome:
        data = payload.get("data") if isinstance(payload, dict) else None
        raw_type = data.get("eventType") if isinstance(data, dict) else None
        try:
            event = parse_event(payload)
        except ParseError as exc:
            details = str(exc)
            log_id = await self._create_log(
                SyncLogStatus.IGNORED,
                event_type=raw_type if isinstance(raw_type, str) else None,
                item_type="unknown",
                details=details,
                payload=payload if isinstance(payload, dict) else None,
            )
            logger.info("webhook_ignored", reason=details, log_id=log_id)
            return WebhookOutcome(SyncLogStatus.IGNORED, log_id, details)

        log_id = await self._create_log(
            SyncLogStatus.RECEIVED,
            event_type=event.event_type,
            item_id=event.item_id,
            item_type=event.item_type,
            details=f"Webhook received for {event.item_type} {event.item_id}",
            payload=event.payload,
        )
        log = logger.bind(log_id=log_id, ps_id=event.item_id, event_type=event.event_type)
        log.info("webhook_received")

        async with self._locks.hold(event.item_id):
            try:
                outcome = await self._process(event, log_id)
            except Exception as exc:
                await self._update_log(
                    log_id, SyncLogStatus.UNEXPECTED_ERROR, f"Unexpected error: {exc}"
                )
                log.exception("webhook_unexpected_error")
                raise

        log.info("webhook_processed", status=outcome.status.value)
        return outcome

    # ------------------------------------------------------------------
    # Audit helpers
    # ------------------------------------------------------------------

    async def _create_log(
        self,
        status: SyncLogStatus,
        *,
        event_type: str | None = None,
        item_id: str | None = None,
        item_type: str | None = None,
        details: str | None = None,
        payload: dict | None = None,
    ) -> int | None:
        try:
            return await self.store.create_sync_log(
                status=status.value,
                event_type=event_type,
                ps_item_id=item_id,
                ps_item_type=item_type,
                details=details,
                payload=payload,
            )
        except StoreError as exc:
            logger.error("sync_log_create_failed", error=str(exc))
            return None

    async def _update_log(
        self, log_id: int | None, status: SyncLogStatus, details: str, **extra: Any
    ) -> WebhookOutcome:
        if log_id is not None:
            try:
                await self.store.update_sync_log(
                    log_id, status=status.value, details=details, **extra
                )
            except StoreError as exc:
                logger.error("sync_log_update_failed", log_id=log_id, error=str(exc))
        return WebhookOutcome(status, log_id, details, extra.get("wts_payload"))

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _process(self, event: WebhookEvent, log_id: int | None) -> WebhookOutcome:
        ps_id = event.item_id
        ready = self.webhook_config.ready_status

        if not self.productboard.config.is_configured:
            return await self._update_log(
                log_id, SyncLogStatus.CONFIG_ERROR, "ProductBoard API token is not configured"
            )

        try:
            raw = await self.productboard.get_feature(ps_id)
        except RemoteAPIError as exc:
            return await self._update_log(
                log_id, SyncLogStatus.FETCH_ERROR, f"PB API Error: {exc.status} {exc.body}"
            )

        item = extract_planning_item(raw, ps_id)
        await self._update_log(
            log_id, SyncLogStatus.FETCHED, f"Fetched '{item.name}' with status {item.status!r}"
        )

        if not item.status:
            return await self._update_log(
                log_id, SyncLogStatus.SKIPPED_NO_STATUS, "No status found on ProductBoard item"
            )

        try:
            mapping = await self.store.get_mapping(ps_id)
        except StoreError as exc:
            return await self._update_log(
                log_id, SyncLogStatus.MAPPING_FETCH_ERROR, f"Error reading mapping: {exc}"
            )

        last_known = mapping.last_known_ps_status if mapping else None
        trigger = should_trigger(item.status, last_known, ready)

        if item.status != last_known:
            try:
                await self.store.set_mapping_status(ps_id, item.status)
            except StoreError as exc:
                logger.warning("mapping_status_update_failed", ps_id=ps_id, error=str(exc))

        if not trigger:
            return await self._update_log(
                log_id,
                SyncLogStatus.SKIPPED_STATUS_CHECK,
                f"Status {item.status!r} (previously {last_known!r}) does not trigger a push",
            )

        await self._update_log(
            log_id,
            SyncLogStatus.PROCESSING_REQUIRED,
            f"Status changed from {last_known!r} to {ready!r}",
        )
        return await self._push(item, mapping, last_known, log_id)

    async def _find_existing_work_item(self, ps_id: str) -> int | None:
        """Look for a work item a previous, half-finished create left behind."""
        tag = ps_tag(ps_id)
        try:
            candidates = await self.ado.find_ids_by_tag(tag)
            if not candidates:
                return None
            raw = await self.ado.fetch_items_by_ids(candidates, fields=["System.Id", "System.Tags"])
        except RemoteAPIError as exc:
            logger.warning("orphan_lookup_failed", ps_id=ps_id, error=str(exc))
            return None

        for entry in raw:
            tags = (entry.get("fields") or {}).get("System.Tags") or ""
            if tag in [t.strip() for t in tags.split(";")]:
                return int(entry["id"])
        return None

    async def _push(
        self,
        item: PlanningItem,
        mapping: Mapping | None,
        last_known: str | None,
        log_id: int | None,
    ) -> WebhookOutcome:
        ps_id = item.id
        if not self.ado_config.is_configured:
            return await self._update_log(
                log_id, SyncLogStatus.ADO_CONFIG_ERROR, "Azure DevOps credentials are not configured"
            )

        wts_id = mapping.wts_id if mapping else None
        if wts_id is None and self.webhook_config.sync_enabled:
            wts_id = await self._find_existing_work_item(ps_id)
            if wts_id is not None:
                logger.info("orphan_work_item_reused", ps_id=ps_id, wts_id=wts_id)

        is_create = wts_id is None
        feature_url = self.productboard.feature_url(ps_id)
        if is_create:
            ops = build_create_operations(item, self.ado_config.area_path, feature_url)
        else:
            ops = build_update_operations(item)
        payload = operations_payload(ops)

        if not self.webhook_config.sync_enabled:
            action = "create" if is_create else f"update work item {wts_id}"
            return await self._update_log(
                log_id,
                SyncLogStatus.DRY_RUN,
                f"Dry run: would {action} with {len(payload)} field operation(s)",
                wts_payload=payload,
            )

        if is_create:
            try:
                await self.store.set_mapping_status(
                    ps_id, item.status, sync_status=SyncStatus.PENDING
                )
            except StoreError as exc:
                logger.warning("pending_mapping_write_failed", ps_id=ps_id, error=str(exc))

        try:
            if is_create:
                result = await self.ado.create_work_item(self.ado_config.work_item_type, payload)
            else:
                result = await self.ado.update_work_item(wts_id, payload)
        except RemoteAPIError as exc:
            details = f"ADO API Error: {exc.status} {exc.body}"
            try:
                # Restore the previous status so the next event re-triggers
                await self.store.set_mapping_status(
                    ps_id, last_known, sync_status=SyncStatus.ERROR, sync_error=details
                )
            except StoreError as store_exc:
                logger.warning("mapping_status_restore_failed", ps_id=ps_id, error=str(store_exc))
            return await self._update_log(
                log_id, SyncLogStatus.ADO_ERROR, details, wts_payload=payload
            )

        wts_id = int(result.get("id", wts_id))
        wts_url = (
            ((result.get("_links") or {}).get("html") or {}).get("href")
            or self.ado.work_item_url(wts_id)
        )

        try:
            await self.store.upsert_mapping(
                Mapping(
                    ps_id=ps_id,
                    wts_id=wts_id,
                    wts_url=wts_url,
                    last_known_ps_status=item.status,
                    last_synced_at=utcnow(),
                    sync_status=SyncStatus.SUCCESS,
                    sync_error=None,
                )
            )
        except StoreError as exc:
            return await self._update_log(
                log_id,
                SyncLogStatus.MAPPING_UPDATE_ERROR,
                f"Work item {wts_id} pushed but mapping write failed: {exc}",
                wts_item_id=wts_id,
            )

        status = SyncLogStatus.ADO_CREATED if is_create else SyncLogStatus.ADO_UPDATED
        verb = "Created" if is_create else "Updated"
        details = f"{verb} work item {wts_id}: {wts_url}"
        try:
            await self.productboard.upsert_integration(
                ps_id, wts_id, wts_url, self.ado_config.work_item_type
            )
        except RemoteAPIError as exc:
            logger.warning("productboard_link_failed", ps_id=ps_id, wts_id=wts_id, error=str(exc))
            details += f"; ProductBoard link update failed: {exc.status} {exc.body}"
        return await self._update_log(log_id, status, details, wts_item_id=wts_id)
