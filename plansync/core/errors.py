"""Error taxonomy shared by adapters, the cache layer and the sync controller."""

from __future__ import annotations


class PlanSyncError(Exception):
    """Base class for all PlanSync errors."""


class AuthError(PlanSyncError):
    """Inbound request failed shared-secret verification."""


class RemoteAPIError(PlanSyncError):
    """Non-2xx response (or transport failure) from a partner API.

    ``status`` is ``None`` when no HTTP response was received.
    """

    def __init__(self, status: int | None, body: str = "", url: str | None = None):
        self.status = status
        self.body = body
        self.url = url
        label = status if status is not None else "transport error"
        super().__init__(f"{label}: {body[:500]}" if body else str(label))


class ParseError(PlanSyncError):
    """Inbound payload could not be parsed or carries no resolvable item id."""


class StoreError(PlanSyncError):
    """Local cache read or write failed."""


class MappingConflictError(PlanSyncError):
    """Concurrent Mapping writes for the same planning item.

    Not raised today: Mapping writes are last-write-wins on the upsert key.
    """
