# Overview: Service-layer live/polling subscriptions over tenant collections, scoped by branch.

"""
Sync Layer Invariants (authoritative)

- subscribe(tenant_id, collection, on_data, on_error=None, branch_id=None)
  emits the FULL current scoped collection (list of dicts) once on subscribe
  and again on every change, in arrival order. Never a diff.
- branch_id scopes branch-partitioned collections (inventory, transactions);
  records without a branch never match. Deleted inventory is not emitted.
- Live and polling produce the identical data shape; callers cannot tell
  which transport is underneath except through `status`.
- A live transport failure is non-fatal: FallbackSyncSource moves the
  subscription to polling and logs a warning.
- Subscription.unsubscribe() is idempotent and safe after the transport
  closed.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional

from flask import current_app

from ..schemas import BRANCH_PARTITIONED_COLLECTIONS, TENANT_COLLECTIONS, normalize_branch_id
from ..validation import ValidationError
from .change_feed import ChangeFeed, SyncTransportError
from .document_store_service import PersistenceError, read_tenant_document

__all__ = [
    "SyncTransportError",
    "Subscription",
    "LiveSyncSource",
    "PollingSyncSource",
    "FallbackSyncSource",
    "scope_collection",
    "clamp_poll_interval",
    "select_sync_source",
]

TRANSPORT_LIVE = "live"
TRANSPORT_POLLING = "polling"
STATUS_OFFLINE = "offline"

MIN_POLL_INTERVAL = 5
MAX_POLL_INTERVAL = 30
THREAD_JOIN_TIMEOUT = 2

DataCallback = Callable[[list], None]
ErrorCallback = Callable[[Exception], None]


def clamp_poll_interval(seconds) -> float:
    try:
        seconds = float(seconds)
    except (TypeError, ValueError):
        return float(MIN_POLL_INTERVAL)
    return float(min(max(seconds, MIN_POLL_INTERVAL), MAX_POLL_INTERVAL))


def _check_collection(collection: str) -> None:
    if collection not in TENANT_COLLECTIONS:
        raise ValidationError(
            f"Unknown collection: {collection}",
            details={"collections": sorted(TENANT_COLLECTIONS)},
        )


def scope_collection(
    document: dict,
    collection: str,
    branch_id: str | None = None,
    *,
    include_deleted: bool = False,
) -> list[dict]:
    """
    Parse one collection out of a raw tenant document and return it as
    stored dicts, filtered to branch_id when the collection is partitioned.
    """
    _check_collection(collection)
    schema = TENANT_COLLECTIONS[collection]
    records = [schema.from_dict(raw) for raw in (document or {}).get(collection) or []]

    branch_id = normalize_branch_id(branch_id)
    if branch_id is not None and collection in BRANCH_PARTITIONED_COLLECTIONS:
        records = [r for r in records if r.branch_id is not None and r.branch_id == branch_id]
    if collection == "inventory" and not include_deleted:
        records = [r for r in records if not r.is_deleted]
    return [r.to_dict() for r in records]


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

class Subscription:
    """Handle returned by subscribe(). unsubscribe() may be called any number of times."""

    transport = STATUS_OFFLINE

    def __init__(self, tenant_id: str, collection: str, on_data: DataCallback,
                 on_error: Optional[ErrorCallback] = None, branch_id: str | None = None):
        self.tenant_id = tenant_id
        self.collection = collection
        self.branch_id = normalize_branch_id(branch_id)
        self.on_data = on_data
        self.on_error = on_error
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed

    def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._teardown()

    def _teardown(self) -> None:
        pass

    def _emit(self, document: dict) -> None:
        if self._closed:
            return
        self.on_data(scope_collection(document, self.collection, self.branch_id))

    def _fail(self, exc: Exception) -> None:
        if self.on_error is not None and not self._closed:
            self.on_error(exc)


class _LiveSubscription(Subscription):
    transport = TRANSPORT_LIVE

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._remove: Optional[Callable[[], None]] = None

    def on_change(self, document: dict, revision: int) -> None:
        self._emit(document)

    def on_transport_error(self, exc: SyncTransportError) -> None:
        self._fail(exc)

    def _teardown(self) -> None:
        if self._remove is not None:
            self._remove()
            self._remove = None


class _PollingSubscription(Subscription):
    transport = TRANSPORT_POLLING

    def __init__(self, app, interval: float, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.app = app
        self.interval = clamp_poll_interval(interval)
        self.last_revision: Optional[int] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll_once(self) -> bool:
        """Read the document; emit when its revision moved. Returns True when emitted."""
        if self._closed:
            return False
        try:
            document, revision = read_tenant_document(self.tenant_id)
        except PersistenceError as exc:
            self._fail(SyncTransportError(str(exc)))
            return False
        if revision == self.last_revision:
            return False
        self.last_revision = revision
        self._emit(document)
        return True

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run,
            name=f"sync-poll-{self.tenant_id}-{self.collection}",
            daemon=True,
        )
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            with self.app.app_context():
                try:
                    self.poll_once()
                except Exception as exc:
                    self.app.logger.exception(
                        "Polling subscription failed tenant=%s collection=%s", self.tenant_id, self.collection
                    )
                    self._fail(exc)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _teardown(self) -> None:
        self._stop.set()
        # an emit callback may unsubscribe from the poller thread itself
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=THREAD_JOIN_TIMEOUT)


# =============================================================================
# SOURCES
# =============================================================================

class LiveSyncSource:
    """Subscriptions fed by the in-process change feed."""

    transport = TRANSPORT_LIVE

    def __init__(self, feed: ChangeFeed):
        self.feed = feed

    def subscribe(self, tenant_id: str, collection: str, on_data: DataCallback,
                  on_error: Optional[ErrorCallback] = None, branch_id: str | None = None) -> Subscription:
        _check_collection(collection)
        sub = _LiveSubscription(tenant_id, collection, on_data, on_error, branch_id)
        sub._remove = self.feed.listen(tenant_id, collection, sub)
        try:
            document, _revision = read_tenant_document(tenant_id)
        except PersistenceError:
            sub.unsubscribe()
            raise
        sub._emit(document)
        return sub


class PollingSyncSource:
    """Subscriptions that re-read the store every `interval` seconds on a daemon thread."""

    transport = TRANSPORT_POLLING

    def __init__(self, app, interval=MIN_POLL_INTERVAL, *, autostart: bool = True):
        self.app = app
        self.interval = clamp_poll_interval(interval)
        self.autostart = autostart

    def subscribe(self, tenant_id: str, collection: str, on_data: DataCallback,
                  on_error: Optional[ErrorCallback] = None, branch_id: str | None = None) -> Subscription:
        _check_collection(collection)
        sub = _PollingSubscription(self.app, self.interval, tenant_id, collection, on_data, on_error, branch_id)
        sub.poll_once()
        if self.autostart:
            sub.start()
        return sub


class _FallbackSubscription(Subscription):
    """Wraps a live subscription; swaps to polling when the live transport fails."""

    def __init__(self, source: "FallbackSyncSource", *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.source = source
        self.inner: Optional[Subscription] = None

    @property
    def transport(self) -> str:
        if self._closed or self.inner is None:
            return STATUS_OFFLINE
        return self.inner.transport

    def _handle_error(self, exc: Exception) -> None:
        if isinstance(exc, SyncTransportError) and self.inner is not None and self.inner.transport == TRANSPORT_LIVE:
            self.source.app.logger.warning(
                "Live sync lost, falling back to polling tenant=%s collection=%s: %s",
                self.tenant_id, self.collection, exc,
            )
            self.inner.unsubscribe()
            self.start_polling()
            return
        self._fail(exc)

    def start_live(self) -> None:
        self.inner = self.source.live.subscribe(
            self.tenant_id, self.collection, self.on_data, self._handle_error, self.branch_id
        )

    def start_polling(self) -> None:
        if self._closed:
            return
        self.inner = self.source.polling.subscribe(
            self.tenant_id, self.collection, self.on_data, self._handle_error, self.branch_id
        )

    def _teardown(self) -> None:
        if self.inner is not None:
            self.inner.unsubscribe()


class FallbackSyncSource:
    """Live first; polling for any subscription whose live setup or transport fails."""

    def __init__(self, app, live: LiveSyncSource, polling: PollingSyncSource):
        self.app = app
        self.live = live
        self.polling = polling
        self._subscriptions: list[_FallbackSubscription] = []

    @property
    def status(self) -> str:
        active = [s for s in self._subscriptions if s.active]
        if not active:
            return STATUS_OFFLINE
        if any(s.transport == TRANSPORT_POLLING for s in active):
            return TRANSPORT_POLLING
        return TRANSPORT_LIVE

    def subscribe(self, tenant_id: str, collection: str, on_data: DataCallback,
                  on_error: Optional[ErrorCallback] = None, branch_id: str | None = None) -> Subscription:
        _check_collection(collection)
        sub = _FallbackSubscription(self, tenant_id, collection, on_data, on_error, branch_id)
        try:
            sub.start_live()
        except SyncTransportError as exc:
            self.app.logger.warning(
                "Live sync unavailable, polling tenant=%s collection=%s: %s", tenant_id, collection, exc
            )
            sub.start_polling()
        self._subscriptions = [s for s in self._subscriptions if s.active] + [sub]
        return sub


def select_sync_source(app=None):
    """Pick the transport once per session from SYNC_TRANSPORT."""
    app = app or current_app._get_current_object()
    polling = PollingSyncSource(app, app.config.get("SYNC_POLL_INTERVAL_SECONDS", MIN_POLL_INTERVAL))
    transport = str(app.config.get("SYNC_TRANSPORT", TRANSPORT_LIVE)).lower()
    if transport == TRANSPORT_POLLING:
        return polling
    feed = app.extensions["change_feed"]
    return FallbackSyncSource(app, LiveSyncSource(feed), polling)
