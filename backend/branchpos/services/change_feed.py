# Overview: In-process change-notification collaborator keyed by tenant and collection.

"""
Change Feed

The document store publishes every committed tenant write here; live sync
subscriptions listen per (tenant_id, collection). A publish carries the
written document and its revision, so listeners re-emit the full collection
without another store read.

TRANSPORT SEMANTICS:
- Listeners for one key are called in registration order, on the writer's
  thread, after the commit.
- close() marks the transport down: every listener gets a
  SyncTransportError via on_transport_error and further listen() calls fail.
- Removing a listener is idempotent, including after close().
"""

from __future__ import annotations

import threading
from typing import Protocol

from flask import current_app


class SyncTransportError(Exception):
    """Live change transport unavailable. Non-fatal: sync falls back to polling."""
    pass


class ChangeListener(Protocol):
    def on_change(self, document: dict, revision: int) -> None: ...

    def on_transport_error(self, exc: SyncTransportError) -> None: ...


class ChangeFeed:
    def __init__(self):
        self._lock = threading.RLock()
        self._listeners: dict[tuple[str, str], list[ChangeListener]] = {}
        self._closed = False

    def init_app(self, app) -> None:
        app.extensions["change_feed"] = self
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def listen(self, tenant_id: str, collection: str, listener: ChangeListener):
        """Register a listener; returns a remover callable (safe to call twice)."""
        with self._lock:
            if self._closed:
                raise SyncTransportError("change feed is closed")
            key = (tenant_id, collection)
            self._listeners.setdefault(key, []).append(listener)

        def _remove() -> None:
            with self._lock:
                bucket = self._listeners.get(key)
                if bucket and listener in bucket:
                    bucket.remove(listener)
                    if not bucket:
                        del self._listeners[key]

        return _remove

    def listener_count(self, tenant_id: str | None = None) -> int:
        with self._lock:
            return sum(
                len(v) for (t, _c), v in self._listeners.items()
                if tenant_id is None or t == tenant_id
            )

    def publish(self, tenant_id: str, collections, document: dict, revision: int) -> None:
        if self._closed:
            return
        with self._lock:
            targets = [
                listener
                for collection in collections
                for listener in list(self._listeners.get((tenant_id, collection), []))
            ]
        for listener in targets:
            try:
                listener.on_change(document, revision)
            except Exception:
                # write already committed; log and keep notifying
                current_app.logger.exception(
                    "Change listener failed tenant=%s revision=%s", tenant_id, revision
                )

    def close(self) -> None:
        with self._lock:
            self._closed = True
            listeners = [l for bucket in self._listeners.values() for l in bucket]
            self._listeners.clear()
        exc = SyncTransportError("change feed closed")
        for listener in listeners:
            listener.on_transport_error(exc)

    def reopen(self) -> None:
        with self._lock:
            self._closed = False
