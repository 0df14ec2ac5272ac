# Overview: Pytest coverage for live, polling and fallback sync subscriptions.

import copy

import pytest

from branchpos.extensions import change_feed
from branchpos.services import inventory_service
from branchpos.services.document_store_service import read_tenant_document
from branchpos.services.sync_service import (
    FallbackSyncSource,
    LiveSyncSource,
    PollingSyncSource,
    SyncTransportError,
    clamp_poll_interval,
    scope_collection,
    select_sync_source,
)
from branchpos.validation import ValidationError


def _quantities(records):
    return {r["id"]: r["quantity"] for r in records}


@pytest.fixture
def polling(app):
    return PollingSyncSource(app, interval=5, autostart=False)


@pytest.fixture
def fallback(app, polling):
    return FallbackSyncSource(app, LiveSyncSource(change_feed), polling)


class TestScopeCollection:
    def test_branch_scope_and_deleted_excluded(self, tenant):
        document = copy.deepcopy(read_tenant_document("shop-1")[0])
        document["inventory"].append({"id": "gone", "name": "Gone", "branchId": "branch-a",
                                      "deletedAt": "2026-01-01T00:00:00.000Z"})
        document["inventory"].append({"id": "legacy", "name": "Legacy", "branchId": "NO_BRANCH"})

        records = scope_collection(document, "inventory", "branch-a")
        assert sorted(r["id"] for r in records) == ["bread-a", "milk-a"]

    def test_admin_view_sees_all_branches(self, tenant):
        document, _revision = read_tenant_document("shop-1")
        assert len(scope_collection(document, "inventory", None)) == 3

    def test_unpartitioned_collection_ignores_branch(self, tenant):
        document, _revision = read_tenant_document("shop-1")
        assert len(scope_collection(document, "customers", "branch-a")) == 2

    def test_unknown_collection_rejected(self):
        with pytest.raises(ValidationError):
            scope_collection({}, "suppliers")

    def test_poll_interval_clamped(self):
        assert clamp_poll_interval(1) == 5
        assert clamp_poll_interval(12) == 12
        assert clamp_poll_interval(300) == 30
        assert clamp_poll_interval("soon") == 5


class TestLiveSync:
    def test_emits_initial_and_on_every_write(self, tenant, ctx_for):
        emitted = []
        sub = LiveSyncSource(change_feed).subscribe("shop-1", "inventory", emitted.append, branch_id="branch-a")

        assert _quantities(emitted[0]) == {"milk-a": 10, "bread-a": 5}

        inventory_service.receive_branch_stock(ctx_for("cashier-a"), "bread-a", 3)
        assert _quantities(emitted[-1]) == {"milk-a": 10, "bread-a": 8}
        assert "milk-b" not in _quantities(emitted[-1])
        sub.unsubscribe()

    def test_unsubscribe_is_idempotent(self, tenant):
        sub = LiveSyncSource(change_feed).subscribe("shop-1", "transactions", lambda data: None)
        assert change_feed.listener_count("shop-1") == 1

        sub.unsubscribe()
        sub.unsubscribe()
        assert change_feed.listener_count("shop-1") == 0
        assert not sub.active

    def test_no_emit_after_unsubscribe(self, tenant, ctx_for):
        emitted = []
        sub = LiveSyncSource(change_feed).subscribe("shop-1", "inventory", emitted.append, branch_id="branch-a")
        sub.unsubscribe()
        inventory_service.receive_branch_stock(ctx_for("cashier-a"), "bread-a", 1)
        assert len(emitted) == 1

    def test_closed_feed_refuses_listen(self, tenant):
        change_feed.close()
        with pytest.raises(SyncTransportError):
            LiveSyncSource(change_feed).subscribe("shop-1", "inventory", lambda data: None)


class TestPollingSync:
    def test_emits_only_when_revision_moves(self, tenant, ctx_for, polling):
        emitted = []
        sub = polling.subscribe("shop-1", "inventory", emitted.append, branch_id="branch-b")
        assert len(emitted) == 1
        assert sub.transport == "polling"

        assert sub.poll_once() is False
        inventory_service.receive_branch_stock(ctx_for("cashier-b"), "milk-b", 2)
        assert sub.poll_once() is True
        assert _quantities(emitted[-1]) == {"milk-b": 9}

        sub.unsubscribe()
        sub.unsubscribe()
        assert sub.poll_once() is False

    def test_unsubscribe_stops_poll_thread(self, app, tenant):
        sub = PollingSyncSource(app, interval=5).subscribe("shop-1", "inventory", lambda data: None)
        assert sub.running

        sub.unsubscribe()

        assert not sub.running

    def test_interval_clamped(self, app):
        assert PollingSyncSource(app, interval=1, autostart=False).interval == 5


class TestFallbackSync:
    def test_live_while_feed_open(self, tenant, fallback):
        sub = fallback.subscribe("shop-1", "inventory", lambda data: None, branch_id="branch-a")
        assert fallback.status == "live"
        sub.unsubscribe()
        assert fallback.status == "offline"

    def test_transport_loss_switches_to_polling(self, tenant, fallback):
        emitted = []
        errors = []
        sub = fallback.subscribe("shop-1", "inventory", emitted.append, errors.append, branch_id="branch-a")

        change_feed.close()

        assert fallback.status == "polling"
        assert sub.transport == "polling"
        assert errors == []
        # polling re-emits the full scoped collection on takeover
        assert _quantities(emitted[-1]) == {"milk-a": 10, "bread-a": 5}

        sub.unsubscribe()
        sub.unsubscribe()

    def test_live_setup_failure_starts_polling(self, tenant, fallback):
        change_feed.close()
        emitted = []
        sub = fallback.subscribe("shop-1", "customers", emitted.append)
        assert sub.transport == "polling"
        assert len(emitted[0]) == 2
        sub.unsubscribe()

    def test_select_sync_source(self, app, monkeypatch):
        assert isinstance(select_sync_source(app), FallbackSyncSource)
        monkeypatch.setitem(app.config, "SYNC_TRANSPORT", "polling")
        assert isinstance(select_sync_source(app), PollingSyncSource)
